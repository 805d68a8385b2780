import copy
import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional
from uuid import UUID

from .errors import UniqueViolationError, WriteConflictError

logger = logging.getLogger(__name__)

ACTIVE_REFERRAL_STATUSES = ("pending", "completed")


class InMemoryStorage:
    """
    Document store for referral records, ledger accounts and the driver
    directory.

    Reads hand out deep copies. The only write path is ``commit()``, which
    checks every staged document against the stored ``version`` and the
    unique indexes before applying anything, so a multi-document commit
    lands completely or not at all.
    """

    def __init__(self, seed: bool = True):
        self._lock = threading.RLock()
        self.drivers: dict[str, dict] = {}
        self.referrals: dict[UUID, dict] = {}
        self.accounts: dict[str, dict] = {}
        self.sequences: dict[str, int] = {}
        self._code_index: dict[str, UUID] = {}
        self._active_referred_index: dict[str, UUID] = {}
        self._key_locks: dict[tuple[str, str], threading.Lock] = {}
        if seed:
            self._seed_data()

    def _seed_data(self):
        now = datetime.now(timezone.utc)
        self.drivers["drv-1001"] = {
            "id": "drv-1001", "name": "Ayesha Khan",
            "email": "ayesha.khan@example.com", "created_at": now,
        }
        self.drivers["drv-1002"] = {
            "id": "drv-1002", "name": "Rahul Verma",
            "email": "rahul.verma@example.com", "created_at": now,
        }

    # ------------------------------------------------------------------
    # Driver directory
    # ------------------------------------------------------------------

    def add_driver(self, driver_id: str, name: Optional[str], email: Optional[str] = None) -> dict:
        with self._lock:
            driver = {
                "id": driver_id, "name": name, "email": email,
                "created_at": datetime.now(timezone.utc),
            }
            self.drivers[driver_id] = driver
            return dict(driver)

    def get_driver(self, driver_id: str) -> Optional[dict]:
        with self._lock:
            driver = self.drivers.get(driver_id)
            return dict(driver) if driver else None

    # ------------------------------------------------------------------
    # Sequences
    # ------------------------------------------------------------------

    def next_sequence(self, name: str) -> int:
        with self._lock:
            value = self.sequences.get(name, 0) + 1
            self.sequences[name] = value
            return value

    def advance_sequence_to(self, name: str, floor: int) -> int:
        with self._lock:
            value = max(self.sequences.get(name, 0), floor)
            self.sequences[name] = value
            return value

    def key_lock(self, namespace: str, key: str) -> threading.Lock:
        """Lock serializing a read-then-create sequence on one key, e.g. one referrer's open code."""
        with self._lock:
            return self._key_locks.setdefault((namespace, key), threading.Lock())

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_referral(self, referral_id: UUID) -> Optional[dict]:
        with self._lock:
            return copy.deepcopy(self.referrals.get(referral_id))

    def find_referral_by_code(self, code: str) -> Optional[dict]:
        with self._lock:
            referral_id = self._code_index.get(code)
            return copy.deepcopy(self.referrals.get(referral_id)) if referral_id else None

    def find_active_referral_for_referred(self, referred_id: str) -> Optional[dict]:
        with self._lock:
            referral_id = self._active_referred_index.get(referred_id)
            return copy.deepcopy(self.referrals.get(referral_id)) if referral_id else None

    def find_referrals(self, predicate: Optional[Callable[[dict], bool]] = None) -> list[dict]:
        with self._lock:
            return [
                copy.deepcopy(doc) for doc in self.referrals.values()
                if predicate is None or predicate(doc)
            ]

    def get_account(self, driver_id: str) -> Optional[dict]:
        with self._lock:
            return copy.deepcopy(self.accounts.get(driver_id))

    def list_accounts(self) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(doc) for doc in self.accounts.values()]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def commit(self, referrals: Iterable[dict] = (), accounts: Iterable[dict] = ()) -> None:
        """
        Conditionally write referral and account documents in one unit.

        Each document carries the ``version`` it was read at (0 for a new
        document). Raises WriteConflictError when any stored version moved on
        and UniqueViolationError when a unique index would be broken; in both
        cases nothing is written.
        """
        referrals = list(referrals)
        accounts = list(accounts)

        with self._lock:
            for doc in referrals:
                self._check_version(self.referrals.get(doc["id"]), doc, "referral", doc["id"])
            for doc in accounts:
                self._check_version(self.accounts.get(doc["driver_id"]), doc, "account", doc["driver_id"])
            self._check_referral_indexes(referrals)

            for doc in referrals:
                self._apply_referral(doc)
            for doc in accounts:
                stored = copy.deepcopy(doc)
                stored["version"] = doc["version"] + 1
                self.accounts[doc["driver_id"]] = stored

        logger.debug(
            f"[STORAGE] Committed {len(referrals)} referral(s), {len(accounts)} account(s)"
        )

    def _check_version(self, stored: Optional[dict], doc: dict, kind: str, key) -> None:
        stored_version = stored["version"] if stored else 0
        if doc["version"] != stored_version:
            raise WriteConflictError(
                f"Stale {kind} {key}: staged version {doc['version']}, stored version {stored_version}"
            )

    def _check_referral_indexes(self, referrals: list[dict]) -> None:
        staged_ids = {doc["id"] for doc in referrals}
        claimed_codes: dict[str, UUID] = {}
        claimed_referred: dict[str, UUID] = {}

        for doc in referrals:
            code = doc["referral_code"]
            owner = self._code_index.get(code, claimed_codes.get(code))
            if owner is not None and owner != doc["id"]:
                raise UniqueViolationError("referral_code", code)
            claimed_codes[code] = doc["id"]

            referred_id = doc.get("referred_id")
            if referred_id is None or doc["status"] not in ACTIVE_REFERRAL_STATUSES:
                continue
            owner = claimed_referred.get(referred_id)
            if owner is None:
                owner = self._active_referred_index.get(referred_id)
                if owner in staged_ids:
                    # that record is being rewritten in this same commit
                    owner = None
            if owner is not None and owner != doc["id"]:
                raise UniqueViolationError("active_referred", referred_id)
            claimed_referred[referred_id] = doc["id"]

    def _apply_referral(self, doc: dict) -> None:
        previous = self.referrals.get(doc["id"])
        if previous and self._active_referred_index.get(previous.get("referred_id")) == doc["id"]:
            del self._active_referred_index[previous["referred_id"]]

        stored = copy.deepcopy(doc)
        stored["version"] = doc["version"] + 1
        self.referrals[doc["id"]] = stored
        self._code_index[doc["referral_code"]] = doc["id"]

        if doc.get("referred_id") is not None and doc["status"] in ACTIVE_REFERRAL_STATUSES:
            self._active_referred_index[doc["referred_id"]] = doc["id"]
