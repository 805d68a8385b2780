import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterable, Optional, Union
from uuid import UUID

from core.config import Settings, get_settings
from core.errors import (
    ConflictError,
    InvalidInputError,
    NotFoundError,
    UniqueViolationError,
    WriteConflictError,
)
from core.storage import InMemoryStorage
from ledger.models import EntryKind, LedgerAccount, LedgerHistoryResponse, LedgerMutationResponse
from ledger.service import LedgerService

from .codes import code_sequence, format_code, is_valid_code, normalize_code
from .models import (
    AdminReferralStats,
    CompletionCriteria,
    DriverReferralStats,
    LeaderboardEntry,
    ProgressResponse,
    RedeemCodeResponse,
    ReferralCodeResponse,
    ReferralPage,
    ReferralRecord,
    ReferralRewards,
    ReferralStatus,
    ReferralSummary,
)

logger = logging.getLogger(__name__)

REFERRAL_CODE_SEQUENCE = "referral_code"


class DriverNotFoundError(NotFoundError):
    pass


class ReferralNotFoundError(NotFoundError):
    pass


class InvalidCodeError(NotFoundError):
    pass


class MalformedCodeError(InvalidInputError):
    pass


class ReferralClosedError(ConflictError):
    pass


class CodeAlreadyUsedError(ConflictError):
    pass


class SelfReferralError(ConflictError):
    pass


class AlreadyReferredError(ConflictError):
    pass


class InvalidTransitionError(ConflictError):
    pass


class ReferralService:
    """
    Coordinates referral records and ledger accounts.

    This is the only component that writes a referral record and ledger
    accounts together. Reward issuance stages both credits and the claim
    flags on the record and lands them in a single storage commit, so a
    retried call can never pay a side twice or leave one side unpaid.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        ledger: Optional[LedgerService] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or (ledger.storage if ledger else InMemoryStorage())
        self.ledger = ledger or LedgerService(self.storage, self.settings)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._seed_code_sequence()

    # ------------------------------------------------------------------
    # Codes
    # ------------------------------------------------------------------

    def generate_code(self, referrer_id: str) -> ReferralCodeResponse:
        driver = self._require_driver(referrer_id)
        now = self.clock()
        sequence = self.storage.next_sequence(REFERRAL_CODE_SEQUENCE)

        record = ReferralRecord(
            referrer_id=referrer_id,
            referral_code=format_code(sequence, driver.get("name"), self.settings.REFERRAL_CODE_PREFIX),
            completion_criteria=CompletionCriteria.from_settings(self.settings),
            rewards=ReferralRewards.from_settings(self.settings),
            start_date=now,
            expiry_date=now + timedelta(days=self.settings.REFERRAL_VALIDITY_DAYS),
            created_at=now,
            updated_at=now,
        )
        self._commit(referrals=[record])

        logger.info(f"[REFERRAL] Generated code {record.referral_code} for driver {referrer_id}")
        return ReferralCodeResponse.from_record(record)

    def get_or_create_code(self, referrer_id: str) -> ReferralCodeResponse:
        """The referrer's newest open (pending, unredeemed) code, or a new one."""
        self._require_driver(referrer_id)

        with self.storage.key_lock("open_code", referrer_id):
            now = self.clock()
            candidates = self._find(
                lambda d: d["referrer_id"] == referrer_id
                and d["status"] == ReferralStatus.PENDING
                and d.get("referred_id") is None
            )
            open_codes = [
                r for r in (self._refresh(record, now) for record in candidates)
                if r.status == ReferralStatus.PENDING and not r.is_redeemed
            ]
            if open_codes:
                newest = max(open_codes, key=lambda r: r.created_at)
                return ReferralCodeResponse.from_record(newest)
            return self.generate_code(referrer_id)

    def redeem_code(self, code: str, referred_id: str) -> RedeemCodeResponse:
        if not isinstance(code, str) or not code.strip():
            raise MalformedCodeError("Referral code is required")
        code = normalize_code(code)
        if not is_valid_code(code, self.settings.REFERRAL_CODE_PREFIX):
            raise MalformedCodeError(
                f"Invalid referral code format. Expected format: {self.settings.REFERRAL_CODE_PREFIX}001-XX"
            )
        self._require_driver(referred_id)

        for attempt in self._attempts():
            now = self.clock()
            doc = self.storage.find_referral_by_code(code)
            if doc is None:
                raise InvalidCodeError(f"Invalid referral code {code}")

            record = self._refresh(ReferralRecord(**doc), now)
            if record.status != ReferralStatus.PENDING:
                raise ReferralClosedError(f"Referral code {code} is no longer valid ({record.status.value})")
            if record.referrer_id == referred_id:
                raise SelfReferralError("Cannot use your own referral code")

            existing = self.storage.find_active_referral_for_referred(referred_id)
            if existing is not None and self._refresh(ReferralRecord(**existing), now).is_active:
                raise AlreadyReferredError(f"Driver {referred_id} already has an active referral")
            if record.is_redeemed:
                raise CodeAlreadyUsedError(f"Referral code {code} has already been used")

            record.referred_id = referred_id
            record.updated_at = now
            try:
                self._commit(referrals=[record])
            except UniqueViolationError as e:
                if e.index == "active_referred":
                    raise AlreadyReferredError(f"Driver {referred_id} already has an active referral")
                raise
            except WriteConflictError:
                logger.info(f"[REFERRAL] Write conflict redeeming {code}, attempt {attempt}")
                continue

            logger.info(f"[REFERRAL] Code {code} redeemed by driver {referred_id}")
            return RedeemCodeResponse(
                referral_id=record.id,
                referrer_id=record.referrer_id,
                referred_id=referred_id,
                status=record.status,
                message="Referral code used successfully",
            )

        raise self._conflict(f"redeem referral code {code}")

    # ------------------------------------------------------------------
    # Progress and rewards
    # ------------------------------------------------------------------

    def advance_progress(
        self,
        referred_id: str,
        deliveries_completed: int,
        total_earnings,
        days_active: int,
    ) -> Optional[ProgressResponse]:
        """
        Record the referred driver's latest counters and close the referral
        once every criterion is met.

        Returns None when the driver has no active referral. Calling this
        again after completion reports ``completed`` without crediting anyone
        a second time.
        """
        deliveries_completed, total_earnings, days_active = self._validate_counters(
            deliveries_completed, total_earnings, days_active
        )

        for attempt in self._attempts():
            now = self.clock()
            doc = self.storage.find_active_referral_for_referred(referred_id)
            if doc is None:
                logger.debug(f"[REFERRAL] No active referral for driver {referred_id}")
                return None
            record = ReferralRecord(**doc)
            accounts: list[LedgerAccount] = []
            changed = False

            if record.is_overdue(now):
                record.mark_expired(now)
                changed = True
            elif record.status == ReferralStatus.PENDING:
                if not record.update_progress(deliveries_completed, total_earnings, days_active):
                    logger.warning(
                        f"[REFERRAL] Ignoring decreasing counters for driver {referred_id} "
                        f"on referral {record.referral_code}"
                    )
                record.updated_at = now
                if record.meets_criteria():
                    record.mark_completed(now)
                changed = True

            if record.status == ReferralStatus.COMPLETED and not record.rewards.fully_claimed:
                accounts = self._stage_rewards(record)
                changed = True

            if changed:
                try:
                    self._commit(referrals=[record], accounts=accounts)
                except WriteConflictError:
                    logger.info(f"[REFERRAL] Write conflict advancing {record.referral_code}, attempt {attempt}")
                    continue

            return self._progress_response(record, rewards_issued=bool(accounts))

        raise self._conflict(f"advance referral progress for driver {referred_id}")

    def _stage_rewards(self, record: ReferralRecord) -> list[LedgerAccount]:
        """Credit every unclaimed side on in-memory accounts and flip its claim flag."""
        description = f"Referral completion reward for {record.referral_code}"
        rewards = record.rewards
        sides = (
            ("referrer_claimed", record.referrer_id, rewards.referrer_amount),
            ("referred_claimed", record.referred_id, rewards.referred_amount),
        )

        accounts = []
        for flag, driver_id, amount in sides:
            if getattr(rewards, flag):
                continue
            setattr(rewards, flag, True)
            if amount <= 0:
                continue
            account = self.ledger.load_account(driver_id)
            account.apply_credit(amount, EntryKind.AWARD, description, record.id)
            accounts.append(account)
            logger.info(
                f"[REFERRAL] Staged {amount} reward for driver {driver_id} on {record.referral_code}"
            )
        return accounts

    def _progress_response(self, record: ReferralRecord, rewards_issued: bool) -> ProgressResponse:
        messages = {
            ReferralStatus.PENDING: "Referral progress updated successfully",
            ReferralStatus.COMPLETED: "Referral completed",
            ReferralStatus.EXPIRED: "Referral expired before completion",
            ReferralStatus.CANCELLED: "Referral was cancelled",
        }
        return ProgressResponse(
            referral_id=record.id,
            status=record.status,
            progress=record.progress,
            completion_percentage=record.completion_percentage(),
            rewards_issued=rewards_issued,
            message=messages[record.status],
        )

    # ------------------------------------------------------------------
    # Administrative transitions
    # ------------------------------------------------------------------

    def cancel_referral(self, referral_id: UUID) -> ReferralRecord:
        return self._close(referral_id, ReferralStatus.CANCELLED)

    def expire_referral(self, referral_id: UUID) -> ReferralRecord:
        return self._close(referral_id, ReferralStatus.EXPIRED)

    def expire_overdue(self) -> int:
        """Expire every pending referral past its expiry date. Returns the count."""
        now = self.clock()
        expired = 0
        for record in self._find(lambda d: d["status"] == ReferralStatus.PENDING and now > d["expiry_date"]):
            record.mark_expired(now)
            try:
                self._commit(referrals=[record])
            except WriteConflictError:
                logger.info(f"[REFERRAL] Referral {record.referral_code} changed during sweep, skipped")
                continue
            expired += 1

        if expired:
            logger.info(f"[REFERRAL] Expired {expired} overdue referral(s)")
        return expired

    def _close(self, referral_id: UUID, target: ReferralStatus) -> ReferralRecord:
        for attempt in self._attempts():
            now = self.clock()
            record = self._load(referral_id)
            if record.status != ReferralStatus.PENDING:
                raise InvalidTransitionError(
                    f"Only pending referrals can be {target.value}; referral {referral_id} is {record.status.value}"
                )

            if target == ReferralStatus.EXPIRED or record.is_overdue(now):
                record.mark_expired(now)
            else:
                record.mark_cancelled(now)
            try:
                self._commit(referrals=[record])
            except WriteConflictError:
                logger.info(f"[REFERRAL] Write conflict closing {referral_id}, attempt {attempt}")
                continue

            if record.status != target:
                raise InvalidTransitionError(f"Referral {referral_id} had already expired")
            logger.info(f"[REFERRAL] Referral {record.referral_code} {target.value}")
            return record

        raise self._conflict(f"close referral {referral_id}")

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def redeem_balance(self, driver_id: str, amount, description: str) -> LedgerMutationResponse:
        if not isinstance(description, str) or not description.strip():
            raise InvalidInputError("Description is required")
        return self.ledger.redeem(driver_id, amount, description)

    def award_bonus(self, driver_id: str, amount, description: str = "Referral program bonus") -> LedgerMutationResponse:
        self._require_driver(driver_id)
        return self.ledger.credit(driver_id, amount, EntryKind.BONUS, description)

    def expire_balance(self, driver_id: str, amount=None, description: str = "Balance expired") -> LedgerMutationResponse:
        return self.ledger.expire(driver_id, amount, description)

    def get_history(self, driver_id: str, limit: Optional[int] = None) -> LedgerHistoryResponse:
        return self.ledger.get_history(driver_id, limit)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_referral(self, referral_id: UUID) -> ReferralRecord:
        return self._refresh(self._load(referral_id), self.clock())

    def get_driver_stats(self, driver_id: str) -> DriverReferralStats:
        now = self.clock()
        as_referrer = [
            self._refresh(r, now) for r in self._find(lambda d: d["referrer_id"] == driver_id)
        ]
        as_referred = [
            self._refresh(r, now) for r in self._find(lambda d: d.get("referred_id") == driver_id)
        ]
        counts = Counter(r.status for r in as_referrer)
        balance = self.ledger.get_balance(driver_id)

        return DriverReferralStats(
            driver_id=driver_id,
            total_referrals=len(as_referrer),
            completed_referrals=counts[ReferralStatus.COMPLETED],
            pending_referrals=counts[ReferralStatus.PENDING],
            expired_referrals=counts[ReferralStatus.EXPIRED],
            cancelled_referrals=counts[ReferralStatus.CANCELLED],
            total_earned=balance.total,
            available=balance.available,
            redeemed=balance.redeemed,
            referrals_as_referrer=self._summaries(as_referrer),
            referrals_as_referred=self._summaries(as_referred),
        )

    def get_leaderboard(self, limit: Optional[int] = None) -> list[LeaderboardEntry]:
        limit = self.settings.LEADERBOARD_DEFAULT_LIMIT if limit is None else limit
        if limit < 1:
            raise InvalidInputError("limit must be positive")

        ranked = sorted(self.ledger.list_accounts(), key=lambda a: (-a.total, a.driver_id))
        leaderboard: list[LeaderboardEntry] = []
        for account in ranked:
            driver = self.storage.get_driver(account.driver_id)
            if driver is None:
                continue
            leaderboard.append(LeaderboardEntry(
                rank=len(leaderboard) + 1,
                driver_id=account.driver_id,
                name=driver.get("name"),
                email=driver.get("email"),
                total=account.total,
                available=account.available,
                completed_referrals=sum(
                    1 for e in account.history
                    if e.kind == EntryKind.AWARD and e.referral_id is not None
                ),
            ))
            if len(leaderboard) == limit:
                break
        return leaderboard

    def get_admin_stats(self) -> AdminReferralStats:
        self.expire_overdue()
        counts = Counter(ReferralStatus(d["status"]) for d in self.storage.find_referrals())
        total_referrals = sum(counts.values())
        accounts = self.ledger.list_accounts()

        completion_rate = Decimal("0.00")
        if total_referrals:
            completion_rate = (
                Decimal(counts[ReferralStatus.COMPLETED]) / Decimal(total_referrals) * 100
            ).quantize(Decimal("0.01"))

        return AdminReferralStats(
            total_referrals=total_referrals,
            pending_referrals=counts[ReferralStatus.PENDING],
            completed_referrals=counts[ReferralStatus.COMPLETED],
            expired_referrals=counts[ReferralStatus.EXPIRED],
            cancelled_referrals=counts[ReferralStatus.CANCELLED],
            total_credited=sum((a.total for a in accounts), Decimal("0")),
            total_redeemed=sum((a.redeemed for a in accounts), Decimal("0")),
            drivers_with_credits=sum(1 for a in accounts if a.total > 0),
            completion_rate=completion_rate,
        )

    def list_referrals(
        self,
        status: Optional[Union[ReferralStatus, str]] = None,
        page: int = 1,
        limit: int = 20,
    ) -> ReferralPage:
        if page < 1 or limit < 1:
            raise InvalidInputError("page and limit must be positive")
        if status is not None:
            try:
                status = ReferralStatus(status)
            except ValueError:
                raise InvalidInputError(f"Unknown referral status: {status!r}")

        self.expire_overdue()
        records = self._find(lambda d: status is None or d["status"] == status)
        records.sort(key=lambda r: r.created_at, reverse=True)
        start = (page - 1) * limit

        return ReferralPage(
            referrals=records[start:start + limit],
            page=page,
            limit=limit,
            total=len(records),
            pages=-(-len(records) // limit),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _seed_code_sequence(self) -> None:
        prefix = self.settings.REFERRAL_CODE_PREFIX
        highest = max(
            (code_sequence(d["referral_code"], prefix) or 0 for d in self.storage.find_referrals()),
            default=0,
        )
        self.storage.advance_sequence_to(REFERRAL_CODE_SEQUENCE, highest)

    def _require_driver(self, driver_id: str) -> dict:
        driver = self.storage.get_driver(driver_id)
        if driver is None:
            raise DriverNotFoundError(f"Driver {driver_id} not found")
        return driver

    def _load(self, referral_id: UUID) -> ReferralRecord:
        doc = self.storage.get_referral(referral_id)
        if doc is None:
            raise ReferralNotFoundError(f"Referral {referral_id} not found")
        return ReferralRecord(**doc)

    def _find(self, predicate) -> list[ReferralRecord]:
        return [ReferralRecord(**doc) for doc in self.storage.find_referrals(predicate)]

    def _refresh(self, record: ReferralRecord, now: datetime) -> ReferralRecord:
        """Lazily expire a pending record whose expiry date has passed."""
        for _ in self._attempts():
            if not record.is_overdue(now):
                return record
            record.mark_expired(now)
            try:
                self._commit(referrals=[record])
            except WriteConflictError:
                record = self._load(record.id)
                continue
            logger.info(f"[REFERRAL] Referral {record.referral_code} expired on read")
            return record
        raise self._conflict(f"expire referral {record.id}")

    def _commit(
        self,
        referrals: Iterable[ReferralRecord] = (),
        accounts: Iterable[LedgerAccount] = (),
    ) -> None:
        referrals = list(referrals)
        accounts = list(accounts)
        self.storage.commit(
            referrals=[r.model_dump() for r in referrals],
            accounts=[a.model_dump() for a in accounts],
        )
        for document in (*referrals, *accounts):
            document.version += 1

    def _summaries(self, records: list[ReferralRecord]) -> list[ReferralSummary]:
        def name_of(driver_id: Optional[str]) -> Optional[str]:
            driver = self.storage.get_driver(driver_id) if driver_id else None
            return driver.get("name") if driver else None

        records = sorted(records, key=lambda r: r.created_at, reverse=True)
        return [
            ReferralSummary(
                referral_id=r.id,
                referral_code=r.referral_code,
                referrer_id=r.referrer_id,
                referrer_name=name_of(r.referrer_id),
                referred_id=r.referred_id,
                referred_name=name_of(r.referred_id),
                status=r.status,
                completion_percentage=r.completion_percentage(),
                start_date=r.start_date,
                expiry_date=r.expiry_date,
                completion_date=r.completion_date,
            )
            for r in records
        ]

    def _validate_counters(self, deliveries_completed, total_earnings, days_active) -> tuple[int, Decimal, int]:
        try:
            earnings = total_earnings if isinstance(total_earnings, Decimal) else Decimal(str(total_earnings))
        except (InvalidOperation, ValueError, TypeError):
            raise InvalidInputError(f"Invalid earnings value: {total_earnings!r}")
        if not earnings.is_finite():
            raise InvalidInputError(f"Invalid earnings value: {total_earnings!r}")

        for name, value in (("deliveries_completed", deliveries_completed), ("days_active", days_active)):
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidInputError(f"{name} must be an integer")
        if deliveries_completed < 0 or earnings < 0 or days_active < 0:
            raise InvalidInputError("Progress counters must not be negative")
        return deliveries_completed, earnings, days_active

    def _attempts(self) -> range:
        return range(1, self.settings.MAX_WRITE_ATTEMPTS + 1)

    def _conflict(self, action: str) -> WriteConflictError:
        return WriteConflictError(
            f"Could not {action} after {self.settings.MAX_WRITE_ATTEMPTS} attempts"
        )
