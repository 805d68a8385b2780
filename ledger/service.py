import logging
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional
from uuid import UUID

from core.config import Settings, get_settings
from core.errors import (
    InsufficientBalanceError,
    InvalidInputError,
    WriteConflictError,
)
from core.storage import InMemoryStorage

from .models import (
    CREDIT_KINDS,
    EntryKind,
    LedgerAccount,
    LedgerBalance,
    LedgerEntry,
    LedgerHistoryResponse,
    LedgerMutationResponse,
)

logger = logging.getLogger(__name__)


class InvalidAmountError(InvalidInputError):
    pass


def to_amount(value) -> Decimal:
    """Coerce a caller-supplied amount to a positive, finite Decimal."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmountError(f"Amount must be greater than zero, got {value!r}")
    return amount


class LedgerService:
    def __init__(self, storage: Optional[InMemoryStorage] = None, settings: Optional[Settings] = None):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or get_settings()

    def load_account(self, driver_id: str) -> LedgerAccount:
        """Stored account for the driver, or a fresh unsaved one."""
        doc = self.storage.get_account(driver_id)
        if doc is None:
            return LedgerAccount(driver_id=driver_id)
        return LedgerAccount(**doc)

    def get_or_create(self, driver_id: str) -> LedgerAccount:
        account = self.load_account(driver_id)
        if not account.is_new:
            return account
        try:
            self.storage.commit(accounts=[account.model_dump()])
            account.version += 1
            logger.info(f"[LEDGER] Created account for driver {driver_id}")
            return account
        except WriteConflictError:
            # created concurrently
            return self.load_account(driver_id)

    def get_balance(self, driver_id: str) -> LedgerBalance:
        return LedgerBalance.from_account(self.load_account(driver_id))

    def credit(
        self,
        driver_id: str,
        amount,
        kind: EntryKind = EntryKind.AWARD,
        description: str = "Referral reward",
        referral_id: Optional[UUID] = None,
    ) -> LedgerMutationResponse:
        amount = to_amount(amount)
        try:
            kind = EntryKind(kind)
        except ValueError:
            raise InvalidInputError(f"Unknown entry kind: {kind!r}")
        if kind not in CREDIT_KINDS:
            raise InvalidInputError(f"{kind.value} is not a credit entry kind")

        account, entry = self._mutate(
            driver_id,
            lambda acc: acc.apply_credit(amount, kind, description, referral_id),
        )
        logger.info(
            f"[LEDGER] Credited {amount} ({kind.value}) to driver {driver_id} | "
            f"Available: {account.available}"
        )
        return LedgerMutationResponse(
            balance=LedgerBalance.from_account(account),
            entry=entry,
            message="Amount credited successfully",
        )

    def redeem(self, driver_id: str, amount, description: str) -> LedgerMutationResponse:
        amount = to_amount(amount)

        def debit(acc: LedgerAccount) -> LedgerEntry:
            if amount > acc.available:
                raise InsufficientBalanceError(
                    f"Insufficient available balance: requested {amount}, available {acc.available}"
                )
            return acc.apply_debit(amount, EntryKind.REDEMPTION, description)

        account, entry = self._mutate(driver_id, debit)
        logger.info(
            f"[LEDGER] Redeemed {amount} for driver {driver_id} | "
            f"Available: {account.available}"
        )
        return LedgerMutationResponse(
            balance=LedgerBalance.from_account(account),
            entry=entry,
            message="Balance redeemed successfully",
        )

    def expire(self, driver_id: str, amount=None, description: str = "Balance expired") -> LedgerMutationResponse:
        """
        Forcibly remove up to ``amount`` from the available balance.

        The amount is clamped to what is available (``None`` expires it all).
        An empty balance makes this a no-op: no entry is written.
        """
        requested = to_amount(amount) if amount is not None else None

        def expire(acc: LedgerAccount) -> Optional[LedgerEntry]:
            if acc.available <= 0:
                return None
            value = acc.available if requested is None else min(requested, acc.available)
            return acc.apply_debit(value, EntryKind.EXPIRY, description)

        account, entry = self._mutate(driver_id, expire)
        if entry is None:
            return LedgerMutationResponse(
                balance=LedgerBalance.from_account(account),
                message="Nothing to expire",
            )
        logger.info(f"[LEDGER] Expired {-entry.amount} for driver {driver_id}")
        return LedgerMutationResponse(
            balance=LedgerBalance.from_account(account),
            entry=entry,
            message="Balance expired successfully",
        )

    def get_history(self, driver_id: str, limit: Optional[int] = None, offset: int = 0) -> LedgerHistoryResponse:
        limit = self.settings.HISTORY_DEFAULT_LIMIT if limit is None else limit
        if limit < 1 or offset < 0:
            raise InvalidInputError("limit must be positive and offset non-negative")

        account = self.load_account(driver_id)
        newest_first = list(reversed(account.history))
        return LedgerHistoryResponse(
            driver_id=driver_id,
            entries=newest_first[offset:offset + limit],
            total_count=len(newest_first),
            total=account.total,
            available=account.available,
            redeemed=account.redeemed,
        )

    def list_accounts(self) -> list[LedgerAccount]:
        return [LedgerAccount(**doc) for doc in self.storage.list_accounts()]

    def _mutate(
        self,
        driver_id: str,
        mutation: Callable[[LedgerAccount], Optional[LedgerEntry]],
    ) -> tuple[LedgerAccount, Optional[LedgerEntry]]:
        """
        Read-modify-write one account under optimistic concurrency.

        The mutation runs against a fresh read on every attempt, so balance
        checks are re-evaluated against the version that actually commits.
        """
        for attempt in range(1, self.settings.MAX_WRITE_ATTEMPTS + 1):
            account = self.load_account(driver_id)
            entry = mutation(account)
            if entry is None:
                return account, None
            try:
                self.storage.commit(accounts=[account.model_dump()])
            except WriteConflictError:
                logger.info(f"[LEDGER] Write conflict on driver {driver_id}, attempt {attempt}")
                continue
            account.version += 1
            return account, entry

        raise WriteConflictError(
            f"Could not update ledger account {driver_id} after {self.settings.MAX_WRITE_ATTEMPTS} attempts"
        )
