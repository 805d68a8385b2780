from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4
from pydantic import BaseModel, Field, ConfigDict


class EntryKind(str, Enum):
    AWARD = "award"
    BONUS = "bonus"
    REDEMPTION = "redemption"
    EXPIRY = "expiry"


CREDIT_KINDS = (EntryKind.AWARD, EntryKind.BONUS)


class LedgerEntry(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    kind: EntryKind
    amount: Decimal
    description: str
    referral_id: Optional[UUID] = None
    balance_after: Decimal
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(from_attributes=True)


class LedgerAccount(BaseModel):
    """
    A driver's referral balance with its append-only audit trail.

    ``available`` is derived, never stored, so it cannot drift from
    ``total - redeemed``. The ``apply_*`` methods mutate this in-memory copy
    only; nothing is durable until the owning service commits it.
    """

    driver_id: str
    total: Decimal = Decimal("0")
    redeemed: Decimal = Decimal("0")
    history: list[LedgerEntry] = Field(default_factory=list)
    version: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(from_attributes=True)

    @property
    def available(self) -> Decimal:
        return self.total - self.redeemed

    @property
    def is_new(self) -> bool:
        return self.version == 0

    def apply_credit(
        self,
        amount: Decimal,
        kind: EntryKind,
        description: str,
        referral_id: Optional[UUID] = None,
    ) -> LedgerEntry:
        self.total += amount
        return self._append(kind, amount, description, referral_id)

    def apply_debit(self, amount: Decimal, kind: EntryKind, description: str) -> LedgerEntry:
        if amount > self.available:
            raise ValueError("debit exceeds available balance")
        self.redeemed += amount
        return self._append(kind, -amount, description, None)

    def _append(
        self,
        kind: EntryKind,
        amount: Decimal,
        description: str,
        referral_id: Optional[UUID],
    ) -> LedgerEntry:
        now = datetime.now(timezone.utc)
        entry = LedgerEntry(
            kind=kind,
            amount=amount,
            description=description,
            referral_id=referral_id,
            balance_after=self.available,
            timestamp=now,
        )
        self.history.append(entry)
        self.last_updated = now
        return entry

    def reconciles(self) -> bool:
        credited = sum((e.amount for e in self.history if e.amount > 0), Decimal("0"))
        debited = sum((-e.amount for e in self.history if e.amount < 0), Decimal("0"))
        return credited == self.total and debited == self.redeemed


class LedgerBalance(BaseModel):
    driver_id: str
    total: Decimal
    available: Decimal
    redeemed: Decimal
    last_updated: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: LedgerAccount) -> "LedgerBalance":
        return cls(
            driver_id=account.driver_id,
            total=account.total,
            available=account.available,
            redeemed=account.redeemed,
            last_updated=account.last_updated if not account.is_new else None,
        )


class LedgerHistoryResponse(BaseModel):
    driver_id: str
    entries: list[LedgerEntry]
    total_count: int
    total: Decimal
    available: Decimal
    redeemed: Decimal


class LedgerMutationResponse(BaseModel):
    balance: LedgerBalance
    entry: Optional[LedgerEntry] = None
    message: str
