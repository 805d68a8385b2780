from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4
from pydantic import BaseModel, Field, ConfigDict

from core.config import Settings, get_settings
from rules import Condition, ConditionGroup, ConditionOperator


class ReferralStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (ReferralStatus.PENDING, ReferralStatus.COMPLETED)
TERMINAL_STATUSES = (ReferralStatus.COMPLETED, ReferralStatus.EXPIRED, ReferralStatus.CANCELLED)


class ReferralProgress(BaseModel):
    deliveries_completed: int = Field(default=0, ge=0)
    total_earnings: Decimal = Field(default=Decimal("0"), ge=0)
    days_active: int = Field(default=0, ge=0)


class CompletionCriteria(BaseModel):
    required_deliveries: int = Field(default_factory=lambda: get_settings().DEFAULT_REQUIRED_DELIVERIES, ge=0)
    required_earnings: Decimal = Field(default_factory=lambda: get_settings().DEFAULT_REQUIRED_EARNINGS, ge=0)
    required_days: int = Field(default_factory=lambda: get_settings().DEFAULT_REQUIRED_DAYS, ge=0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "CompletionCriteria":
        return cls(
            required_deliveries=settings.DEFAULT_REQUIRED_DELIVERIES,
            required_earnings=settings.DEFAULT_REQUIRED_EARNINGS,
            required_days=settings.DEFAULT_REQUIRED_DAYS,
        )

    def as_rule(self) -> ConditionGroup:
        return ConditionGroup(conditions=[
            Condition(field="progress.deliveries_completed",
                      operator=ConditionOperator.GREATER_THAN_OR_EQUAL, value=self.required_deliveries),
            Condition(field="progress.total_earnings",
                      operator=ConditionOperator.GREATER_THAN_OR_EQUAL, value=self.required_earnings),
            Condition(field="progress.days_active",
                      operator=ConditionOperator.GREATER_THAN_OR_EQUAL, value=self.required_days),
        ])


class ReferralRewards(BaseModel):
    referrer_amount: Decimal = Field(default_factory=lambda: get_settings().REFERRER_REWARD_AMOUNT)
    referred_amount: Decimal = Field(default_factory=lambda: get_settings().REFERRED_REWARD_AMOUNT)
    referrer_claimed: bool = False
    referred_claimed: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReferralRewards":
        return cls(
            referrer_amount=settings.REFERRER_REWARD_AMOUNT,
            referred_amount=settings.REFERRED_REWARD_AMOUNT,
        )

    @property
    def fully_claimed(self) -> bool:
        return self.referrer_claimed and self.referred_claimed


class ReferralRecord(BaseModel):
    """
    One referral relationship and its progress.

    Created pending with no referred driver when the code is generated; the
    referred side is bound when someone redeems the code. Once completed,
    expired or cancelled the record never changes status again.
    """

    id: UUID = Field(default_factory=uuid4)
    referrer_id: str
    referred_id: Optional[str] = None
    referral_code: str
    status: ReferralStatus = ReferralStatus.PENDING
    progress: ReferralProgress = Field(default_factory=ReferralProgress)
    completion_criteria: CompletionCriteria = Field(default_factory=CompletionCriteria)
    rewards: ReferralRewards = Field(default_factory=ReferralRewards)
    start_date: datetime
    expiry_date: datetime
    completion_date: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = 0

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_redeemed(self) -> bool:
        return self.referred_id is not None

    def is_overdue(self, now: datetime) -> bool:
        return self.status == ReferralStatus.PENDING and now > self.expiry_date

    def can_cancel(self) -> bool:
        return self.status == ReferralStatus.PENDING

    def can_expire(self) -> bool:
        return self.status == ReferralStatus.PENDING

    def meets_criteria(self) -> bool:
        return self.completion_criteria.as_rule().evaluate(self._context())

    def completion_percentage(self) -> int:
        ratio = self.completion_criteria.as_rule().ratio(self._context())
        return int((ratio * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def update_progress(self, deliveries_completed: int, total_earnings: Decimal, days_active: int) -> bool:
        """
        Overwrite the counters, never letting one go backwards.

        Returns False when any supplied value was lower than the stored one.
        """
        current = self.progress
        self.progress = ReferralProgress(
            deliveries_completed=max(current.deliveries_completed, deliveries_completed),
            total_earnings=max(current.total_earnings, total_earnings),
            days_active=max(current.days_active, days_active),
        )
        return (
            deliveries_completed >= current.deliveries_completed
            and total_earnings >= current.total_earnings
            and days_active >= current.days_active
        )

    def mark_completed(self, now: datetime) -> None:
        self.status = ReferralStatus.COMPLETED
        self.completion_date = now
        self.updated_at = now

    def mark_cancelled(self, now: datetime) -> None:
        self.status = ReferralStatus.CANCELLED
        self.cancelled_at = now
        self.updated_at = now

    def mark_expired(self, now: datetime) -> None:
        self.status = ReferralStatus.EXPIRED
        self.expired_at = now
        self.updated_at = now

    def _context(self) -> dict:
        return {"progress": self.progress.model_dump()}


class RedeemCodeRequest(BaseModel):
    referral_code: str = Field(..., description="Referral code, e.g. GRP-SDS001-AY")

    model_config = ConfigDict(json_schema_extra={
        "example": {"referral_code": "GRP-SDS001-AY"}
    })


class AdvanceProgressRequest(BaseModel):
    deliveries_completed: int = Field(..., ge=0)
    total_earnings: Decimal = Field(..., ge=0)
    days_active: int = Field(..., ge=0)

    model_config = ConfigDict(json_schema_extra={
        "example": {"deliveries_completed": 3, "total_earnings": 200, "days_active": 10}
    })


class RedeemBalanceRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    description: str = Field(..., min_length=1)


class BonusRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    description: str = Field(default="Referral program bonus", min_length=1)


class ExpireBalanceRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0, description="Omit to expire the whole available balance")
    description: str = Field(default="Balance expired", min_length=1)


class ReferralCodeResponse(BaseModel):
    referral_id: UUID
    referral_code: str
    status: ReferralStatus
    start_date: datetime
    expiry_date: datetime

    @classmethod
    def from_record(cls, record: ReferralRecord) -> "ReferralCodeResponse":
        return cls(
            referral_id=record.id,
            referral_code=record.referral_code,
            status=record.status,
            start_date=record.start_date,
            expiry_date=record.expiry_date,
        )


class RedeemCodeResponse(BaseModel):
    referral_id: UUID
    referrer_id: str
    referred_id: str
    status: ReferralStatus
    message: str


class ProgressResponse(BaseModel):
    referral_id: UUID
    status: ReferralStatus
    progress: ReferralProgress
    completion_percentage: int
    rewards_issued: bool = False
    message: str


class ReferralSummary(BaseModel):
    referral_id: UUID
    referral_code: str
    referrer_id: str
    referrer_name: Optional[str] = None
    referred_id: Optional[str] = None
    referred_name: Optional[str] = None
    status: ReferralStatus
    completion_percentage: int
    start_date: datetime
    expiry_date: datetime
    completion_date: Optional[datetime] = None


class DriverReferralStats(BaseModel):
    driver_id: str
    total_referrals: int
    completed_referrals: int
    pending_referrals: int
    expired_referrals: int
    cancelled_referrals: int
    total_earned: Decimal
    available: Decimal
    redeemed: Decimal
    referrals_as_referrer: list[ReferralSummary]
    referrals_as_referred: list[ReferralSummary]


class LeaderboardEntry(BaseModel):
    rank: int
    driver_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    total: Decimal
    available: Decimal
    completed_referrals: int


class AdminReferralStats(BaseModel):
    total_referrals: int
    pending_referrals: int
    completed_referrals: int
    expired_referrals: int
    cancelled_referrals: int
    total_credited: Decimal
    total_redeemed: Decimal
    drivers_with_credits: int
    completion_rate: Decimal


class ReferralPage(BaseModel):
    referrals: list[ReferralRecord]
    page: int
    limit: int
    total: int
    pages: int
