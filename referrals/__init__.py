"""
Driver Referral Program

This module provides:
- Referral codes in GRP-SDS001-AY format backed by an atomic sequence
- Referral lifecycle: pending → completed / expired / cancelled
- Progress tracking against completion criteria
- Exactly-once reward issuance to both drivers on completion
- Leaderboard and statistics queries
"""

from .models import (
    ReferralStatus,
    ReferralProgress,
    CompletionCriteria,
    ReferralRewards,
    ReferralRecord,
)
from .service import (
    ReferralService,
    DriverNotFoundError,
    ReferralNotFoundError,
    InvalidCodeError,
    MalformedCodeError,
    ReferralClosedError,
    CodeAlreadyUsedError,
    SelfReferralError,
    AlreadyReferredError,
    InvalidTransitionError,
)

__all__ = [
    "ReferralStatus",
    "ReferralProgress",
    "CompletionCriteria",
    "ReferralRewards",
    "ReferralRecord",
    "ReferralService",
    "DriverNotFoundError",
    "ReferralNotFoundError",
    "InvalidCodeError",
    "MalformedCodeError",
    "ReferralClosedError",
    "CodeAlreadyUsedError",
    "SelfReferralError",
    "AlreadyReferredError",
    "InvalidTransitionError",
]
