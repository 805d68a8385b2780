"""
Driver Referral Ledger

This module provides:
- Per-driver ledger accounts (total / available / redeemed)
- Append-only history entries for awards, bonuses, redemptions and expiries
- Optimistic, versioned writes so concurrent redemptions cannot overdraw
"""

from .models import (
    EntryKind,
    LedgerEntry,
    LedgerAccount,
    LedgerBalance,
)
from .service import LedgerService, InvalidAmountError

__all__ = [
    "EntryKind",
    "LedgerEntry",
    "LedgerAccount",
    "LedgerBalance",
    "LedgerService",
    "InvalidAmountError",
]
