"""
Shared plumbing for the referral ledger: settings, error taxonomy,
logging setup and the in-memory document store.
"""

from .config import Settings, get_settings
from .errors import (
    ServiceError,
    NotFoundError,
    ConflictError,
    InvalidInputError,
    InsufficientBalanceError,
    WriteConflictError,
    UniqueViolationError,
)
from .storage import InMemoryStorage

__all__ = [
    "Settings",
    "get_settings",
    "ServiceError",
    "NotFoundError",
    "ConflictError",
    "InvalidInputError",
    "InsufficientBalanceError",
    "WriteConflictError",
    "UniqueViolationError",
    "InMemoryStorage",
]
