"""
Error taxonomy shared by the ledger and the referral orchestrator.

Every business-rule violation is raised to the caller as-is; the HTTP
adapter maps each family onto a status code.
"""


class ServiceError(Exception):
    pass


class NotFoundError(ServiceError):
    pass


class ConflictError(ServiceError):
    pass


class InvalidInputError(ServiceError):
    pass


class InsufficientBalanceError(ServiceError):
    pass


class WriteConflictError(ConflictError):
    """A staged document no longer matches the stored version."""


class UniqueViolationError(ConflictError):
    def __init__(self, index: str, key):
        super().__init__(f"Duplicate key {key!r} for unique index {index}")
        self.index = index
        self.key = key
