"""Domain-specific exceptions.

These represent business rule violations. Service methods translate them
into a ``SyncReport`` message where a caller-facing answer is expected.
"""


class DomainException(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class RefsetNotFoundError(DomainException):
    """Raised when a refset id does not resolve to a stored refset."""


class ActionNotPermittedError(DomainException):
    """Raised when the workflow does not allow an action on a refset."""


class RefsetLockedError(DomainException):
    """Raised when a refset is locked for editing by another process."""
