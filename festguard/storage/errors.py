from __future__ import annotations


class StoreUnavailableError(Exception):
    """Raised when the shared store cannot answer (connection error or timeout)."""

    def __init__(self, message: str, *, operation: str | None = None):
        super().__init__(message)
        self.message = message
        self.operation = operation


class RecordNotFound(LookupError):
    """Raised by lookups that require an existing record."""


__all__ = ["RecordNotFound", "StoreUnavailableError"]
