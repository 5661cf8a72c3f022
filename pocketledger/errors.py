from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    """Base class for errors that map onto an HTTP error envelope."""

    status_code = 400

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(LedgerError, ValueError):
    status_code = 400


class CurrencyMismatch(ValidationError):
    pass


class CategoryKindMismatch(ValidationError):
    pass


class InvalidFrequency(ValidationError):
    pass


class InvalidState(LedgerError):
    status_code = 409


class NotFound(LedgerError):
    status_code = 404


class Conflict(LedgerError):
    status_code = 409


class Unauthorized(LedgerError):
    status_code = 401
