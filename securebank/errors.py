"""Exceptions surfaced to API callers."""
from __future__ import annotations

from typing import Dict


class BankError(Exception):
    """Base class for errors that map onto a distinct HTTP status."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def extra(self) -> Dict[str, object]:
        return {}

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"detail": self.message, "code": self.code}
        payload.update(self.extra())
        return payload


class Unauthenticated(BankError):
    status_code = 401
    code = "unauthenticated"


class InvalidCredentials(Unauthenticated):
    code = "invalid_credentials"


class InvalidSession(Unauthenticated):
    code = "invalid_session"


class SessionExpired(Unauthenticated):
    code = "session_expired"


class Forbidden(BankError):
    status_code = 403
    code = "forbidden"


class ProtectedAccount(Forbidden):
    code = "protected_account"


class AccountNotActive(BankError):
    """Raised when the account lifecycle state blocks an action."""

    status_code = 423
    code = "account_not_active"

    def __init__(self, status: str, message: str | None = None) -> None:
        super().__init__(message or _NOT_ACTIVE_MESSAGES.get(status, "Account is not active"))
        self.status = status

    def extra(self) -> Dict[str, object]:
        return {"reason": self.status}


class NotFound(BankError):
    status_code = 404
    code = "not_found"


class ValidationError(BankError):
    status_code = 400
    code = "validation_error"


_NOT_ACTIVE_MESSAGES = {
    "pending": "Your account is pending approval by an administrator.",
    "rejected": "Your account application has been rejected.",
    "suspended": "Your account has been suspended. Please contact support.",
}


__all__ = [
    "AccountNotActive",
    "BankError",
    "Forbidden",
    "InvalidCredentials",
    "InvalidSession",
    "NotFound",
    "ProtectedAccount",
    "SessionExpired",
    "Unauthenticated",
    "ValidationError",
]
