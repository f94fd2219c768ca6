from __future__ import annotations


class TradeGuardError(Exception):
    """Base error carrying a short reason and a machine-checkable code."""

    code = "error"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.reason = message
        if code:
            self.code = code


class ClassificationError(TradeGuardError):
    code = "classification_unavailable"


class PersistenceError(TradeGuardError):
    code = "enforcement_unavailable"


class UserNotFoundError(TradeGuardError):
    code = "user_not_found"


class AppealError(TradeGuardError):
    code = "appeal_rejected"
