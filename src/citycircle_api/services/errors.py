"""Domain errors raised by the Loops services.

Absent and foreign-owned records share ``NotFoundError`` so responses never
reveal whether another account's session, grant or card exists.
"""

from __future__ import annotations


class LoopsError(RuntimeError):
    """Base exception for user-visible loyalty failures."""

    kind = "error"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(LoopsError):
    kind = "not_found"
    status_code = 404


class InvalidInputError(LoopsError):
    kind = "invalid_input"
    status_code = 400


class BlockedError(LoopsError):
    """Raised when a store has blacklisted the account attempting to check in."""

    kind = "blocked"
    status_code = 403

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class InsufficientBalanceError(LoopsError):
    kind = "insufficient_balance"
    status_code = 400

    def __init__(self, *, balance: int, requested: int) -> None:
        super().__init__(f"Insufficient Loops. You have {balance}, need {requested}")
        self.balance = balance
        self.requested = requested


class AlreadyFinalizedError(LoopsError):
    kind = "already_finalized"
    status_code = 409


class ExpiredError(LoopsError):
    kind = "expired"
    status_code = 410


__all__ = [
    "AlreadyFinalizedError",
    "BlockedError",
    "ExpiredError",
    "InsufficientBalanceError",
    "InvalidInputError",
    "LoopsError",
    "NotFoundError",
]
