"""Error type shared by the trade, review and trust services."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    EXPIRED = "EXPIRED"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION = "VALIDATION"
    CONFLICT = "CONFLICT"
    QUEUE_FULL = "QUEUE_FULL"


#: Conventional transport status for each error code.
HTTP_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.UNAUTHORIZED: 403,
    ErrorCode.INVALID_TRANSITION: 400,
    ErrorCode.EXPIRED: 410,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.VALIDATION: 400,
    ErrorCode.CONFLICT: 409,
    ErrorCode.QUEUE_FULL: 503,
}


class TradeError(Exception):
    """A recoverable failure of a core operation.

    Callers branch on ``code`` rather than on exception subclasses. ``details``
    carries structured context such as the card ids that could not be found.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_CODE[self.code]

    def __repr__(self) -> str:
        return f"TradeError({self.code.value}, {self.message!r})"


def unauthorized(message: str = "You are not a participant in this trade") -> TradeError:
    return TradeError(ErrorCode.UNAUTHORIZED, message)


def invalid_transition(message: str) -> TradeError:
    return TradeError(ErrorCode.INVALID_TRANSITION, message)


def expired(message: str = "This trade has expired") -> TradeError:
    return TradeError(ErrorCode.EXPIRED, message)


def not_found(message: str, **details: Any) -> TradeError:
    return TradeError(ErrorCode.NOT_FOUND, message, details=details)


def validation(message: str) -> TradeError:
    return TradeError(ErrorCode.VALIDATION, message)
