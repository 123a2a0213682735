"""Gateway error taxonomy.

Every failure the remote platform can produce maps to exactly one
:class:`ErrorKind`.  Callers catch :class:`GatewayError` and branch on
``exc.kind`` instead of inspecting status codes or message strings.
"""

from __future__ import annotations

from enum import StrEnum
from typing import ClassVar


class ErrorKind(StrEnum):
    TRANSPORT = "transport"
    AUTH = "auth"
    RATE_LIMITED = "rate_limited"
    VALIDATION = "validation"
    REJECTED = "rejected"

    @property
    def retryable(self) -> bool:
        """True when repeating the same request later can succeed unchanged."""
        return self in (ErrorKind.TRANSPORT, ErrorKind.RATE_LIMITED)

    @property
    def user_message(self) -> str:
        return _USER_MESSAGES[self]


_USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.TRANSPORT: "Network problem. Check the connection and retry.",
    ErrorKind.AUTH: "The creator's platform connection expired. Reconnect the account.",
    ErrorKind.RATE_LIMITED: "The platform is rate limiting requests. Retry shortly.",
    ErrorKind.VALIDATION: "The message was not accepted. Edit it and send again.",
    ErrorKind.REJECTED: "The platform refused this message.",
}


class GatewayError(Exception):
    """Base class for all messaging gateway failures."""

    kind: ClassVar[ErrorKind]

    def __init__(self, message: str = "", *, status: int | None = None) -> None:
        super().__init__(message or self.kind.user_message)
        self.status = status


class TransportError(GatewayError):
    """Network failure or timeout. Retryable."""

    kind = ErrorKind.TRANSPORT


class AuthError(GatewayError):
    """Expired or revoked credential. Needs re-authentication upstream."""

    kind = ErrorKind.AUTH


class RateLimited(GatewayError):
    """Platform throttled the request. Retryable after ``retry_after`` seconds."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str = "",
        *,
        status: int | None = 429,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status=status)
        self.retry_after = retry_after


class ValidationError(GatewayError):
    """Malformed send payload. Not retryable without an operator edit."""

    kind = ErrorKind.VALIDATION


class Rejected(GatewayError):
    """Platform-level refusal (e.g. the fan blocked the creator)."""

    kind = ErrorKind.REJECTED
