"""Application-level exception types.

Throttling decisions are plain results, not exceptions. The errors below
cover what is genuinely exceptional: invalid configuration, unreachable
state stores, and the service boundaries that choose to turn a denial into
a user-facing error.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    code: str
    message: str
    hint: str
    field: str
    value: Any
    backend: str
    retry_after: float
    http_status: int
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails."""


class InvalidPolicyError(ValidationAppError):
    """Raised when a rate limit policy is constructed with invalid values."""


class AuthenticationAppError(AppError):
    """Raised when authentication/authorization fails."""


class StoreUnavailableError(AppError):
    """Raised by limiter state stores when their backend cannot be reached."""


@dataclass
class RateLimitExceededError(AppError):
    """Raised at service boundaries that surface a denial as an error.

    The limiter itself never raises this; callers such as the login throttle
    convert a denied decision into this error for their own callers.
    """

    retry_after: float = 0.0
