"""Brute-force protection for login and registration.

Every attempt is counted before the credentials are checked, so an attacker
gains nothing by firing attempts in parallel. A successful attempt resets
the counter for that action only: logging in does not refund registration
attempts made by the same actor.
"""

from __future__ import annotations

import logging
from typing import Callable, TypeVar

from throttle.core.errors import RateLimitExceededError, StoreUnavailableError
from throttle.core.logging import hash_identity
from throttle.services.policy import Policy
from throttle.services.rate_limiter import Decision, RateLimiter, Status

logger = logging.getLogger(__name__)

R = TypeVar("R")

LOGIN_PREFIX = "login:"
REGISTER_PREFIX = "register:"


def login_key(identifier: str) -> str:
    return f"{LOGIN_PREFIX}{identifier.strip().lower()}"


def register_key(email: str) -> str:
    return f"{REGISTER_PREFIX}{email.strip().lower()}"


class AuthThrottle:
    """Guard credential-checking callables with per-identifier attempt limits.

    Args:
        limiter: Shared limiter instance.
        login_policy: Policy for ``login:<identifier>`` keys.
        register_policy: Policy for ``register:<email>`` keys.
        fail_open: What to do when the limiter's store is unavailable.
            ``False`` refuses the attempt (re-raises the store error) and is
            the safe choice for brute-force protection; ``True`` lets the
            attempt through unthrottled. Required, with no default.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        *,
        login_policy: Policy,
        register_policy: Policy,
        fail_open: bool,
    ) -> None:
        self._limiter = limiter
        self._login_policy = login_policy
        self._register_policy = register_policy
        self._fail_open = fail_open

    def guard_login(self, identifier: str, attempt: Callable[[], R]) -> R:
        """Run a login attempt for ``identifier`` if it is not throttled.

        Args:
            identifier: Username or email being logged into.
            attempt: Callable performing the credential check. A truthy
                result counts as success and clears the login counter; a
                falsy result or an exception leaves the attempt counted.

        Returns:
            Whatever ``attempt`` returned.

        Raises:
            RateLimitExceededError: If the identifier is locked out.
        """
        return self._guard("login", login_key(identifier), self._login_policy, attempt)

    def guard_register(self, email: str, attempt: Callable[[], R]) -> R:
        """Run a registration attempt for ``email`` if it is not throttled."""
        return self._guard("register", register_key(email), self._register_policy, attempt)

    def login_status(self, identifier: str) -> Status:
        return self._limiter.peek(login_key(identifier), self._login_policy)

    def remaining_login_attempts(self, identifier: str) -> int:
        return self.login_status(identifier).remaining

    def register_status(self, email: str) -> Status:
        return self._limiter.peek(register_key(email), self._register_policy)

    def reset_login(self, identifier: str) -> None:
        self._limiter.reset(login_key(identifier))

    def reset_all_logins(self) -> int:
        """Clear every login counter (e.g., after a credential store migration)."""
        return self._limiter.reset_prefix(LOGIN_PREFIX)

    def _guard(self, action: str, key: str, policy: Policy, attempt: Callable[[], R]) -> R:
        decision = self._consume(action, key, policy)
        if decision is not None and not decision.allowed:
            logger.warning(
                "auth_throttle.locked_out",
                extra={
                    "action": action,
                    "key_hash": hash_identity(key),
                    "retry_after_s": decision.retry_after,
                },
            )
            raise RateLimitExceededError(
                code="rate_limit_exceeded",
                message="Too many attempts. Please try again later.",
                details={"retry_after": decision.retry_after or 0.0},
                retry_after=decision.retry_after or 0.0,
            )

        result = attempt()
        if result and decision is not None:
            self._reset_after_success(action, key)
        return result

    def _consume(self, action: str, key: str, policy: Policy) -> Decision | None:
        try:
            return self._limiter.check_and_consume(key, policy)
        except StoreUnavailableError as exc:
            self._store_unavailable(action, key, exc)
            return None

    def _reset_after_success(self, action: str, key: str) -> None:
        try:
            self._limiter.reset(key)
        except StoreUnavailableError as exc:
            self._store_unavailable(action, key, exc)

    def _store_unavailable(self, action: str, key: str, exc: StoreUnavailableError) -> None:
        """Log a store outage, then re-raise it unless failing open."""
        logger.error(
            "auth_throttle.store_unavailable",
            extra={
                "action": action,
                "key_hash": hash_identity(key),
                "error_code": exc.code,
                "fail_open": self._fail_open,
            },
        )
        if not self._fail_open:
            raise exc
