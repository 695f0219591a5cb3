"""Identity-scoped rate limiter.

The limiter answers one question per call: may this identity proceed now?
Each decision is taken in a single atomic step against the state store, so
concurrent requests for the same key can never both observe spare budget
and slip past the limit together.

Lifecycle of a key's state:
- first call creates it lazily (a missing state behaves like a fresh one);
- each call counts an attempt, rolling the window over once it has lapsed;
- going over ``max_attempts`` starts a lockout of ``block_seconds``
  (or, with no lockout configured, denies until the window rolls over);
- a lapsed lockout clears the state before the next attempt is counted.

The limiter never logs and never swallows store errors; both are left to
the integrating layer.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from throttle.adapters.rate_limit.base import AbstractLimiterStateStore, LimitState
from throttle.adapters.rate_limit.in_memory import InMemoryLimiterStateStore
from throttle.core.clock import Clock, wall_clock
from throttle.services.policy import Policy


@dataclass(frozen=True)
class Decision:
    """Outcome of ``RateLimiter.check_and_consume``.

    Attributes:
        allowed: Whether the attempt may proceed.
        limit: ``max_attempts`` of the policy applied.
        remaining: Attempts left in the current window (0 when denied).
        reset_at: UNIX epoch seconds when the window (or lockout) ends.
        retry_after: Seconds to wait before retrying; None when allowed.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: float | None = None


@dataclass(frozen=True)
class Status:
    """Read-only view of a key's state returned by ``RateLimiter.peek``.

    Attributes:
        is_blocked: Whether a lockout is currently active.
        limit: ``max_attempts`` of the policy applied.
        remaining: Attempts the key could still make (0 when blocked).
        time_until_window_reset: Seconds until the counting window rolls over.
        time_until_unblock: Seconds until the lockout ends (0 when not blocked).
        reset_at: UNIX epoch seconds when the window (or lockout) ends.
    """

    is_blocked: bool
    limit: int
    remaining: int
    time_until_window_reset: float
    time_until_unblock: float
    reset_at: float


def _fresh_state(now: float, policy: Policy) -> LimitState:
    return LimitState(
        attempts=0,
        window_start=now,
        blocked_until=None,
        expires_at=now + policy.window_seconds,
    )


def _settle(state: LimitState | None, policy: Policy, now: float) -> LimitState:
    """Apply lazy initialization, lapsed lockouts and window rollover.

    An active lockout wins over rollover: the window lapsing never lifts a
    block early.
    """
    if state is None:
        return _fresh_state(now, policy)
    if state.blocked_until is not None:
        if now < state.blocked_until:
            return state
        return _fresh_state(now, policy)
    if now - state.window_start >= policy.window_seconds:
        return _fresh_state(now, policy)
    return state


def _consume(
    state: LimitState | None, policy: Policy, now: float
) -> tuple[LimitState, Decision]:
    current = _settle(state, policy, now)

    if current.blocked_until is not None:
        return current, Decision(
            allowed=False,
            limit=policy.max_attempts,
            remaining=0,
            reset_at=current.blocked_until,
            retry_after=max(0.0, current.blocked_until - now),
        )

    attempts = current.attempts + 1
    window_end = current.window_start + policy.window_seconds

    if attempts <= policy.max_attempts:
        updated = replace(current, attempts=attempts, expires_at=window_end)
        return updated, Decision(
            allowed=True,
            limit=policy.max_attempts,
            remaining=policy.max_attempts - attempts,
            reset_at=window_end,
        )

    # The triggering attempt is still counted, never more than one over.
    attempts = min(attempts, policy.max_attempts + 1)

    if policy.block_seconds > 0:
        blocked_until = now + policy.block_seconds
        updated = replace(
            current,
            attempts=attempts,
            blocked_until=blocked_until,
            expires_at=max(window_end, blocked_until),
        )
        return updated, Decision(
            allowed=False,
            limit=policy.max_attempts,
            remaining=0,
            reset_at=blocked_until,
            retry_after=policy.block_seconds,
        )

    updated = replace(current, attempts=attempts, expires_at=window_end)
    return updated, Decision(
        allowed=False,
        limit=policy.max_attempts,
        remaining=0,
        reset_at=window_end,
        retry_after=max(0.0, window_end - now),
    )


class RateLimiter:
    """Per-key attempt limiter with lockouts.

    Construct one instance at startup and pass it to whatever needs
    throttling. Callers choose separate keys per action type (for example
    ``login:<user>`` and ``register:<email>``) so resetting one counter
    leaves the others alone.
    """

    def __init__(
        self,
        store: AbstractLimiterStateStore | None = None,
        *,
        clock: Clock = wall_clock,
    ) -> None:
        """Initialize the limiter.

        Args:
            store: State store; defaults to a fresh in-memory store sharing
                this limiter's clock.
            clock: Time source function returning UNIX time in seconds.
        """
        self._clock = clock
        self._store = store if store is not None else InMemoryLimiterStateStore(clock=clock)

    @property
    def store(self) -> AbstractLimiterStateStore:
        return self._store

    @staticmethod
    def _validate_key(key: str) -> None:
        if not key:
            raise ValueError("key must be a non-empty string")

    def check_and_consume(self, key: str, policy: Policy) -> Decision:
        """Decide whether ``key`` may proceed and record the attempt.

        The whole transition (rollover, lockout checks, counting, blocking)
        runs inside the store's critical section for ``key``.

        Args:
            key: Identity key.
            policy: Policy applied to this call. It is not remembered, so a
                changed policy (e.g., a tier upgrade) applies immediately.

        Returns:
            Decision describing the outcome. Denials are normal results.

        Raises:
            ValueError: If ``key`` is empty.
            StoreUnavailableError: If the store backend cannot be reached.
        """
        self._validate_key(key)
        now = self._clock()
        return self._store.update(key, lambda state: _consume(state, policy, now))

    def peek(self, key: str, policy: Policy) -> Status:
        """Report the state of ``key`` without consuming an attempt."""
        self._validate_key(key)
        now = self._clock()
        state = _settle(self._store.get(key), policy, now)

        window_end = state.window_start + policy.window_seconds
        time_until_window_reset = max(0.0, window_end - now)

        if state.blocked_until is not None:
            return Status(
                is_blocked=True,
                limit=policy.max_attempts,
                remaining=0,
                time_until_window_reset=time_until_window_reset,
                time_until_unblock=max(0.0, state.blocked_until - now),
                reset_at=state.blocked_until,
            )

        return Status(
            is_blocked=False,
            limit=policy.max_attempts,
            remaining=max(0, policy.max_attempts - state.attempts),
            time_until_window_reset=time_until_window_reset,
            time_until_unblock=0.0,
            reset_at=window_end,
        )

    def reset(self, key: str) -> None:
        """Forget everything recorded for ``key``."""
        self._validate_key(key)
        self._store.delete(key)

    def reset_prefix(self, prefix: str) -> int:
        """Forget every key starting with ``prefix``.

        Returns:
            Number of keys cleared.
        """
        if not prefix:
            raise ValueError("prefix must be a non-empty string")
        return self._store.delete_prefix(prefix)

    def sweep(self) -> int:
        """Evict expired state now instead of waiting for the next sweep."""
        return self._store.sweep(self._clock())
