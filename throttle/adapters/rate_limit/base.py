"""Limiter state store interfaces.

The limiter depends on this abstraction (not the concrete implementation)
so the in-memory store can be swapped for a shared backend (e.g., Redis)
without touching the decision logic.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class LimitState:
    """Throttling state recorded for one identity key.

    Instances are immutable; stores replace them wholesale.

    Attributes:
        attempts: Attempts counted in the current window.
        window_start: UNIX epoch seconds when the current window began.
        blocked_until: UNIX epoch seconds when an active lockout ends, if any.
        expires_at: UNIX epoch seconds after which this state is equivalent
            to a fresh one under the policy it was written with. Used for
            eviction only.
    """

    attempts: int
    window_start: float
    blocked_until: float | None
    expires_at: float


# A mutator receives the current state (None if never seen) and returns the
# state to store (None deletes the entry) plus a value handed back to the caller.
Mutator = Callable[[LimitState | None], tuple[LimitState | None, T]]


class AbstractLimiterStateStore(ABC):
    """Interface for limiter state stores.

    Implementations must make ``update`` atomic with respect to every other
    mutating call on the same key while letting different keys proceed
    independently.
    """

    @abstractmethod
    def update(self, key: str, mutator: Mutator[T]) -> T:
        """Atomically read, transform and write the state for ``key``.

        Args:
            key: Identity key.
            mutator: Pure function computing the new state from the old one.
                It runs inside the key's critical section and must not call
                back into the store.

        Returns:
            The second element of the mutator's return value.

        Raises:
            StoreUnavailableError: If the backend cannot be reached.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, key: str) -> LimitState | None:
        """Return a consistent snapshot of the state for ``key``."""
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove the state for ``key`` if present."""
        raise NotImplementedError

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        """Remove every key starting with ``prefix``.

        Returns:
            Number of entries removed.
        """
        raise NotImplementedError

    @abstractmethod
    def sweep(self, now: float) -> int:
        """Evict entries that have expired by ``now``.

        Returns:
            Number of entries evicted.
        """
        raise NotImplementedError

    def stats(self) -> dict[str, Any]:
        """Return lightweight store metrics without exposing keys."""
        return {}
