"""In-memory, sharded limiter state store.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: the key space is split across shards, each guarded by its own
  lock, so unrelated keys never wait on each other.
- Bounded: expired entries are swept periodically. Live entries are never
  evicted early.
"""

from __future__ import annotations

import threading
from typing import Any

from throttle.adapters.rate_limit.base import (
    AbstractLimiterStateStore,
    LimitState,
    Mutator,
    T,
)
from throttle.core.clock import Clock, wall_clock


class _Shard:
    __slots__ = ("lock", "states")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.states: dict[str, LimitState] = {}


class InMemoryLimiterStateStore(AbstractLimiterStateStore):
    """Limiter state held in a fixed number of lock-striped dictionaries.

    Important:
        This store is per-process only. If the API runs with multiple
        workers, each worker enforces its own independent limits.
    """

    def __init__(
        self,
        *,
        shard_count: int = 64,
        sweep_interval_seconds: float = 60.0,
        eviction_grace_seconds: float = 0.0,
        clock: Clock = wall_clock,
    ) -> None:
        """Initialize the store.

        Args:
            shard_count: Number of independently locked partitions.
            sweep_interval_seconds: Minimum time between opportunistic sweeps
                triggered by ``update``. Zero disables automatic sweeps.
            eviction_grace_seconds: Extra time an expired entry is kept.
            clock: Time source function returning UNIX time in seconds.

        Raises:
            ValueError: If any argument is out of range.
        """
        if shard_count < 1:
            raise ValueError("shard_count must be >= 1")
        if sweep_interval_seconds < 0:
            raise ValueError("sweep_interval_seconds must be >= 0")
        if eviction_grace_seconds < 0:
            raise ValueError("eviction_grace_seconds must be >= 0")

        self._shards = tuple(_Shard() for _ in range(shard_count))
        self._sweep_interval = sweep_interval_seconds
        self._grace = eviction_grace_seconds
        self._clock = clock
        self._sweep_lock = threading.Lock()
        self._last_sweep = clock()
        self._evictions = 0

    def _shard_for(self, key: str) -> _Shard:
        return self._shards[hash(key) % len(self._shards)]

    def update(self, key: str, mutator: Mutator[T]) -> T:
        shard = self._shard_for(key)
        with shard.lock:
            new_state, result = mutator(shard.states.get(key))
            if new_state is None:
                shard.states.pop(key, None)
            else:
                shard.states[key] = new_state

        # Outside the shard lock so the sweep can take each shard in turn.
        self._maybe_sweep()
        return result

    def get(self, key: str) -> LimitState | None:
        # A single dict lookup of an immutable value needs no lock.
        return self._shard_for(key).states.get(key)

    def delete(self, key: str) -> None:
        shard = self._shard_for(key)
        with shard.lock:
            shard.states.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        removed = 0
        for shard in self._shards:
            with shard.lock:
                doomed = [key for key in shard.states if key.startswith(prefix)]
                for key in doomed:
                    del shard.states[key]
                removed += len(doomed)
        return removed

    def sweep(self, now: float) -> int:
        evicted = 0
        cutoff = now - self._grace
        for shard in self._shards:
            with shard.lock:
                expired = [
                    key for key, state in shard.states.items() if state.expires_at <= cutoff
                ]
                for key in expired:
                    del shard.states[key]
                evicted += len(expired)
        with self._sweep_lock:
            self._evictions += evicted
        return evicted

    def _maybe_sweep(self) -> None:
        if self._sweep_interval <= 0:
            return
        now = self._clock()
        if now - self._last_sweep < self._sweep_interval:
            return
        # Only one caller sweeps; the rest carry on without waiting.
        if not self._sweep_lock.acquire(blocking=False):
            return
        try:
            if now - self._last_sweep < self._sweep_interval:
                return
            self._last_sweep = now
        finally:
            self._sweep_lock.release()
        self.sweep(now)

    def stats(self) -> dict[str, Any]:
        return {
            "entries": sum(len(shard.states) for shard in self._shards),
            "shards": len(self._shards),
            "evictions": self._evictions,
        }

    def __len__(self) -> int:
        return sum(len(shard.states) for shard in self._shards)
