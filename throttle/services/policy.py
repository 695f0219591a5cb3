"""Rate limit policies and tier resolution.

A ``Policy`` says how many attempts an identity gets per window and how long
it is locked out once it goes over. ``QuotaPolicyResolver`` maps a tier name
(subscription level, action class, ...) to one of a fixed set of policies.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from throttle.core.errors import InvalidPolicyError

FOUNDATION_TIER = "foundation"


@dataclass(frozen=True)
class Policy:
    """Immutable throttling policy.

    Attributes:
        max_attempts: Attempts allowed per window before denying.
        window_seconds: Length of the counting window in seconds.
        block_seconds: Lockout length once ``max_attempts`` is exceeded.
            Zero means no lockout: further attempts are denied until the
            window rolls over.

    Raises:
        InvalidPolicyError: If any value is out of range.
    """

    max_attempts: int
    window_seconds: float
    block_seconds: float = 0.0

    def __post_init__(self) -> None:
        if (
            isinstance(self.max_attempts, bool)
            or not isinstance(self.max_attempts, int)
            or self.max_attempts < 1
        ):
            raise InvalidPolicyError(
                code="invalid_policy",
                message="max_attempts must be an integer >= 1",
                details={"field": "max_attempts", "value": self.max_attempts},
            )
        if not self.window_seconds > 0:
            raise InvalidPolicyError(
                code="invalid_policy",
                message="window_seconds must be > 0",
                details={"field": "window_seconds", "value": self.window_seconds},
            )
        if not self.block_seconds >= 0:
            raise InvalidPolicyError(
                code="invalid_policy",
                message="block_seconds must be >= 0",
                details={"field": "block_seconds", "value": self.block_seconds},
            )


DEFAULT_TIERS: Mapping[str, Policy] = MappingProxyType(
    {
        FOUNDATION_TIER: Policy(max_attempts=60, window_seconds=3600),
        "performance": Policy(max_attempts=120, window_seconds=3600),
        "transformation": Policy(max_attempts=180, window_seconds=3600),
    }
)


class QuotaPolicyResolver:
    """Resolve tier names to policies, degrading unknown tiers to the default.

    Tier names are matched case-insensitively after trimming whitespace.
    The table is copied on construction and never mutated afterwards.
    """

    def __init__(
        self,
        tiers: Mapping[str, Policy] = DEFAULT_TIERS,
        *,
        default_tier: str = FOUNDATION_TIER,
    ) -> None:
        normalized = {self._normalize(name): policy for name, policy in tiers.items()}
        default_key = self._normalize(default_tier)
        if default_key not in normalized:
            raise InvalidPolicyError(
                code="unknown_default_tier",
                message=f"default tier {default_tier!r} is not configured",
                details={"field": "default_tier", "value": default_tier},
            )
        self._tiers: Mapping[str, Policy] = MappingProxyType(normalized)
        self._default_tier = default_key

    @staticmethod
    def _normalize(tier: str) -> str:
        return tier.strip().lower()

    @property
    def default_tier(self) -> str:
        return self._default_tier

    @property
    def tiers(self) -> Mapping[str, Policy]:
        return self._tiers

    def resolve(self, tier: str | None) -> Policy:
        """Return the policy for ``tier`` or the default tier's policy."""
        return self._tiers.get(self.resolve_tier_name(tier), self._tiers[self._default_tier])

    def resolve_tier_name(self, tier: str | None) -> str:
        """Return the configured tier name ``tier`` maps to."""
        if not tier:
            return self._default_tier
        key = self._normalize(tier)
        return key if key in self._tiers else self._default_tier
