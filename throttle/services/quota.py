"""Layered API quotas: one global budget plus one budget per endpoint.

Every request spends from two buckets:
- the caller's global bucket (keyed by identity, sized by the caller's tier);
- the caller's bucket for the endpoint being called (keyed by identity and
  endpoint name, sized by the endpoint's policy).

The global level is checked first. A request refused there never reaches
the endpoint level, so it costs nothing at that level. A request refused at
the endpoint level has already spent one global attempt: hammering a closed
endpoint still draws down the caller's overall allowance.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from throttle.services.policy import Policy
from throttle.services.rate_limiter import Decision, RateLimiter, Status

GLOBAL_LEVEL = "global"
ENDPOINT_LEVEL = "endpoint"
ENDPOINT_SCOPE = "endpoint"

# 100 requests per hour for any endpoint without its own rule.
DEFAULT_ENDPOINT_POLICY = Policy(max_attempts=100, window_seconds=3600)


def normalize_endpoint(endpoint: str) -> str:
    name = endpoint.strip().lower()
    if not name:
        raise ValueError("endpoint must be a non-empty string")
    return name


def endpoint_key(identity_key: str, endpoint: str) -> str:
    """Limiter key for ``identity_key``'s budget on ``endpoint``.

    Endpoint keys extend the identity key, so clearing an identity's
    ``<identity>:endpoint:`` prefix clears all of its endpoint buckets.
    """
    return f"{identity_key}:{ENDPOINT_SCOPE}:{normalize_endpoint(endpoint)}"


@dataclass(frozen=True)
class QuotaDecision:
    """Outcome of one layered quota check."""

    endpoint: str
    global_decision: Decision
    endpoint_decision: Decision | None = None

    @property
    def allowed(self) -> bool:
        return self.denied_level is None

    @property
    def denied_level(self) -> str | None:
        if not self.global_decision.allowed:
            return GLOBAL_LEVEL
        if self.endpoint_decision is not None and not self.endpoint_decision.allowed:
            return ENDPOINT_LEVEL
        return None

    @property
    def binding(self) -> Decision:
        """The decision that governs the caller right now.

        The refusing level when denied, otherwise the level with fewer
        attempts left (the global level on a tie).
        """
        endpoint_decision = self.endpoint_decision
        if endpoint_decision is None or not self.global_decision.allowed:
            return self.global_decision
        if not endpoint_decision.allowed:
            return endpoint_decision
        if endpoint_decision.remaining < self.global_decision.remaining:
            return endpoint_decision
        return self.global_decision


@dataclass(frozen=True)
class QuotaStatus:
    """Read-only view of the global level and, when asked for, one endpoint's level."""

    global_status: Status
    endpoint: str | None = None
    endpoint_status: Status | None = None

    @property
    def binding(self) -> Status:
        """The more restrictive level (blocked first, then fewer remaining)."""
        endpoint_status = self.endpoint_status
        if endpoint_status is None:
            return self.global_status
        if self.global_status.is_blocked or self.global_status.remaining == 0:
            return self.global_status
        if endpoint_status.is_blocked or endpoint_status.remaining < self.global_status.remaining:
            return endpoint_status
        return self.global_status


class ApiQuota:
    """Apply global and per-endpoint quotas through one ``RateLimiter``.

    Args:
        limiter: Shared limiter instance.
        endpoint_policies: Per-endpoint overrides keyed by endpoint name.
        default_endpoint_policy: Policy for endpoints without an override.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        endpoint_policies: Mapping[str, Policy] | None = None,
        *,
        default_endpoint_policy: Policy = DEFAULT_ENDPOINT_POLICY,
    ) -> None:
        self._limiter = limiter
        self._endpoint_policies = MappingProxyType(
            {normalize_endpoint(name): policy for name, policy in (endpoint_policies or {}).items()}
        )
        self._default_endpoint_policy = default_endpoint_policy

    @property
    def endpoint_policies(self) -> Mapping[str, Policy]:
        return self._endpoint_policies

    def endpoint_policy(self, endpoint: str) -> Policy:
        return self._endpoint_policies.get(normalize_endpoint(endpoint), self._default_endpoint_policy)

    def consume(self, identity_key: str, global_policy: Policy, endpoint: str) -> QuotaDecision:
        """Spend one attempt at each level the request reaches.

        Raises:
            StoreUnavailableError: If the store backend cannot be reached.
        """
        name = normalize_endpoint(endpoint)
        global_decision = self._limiter.check_and_consume(identity_key, global_policy)
        if not global_decision.allowed:
            return QuotaDecision(endpoint=name, global_decision=global_decision)

        endpoint_decision = self._limiter.check_and_consume(
            endpoint_key(identity_key, name), self.endpoint_policy(name)
        )
        return QuotaDecision(
            endpoint=name,
            global_decision=global_decision,
            endpoint_decision=endpoint_decision,
        )

    def status(
        self, identity_key: str, global_policy: Policy, endpoint: str | None = None
    ) -> QuotaStatus:
        """Report the global level, and ``endpoint``'s level if given, without consuming."""
        global_status = self._limiter.peek(identity_key, global_policy)
        if endpoint is None:
            return QuotaStatus(global_status=global_status)

        name = normalize_endpoint(endpoint)
        return QuotaStatus(
            global_status=global_status,
            endpoint=name,
            endpoint_status=self._limiter.peek(
                endpoint_key(identity_key, name), self.endpoint_policy(name)
            ),
        )

    def reset_identity(self, identity_key: str) -> int:
        """Clear the global and every endpoint bucket of one identity.

        Returns:
            Number of endpoint buckets cleared.
        """
        self._limiter.reset(identity_key)
        return self._limiter.reset_prefix(f"{identity_key}:{ENDPOINT_SCOPE}:")
