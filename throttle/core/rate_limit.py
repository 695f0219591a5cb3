"""Rate limiting dependencies for FastAPI routes.

This module wires the limiter into the HTTP layer.

Design goals:
- No hidden singletons: the limiter, quota and resolvers are built once by
  the app factory and read from ``app.state``.
- Per-caller quotas: authenticated callers are keyed by principal and get
  their tier's policy; anonymous callers are keyed by client IP and get the
  default tier.
- Layered limits: every request spends from the caller's global budget and
  from its budget for the endpoint being called.
- Explicit failure policy: when the state store is unreachable every quota
  route either fails open or closed according to
  ``RATE_LIMIT_QUOTA_FAIL_OPEN``.
"""

from __future__ import annotations

import logging
import math
from typing import Annotated, Any, Awaitable, Callable

from fastapi import Depends, HTTPException, Query, Request, Response, status

from throttle.core.auth import ApiPrincipal, verify_api_key
from throttle.core.config import settings
from throttle.core.errors import StoreUnavailableError
from throttle.core.identity import IdentityResolver
from throttle.core.logging import hash_identity
from throttle.services.policy import Policy, QuotaPolicyResolver
from throttle.services.quota import (
    GLOBAL_LEVEL,
    ApiQuota,
    QuotaDecision,
    QuotaStatus,
    normalize_endpoint,
)
from throttle.services.rate_limiter import Decision, Status

logger = logging.getLogger(__name__)


def get_api_quota(request: Request) -> ApiQuota:
    """Return the layered quota built by the app factory."""
    return request.app.state.api_quota


def get_policy_resolver(request: Request) -> QuotaPolicyResolver:
    return request.app.state.policy_resolver


def get_identity_resolver(request: Request) -> IdentityResolver:
    return request.app.state.identity_resolver


def rate_limit_headers(result: Decision | Status) -> dict[str, str]:
    """Build ``X-RateLimit-*`` headers, plus ``Retry-After`` for denials.

    ``X-RateLimit-Reset`` is the UNIX epoch second at which the window (or
    lockout) ends.
    """
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(math.ceil(result.reset_at))),
    }
    if isinstance(result, Decision) and not result.allowed:
        headers["Retry-After"] = str(int(math.ceil(result.retry_after or 0)))
    return headers


def _resolve_caller(
    request: Request,
    principal: ApiPrincipal | None,
    identity_resolver: IdentityResolver,
    policy_resolver: QuotaPolicyResolver,
) -> tuple[str, str, Policy]:
    """Return (identity key, tier name, policy) for the current request."""
    principal_id = principal.principal_id if principal else None
    tier = policy_resolver.resolve_tier_name(principal.tier if principal else None)
    key = identity_resolver.resolve_request(request, principal_id=principal_id)
    return key, tier, policy_resolver.resolve(tier)


def _on_store_unavailable(exc: StoreUnavailableError, key: str, operation: str) -> None:
    """Log a store outage, then re-raise it unless the quota fails open."""
    fail_open = settings.rate_limit.quota_fail_open
    logger.warning(
        "rate_limit.store_unavailable",
        extra={
            "operation": operation,
            "key_type": key.partition(":")[0],
            "key_hash": hash_identity(key),
            "error_code": exc.code,
            "fail_open": fail_open,
        },
    )
    if not fail_open:
        raise exc


def enforce_api_quota(endpoint: str) -> Callable[..., Awaitable[QuotaDecision | None]]:
    """Build a FastAPI dependency enforcing the quotas for ``endpoint``.

    Each request consumes one attempt from the caller's global budget and,
    if that allows it, one from the caller's budget for ``endpoint``.
    Allowed requests get ``X-RateLimit-*`` headers describing whichever
    level is tighter; callers refused at either level get HTTP 429.

    Args:
        endpoint: Name the per-endpoint policy and bucket are keyed by.

    Returns:
        Dependency returning the decision taken, or None when limiting is
        disabled or skipped because the store is unavailable and the quota
        fails open.
    """
    endpoint = normalize_endpoint(endpoint)

    async def dependency(
        request: Request,
        response: Response,
        principal: Annotated[ApiPrincipal | None, Depends(verify_api_key)],
        quota: Annotated[ApiQuota, Depends(get_api_quota)],
        identity_resolver: Annotated[IdentityResolver, Depends(get_identity_resolver)],
        policy_resolver: Annotated[QuotaPolicyResolver, Depends(get_policy_resolver)],
    ) -> QuotaDecision | None:
        rl_settings = settings.rate_limit
        if not rl_settings.enabled:
            return None

        key, tier, policy = _resolve_caller(request, principal, identity_resolver, policy_resolver)

        try:
            decision = quota.consume(key, policy, endpoint)
        except StoreUnavailableError as exc:
            _on_store_unavailable(exc, key, "consume")
            return None

        binding = decision.binding
        headers = rate_limit_headers(binding) if rl_settings.include_headers else {}
        log_fields: dict[str, Any] = {
            "key_type": key.partition(":")[0],
            "key_hash": hash_identity(key),
            "tier": tier,
            "endpoint": endpoint,
            "limit": binding.limit,
        }

        if decision.allowed:
            logger.info("rate_limit.allowed", extra={**log_fields, "remaining": binding.remaining})
            response.headers.update(headers)
            return decision

        level = decision.denied_level
        logger.warning(
            "rate_limit.exceeded",
            extra={**log_fields, "level": level, "retry_after_s": binding.retry_after},
        )
        if level == GLOBAL_LEVEL:
            detail = "Rate limit exceeded. Try again later."
        else:
            detail = f"Rate limit exceeded for {endpoint}. Try again later."
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=detail,
            headers=headers or None,
        )

    dependency.__name__ = f"enforce_api_quota_{endpoint}"
    return dependency


async def current_quota_status(
    request: Request,
    response: Response,
    principal: Annotated[ApiPrincipal | None, Depends(verify_api_key)],
    quota: Annotated[ApiQuota, Depends(get_api_quota)],
    identity_resolver: Annotated[IdentityResolver, Depends(get_identity_resolver)],
    policy_resolver: Annotated[QuotaPolicyResolver, Depends(get_policy_resolver)],
    endpoint: Annotated[
        str | None,
        Query(
            min_length=1,
            max_length=64,
            pattern=r"^[A-Za-z0-9_.\-]+$",
            description="Endpoint whose quota to report as well",
        ),
    ] = None,
) -> tuple[str, QuotaStatus | None]:
    """FastAPI dependency reporting the caller's quotas without consuming them.

    Returns:
        Tuple of (tier name, status). The status is None when the store is
        unavailable and the quota fails open.

    Raises:
        StoreUnavailableError: When the store is down and the quota fails closed.
    """
    key, tier, policy = _resolve_caller(request, principal, identity_resolver, policy_resolver)
    try:
        quota_status = quota.status(key, policy, endpoint)
    except StoreUnavailableError as exc:
        _on_store_unavailable(exc, key, "status")
        return tier, None

    if settings.rate_limit.include_headers:
        response.headers.update(rate_limit_headers(quota_status.binding))
    return tier, quota_status
