"""Application factory for the FastAPI app.

Builds the limiter, its store and the resolvers exactly once per app and
hands them to the request layer through ``app.state``; nothing throttling
related lives in module globals.
"""

from __future__ import annotations

from fastapi import FastAPI

from throttle.adapters.rate_limit.base import AbstractLimiterStateStore
from throttle.adapters.rate_limit.in_memory import InMemoryLimiterStateStore
from throttle.api.routes import health_router, quota_router
from throttle.core.clock import Clock, wall_clock
from throttle.core.config import RateLimitSettings, settings
from throttle.core.exception_handlers import setup_exception_handlers
from throttle.core.identity import IdentityResolver
from throttle.core.logging import configure_logging
from throttle.core.middleware import request_id_middleware
from throttle.services.auth_throttle import AuthThrottle
from throttle.services.policy import QuotaPolicyResolver
from throttle.services.quota import ApiQuota
from throttle.services.rate_limiter import RateLimiter


def build_policy_resolver(rl_settings: RateLimitSettings) -> QuotaPolicyResolver:
    return QuotaPolicyResolver(
        {name: tier.to_policy() for name, tier in rl_settings.tiers.items()},
        default_tier=rl_settings.default_tier,
    )


def build_api_quota(rl_settings: RateLimitSettings, limiter: RateLimiter) -> ApiQuota:
    return ApiQuota(
        limiter,
        {name: rule.to_policy() for name, rule in rl_settings.endpoints.items()},
        default_endpoint_policy=rl_settings.endpoint_default.to_policy(),
    )


def build_rate_limiter(
    rl_settings: RateLimitSettings,
    *,
    store: AbstractLimiterStateStore | None = None,
    clock: Clock = wall_clock,
) -> RateLimiter:
    """Build the limiter and (unless one is supplied) its in-memory store."""
    if store is None:
        store = InMemoryLimiterStateStore(
            shard_count=rl_settings.shard_count,
            sweep_interval_seconds=rl_settings.sweep_interval_seconds,
            eviction_grace_seconds=rl_settings.eviction_grace_seconds,
            clock=clock,
        )
    return RateLimiter(store, clock=clock)


def create_app(
    *,
    store: AbstractLimiterStateStore | None = None,
    clock: Clock = wall_clock,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        store: Optional limiter state store (tests inject fakes here).
        clock: Time source shared by the limiter and its store.

    Returns:
        Configured FastAPI app with middleware, handlers and routers.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    rl_settings = settings.rate_limit

    app = FastAPI(
        title="Identity Throttle",
        description=(
            "Per-identity rate limiting and tiered API quotas. Callers are "
            "identified by X-API-Key (falling back to client IP) and receive "
            "X-RateLimit-* headers describing their remaining budget."
        ),
        version="0.1.0",
    )

    limiter = build_rate_limiter(rl_settings, store=store, clock=clock)
    app.state.rate_limiter = limiter
    app.state.policy_resolver = build_policy_resolver(rl_settings)
    app.state.api_quota = build_api_quota(rl_settings, limiter)
    app.state.identity_resolver = IdentityResolver(rl_settings.trusted_proxies)
    # Brute-force protection fails closed: an unreachable store refuses logins.
    app.state.auth_throttle = AuthThrottle(
        limiter,
        login_policy=rl_settings.login.to_policy(),
        register_policy=rl_settings.registration.to_policy(),
        fail_open=False,
    )

    app.middleware("http")(request_id_middleware)
    setup_exception_handlers(app)

    app.include_router(quota_router, prefix="/v1")
    app.include_router(health_router)

    return app
