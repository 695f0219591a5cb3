"""API key authentication and principal extraction.

Keys are configured as a comma-separated list, each entry optionally tagged
with the quota tier it belongs to (``key`` or ``key:tier``). A validated key
becomes an ``ApiPrincipal`` whose id is a hash of the key, so raw keys never
end up in limiter state or logs.

Design principles:
- Single Responsibility: only validates keys and names the caller
- Dependency Injection: used via FastAPI Depends() for loose coupling
- Configuration-driven: keys managed via env vars, not hardcoded
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Annotated

from fastapi import Header, HTTPException, Request, status

from throttle.core.config import settings
from throttle.core.errors import AuthenticationAppError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApiPrincipal:
    """Authenticated API caller.

    Attributes:
        principal_id: Stable, non-reversible id derived from the API key.
        tier: Tier tag configured for the key, or None for the default tier.
    """

    principal_id: str
    tier: str | None = None


def principal_id_for(api_key: str) -> str:
    """Derive the principal id for an API key."""
    return hashlib.sha256(api_key.encode()).hexdigest()[:32]


def parse_api_keys(keys_string: str | None) -> dict[str, str | None]:
    """Parse comma-separated ``key[:tier]`` entries into a key → tier mapping.

    Args:
        keys_string: Comma-separated string of API keys, or None.

    Returns:
        Mapping of trimmed, non-empty keys to their tier (None when untagged).

    Examples:
        >>> parse_api_keys("key1:performance, key2")
        {'key1': 'performance', 'key2': None}
        >>> parse_api_keys(None)
        {}
    """
    if not keys_string:
        return {}

    keys: dict[str, str | None] = {}
    for entry in keys_string.split(","):
        key, _, tier = entry.strip().partition(":")
        key = key.strip()
        if key:
            keys[key] = tier.strip() or None
    return keys


def validate_api_key(provided_key: str) -> ApiPrincipal:
    """Validate an API key against the configured keys.

    Pure validation logic without FastAPI dependencies for easy testing.

    Args:
        provided_key: API key to validate.

    Returns:
        The principal the key belongs to.

    Raises:
        AuthenticationAppError: If the key is invalid or no keys are configured.
    """
    valid_keys = parse_api_keys(settings.app.api_keys)

    if not valid_keys:
        logger.error(
            "api_key_validation_failed",
            extra={"reason": "api_keys_not_configured"},
        )
        raise AuthenticationAppError(
            code="api_keys_not_configured",
            message="API key authentication is enabled but no valid keys are configured",
            details={"hint": "Set APP_API_KEYS or disable auth with APP_API_KEY_REQUIRED=false"},
        )

    for key, tier in valid_keys.items():
        if hmac.compare_digest(key.encode(), provided_key.encode()):
            return ApiPrincipal(principal_id=principal_id_for(key), tier=tier)

    logger.warning(
        "api_key_validation_failed",
        extra={
            "reason": "invalid_api_key",
            "api_key_hash": principal_id_for(provided_key)[:16],
        },
    )
    raise AuthenticationAppError(
        code="invalid_api_key",
        message="Invalid or missing API key",
    )


async def verify_api_key(
    request: Request,
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> ApiPrincipal | None:
    """FastAPI dependency for API key authentication.

    Stores the resolved principal on ``request.state.principal`` so later
    dependencies (the quota guard) can key limits by caller. Returns None
    for anonymous callers when authentication is disabled.

    Raises:
        HTTPException: 403 Forbidden if authentication fails.
    """
    principal: ApiPrincipal | None = None

    if x_api_key:
        try:
            principal = validate_api_key(x_api_key)
        except AuthenticationAppError as exc:
            if settings.app.api_key_required:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=exc.message,
                ) from exc
            # Auth disabled: a bad key is treated like no key at all.
    elif settings.app.api_key_required:
        logger.warning(
            "auth.missing_key",
            extra={"auth_required": True, "api_key_present": False},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Missing API key. Provide X-API-Key header.",
        )

    request.state.principal = principal
    return principal
