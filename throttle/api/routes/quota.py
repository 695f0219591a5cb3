from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from throttle.core.rate_limit import current_quota_status, enforce_api_quota
from throttle.services.quota import QuotaDecision, QuotaStatus
from throttle.services.rate_limiter import Status

router = APIRouter(tags=["Quota"])

PING_ENDPOINT = "ping"


class QuotaLevel(BaseModel):
    """One quota level as seen without consuming an attempt."""

    limit: int = Field(..., description="Requests allowed per window")
    remaining: int = Field(..., description="Requests left in the current window")
    is_blocked: bool = Field(..., description="Whether the caller is currently locked out")
    reset_in_seconds: float = Field(..., description="Seconds until the window rolls over")
    unblock_in_seconds: float = Field(..., description="Seconds until the lockout ends")

    @classmethod
    def from_status(cls, status: Status) -> "QuotaLevel":
        return cls(
            limit=status.limit,
            remaining=status.remaining,
            is_blocked=status.is_blocked,
            reset_in_seconds=status.time_until_window_reset,
            unblock_in_seconds=status.time_until_unblock,
        )


class EndpointQuotaLevel(QuotaLevel):
    name: str = Field(..., description="Endpoint the level applies to")


class QuotaStatusResponse(BaseModel):
    """Caller's quotas as seen without consuming an attempt."""

    model_config = ConfigDict(populate_by_name=True)

    tier: str = Field(..., description="Tier whose policy applies to the caller")
    store_available: bool = Field(
        True,
        description="False when limiter state could not be read; levels are then omitted",
    )
    global_level: QuotaLevel | None = Field(
        None,
        alias="global",
        description="Caller's budget across all endpoints",
    )
    endpoint: EndpointQuotaLevel | None = Field(
        None,
        description="Caller's budget on the endpoint named in the query, if any",
    )


class PingResponse(BaseModel):
    status: str = "ok"
    remaining: int | None = None


@router.get("/ping", response_model=PingResponse)
async def ping(
    decision: Annotated[QuotaDecision | None, Depends(enforce_api_quota(PING_ENDPOINT))],
) -> PingResponse:
    """Quota-protected no-op endpoint.

    Each call consumes one request from the caller's global budget and one
    from its ``ping`` budget; exhausted callers receive 429 before this
    handler runs.
    """
    return PingResponse(remaining=decision.binding.remaining if decision else None)


@router.get("/quota", response_model=QuotaStatusResponse)
async def quota_status(
    current: Annotated[tuple[str, QuotaStatus | None], Depends(current_quota_status)],
) -> QuotaStatusResponse:
    """Report the caller's quotas without consuming them.

    Pass ``?endpoint=<name>`` to include that endpoint's level.
    """
    tier, status = current
    if status is None:
        return QuotaStatusResponse(tier=tier, store_available=False)

    endpoint = None
    if status.endpoint is not None and status.endpoint_status is not None:
        endpoint = EndpointQuotaLevel(
            name=status.endpoint,
            **QuotaLevel.from_status(status.endpoint_status).model_dump(),
        )
    return QuotaStatusResponse(
        tier=tier,
        global_level=QuotaLevel.from_status(status.global_status),
        endpoint=endpoint,
    )
