from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check(request: Request) -> dict:
    """Liveness check.

    Also reports how many identities the limiter is currently tracking,
    which is the number to watch for unbounded state growth.
    """

    stats = request.app.state.rate_limiter.store.stats()
    return {"status": "ok", "tracked_keys": stats.get("entries", 0)}
