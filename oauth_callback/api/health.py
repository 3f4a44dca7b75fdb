"""Liveness and readiness endpoints.

  /health: "is the process up, and what state are its dependencies in?"
            Always 200; the `status` field says "ok" or "degraded".
  /ready:  "can this instance take callbacks?"  Always 200 for now:
            without Redis the in-memory store still works for a single
            process.
"""

from __future__ import annotations

from fastapi import APIRouter, Response

from oauth_callback.db.redis import redis_pool

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict:
    checks: dict[str, str] = {}
    overall = "ok"

    if redis_pool is not None:
        try:
            await redis_pool.ping()  # type: ignore[misc]
            checks["redis"] = "ok"
        except Exception:
            # Callbacks fail while Redis is down; report it, don't crash.
            checks["redis"] = "degraded"
            overall = "degraded"
    else:
        checks["redis"] = "not_configured"

    return {"status": overall, "checks": checks}


@router.get("/ready")
async def ready() -> Response:
    return Response(status_code=200)
