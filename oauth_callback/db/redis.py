"""Redis connection management.

The ephemeral sign-in state (state nonce, PKCE verifier, auth-server URL,
return URL) must be visible to whichever API instance receives the
callback, and must disappear on its own if the user abandons the flow
half-way.  Redis gives us both: a shared store and per-key TTLs.

When REDIS_URL is not set (local dev, tests) `redis_pool` is None and
the ephemeral store falls back to an in-process dictionary, which only
works with a single API process.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis

from oauth_callback.core.config import SETTINGS

logger = logging.getLogger(__name__)

if SETTINGS.redis_url:
    redis_pool: aioredis.Redis | None = aioredis.from_url(  # type: ignore[type-arg]
        SETTINGS.redis_url,
        decode_responses=True,
        max_connections=20,
    )
else:
    redis_pool = None


@asynccontextmanager
async def lifespan_redis():
    """Verify Redis on startup and close the pool on shutdown.

    An unreachable Redis is logged, not raised: /health reports it as
    degraded and every callback will fail with an unexpected error until
    it comes back, which is the visible failure we want.
    """
    if redis_pool is None:
        logger.info(
            "No REDIS_URL configured; ephemeral sign-in state kept in process memory"
        )
        yield
        return

    try:
        await redis_pool.ping()  # type: ignore[misc]
        logger.info("Redis connected: %s", SETTINGS.redis_url)
    except Exception:
        logger.exception("Redis connection failed on startup")
        yield
        return

    yield

    await redis_pool.aclose()
    logger.info("Redis connection pool closed")
