from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from oauth_callback.api.callback import router as callback_router
from oauth_callback.api.health import router as health_router
from oauth_callback.api.metrics_endpoint import router as metrics_router
from oauth_callback.core.config import SETTINGS
from oauth_callback.core.logging import setup_logging
from oauth_callback.db.redis import lifespan_redis
from oauth_callback.middleware.metrics import MetricsMiddleware
from oauth_callback.middleware.request_context import (
    RequestContextMiddleware,
    install_request_context_filter,
)

# Configure logging before anything else runs.
setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
install_request_context_filter()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    async with lifespan_redis():
        yield


app = FastAPI(
    title="oauth-callback",
    lifespan=lifespan,
    docs_url="/docs" if SETTINGS.is_dev else None,
    redoc_url="/redoc" if SETTINGS.is_dev else None,
)

# Last-added runs first: RequestContext → Metrics → route handler
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestContextMiddleware)

app.include_router(metrics_router)
app.include_router(health_router)
app.include_router(callback_router)

logger.info(
    "oauth-callback started  env=%s log_level=%s port=%d exchange_endpoint=%s "
    "ephemeral_store=%s",
    SETTINGS.app_env,
    SETTINGS.log_level,
    SETTINGS.port,
    SETTINGS.exchange_endpoint_url,
    "redis" if SETTINGS.redis_url else "memory",
)
