"""FastAPI dependencies for the callback route.

Tests swap collaborators with `app.dependency_overrides`, e.g. an
HttpExchangeClient built on httpx.MockTransport.
"""

from __future__ import annotations

import secrets
from typing import Annotated

from fastapi import Depends, Request

from oauth_callback.core.config import SETTINGS
from oauth_callback.services.ephemeral_store import EphemeralStore, ephemeral_backend
from oauth_callback.services.exchange_client import ExchangeClient, HttpExchangeClient

_exchange_client = HttpExchangeClient(
    SETTINGS.exchange_endpoint_url, timeout=SETTINGS.exchange_timeout_seconds
)


def get_exchange_client() -> ExchangeClient:
    return _exchange_client


def get_session_id(request: Request) -> str:
    """Session id from the cookie set by the initiation step.

    Without the cookie we bind to a fresh, empty namespace: there is
    nothing to find, so the flow fails on missing state.  Never fall back
    to a shared bucket.
    """
    return request.cookies.get(SETTINGS.session_cookie_name) or secrets.token_urlsafe(
        16
    )


def get_ephemeral_store(
    session_id: Annotated[str, Depends(get_session_id)],
) -> EphemeralStore:
    return ephemeral_backend.for_session(session_id)
