"""Demo: walk the OAuth callback against a fake backend using FastAPI TestClient.

The initiation step is simulated by writing the ephemeral values straight
into the in-memory store; the backend exchange endpoint is served by an
httpx.MockTransport.

Run with:
    python scripts/demo_callback_flow.py
"""

from __future__ import annotations

import asyncio
import json

import httpx
from fastapi.testclient import TestClient

from oauth_callback.api.dependencies import get_exchange_client
from oauth_callback.core.config import SETTINGS
from oauth_callback.main import app
from oauth_callback.models.callback import (
    AUTH_SERVER_URL_KEY,
    CODE_VERIFIER_KEY,
    RETURN_URL_KEY,
    STATE_KEY,
)
from oauth_callback.services.ephemeral_store import ephemeral_backend
from oauth_callback.services.exchange_client import HttpExchangeClient

SESSION_ID = "demo-session"
STATE = "demo-state"


def _backend(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    if body["code"] == "good-code":
        return httpx.Response(
            200,
            json={"success": True},
            headers={"set-cookie": "session_jwt=demo-token; HttpOnly; Path=/"},
        )
    return httpx.Response(400, text="invalid_grant")


def _seed(return_url: str = "/projects/42") -> None:
    store = ephemeral_backend.for_session(SESSION_ID)

    async def _write() -> None:
        await store.set(STATE_KEY, STATE)
        await store.set(CODE_VERIFIER_KEY, "demo-verifier")
        await store.set(AUTH_SERVER_URL_KEY, "https://auth.example")
        await store.set(RETURN_URL_KEY, return_url)

    asyncio.run(_write())


def main() -> None:
    exchange_client = HttpExchangeClient(
        SETTINGS.exchange_endpoint_url, transport=httpx.MockTransport(_backend)
    )
    app.dependency_overrides[get_exchange_client] = lambda: exchange_client
    client = TestClient(app, follow_redirects=False)

    # ── Step 1: successful callback ─────────────────────────────────
    _seed()
    client.cookies.set(SETTINGS.session_cookie_name, SESSION_ID)
    r = client.get("/oauth/callback", params={"code": "good-code", "state": STATE})
    print(
        f"1. GET /oauth/callback            → {r.status_code}  "
        f"set-cookie={r.headers.get_list('set-cookie')}"
    )

    # ── Step 2: replay (back button) ────────────────────────────────
    client.cookies.set(SETTINGS.session_cookie_name, SESSION_ID)
    r = client.get("/oauth/callback", params={"code": "good-code", "state": STATE})
    print(f"2. GET /oauth/callback (replay)   → {r.status_code}  (session spent)")

    # ── Step 3: forged state ────────────────────────────────────────
    _seed()
    client.cookies.set(SETTINGS.session_cookie_name, SESSION_ID)
    r = client.get("/oauth/callback", params={"code": "good-code", "state": "forged"})
    print(f"3. GET /oauth/callback (forged)   → {r.status_code}  (state mismatch)")

    # ── Step 4: backend rejects the code ────────────────────────────
    _seed()
    client.cookies.set(SETTINGS.session_cookie_name, SESSION_ID)
    r = client.get("/oauth/callback", params={"code": "stale-code", "state": STATE})
    print(f"4. GET /oauth/callback (stale)    → {r.status_code}  (exchange failed)")

    app.dependency_overrides.clear()
    print("\nAll steps completed.")


if __name__ == "__main__":
    main()
