from __future__ import annotations

import asyncio
import io
import logging
import os
from collections.abc import Callable, Iterator

# Settings are read at import time; pin the environment first.
os.environ["APP_ENV"] = "test"
os.environ.pop("REDIS_URL", None)
os.environ.pop("REDIRECT_DELAY_MS", None)

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from oauth_callback.api.dependencies import get_exchange_client  # noqa: E402
from oauth_callback.core.config import SETTINGS  # noqa: E402
from oauth_callback.core.logging import setup_logging  # noqa: E402
from oauth_callback.main import app  # noqa: E402
from oauth_callback.middleware.request_context import (  # noqa: E402
    install_request_context_filter,
)
from oauth_callback.models.callback import (  # noqa: E402
    AUTH_SERVER_URL_KEY,
    CODE_VERIFIER_KEY,
    RETURN_URL_KEY,
    STATE_KEY,
    ExchangeRequest,
    ExchangeResult,
    ExchangeSuccess,
)
from oauth_callback.services.ephemeral_store import (  # noqa: E402
    InMemoryEphemeralBackend,
    InMemoryEphemeralStore,
    ephemeral_backend,
)
from oauth_callback.services.exchange_client import HttpExchangeClient  # noqa: E402

EXCHANGE_URL = "http://backend.test/api/auth/complete-oauth"
SESSION_ID = "test-session-id"


@pytest.fixture(autouse=True)
def reset_ephemeral_state() -> None:
    """Drop every in-memory session between tests."""
    if isinstance(ephemeral_backend, InMemoryEphemeralBackend):
        ephemeral_backend._sessions.clear()
        ephemeral_backend._expires_at.clear()


@pytest.fixture(autouse=True)
def reset_dependency_overrides() -> Iterator[None]:
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


# ---------------------------------------------------------------------------
# Ephemeral state helpers
# ---------------------------------------------------------------------------


def stored_values(
    state: str | None = "xyz",
    code_verifier: str | None = "v1",
    auth_server_url: str | None = "https://auth.example",
    return_url: str | None = "/projects/42",
) -> dict[str, str]:
    """What the initiation step leaves behind; None omits a key."""
    values = {
        STATE_KEY: state,
        CODE_VERIFIER_KEY: code_verifier,
        AUTH_SERVER_URL_KEY: auth_server_url,
        RETURN_URL_KEY: return_url,
    }
    return {k: v for k, v in values.items() if v is not None}


def seed_session(session_id: str = SESSION_ID, **overrides: str | None) -> None:
    store = ephemeral_backend.for_session(session_id)

    async def _seed() -> None:
        for key, value in stored_values(**overrides).items():
            await store.set(key, value)

    asyncio.run(_seed())


def session_snapshot(session_id: str = SESSION_ID) -> dict[str, str]:
    return dict(ephemeral_backend._sessions.get(session_id, {}))  # type: ignore[union-attr]


class RecordingStore(InMemoryEphemeralStore):
    """In-memory store that logs every call, for "no store access" checks."""

    def __init__(self, values: dict[str, str] | None = None) -> None:
        super().__init__(InMemoryEphemeralBackend(), "recording")
        for key, value in (values or {}).items():
            self._backend._write(self._session_id, key, value)
        self.calls: list[tuple[str, str | None]] = []

    @property
    def values(self) -> dict[str, str]:
        return dict(self._backend._read(self._session_id))

    async def get(self, key: str) -> str | None:
        self.calls.append(("get", key))
        return await super().get(key)

    async def set(self, key: str, value: str) -> None:
        self.calls.append(("set", key))
        await super().set(key, value)

    async def delete(self, key: str) -> None:
        self.calls.append(("delete", key))
        await super().delete(key)

    async def take(self, key: str) -> str | None:
        self.calls.append(("take", key))
        return await super().take(key)

    async def clear(self) -> None:
        self.calls.append(("clear", None))
        await super().clear()


# ---------------------------------------------------------------------------
# Exchange helpers
# ---------------------------------------------------------------------------


class StubExchangeClient:
    """Returns a canned ExchangeResult and remembers what it was sent."""

    def __init__(
        self,
        result: ExchangeResult | None = None,
        on_exchange: Callable[[ExchangeRequest], None] | None = None,
    ) -> None:
        self.result = result if result is not None else ExchangeSuccess()
        self.on_exchange = on_exchange
        self.requests: list[ExchangeRequest] = []
        self.cookies: list[dict[str, str]] = []

    async def exchange(self, request, cookies=None) -> ExchangeResult:
        self.requests.append(request)
        self.cookies.append(dict(cookies or {}))
        if self.on_exchange is not None:
            self.on_exchange(request)
        return self.result


class FakeBackend:
    """httpx.MockTransport handler standing in for the exchange endpoint."""

    def __init__(
        self,
        status_code: int = 200,
        content: bytes = b"",
        headers: list[tuple[str, str]] | None = None,
    ) -> None:
        self.status_code = status_code
        self.content = content
        self.headers = headers or []
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(
            self.status_code, content=self.content, headers=self.headers
        )

    def client(self) -> HttpExchangeClient:
        return HttpExchangeClient(EXCHANGE_URL, transport=httpx.MockTransport(self))


@pytest.fixture
def backend() -> FakeBackend:
    """Fake exchange endpoint wired into the app; tweak it per test."""
    fake = FakeBackend()
    app.dependency_overrides[get_exchange_client] = fake.client
    return fake


# ---------------------------------------------------------------------------
# Logging helpers
# ---------------------------------------------------------------------------


def capture_logs(level: str, *, json_format: bool) -> io.StringIO:
    """Configure logging the way main.py does, but write into a buffer."""
    setup_logging(level, json_format=json_format)
    install_request_context_filter()
    stream = io.StringIO()
    for handler in logging.getLogger().handlers:
        if isinstance(handler, logging.StreamHandler):
            handler.setStream(stream)
    return stream


@pytest.fixture
def restore_logging() -> Iterator[None]:
    yield
    setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
    install_request_context_filter()
