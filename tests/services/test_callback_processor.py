"""Callback state machine, driven directly, no HTTP.

Each test builds a RecordingStore with whatever the initiation step would
have left behind, runs the processor once (or twice for replay), and
checks the terminal outcome plus what is left in the store.
"""

from __future__ import annotations

import asyncio
import logging

import httpx
import pytest

from oauth_callback.models.callback import (
    AUTH_SERVER_URL_KEY,
    CODE_VERIFIER_KEY,
    RETURN_URL_KEY,
    STATE_KEY,
    AuthServerLoaded,
    AuthorizationResponse,
    ExchangeFailure,
    ExchangeSuccess,
    Exchanged,
    Failed,
    FailureKind,
    Parsed,
    Processing,
    Redirecting,
    Start,
    StateValidated,
    VerifierLoaded,
)
from oauth_callback.services.callback_processor import (
    RETRY_LOGIN_MESSAGE,
    UNEXPECTED_MESSAGE,
    CallbackProcessor,
    erase_ephemeral_state,
    is_local_path,
    resolve_target,
)
from oauth_callback.services.exchange_client import (
    NETWORK_ERROR_MESSAGE,
    HttpExchangeClient,
)
from tests.conftest import (
    EXCHANGE_URL,
    FakeBackend,
    RecordingStore,
    StubExchangeClient,
    stored_values,
)

QUERY = {"code": "abc123", "state": "xyz"}


def _run(
    store: RecordingStore,
    exchange_client,
    query: dict[str, str] = QUERY,
    default_landing_url: str = "/dashboard",
    observer=None,
):
    processor = CallbackProcessor(
        store, exchange_client, default_landing_url=default_landing_url
    )
    return asyncio.run(processor.run(query, observer=observer))


# ---- success ----


def test_concrete_scenario_redirects_to_stored_return_url() -> None:
    store = RecordingStore(stored_values())
    exchange = StubExchangeClient(ExchangeSuccess())

    outcome = _run(store, exchange)

    assert outcome == Redirecting("/projects/42")
    assert store.values == {}
    assert len(exchange.requests) == 1
    sent = exchange.requests[0]
    assert sent.model_dump() == {
        "code": "abc123",
        "state": "xyz",
        "code_verifier": "v1",
        "auth_url": "https://auth.example",
    }


def test_falls_back_to_server_redirect_hint() -> None:
    store = RecordingStore(stored_values(return_url=None))
    exchange = StubExchangeClient(ExchangeSuccess(redirect_url="/welcome"))

    assert _run(store, exchange) == Redirecting("/welcome")
    assert store.values == {}


def test_stored_return_url_beats_server_hint() -> None:
    store = RecordingStore(stored_values(return_url="/projects/7?tab=schema"))
    exchange = StubExchangeClient(ExchangeSuccess(redirect_url="/welcome"))

    assert _run(store, exchange) == Redirecting("/projects/7?tab=schema")


def test_falls_back_to_default_landing() -> None:
    store = RecordingStore(stored_values(return_url=None))
    exchange = StubExchangeClient(ExchangeSuccess())

    assert _run(store, exchange, default_landing_url="/home") == Redirecting("/home")


def test_non_local_return_url_is_ignored() -> None:
    store = RecordingStore(stored_values(return_url="//evil.example/phish"))
    exchange = StubExchangeClient(ExchangeSuccess(redirect_url="/welcome"))

    assert _run(store, exchange) == Redirecting("/welcome")


def test_tab_smuggled_return_url_is_ignored() -> None:
    store = RecordingStore(stored_values(return_url="/\t/evil.example"))
    exchange = StubExchangeClient(ExchangeSuccess())

    assert _run(store, exchange, default_landing_url="/home") == Redirecting("/home")


@pytest.mark.parametrize(
    "hint", ["https://evil.example/", "//evil.example", "/\t/evil.example"]
)
def test_non_local_redirect_hint_is_ignored(hint: str) -> None:
    store = RecordingStore(stored_values(return_url=None))
    exchange = StubExchangeClient(ExchangeSuccess(redirect_url=hint))

    assert _run(store, exchange, default_landing_url="/home") == Redirecting("/home")


def test_all_values_consumed_before_exchange() -> None:
    store = RecordingStore(stored_values())
    seen_during_exchange: list[dict[str, str]] = []
    exchange = StubExchangeClient(
        ExchangeSuccess(),
        on_exchange=lambda _req: seen_during_exchange.append(dict(store.values)),
    )

    _run(store, exchange)

    assert seen_during_exchange == [{}]


def test_steps_read_the_store_in_fixed_order() -> None:
    store = RecordingStore(stored_values())

    _run(store, StubExchangeClient())

    takes = [key for op, key in store.calls if op == "take"]
    assert takes == [STATE_KEY, CODE_VERIFIER_KEY, AUTH_SERVER_URL_KEY, RETURN_URL_KEY]
    assert store.calls[-1] == ("clear", None)


def test_observer_sees_processing_messages() -> None:
    seen: list[Processing] = []
    store = RecordingStore(stored_values())

    _run(store, StubExchangeClient(), observer=seen.append)

    assert len(seen) == 6
    assert all(isinstance(p, Processing) for p in seen)
    assert seen[-2].message == "Completing sign-in…"


def test_extra_query_parameters_are_ignored() -> None:
    store = RecordingStore(stored_values())
    query = {**QUERY, "session_state": "abc", "iss": "https://auth.example"}

    assert _run(store, StubExchangeClient(), query=query) == Redirecting(
        "/projects/42"
    )


# ---- PARSE ----


@pytest.mark.parametrize(
    "query",
    [
        {"state": "xyz"},
        {"code": "abc123"},
        {},
        {"code": "", "state": "xyz"},
        {"code": "abc123", "state": ""},
    ],
)
def test_missing_parameters_never_touch_the_store(query: dict[str, str]) -> None:
    store = RecordingStore(stored_values())
    exchange = StubExchangeClient()

    outcome = _run(store, exchange, query=query)

    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.MISSING_PARAMETERS
    assert store.calls == []
    assert exchange.requests == []


# ---- VALIDATE_STATE ----


def test_state_mismatch_fails_and_erases_everything() -> None:
    store = RecordingStore(stored_values(state="something-else"))
    exchange = StubExchangeClient()

    outcome = _run(store, exchange)

    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.STATE_MISMATCH
    assert outcome.message == RETRY_LOGIN_MESSAGE
    assert store.values == {}
    assert exchange.requests == []


def test_missing_stored_state_fails_and_erases_leftovers() -> None:
    store = RecordingStore(stored_values(state=None))
    exchange = StubExchangeClient()

    outcome = _run(store, exchange)

    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.MISSING_STORED_STATE
    assert store.values == {}
    assert exchange.requests == []


def test_mismatch_and_missing_state_look_the_same_to_the_user() -> None:
    mismatch = _run(RecordingStore(stored_values(state="other")), StubExchangeClient())
    missing = _run(RecordingStore(stored_values(state=None)), StubExchangeClient())

    assert isinstance(mismatch, Failed) and isinstance(missing, Failed)
    assert mismatch.message == missing.message


# ---- LOAD_VERIFIER / LOAD_AUTH_SERVER ----


def test_missing_verifier_fails() -> None:
    store = RecordingStore(stored_values(code_verifier=None))
    exchange = StubExchangeClient()

    outcome = _run(store, exchange)

    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.MISSING_VERIFIER
    assert store.values == {}
    assert exchange.requests == []


def test_missing_auth_server_fails() -> None:
    store = RecordingStore(stored_values(auth_server_url=None))
    exchange = StubExchangeClient()

    outcome = _run(store, exchange)

    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.MISSING_AUTH_SERVER
    assert store.values == {}
    assert exchange.requests == []


# ---- EXCHANGE ----


def test_exchange_invalid_grant_is_surfaced_without_retry() -> None:
    fake = FakeBackend(status_code=400, content=b"invalid_grant")
    store = RecordingStore(stored_values())

    outcome = _run(store, fake.client())

    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.EXCHANGE_FAILED
    assert "invalid_grant" in outcome.message
    assert len(fake.requests) == 1
    assert str(fake.requests[0].url) == EXCHANGE_URL
    assert store.values == {}


def test_exchange_transport_error_gives_generic_message() -> None:
    def _refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = HttpExchangeClient(EXCHANGE_URL, transport=httpx.MockTransport(_refuse))
    store = RecordingStore(stored_values())

    outcome = _run(store, client)

    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.EXCHANGE_FAILED
    assert outcome.message == NETWORK_ERROR_MESSAGE
    assert store.values == {}


def test_exchange_failure_result_maps_to_failed() -> None:
    exchange = StubExchangeClient(
        ExchangeFailure(message="Authentication failed", status_code=500)
    )

    outcome = _run(RecordingStore(stored_values()), exchange)

    assert outcome == Failed(
        FailureKind.EXCHANGE_FAILED, "Authentication failed", "Authentication failed"
    )


# ---- unexpected ----


def test_unexpected_exception_is_contained_and_store_cleared(
    caplog: pytest.LogCaptureFixture,
) -> None:
    class _Broken:
        async def exchange(self, request, cookies=None):
            raise RuntimeError("backend client bug")

    store = RecordingStore(stored_values())

    with caplog.at_level(logging.ERROR):
        outcome = _run(store, _Broken())

    assert outcome == Failed(FailureKind.UNEXPECTED, UNEXPECTED_MESSAGE)
    assert store.values == {}
    assert any("unexpected error" in r.message for r in caplog.records)


def test_failed_erase_is_reported_as_unexpected() -> None:
    class _StuckStore(RecordingStore):
        async def clear(self) -> None:
            raise ConnectionError("store unreachable")

    outcome = _run(_StuckStore(stored_values()), StubExchangeClient())

    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.UNEXPECTED


def test_cancellation_still_erases_the_store() -> None:
    class _Cancelled:
        async def exchange(self, request, cookies=None):
            raise asyncio.CancelledError()

    store = RecordingStore(stored_values())
    processor = CallbackProcessor(store, _Cancelled())

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(processor.run(QUERY))
    assert store.values == {}


# ---- replay ----


def test_replay_fails_on_missing_state_and_never_re_exchanges() -> None:
    store = RecordingStore(stored_values())
    exchange = StubExchangeClient(ExchangeSuccess())

    first = _run(store, exchange)
    second = _run(store, exchange)

    assert first == Redirecting("/projects/42")
    assert isinstance(second, Failed)
    assert second.kind is FailureKind.MISSING_STORED_STATE
    assert len(exchange.requests) == 1


def test_replay_after_failed_attempt_cannot_reuse_verifier() -> None:
    store = RecordingStore(stored_values())
    failing = StubExchangeClient(ExchangeFailure(message="invalid_grant", status_code=400))

    first = _run(store, failing)
    # Someone re-seeds only the nonce; the verifier is gone for good.
    asyncio.run(store.set(STATE_KEY, "xyz"))
    second = _run(store, StubExchangeClient())

    assert isinstance(first, Failed) and first.kind is FailureKind.EXCHANGE_FAILED
    assert isinstance(second, Failed) and second.kind is FailureKind.MISSING_VERIFIER


# ---- single steps via advance() ----


def test_advance_walks_every_state() -> None:
    store = RecordingStore(stored_values())
    processor = CallbackProcessor(
        store, StubExchangeClient(ExchangeSuccess(redirect_url="/hint"))
    )
    response = AuthorizationResponse(code="abc123", state="xyz")

    async def _walk():
        states = [Start(query=QUERY)]
        for _ in range(6):
            states.append(await processor.advance(states[-1]))
        return states

    states = asyncio.run(_walk())

    assert [type(s) for s in states] == [
        Start,
        Parsed,
        StateValidated,
        VerifierLoaded,
        AuthServerLoaded,
        Exchanged,
        Redirecting,
    ]
    assert states[1] == Parsed(response=response)
    assert states[4] == AuthServerLoaded(
        response=response,
        code_verifier="v1",
        auth_server_url="https://auth.example",
        return_url="/projects/42",
    )
    assert states[-1] == Redirecting("/projects/42")


def test_verifier_is_hidden_from_state_repr() -> None:
    state = VerifierLoaded(
        response=AuthorizationResponse(code="c", state="s"), code_verifier="secret-v"
    )
    assert "secret-v" not in repr(state)


# ---- cleanup helpers ----


def test_erase_is_idempotent() -> None:
    store = RecordingStore(stored_values())

    async def _twice() -> None:
        await erase_ephemeral_state(store)
        await erase_ephemeral_state(store)

    asyncio.run(_twice())
    assert store.values == {}


def test_resolve_target_order() -> None:
    assert resolve_target("/a", "/b", "/c") == "/a"
    assert resolve_target(None, "/b", "/c") == "/b"
    assert resolve_target(None, None, "/c") == "/c"
    assert resolve_target("", "", "/c") == "/c"


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("/projects/42", True),
        ("/projects/42?foo=bar&baz=qux", True),
        ("//evil.example", False),
        ("/\\evil.example", False),
        ("https://evil.example/", False),
        ("projects/42", False),
        ("/\t/evil.example", False),
        ("/\r\n/evil.example", False),
        (" //evil.example", False),
        ("/projects/42 ", False),
        ("/\x7f/evil.example", False),
    ],
)
def test_is_local_path(url: str, expected: bool) -> None:
    assert is_local_path(url) is expected
