"""OAuth 2.1 Authorization Code + PKCE: the client side of the callback.

The authorization server sends the browser back to us with ?code&state.
Before the code is worth anything we have to prove three things:

  1. This callback answers a sign-in WE started in THIS session
     (stored state nonce == query state; CSRF defense).
  2. We hold the PKCE verifier for the challenge sent at initiation.
  3. We know which authorization server issued the code.

Then the backend redeems code + verifier, and we send the user back to
where they were.

    START
      → PARSE            read code & state from the query
      → VALIDATE_STATE   take stored nonce, compare
      → LOAD_VERIFIER    take stored PKCE verifier
      → LOAD_AUTH_SERVER take stored auth-server URL (+ optional return URL)
      → EXCHANGE         backend trades code + verifier for a session
      → CLEANUP          erase leftovers, resolve the redirect target
      → Redirecting(target)
    any step → Failed(kind)

Every stored value is taken (read + erased) before the network call, so
a replayed callback finds nothing and fails with a "missing" error.  The
whole store is cleared again in a `finally` on every exit path after
PARSE.  PARSE itself never touches the store.

Never log the authorization code or the verifier.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Callable, Mapping

from oauth_callback.core.metrics import CALLBACK_OUTCOMES
from oauth_callback.models.callback import (
    AUTH_SERVER_URL_KEY,
    CODE_VERIFIER_KEY,
    RETURN_URL_KEY,
    STATE_KEY,
    AuthorizationResponse,
    AuthServerLoaded,
    CallbackOutcome,
    Exchanged,
    ExchangeFailure,
    ExchangeRequest,
    ExchangeSuccess,
    Failed,
    FailureKind,
    FlowState,
    InFlightState,
    Parsed,
    Processing,
    Redirecting,
    Start,
    StateValidated,
    VerifierLoaded,
)
from oauth_callback.services.ephemeral_store import EphemeralStore
from oauth_callback.services.exchange_client import ExchangeClient

logger = logging.getLogger(__name__)

RETRY_LOGIN_MESSAGE = (
    "Your sign-in session could not be verified. Please try logging in again."
)
MISSING_PARAMETERS_MESSAGE = (
    "Missing authorization data in the sign-in response. Please try logging in again."
)
UNEXPECTED_MESSAGE = "Something went wrong while signing you in. Please try again."


# ---------------------------------------------------------------------------
# Errors raised at the fail points; converted to Failed by the driver
# ---------------------------------------------------------------------------


class CallbackError(Exception):
    kind: FailureKind = FailureKind.UNEXPECTED
    message: str = UNEXPECTED_MESSAGE

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.kind.value)
        self.detail = detail


class MissingParameters(CallbackError):
    kind = FailureKind.MISSING_PARAMETERS
    message = MISSING_PARAMETERS_MESSAGE


class MissingStoredState(CallbackError):
    kind = FailureKind.MISSING_STORED_STATE
    message = RETRY_LOGIN_MESSAGE


class StateMismatch(CallbackError):
    # Same message as MissingStoredState: a stale nonce and a forged one
    # must look identical from the outside.
    kind = FailureKind.STATE_MISMATCH
    message = RETRY_LOGIN_MESSAGE


class MissingVerifier(CallbackError):
    kind = FailureKind.MISSING_VERIFIER
    message = RETRY_LOGIN_MESSAGE


class MissingAuthServer(CallbackError):
    kind = FailureKind.MISSING_AUTH_SERVER
    message = RETRY_LOGIN_MESSAGE


class ExchangeFailed(CallbackError):
    kind = FailureKind.EXCHANGE_FAILED

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.message = detail


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_authorization_response(query: Mapping[str, str]) -> AuthorizationResponse:
    code = query.get("code") or ""
    state = query.get("state") or ""
    if not code or not state:
        raise MissingParameters()
    return AuthorizationResponse(code=code, state=state)


def is_local_path(url: str) -> bool:
    """True for same-origin paths like /projects/42?tab=1.

    Protocol-relative (//evil.example) and backslash tricks are rejected.
    Browsers drop tab, CR and LF inside URLs, so "/<TAB>/evil.example" is
    really "//evil.example"; any whitespace or control character fails.
    """
    if any(ch.isspace() or ord(ch) < 0x20 or ord(ch) == 0x7F for ch in url):
        return False
    return url.startswith("/") and not url.startswith(("//", "/\\"))


def resolve_target(
    return_url: str | None, redirect_hint: str | None, default: str
) -> str:
    """Stored return URL, else the backend's hint, else the default."""
    if return_url:
        return return_url
    if redirect_hint:
        return redirect_hint
    return default


def processing_message(state: InFlightState) -> Processing:
    if isinstance(state, Start):
        return Processing("Reading sign-in response…")
    if isinstance(state, (Parsed, StateValidated, VerifierLoaded)):
        return Processing("Verifying sign-in…")
    if isinstance(state, AuthServerLoaded):
        return Processing("Completing sign-in…")
    return Processing("Sign-in complete. Redirecting…")


async def erase_ephemeral_state(store: EphemeralStore) -> None:
    """Remove every sign-in key for the session.  Safe to repeat."""
    await store.clear()


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------


class CallbackProcessor:
    def __init__(
        self,
        store: EphemeralStore,
        exchange_client: ExchangeClient,
        *,
        default_landing_url: str = "/",
        cookies: Mapping[str, str] | None = None,
    ) -> None:
        self._store = store
        self._exchange_client = exchange_client
        self._default_landing_url = default_landing_url
        self._cookies = dict(cookies or {})
        self.set_cookies: tuple[str, ...] = ()

    async def run(
        self,
        query: Mapping[str, str],
        observer: Callable[[Processing], None] | None = None,
    ) -> CallbackOutcome:
        """Drive the flow from START to a terminal outcome.

        Never raises for flow failures; every failure comes back as
        Failed.  Cancellation propagates, after the store is erased.
        """
        state: FlowState = Start(query=query)
        store_opened = False
        outcome: CallbackOutcome = Failed(FailureKind.UNEXPECTED, UNEXPECTED_MESSAGE)
        try:
            while not isinstance(state, (Redirecting, Failed)):
                if observer is not None:
                    observer(processing_message(state))
                # Everything after PARSE reads the store
                store_opened = store_opened or not isinstance(state, Start)
                state = await self.advance(state)
            outcome = state
        except CallbackError as exc:
            logger.warning(
                "CALLBACK FLOW FAIL: %s  detail=%s", exc.kind.value, exc.detail
            )
            outcome = Failed(exc.kind, exc.message, exc.detail)
        except Exception:
            logger.exception("CALLBACK FLOW FAIL: unexpected error")
            outcome = Failed(FailureKind.UNEXPECTED, UNEXPECTED_MESSAGE)
        finally:
            if store_opened:
                try:
                    await erase_ephemeral_state(self._store)
                except Exception:
                    logger.exception("CALLBACK FLOW: could not erase ephemeral state")
                    outcome = Failed(FailureKind.UNEXPECTED, UNEXPECTED_MESSAGE)

        if isinstance(outcome, Redirecting):
            CALLBACK_OUTCOMES.labels(outcome="redirecting").inc()
        else:
            CALLBACK_OUTCOMES.labels(outcome=outcome.kind.value).inc()
            self.set_cookies = ()
        return outcome

    async def advance(self, state: InFlightState) -> FlowState:
        """Perform the single step that leaves `state`."""
        if isinstance(state, Start):
            return self._parse(state)
        if isinstance(state, Parsed):
            return await self._validate_state(state)
        if isinstance(state, StateValidated):
            return await self._load_verifier(state)
        if isinstance(state, VerifierLoaded):
            return await self._load_auth_server(state)
        if isinstance(state, AuthServerLoaded):
            return await self._exchange(state)
        if isinstance(state, Exchanged):
            return await self._cleanup(state)
        raise TypeError(f"not an in-flight state: {state!r}")

    # --- PARSE ----------------------------------------------------------------
    # FAIL POINT: code or state missing → nothing to validate, store untouched.
    def _parse(self, state: Start) -> Parsed:
        response = parse_authorization_response(state.query)
        logger.info("CALLBACK FLOW [parse] step 1: code and state present  ✓")
        return Parsed(response=response)

    # --- VALIDATE_STATE -------------------------------------------------------
    # FAIL POINT: no stored nonce → reload, other tab, or a forged callback.
    # FAIL POINT: nonce differs → CSRF.  Both end with the store erased.
    async def _validate_state(self, state: Parsed) -> StateValidated:
        stored_state = await self._store.take(STATE_KEY)
        if not stored_state:
            raise MissingStoredState("no stored state nonce")
        if not hmac.compare_digest(
            stored_state.encode("utf-8"), state.response.state.encode("utf-8")
        ):
            raise StateMismatch("state nonce did not match")
        logger.info("CALLBACK FLOW [validate_state] step 2: state nonce matches  ✓")
        return StateValidated(response=state.response)

    # --- LOAD_VERIFIER --------------------------------------------------------
    # FAIL POINT: verifier never stored, or consumed by an earlier attempt.
    async def _load_verifier(self, state: StateValidated) -> VerifierLoaded:
        code_verifier = await self._store.take(CODE_VERIFIER_KEY)
        if not code_verifier:
            raise MissingVerifier("no stored PKCE verifier")
        logger.info("CALLBACK FLOW [load_verifier] step 3: PKCE verifier loaded  ✓")
        return VerifierLoaded(response=state.response, code_verifier=code_verifier)

    # --- LOAD_AUTH_SERVER -----------------------------------------------------
    # FAIL POINT: auth-server URL absent.  The return URL is optional and is
    # taken here too, so nothing is left in the store during EXCHANGE.
    async def _load_auth_server(self, state: VerifierLoaded) -> AuthServerLoaded:
        auth_server_url = await self._store.take(AUTH_SERVER_URL_KEY)
        if not auth_server_url:
            raise MissingAuthServer("no stored authorization server URL")

        return_url = await self._store.take(RETURN_URL_KEY)
        if return_url and not is_local_path(return_url):
            logger.warning("Ignoring non-local return URL  return_url=%s", return_url)
            return_url = None

        logger.info(
            "CALLBACK FLOW [load_auth_server] step 4: auth server=%s "
            "return_url=%s  ✓",
            auth_server_url,
            return_url or "-",
        )
        return AuthServerLoaded(
            response=state.response,
            code_verifier=state.code_verifier,
            auth_server_url=auth_server_url,
            return_url=return_url or None,
        )

    # --- EXCHANGE -------------------------------------------------------------
    # FAIL POINT: non-2xx or transport error.  No retry: the code is
    # single-use, so the user has to start sign-in again.
    async def _exchange(self, state: AuthServerLoaded) -> Exchanged:
        request = ExchangeRequest(
            code=state.response.code,
            state=state.response.state,
            code_verifier=state.code_verifier,
            auth_url=state.auth_server_url,
        )
        result = await self._exchange_client.exchange(request, self._cookies)
        if isinstance(result, ExchangeFailure):
            raise ExchangeFailed(result.message)
        if not isinstance(result, ExchangeSuccess):
            raise TypeError(f"unexpected exchange result: {result!r}")

        self.set_cookies = result.set_cookies
        logger.info("CALLBACK FLOW [exchange] step 5: backend accepted the code  ✓")
        return Exchanged(result=result, return_url=state.return_url)

    # --- CLEANUP --------------------------------------------------------------
    async def _cleanup(self, state: Exchanged) -> Redirecting:
        await erase_ephemeral_state(self._store)
        redirect_hint = state.result.redirect_url
        if redirect_hint and not is_local_path(redirect_hint):
            logger.warning(
                "Ignoring non-local redirect hint from backend  redirect_url=%s",
                redirect_hint,
            )
            redirect_hint = None
        target = resolve_target(
            state.return_url, redirect_hint, self._default_landing_url
        )
        logger.info("CALLBACK FLOW [cleanup] step 6: redirecting to %s  ✓", target)
        return Redirecting(target=target)
