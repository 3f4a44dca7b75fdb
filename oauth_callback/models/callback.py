from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum

from pydantic import BaseModel

# Ephemeral store keys.  Written by the sign-in initiation step before it
# redirects to the authorization server; consumed exactly once here.
STATE_KEY = "oauth_state"
CODE_VERIFIER_KEY = "oauth_code_verifier"
AUTH_SERVER_URL_KEY = "oauth_auth_server_url"
RETURN_URL_KEY = "oauth_return_url"


class FailureKind(StrEnum):
    MISSING_PARAMETERS = "missing_parameters"
    MISSING_STORED_STATE = "missing_stored_state"
    STATE_MISMATCH = "state_mismatch"
    MISSING_VERIFIER = "missing_verifier"
    MISSING_AUTH_SERVER = "missing_auth_server"
    EXCHANGE_FAILED = "exchange_failed"
    UNEXPECTED = "unexpected_exception"


@dataclass(frozen=True, slots=True)
class AuthorizationResponse:
    """The `code` and `state` the authorization server put on the redirect."""

    code: str
    state: str


# ---------------------------------------------------------------------------
# Backend exchange contract
# ---------------------------------------------------------------------------


class ExchangeRequest(BaseModel):
    code: str
    state: str
    code_verifier: str
    auth_url: str


class ExchangeResponseBody(BaseModel):
    """Success body from the backend.  Every field is optional."""

    success: bool | None = None
    redirect_url: str | None = None


@dataclass(frozen=True, slots=True)
class ExchangeSuccess:
    redirect_url: str | None = None
    # Raw Set-Cookie header values, relayed to the browser as-is
    set_cookies: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ExchangeFailure:
    message: str
    status_code: int | None = None
    body: str | None = None


ExchangeResult = ExchangeSuccess | ExchangeFailure


# ---------------------------------------------------------------------------
# Flow states
#
# START → PARSE → VALIDATE_STATE → LOAD_VERIFIER → LOAD_AUTH_SERVER
#       → EXCHANGE → CLEANUP → Redirecting
# any step → Failed
#
# Each in-flight state carries exactly what the next step needs.  Values
# read from the ephemeral store live only on these objects; the store no
# longer holds them once the state exists.
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Start:
    query: Mapping[str, str]


@dataclass(frozen=True, slots=True)
class Parsed:
    response: AuthorizationResponse


@dataclass(frozen=True, slots=True)
class StateValidated:
    response: AuthorizationResponse


@dataclass(frozen=True, slots=True)
class VerifierLoaded:
    response: AuthorizationResponse
    code_verifier: str = field(repr=False)


@dataclass(frozen=True, slots=True)
class AuthServerLoaded:
    response: AuthorizationResponse
    code_verifier: str = field(repr=False)
    auth_server_url: str
    return_url: str | None


@dataclass(frozen=True, slots=True)
class Exchanged:
    result: ExchangeSuccess
    return_url: str | None


# ---------------------------------------------------------------------------
# Outcomes (what the page renders)
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Processing:
    message: str


@dataclass(frozen=True, slots=True)
class Redirecting:
    target: str


@dataclass(frozen=True, slots=True)
class Failed:
    kind: FailureKind
    message: str
    detail: str | None = None


CallbackOutcome = Processing | Redirecting | Failed

InFlightState = (
    Start | Parsed | StateValidated | VerifierLoaded | AuthServerLoaded | Exchanged
)
FlowState = InFlightState | Redirecting | Failed
