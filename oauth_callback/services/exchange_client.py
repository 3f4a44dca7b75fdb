"""Backend collaborator that trades the authorization code for a session.

The callback never talks to the authorization server itself.  It POSTs

    {"code": ..., "state": ..., "code_verifier": ..., "auth_url": ...}

to the backend's exchange endpoint.  The backend validates auth_url
against its allow-list, redeems the code, and answers with a Set-Cookie
carrying the session plus an optional {"redirect_url": ...}.

"Credentials included": the browser's cookies are forwarded on the
request, and the backend's Set-Cookie headers are handed back so the
callback response can relay them to the browser.

The client returns an ExchangeResult instead of raising.  There is no
retry: the authorization code is single-use, so a second attempt with
the same code can only fail.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Mapping
from typing import Protocol

import httpx
from pydantic import ValidationError

from oauth_callback.core.metrics import EXCHANGE_DURATION
from oauth_callback.models.callback import (
    ExchangeFailure,
    ExchangeRequest,
    ExchangeResponseBody,
    ExchangeResult,
    ExchangeSuccess,
)

logger = logging.getLogger(__name__)

NETWORK_ERROR_MESSAGE = (
    "Could not reach the sign-in service. Check your connection and try again."
)
MAX_DETAIL_CHARS = 500


class ExchangeClient(Protocol):
    async def exchange(
        self, request: ExchangeRequest, cookies: Mapping[str, str] | None = None
    ) -> ExchangeResult: ...


def failure_detail(status_code: int, body: str) -> str:
    """Human-readable detail for a non-2xx exchange response.

    JSON object bodies contribute their error_description, message or
    error field (first non-empty wins); anything else is used verbatim.
    """
    text = body.strip()
    try:
        parsed = json.loads(text) if text else None
    except ValueError:
        parsed = None

    if isinstance(parsed, dict):
        for field_name in ("error_description", "message", "error"):
            value = parsed.get(field_name)
            if isinstance(value, str) and value.strip():
                text = value.strip()
                break

    if not text:
        return f"Token exchange failed (HTTP {status_code})"
    if len(text) > MAX_DETAIL_CHARS:
        text = text[:MAX_DETAIL_CHARS] + "…"
    return text


def _redirect_hint(response: httpx.Response) -> str | None:
    if not response.content.strip():
        return None
    try:
        body = ExchangeResponseBody.model_validate_json(response.content)
    except ValidationError:
        # 2xx with a body we don't understand is still a success
        logger.warning(
            "Exchange succeeded but response body was not the expected JSON"
        )
        return None
    return body.redirect_url or None


class HttpExchangeClient:
    def __init__(
        self,
        endpoint_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoint_url = endpoint_url
        self._timeout = timeout
        self._transport = transport

    async def exchange(
        self, request: ExchangeRequest, cookies: Mapping[str, str] | None = None
    ) -> ExchangeResult:
        # NOTE: request carries the code and verifier; never log it.
        headers = {"Accept": "application/json"}
        if cookies:
            # Values arrive already encoded from the browser's Cookie header
            headers["Cookie"] = "; ".join(f"{k}={v}" for k, v in cookies.items())

        start = time.monotonic()
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    self._endpoint_url,
                    json=request.model_dump(),
                    headers=headers,
                )
        except httpx.HTTPError as exc:
            EXCHANGE_DURATION.labels(result="failure").observe(
                time.monotonic() - start
            )
            logger.warning(
                "Exchange request failed in transport  endpoint=%s error=%s",
                self._endpoint_url,
                type(exc).__name__,
            )
            return ExchangeFailure(message=NETWORK_ERROR_MESSAGE)

        duration = time.monotonic() - start
        if not response.is_success:
            EXCHANGE_DURATION.labels(result="failure").observe(duration)
            body = response.text
            logger.warning(
                "Exchange rejected by backend  status=%d", response.status_code
            )
            return ExchangeFailure(
                message=failure_detail(response.status_code, body),
                status_code=response.status_code,
                body=body,
            )

        EXCHANGE_DURATION.labels(result="success").observe(duration)
        return ExchangeSuccess(
            redirect_url=_redirect_hint(response),
            set_cookies=tuple(response.headers.get_list("set-cookie")),
        )
