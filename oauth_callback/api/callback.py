"""OAuth callback page, where the authorization server sends the browser.

GET /oauth/callback?code=...&state=...

Runs the CallbackProcessor once and renders its terminal outcome:

  Redirecting → short "signed in" confirmation that navigates to the
                target after REDIRECT_DELAY_MS (or a plain 302 when 0).
                The backend's Set-Cookie headers are relayed so the
                browser ends up holding the session.
  Failed      → the error message and a single "Return to start" link
                to ENTRY_URL.  No retry: the code in this URL is
                single-use and already stale.

Inline HTML, same as the auth server's login page; every interpolated
value goes through html.escape.
"""

from __future__ import annotations

import html
import logging
from typing import Annotated
from urllib.parse import quote

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response

from oauth_callback.api.dependencies import get_ephemeral_store, get_exchange_client
from oauth_callback.core.config import SETTINGS
from oauth_callback.models.callback import (
    CallbackOutcome,
    Failed,
    FailureKind,
    Processing,
    Redirecting,
)
from oauth_callback.services.callback_processor import CallbackProcessor
from oauth_callback.services.ephemeral_store import EphemeralStore
from oauth_callback.services.exchange_client import ExchangeClient

logger = logging.getLogger(__name__)

router = APIRouter(tags=["oauth"])

_STATUS_BY_KIND = {
    FailureKind.EXCHANGE_FAILED: 502,
    FailureKind.UNEXPECTED: 500,
}

_PAGE_HTML = """\
<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  {head_extra}
  <title>{title}</title>
  <style>
    * {{ margin: 0; padding: 0; box-sizing: border-box; }}
    body {{
      font-family: system-ui, -apple-system, sans-serif;
      display: flex; justify-content: center; align-items: center;
      min-height: 100vh; background: #f5f5f5;
    }}
    .card {{
      background: #fff; padding: 2rem; border-radius: 8px;
      box-shadow: 0 2px 8px rgba(0,0,0,.1); width: 360px; text-align: center;
    }}
    h1 {{ font-size: 1.25rem; margin-bottom: 1rem; }}
    p {{ font-size: .95rem; margin-bottom: 1rem; }}
    .error {{ color: #c00; }}
    a.button {{
      display: inline-block; padding: .6rem 1.2rem; background: #111;
      color: #fff; border-radius: 4px; text-decoration: none;
    }}
  </style>
</head>
<body>
  <div class="card">
    {body}
  </div>
</body>
</html>
"""


def render_success(target: str, delay_ms: int) -> HTMLResponse:
    safe_target = html.escape(target, quote=True)
    # The refresh URL sits inside single quotes; quotes and semicolons in
    # it are percent-encoded so every browser splits content= the same way.
    refresh_target = html.escape(
        quote(target, safe="/?&=#%:@!$()*+,._~-"), quote=True
    )
    seconds = max(delay_ms, 0) / 1000
    page = _PAGE_HTML.format(
        title="Signed in",
        head_extra=(
            "<meta http-equiv=\"refresh\" "
            f"content=\"{seconds:g};url='{refresh_target}'\">"
        ),
        body=(
            "<h1>Authentication successful</h1>"
            "<p>Redirecting…</p>"
            f'<p><a href="{safe_target}">Continue</a></p>'
        ),
    )
    return HTMLResponse(page)


def render_failure(outcome: Failed, entry_url: str) -> HTMLResponse:
    page = _PAGE_HTML.format(
        title="Sign-in failed",
        head_extra="",
        body=(
            "<h1>Authentication failed</h1>"
            f'<p class="error">{html.escape(outcome.message)}</p>'
            f'<a class="button" href="{html.escape(entry_url, quote=True)}">'
            "Return to start</a>"
        ),
    )
    return HTMLResponse(page, status_code=_STATUS_BY_KIND.get(outcome.kind, 400))


def render_outcome(
    outcome: CallbackOutcome, *, delay_ms: int, entry_url: str
) -> Response:
    if isinstance(outcome, Redirecting):
        if delay_ms <= 0:
            return RedirectResponse(url=outcome.target, status_code=302)
        return render_success(outcome.target, delay_ms)
    if isinstance(outcome, Failed):
        return render_failure(outcome, entry_url)
    raise TypeError(f"not a terminal outcome: {outcome!r}")


# ========================== GET /oauth/callback =============================


@router.get("/oauth/callback", response_model=None)
async def oauth_callback(
    request: Request,
    store: Annotated[EphemeralStore, Depends(get_ephemeral_store)],
    exchange_client: Annotated[ExchangeClient, Depends(get_exchange_client)],
) -> Response:
    processor = CallbackProcessor(
        store,
        exchange_client,
        default_landing_url=SETTINGS.default_landing_url,
        cookies=request.cookies,
    )

    def _log_progress(progress: Processing) -> None:
        logger.debug("Callback progress: %s", progress.message)

    # Only code/state matter; other query parameters are ignored.
    query = {
        name: request.query_params[name]
        for name in ("code", "state")
        if name in request.query_params
    }
    outcome = await processor.run(query, observer=_log_progress)

    response = render_outcome(
        outcome, delay_ms=SETTINGS.redirect_delay_ms, entry_url=SETTINGS.entry_url
    )
    for raw_cookie in processor.set_cookies:
        response.headers.append("set-cookie", raw_cookie)
    # The ephemeral namespace is spent either way
    response.delete_cookie(SETTINGS.session_cookie_name, path="/")

    label = outcome.kind.value if isinstance(outcome, Failed) else "redirecting"
    logger.info(
        "OAuth callback finished  outcome=%s",
        label,
        extra={"callback_outcome": label},
    )
    return response
