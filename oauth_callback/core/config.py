from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]


def _getenv(name: str, default: str) -> str:
    return os.environ.get(name, default).strip()


def _getint(name: str, default: str, *, minimum: int = 0) -> int:
    raw = _getenv(name, default)
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum} (got {value})")
    return value


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    redis_url: str | None

    # Backend collaborator that trades code + verifier for a session cookie
    exchange_endpoint_url: str
    exchange_timeout_seconds: float

    # Where the user lands when neither the stored return URL nor the
    # backend suggests a destination
    default_landing_url: str
    # "Return to start" target on the error page; restarts initiation
    entry_url: str
    redirect_delay_ms: int

    ephemeral_ttl_seconds: int
    session_cookie_name: str

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    log_json_raw = _getenv("LOG_JSON", "false").lower()

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    port = _getint("PORT", "8000", minimum=1)

    exchange_endpoint_url = _getenv(
        "EXCHANGE_ENDPOINT_URL", "http://localhost:3443/api/auth/complete-oauth"
    )
    if not exchange_endpoint_url.startswith(("http://", "https://")):
        raise ValueError(
            "EXCHANGE_ENDPOINT_URL must be an http(s) URL "
            f"(got {exchange_endpoint_url!r})"
        )

    timeout_raw = _getenv("EXCHANGE_TIMEOUT_SECONDS", "10")
    try:
        exchange_timeout = float(timeout_raw)
    except ValueError:
        raise ValueError(
            f"EXCHANGE_TIMEOUT_SECONDS must be a number (got {timeout_raw!r})"
        ) from None
    if exchange_timeout <= 0:
        raise ValueError(
            f"EXCHANGE_TIMEOUT_SECONDS must be positive (got {exchange_timeout})"
        )

    session_cookie_name = _getenv("SESSION_COOKIE_NAME", "oauth_session")
    if not session_cookie_name:
        raise ValueError("SESSION_COOKIE_NAME must not be empty")

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=log_json_raw in ("1", "true", "yes"),
        port=port,
        redis_url=_getenv("REDIS_URL", "") or None,
        exchange_endpoint_url=exchange_endpoint_url,
        exchange_timeout_seconds=exchange_timeout,
        default_landing_url=_getenv("DEFAULT_LANDING_URL", "/") or "/",
        entry_url=_getenv("ENTRY_URL", "/") or "/",
        redirect_delay_ms=_getint("REDIRECT_DELAY_MS", "1500"),
        ephemeral_ttl_seconds=_getint("EPHEMERAL_TTL_SECONDS", "600", minimum=1),
        session_cookie_name=session_cookie_name,
    )


SETTINGS = load_settings()
