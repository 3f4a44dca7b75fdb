"""Session-scoped ephemeral store for in-flight sign-in state.

WRITE-ONCE, READ-ONCE
---------------------
The initiation step writes the state nonce, PKCE verifier, auth-server
URL and return URL right before sending the browser to the authorization
server.  The callback reads each value exactly once.  `take()` makes the
"read consumes" contract part of the interface: there is no way to read
a value and forget to delete it.

  take()   read and delete in one operation (atomic on Redis)
  clear()  erase every key for the session; safe to call repeatedly

SESSION SCOPING
---------------
A store is bound to one session id (the `oauth_session` cookie).  Two
browser sessions never see each other's values, so a callback landing
in a different session than the one that started sign-in finds nothing
and fails with "missing state".  That is the intended behavior.

BACKENDS
--------
  InMemoryEphemeralBackend: dict of dicts; tests and single-process dev.
  RedisEphemeralBackend:    one Redis hash per session with a TTL, so
                            abandoned flows expire on their own.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from oauth_callback.core.config import SETTINGS
from oauth_callback.db.redis import redis_pool


@runtime_checkable
class EphemeralStore(Protocol):
    async def get(self, key: str) -> str | None:
        """Peek at a value without consuming it."""
        ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def take(self, key: str) -> str | None:
        """Return the value and erase it.  None if absent."""
        ...

    async def clear(self) -> None:
        """Erase every key for this session.  Idempotent."""
        ...


class EphemeralBackend(Protocol):
    def for_session(self, session_id: str) -> EphemeralStore: ...


class InMemoryEphemeralStore:
    """One session's view of an InMemoryEphemeralBackend."""

    def __init__(self, backend: InMemoryEphemeralBackend, session_id: str) -> None:
        self._backend = backend
        self._session_id = session_id

    async def get(self, key: str) -> str | None:
        return self._backend._read(self._session_id).get(key)

    async def set(self, key: str, value: str) -> None:
        self._backend._write(self._session_id, key, value)

    async def delete(self, key: str) -> None:
        self._backend._pop(self._session_id, key)

    async def take(self, key: str) -> str | None:
        return self._backend._pop(self._session_id, key)

    async def clear(self) -> None:
        self._backend._drop(self._session_id)


class InMemoryEphemeralBackend:
    """Per-process session map for tests and single-process dev.

    Behaves like the Redis backend: a session exists only while it holds
    at least one key, and every write pushes its expiry out by the TTL.
    conftest.py clears `_sessions` between tests.
    """

    def __init__(
        self,
        ttl_seconds: int = 600,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._sessions: dict[str, dict[str, str]] = {}
        # session id -> expiry timestamp (Unix seconds)
        self._expires_at: dict[str, float] = {}

    def for_session(self, session_id: str) -> InMemoryEphemeralStore:
        return InMemoryEphemeralStore(self, session_id)

    def _read(self, session_id: str) -> dict[str, str]:
        self._purge_expired()
        return self._sessions.get(session_id, {})

    def _write(self, session_id: str, key: str, value: str) -> None:
        self._purge_expired()
        self._sessions.setdefault(session_id, {})[key] = value
        self._expires_at[session_id] = self._clock() + self._ttl

    def _pop(self, session_id: str, key: str) -> str | None:
        self._purge_expired()
        values = self._sessions.get(session_id)
        if values is None:
            return None
        value = values.pop(key, None)
        if not values:
            self._drop(session_id)
        return value

    def _drop(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._expires_at.pop(session_id, None)

    def _purge_expired(self) -> None:
        # Mimic Redis TTL behavior: abandoned flows disappear on their own
        now = self._clock()
        for session_id in [s for s, exp in self._expires_at.items() if exp <= now]:
            self._drop(session_id)


class RedisEphemeralStore:
    def __init__(self, redis_client, key: str, ttl_seconds: int) -> None:
        self._redis = redis_client
        self._key = key
        self._ttl = ttl_seconds

    async def get(self, key: str) -> str | None:
        return await self._redis.hget(self._key, key)

    async def set(self, key: str, value: str) -> None:
        # Every write pushes the expiry out; the whole hash dies together.
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._key, key, value)
            pipe.expire(self._key, self._ttl)
            await pipe.execute()

    async def delete(self, key: str) -> None:
        await self._redis.hdel(self._key, key)

    async def take(self, key: str) -> str | None:
        # MULTI/EXEC: two concurrent replays of the same callback cannot
        # both observe the value.
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hget(self._key, key)
            pipe.hdel(self._key, key)
            value, _ = await pipe.execute()
        return value

    async def clear(self) -> None:
        await self._redis.delete(self._key)


class RedisEphemeralBackend:
    _PREFIX = "oauth:ephemeral:"

    def __init__(self, redis_client, ttl_seconds: int) -> None:
        self._redis = redis_client
        self._ttl = ttl_seconds

    def for_session(self, session_id: str) -> RedisEphemeralStore:
        return RedisEphemeralStore(
            self._redis, f"{self._PREFIX}{session_id}", self._ttl
        )


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

if redis_pool is not None:
    ephemeral_backend: EphemeralBackend = RedisEphemeralBackend(
        redis_pool, SETTINGS.ephemeral_ttl_seconds
    )
else:
    ephemeral_backend = InMemoryEphemeralBackend(SETTINGS.ephemeral_ttl_seconds)
