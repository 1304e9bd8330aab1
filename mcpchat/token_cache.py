"""
mcpchat - Token cache.

Thin async accessor over a string key/value store holding persisted OAuth
token sets (``<serverId>``) and short-lived PKCE verifiers
(``<serverId>:codeVerifier``). The store itself is an external service;
failures from it propagate unchanged.
"""

import logging
import time
from typing import Optional, Protocol

from .exceptions import StoreNotInitializedError

logger = logging.getLogger("mcpchat.token_cache")

CODE_VERIFIER_SUFFIX = ":codeVerifier"
CODE_VERIFIER_TTL_SECONDS = 300


class KeyValueStore(Protocol):
    """Interface of the external key/value service."""

    async def get(self, key: str) -> Optional[str]: ...

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryKeyValueStore:
    """Process-local key/value store with per-key expiry.

    Suitable for development and tests; values vanish with the process.
    """

    def __init__(self) -> None:
        self._data: dict[str, tuple[str, Optional[float]]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._data[key]
            return None
        return value

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


class TokenCache:
    """Key/value accessor used by the OAuth provider.

    Raises StoreNotInitializedError on every call while no store is attached,
    so callers can tell "no data" apart from "not configured".
    """

    def __init__(self, store: Optional[KeyValueStore] = None) -> None:
        self._store = store

    @property
    def initialized(self) -> bool:
        return self._store is not None

    def init(self, store: KeyValueStore) -> None:
        """Attach the backing store."""
        self._store = store

    def _require_store(self) -> KeyValueStore:
        if self._store is None:
            raise StoreNotInitializedError("Token cache store not initialized")
        return self._store

    async def get(self, key: str) -> Optional[str]:
        return await self._require_store().get(key)

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await self._require_store().put(key, value, ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._require_store().delete(key)


def code_verifier_key(server_id: str) -> str:
    return f"{server_id}{CODE_VERIFIER_SUFFIX}"
