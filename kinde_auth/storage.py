"""Transient key-value storage for OAuth state and tokens.

Backends are small async key/value adapters that may raise. `TransientStore`
wraps a backend, namespaces keys, stores every value as JSON text and
converts every failure into a `StoreResult` so callers never see exceptions
from the storage layer.

Entries belonging to one authorization attempt expire after
STATE_TTL_SECONDS; once expired a backend must behave as if the key had been
deleted.
"""

import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)

STATE_TTL_SECONDS = 600
DEFAULT_NAMESPACE = "kinde:"
DEFAULT_TABLE = "auth_storage"


class KeyValueBackend(Protocol):
    async def put(self, key: str, value: str, ttl_seconds: Optional[int]) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...


class MemoryBackend:
    """Process-local backend for development and tests.

    Expiry is checked lazily on read against an injectable monotonic clock.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[str, Optional[float]]] = {}

    async def put(self, key: str, value: str, ttl_seconds: Optional[int]) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        self._entries[key] = (value, expires_at)

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def keys(self) -> list[str]:
        """Live keys, for diagnostics and tests."""
        now = self._clock()
        return [k for k, (_, exp) in self._entries.items() if exp is None or now < exp]


class SupabaseBackend:
    """Backend storing entries in a Supabase (PostgREST) table.

    Expected schema::

        create table auth_storage (
            key text primary key,
            value text not null,
            expires_at timestamptz
        );

    The supabase-py client is synchronous, so calls run in the threadpool.
    """

    def __init__(
        self,
        client,
        table: str = DEFAULT_TABLE,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.client = client
        self.table = table
        self._now = now

    async def put(self, key: str, value: str, ttl_seconds: Optional[int]) -> None:
        expires_at = None
        if ttl_seconds is not None:
            expires_at = (self._now() + timedelta(seconds=ttl_seconds)).isoformat()
        row = {"key": key, "value": value, "expires_at": expires_at}
        await run_in_threadpool(
            lambda: self.client.table(self.table).upsert(row).execute()
        )

    async def get(self, key: str) -> Optional[str]:
        response = await run_in_threadpool(
            lambda: self.client.table(self.table)
            .select("value, expires_at")
            .eq("key", key)
            .limit(1)
            .execute()
        )
        if not response.data:
            return None
        row = response.data[0]
        expires_at = row.get("expires_at")
        if expires_at and _parse_timestamp(expires_at) <= self._now():
            await self.delete(key)
            return None
        return row["value"]

    async def delete(self, key: str) -> None:
        await run_in_threadpool(
            lambda: self.client.table(self.table).delete().eq("key", key).execute()
        )


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class StoreStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass(frozen=True)
class StoreResult:
    """Outcome of a store operation.

    `value` is only meaningful when `status` is OK for a read.
    """

    status: StoreStatus
    value: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is StoreStatus.OK

    @property
    def failed(self) -> bool:
        return self.status is StoreStatus.FAILED

    @property
    def found(self) -> bool:
        return self.status is StoreStatus.OK and self.value is not None


def _encode(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def _decode(text: str) -> Any:
    # Rows written by other tools may hold bare text
    try:
        return json.loads(text)
    except ValueError:
        return text


class TransientStore:
    """Namespaced, failure-tolerant view over a key-value backend."""

    def __init__(self, backend: KeyValueBackend, namespace: str = DEFAULT_NAMESPACE):
        self.backend = backend
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    async def put(
        self, key: str, value: Any, ttl_seconds: Optional[int] = STATE_TTL_SECONDS
    ) -> StoreResult:
        try:
            await self.backend.put(self._key(key), _encode(value), ttl_seconds)
        except Exception as e:
            logger.error(f"[STORAGE] put failed for {key.split(':')[0]}: {e}")
            return StoreResult(StoreStatus.FAILED, error=str(e))
        logger.debug(f"[STORAGE] stored {key}")
        return StoreResult(StoreStatus.OK)

    async def get(self, key: str) -> StoreResult:
        try:
            text = await self.backend.get(self._key(key))
        except Exception as e:
            logger.error(f"[STORAGE] get failed for {key.split(':')[0]}: {e}")
            return StoreResult(StoreStatus.FAILED, error=str(e))
        if text is None:
            return StoreResult(StoreStatus.NOT_FOUND)
        return StoreResult(StoreStatus.OK, value=_decode(text))

    async def delete(self, key: str) -> StoreResult:
        try:
            await self.backend.delete(self._key(key))
        except Exception as e:
            logger.error(f"[STORAGE] delete failed for {key.split(':')[0]}: {e}")
            return StoreResult(StoreStatus.FAILED, error=str(e))
        return StoreResult(StoreStatus.OK)


def create_storage(
    backend_name: Optional[str] = None,
    supabase_client=None,
    namespace: str = DEFAULT_NAMESPACE,
) -> Optional[TransientStore]:
    """Build the store selected by AUTH_STORAGE_BACKEND.

    Returns None when no backend is available; callers treat that as the
    "storage unavailable" state rather than an error.
    """
    backend_name = (backend_name or os.getenv("AUTH_STORAGE_BACKEND", "memory")).lower()

    if backend_name == "memory":
        logger.info("[STARTUP] Using in-memory auth storage (single instance only)")
        return TransientStore(MemoryBackend(), namespace=namespace)

    if backend_name == "supabase":
        if not supabase_client:
            logger.error("[STARTUP] Supabase auth storage selected but no client configured")
            return None
        table = os.getenv("AUTH_STORAGE_TABLE", DEFAULT_TABLE)
        logger.info(f"[STARTUP] Using Supabase auth storage table: {table}")
        return TransientStore(SupabaseBackend(supabase_client, table), namespace=namespace)

    if backend_name != "none":
        logger.error(f"[STARTUP] Unknown auth storage backend: {backend_name}")
    return None
