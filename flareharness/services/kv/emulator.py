"""Key-value namespace emulator with memory and Redis backends."""

from __future__ import annotations

import base64
import copy
from dataclasses import dataclass
import json
import math
import time
from typing import Any
from uuid import uuid4

from flareharness.config.schema import KIND_KV
from flareharness.core.logging import get_logger
from flareharness.services.base import ServiceEmulator


VALID_VALUE_TYPES = {"text", "json", "bytes"}
_MAX_KEY_BYTES = 512
_MAX_LIST_LIMIT = 1000
_GLOB_SPECIALS = "\\*?[]"


@dataclass(slots=True)
class KVEntry:
    value: bytes
    metadata: Any = None
    expiration: float | None = None

    def expired(self, now: float) -> bool:
        return self.expiration is not None and self.expiration <= now


class _MemoryStore:
    backend = "memory"

    def __init__(self) -> None:
        self._entries: dict[str, KVEntry] = {}

    async def open(self) -> None:
        return

    async def close(self) -> None:
        self._entries.clear()

    async def read(self, key: str) -> KVEntry | None:
        entry = self._entries.get(key)
        if entry is not None and entry.expired(time.time()):
            self._entries.pop(key, None)
            return None
        return entry

    async def write(self, key: str, entry: KVEntry) -> None:
        self._entries[key] = entry

    async def remove(self, key: str) -> None:
        self._entries.pop(key, None)

    async def scan(self, prefix: str) -> list[tuple[str, KVEntry]]:
        now = time.time()
        for name in [name for name, entry in self._entries.items() if entry.expired(now)]:
            self._entries.pop(name, None)
        return sorted(
            ((name, entry) for name, entry in self._entries.items() if name.startswith(prefix)),
            key=lambda item: item[0],
        )


class _RedisStore:
    backend = "redis"

    def __init__(self, *, url: str, namespace: str, connect_timeout_seconds: float) -> None:
        self._url = url
        self._namespace = namespace
        self._connect_timeout_seconds = connect_timeout_seconds
        self._client: Any | None = None

    async def open(self) -> None:
        try:
            import redis.asyncio as redis_asyncio  # type: ignore[import-not-found]
        except ImportError as exc:
            raise RuntimeError(
                "kv redis backend requires the redis client. Install with: pip install 'flareharness[redis]'"
            ) from exc
        client = redis_asyncio.Redis.from_url(
            self._url,
            socket_connect_timeout=self._connect_timeout_seconds,
            socket_timeout=self._connect_timeout_seconds,
        )
        await client.ping()
        self._client = client

    async def close(self) -> None:
        client = self._client
        if client is None:
            return
        self._client = None
        try:
            stale = [key async for key in client.scan_iter(match=f"{_glob_escape(self._namespace)}:*")]
            if stale:
                await client.delete(*stale)
        finally:
            await client.aclose()

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    def _connected(self) -> Any:
        if self._client is None:
            raise RuntimeError("redis kv store is not connected")
        return self._client

    async def read(self, key: str) -> KVEntry | None:
        raw = await self._connected().hgetall(self._key(key))
        if not raw or b"value" not in raw:
            return None
        metadata = json.loads(raw[b"metadata"]) if b"metadata" in raw else None
        expiration = float(raw[b"expiration"]) if b"expiration" in raw else None
        entry = KVEntry(value=bytes(raw[b"value"]), metadata=metadata, expiration=expiration)
        if entry.expired(time.time()):
            return None
        return entry

    async def write(self, key: str, entry: KVEntry) -> None:
        full_key = self._key(key)
        mapping: dict[str, Any] = {"value": entry.value}
        if entry.metadata is not None:
            mapping["metadata"] = json.dumps(entry.metadata, separators=(",", ":"))
        if entry.expiration is not None:
            mapping["expiration"] = repr(entry.expiration)
        pipe = self._connected().pipeline(transaction=True)
        pipe.delete(full_key)
        pipe.hset(full_key, mapping=mapping)
        if entry.expiration is not None:
            pipe.expireat(full_key, int(math.ceil(entry.expiration)))
        await pipe.execute()

    async def remove(self, key: str) -> None:
        await self._connected().delete(self._key(key))

    async def scan(self, prefix: str) -> list[tuple[str, KVEntry]]:
        client = self._connected()
        namespace_prefix = f"{self._namespace}:"
        names: list[str] = []
        async for raw_key in client.scan_iter(match=f"{_glob_escape(namespace_prefix + prefix)}*"):
            full_key = raw_key.decode("utf-8") if isinstance(raw_key, bytes) else str(raw_key)
            names.append(full_key[len(namespace_prefix):])
        items: list[tuple[str, KVEntry]] = []
        for name in sorted(set(names)):
            entry = await self.read(name)
            if entry is not None:
                items.append((name, entry))
        return items


def _glob_escape(value: str) -> str:
    return "".join(f"\\{char}" if char in _GLOB_SPECIALS else char for char in value)


def _encode_cursor(name: str) -> str:
    return base64.urlsafe_b64encode(name.encode("utf-8")).decode("ascii")


def _decode_cursor(cursor: str) -> str:
    try:
        return base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
    except (ValueError, UnicodeError) as exc:
        raise ValueError(f"invalid list cursor '{cursor}'") from exc


def _decode_value(value: bytes, value_type: str) -> Any:
    if value_type == "text":
        return value.decode("utf-8")
    if value_type == "json":
        return json.loads(value.decode("utf-8"))
    return value


class Emulator(ServiceEmulator):
    def __init__(self) -> None:
        super().__init__()
        self.logger = get_logger("flareharness.services.kv")
        self._store: _MemoryStore | _RedisStore | None = None

    @property
    def kind(self) -> str:
        return KIND_KV

    @property
    def backend(self) -> str:
        return self._store.backend if self._store else str(self.options.get("backend", "memory"))

    def describe(self) -> dict[str, object]:
        payload = super().describe()
        payload["backend"] = self.backend
        return payload

    async def _start(self) -> None:
        backend = str(self.options.get("backend", "memory")).lower()
        store: _MemoryStore | _RedisStore
        if backend == "memory":
            store = _MemoryStore()
        elif backend == "redis":
            prefix = str(self.options.get("key_prefix", "flareharness"))
            store = _RedisStore(
                url=str(self.options.get("redis_url", "redis://localhost:6379/15")),
                namespace=f"{prefix}:{self.binding}:{uuid4().hex[:12]}",
                connect_timeout_seconds=float(self.options.get("connect_timeout_seconds", 1.0)),
            )
        else:
            raise ValueError(f"invalid kv backend '{backend}'")
        await store.open()
        self._store = store

    async def _stop(self) -> None:
        store = self._store
        self._store = None
        if store is not None:
            await store.close()

    def _connected_store(self) -> _MemoryStore | _RedisStore:
        self._require_running()
        assert self._store is not None
        return self._store

    async def get(self, key: str, type: str = "text") -> Any:
        if type not in VALID_VALUE_TYPES:
            raise ValueError(f"invalid kv value type '{type}'")
        self._validate_key(key)
        async with self._op_lock:
            entry = await self._connected_store().read(key)
        if entry is None:
            return None
        return _decode_value(entry.value, type)

    async def get_with_metadata(self, key: str, type: str = "text") -> dict[str, Any]:
        if type not in VALID_VALUE_TYPES:
            raise ValueError(f"invalid kv value type '{type}'")
        self._validate_key(key)
        async with self._op_lock:
            entry = await self._connected_store().read(key)
        if entry is None:
            return {"value": None, "metadata": None}
        return {"value": _decode_value(entry.value, type), "metadata": copy.deepcopy(entry.metadata)}

    async def put(
        self,
        key: str,
        value: str | bytes,
        *,
        expiration: float | None = None,
        expiration_ttl: float | None = None,
        metadata: Any = None,
    ) -> None:
        self._validate_key(key)
        if isinstance(value, str):
            encoded = value.encode("utf-8")
        elif isinstance(value, (bytes, bytearray, memoryview)):
            encoded = bytes(value)
        else:
            raise TypeError(f"kv values must be str or bytes, got {type(value).__name__}")
        now = time.time()
        expires_at: float | None = None
        if expiration_ttl is not None:
            if float(expiration_ttl) <= 0:
                raise ValueError("expiration_ttl must be greater than zero")
            expires_at = now + float(expiration_ttl)
        elif expiration is not None:
            expires_at = float(expiration)
            if expires_at <= now:
                raise ValueError("expiration must be in the future")
        snapshot = json.loads(json.dumps(metadata)) if metadata is not None else None
        async with self._op_lock:
            await self._connected_store().write(
                key,
                KVEntry(value=encoded, metadata=snapshot, expiration=expires_at),
            )

    async def delete(self, key: str) -> None:
        self._validate_key(key)
        async with self._op_lock:
            await self._connected_store().remove(key)

    async def list(
        self,
        *,
        prefix: str = "",
        limit: int = _MAX_LIST_LIMIT,
        cursor: str | None = None,
    ) -> dict[str, Any]:
        if limit < 1 or limit > _MAX_LIST_LIMIT:
            raise ValueError(f"list limit must be between 1 and {_MAX_LIST_LIMIT}")
        after = _decode_cursor(cursor) if cursor else None
        async with self._op_lock:
            entries = await self._connected_store().scan(prefix)
        if after is not None:
            entries = [item for item in entries if item[0] > after]
        page = entries[:limit]
        complete = len(entries) <= limit
        keys: list[dict[str, Any]] = []
        for name, entry in page:
            item: dict[str, Any] = {"name": name}
            if entry.expiration is not None:
                item["expiration"] = int(entry.expiration)
            if entry.metadata is not None:
                item["metadata"] = copy.deepcopy(entry.metadata)
            keys.append(item)
        return {
            "keys": keys,
            "list_complete": complete,
            "cursor": None if complete or not page else _encode_cursor(page[-1][0]),
        }

    @staticmethod
    def _validate_key(key: str) -> None:
        if not isinstance(key, str) or not key:
            raise ValueError("kv keys must be non-empty strings")
        if len(key.encode("utf-8")) > _MAX_KEY_BYTES:
            raise ValueError(f"kv keys must be at most {_MAX_KEY_BYTES} bytes")
