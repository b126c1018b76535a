"""Object-store bucket emulator spooling bodies to a temporary directory."""

from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
import hashlib
import json
from pathlib import Path
import shutil
import tempfile
from typing import Any, Sequence
from uuid import uuid4

from flareharness.config.schema import KIND_OBJECT_STORE
from flareharness.core.logging import get_logger
from flareharness.services.base import ServiceEmulator


_MAX_KEY_BYTES = 1024
_MAX_LIST_LIMIT = 1000


@dataclass(slots=True)
class ObjectInfo:
    key: str
    size: int
    etag: str
    version: str
    uploaded: datetime
    http_metadata: dict[str, str] = field(default_factory=dict)
    custom_metadata: dict[str, str] = field(default_factory=dict)

    def copy(self) -> "ObjectInfo":
        return replace(self, http_metadata=dict(self.http_metadata), custom_metadata=dict(self.custom_metadata))

    @property
    def http_etag(self) -> str:
        return f'"{self.etag}"'

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "size": self.size,
            "etag": self.etag,
            "http_etag": self.http_etag,
            "version": self.version,
            "uploaded": self.uploaded.isoformat(timespec="milliseconds"),
            "http_metadata": dict(self.http_metadata),
            "custom_metadata": dict(self.custom_metadata),
        }


@dataclass(slots=True)
class StoredObject:
    info: ObjectInfo
    body: bytes

    @property
    def key(self) -> str:
        return self.info.key

    def bytes(self) -> bytes:
        return self.body

    def text(self, encoding: str = "utf-8") -> str:
        return self.body.decode(encoding)

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))


@dataclass(slots=True)
class ObjectListing:
    objects: list[ObjectInfo]
    truncated: bool
    cursor: str | None = None
    delimited_prefixes: list[str] = field(default_factory=list)


def _encode_cursor(key: str) -> str:
    return base64.urlsafe_b64encode(key.encode("utf-8")).decode("ascii")


def _decode_cursor(cursor: str) -> str:
    try:
        return base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
    except (ValueError, UnicodeError) as exc:
        raise ValueError(f"invalid list cursor '{cursor}'") from exc


class Emulator(ServiceEmulator):
    def __init__(self) -> None:
        super().__init__()
        self.logger = get_logger("flareharness.services.objectstore")
        self._root: Path | None = None
        self._index: dict[str, ObjectInfo] = {}

    @property
    def kind(self) -> str:
        return KIND_OBJECT_STORE

    @property
    def root(self) -> Path | None:
        return self._root

    def describe(self) -> dict[str, object]:
        payload = super().describe()
        payload["objects"] = len(self._index)
        return payload

    async def _start(self) -> None:
        self._root = Path(tempfile.mkdtemp(prefix=f"flareharness-{self.binding}-"))
        self._index = {}

    async def _stop(self) -> None:
        root = self._root
        self._root = None
        self._index.clear()
        if root is not None:
            await asyncio.to_thread(shutil.rmtree, root, True)

    def _body_path(self, key: str) -> Path:
        self._require_running()
        assert self._root is not None
        return self._root / hashlib.sha256(key.encode("utf-8")).hexdigest()

    async def put(
        self,
        key: str,
        value: str | bytes,
        *,
        http_metadata: dict[str, str] | None = None,
        custom_metadata: dict[str, str] | None = None,
    ) -> ObjectInfo:
        self._validate_key(key)
        if isinstance(value, str):
            data = value.encode("utf-8")
        elif isinstance(value, (bytes, bytearray, memoryview)):
            data = bytes(value)
        else:
            raise TypeError(f"object bodies must be str or bytes, got {type(value).__name__}")
        info = ObjectInfo(
            key=key,
            size=len(data),
            etag=hashlib.md5(data, usedforsecurity=False).hexdigest(),
            version=uuid4().hex,
            uploaded=datetime.now(UTC),
            http_metadata={str(name): str(item) for name, item in (http_metadata or {}).items()},
            custom_metadata={str(name): str(item) for name, item in (custom_metadata or {}).items()},
        )
        path = self._body_path(key)
        async with self._op_lock:
            await asyncio.to_thread(path.write_bytes, data)
            self._index[key] = info
        return info.copy()

    async def get(self, key: str) -> StoredObject | None:
        self._validate_key(key)
        path = self._body_path(key)
        async with self._op_lock:
            info = self._index.get(key)
            if info is None:
                return None
            data = await asyncio.to_thread(path.read_bytes)
        return StoredObject(info=info.copy(), body=data)

    async def head(self, key: str) -> ObjectInfo | None:
        self._validate_key(key)
        self._require_running()
        async with self._op_lock:
            info = self._index.get(key)
        return info.copy() if info is not None else None

    async def delete(self, keys: str | Sequence[str]) -> None:
        targets = [keys] if isinstance(keys, str) else list(keys)
        for key in targets:
            self._validate_key(key)
        async with self._op_lock:
            for key in targets:
                if self._index.pop(key, None) is None:
                    continue
                await asyncio.to_thread(self._body_path(key).unlink, True)

    async def list(
        self,
        *,
        prefix: str | None = None,
        limit: int = _MAX_LIST_LIMIT,
        cursor: str | None = None,
        delimiter: str | None = None,
    ) -> ObjectListing:
        if limit < 1 or limit > _MAX_LIST_LIMIT:
            raise ValueError(f"list limit must be between 1 and {_MAX_LIST_LIMIT}")
        self._require_running()
        prefix = prefix or ""
        after = _decode_cursor(cursor) if cursor else None
        async with self._op_lock:
            keys = sorted(key for key in self._index if key.startswith(prefix))
            if after is not None:
                keys = [key for key in keys if key > after]
            objects: list[ObjectInfo] = []
            prefixes: list[str] = []
            emitted = 0
            last_consumed: str | None = None
            truncated = False
            for key in keys:
                group: str | None = None
                if delimiter:
                    rest = key[len(prefix):]
                    position = rest.find(delimiter)
                    if position >= 0:
                        group = prefix + rest[: position + len(delimiter)]
                if group is not None and prefixes and prefixes[-1] == group:
                    last_consumed = key
                    continue
                if emitted >= limit:
                    truncated = True
                    break
                if group is not None:
                    prefixes.append(group)
                else:
                    objects.append(self._index[key].copy())
                emitted += 1
                last_consumed = key
        return ObjectListing(
            objects=objects,
            truncated=truncated,
            cursor=_encode_cursor(last_consumed) if truncated and last_consumed else None,
            delimited_prefixes=prefixes,
        )

    @staticmethod
    def _validate_key(key: str) -> None:
        if not isinstance(key, str) or not key:
            raise ValueError("object keys must be non-empty strings")
        if len(key.encode("utf-8")) > _MAX_KEY_BYTES:
            raise ValueError(f"object keys must be at most {_MAX_KEY_BYTES} bytes")
