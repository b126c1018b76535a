"""Request/response shapes and glue for invoking foreign HTTP handlers."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import inspect
import json
from typing import Any, Awaitable, Callable, Mapping
from urllib.parse import parse_qsl, urlsplit

from flareharness.core.logging import get_logger


JSON_CONTENT_TYPE = "application/json; charset=utf-8"
TEXT_CONTENT_TYPE = "text/plain; charset=utf-8"

logger = get_logger("flareharness.handler")


def _normalize_headers(headers: Mapping[str, str] | None) -> dict[str, str]:
    return {str(name).lower(): str(value) for name, value in (headers or {}).items()}


def _encode_body(body: str | bytes | None) -> bytes:
    if body is None:
        return b""
    if isinstance(body, str):
        return body.encode("utf-8")
    return bytes(body)


@dataclass(slots=True)
class HandlerRequest:
    method: str = "GET"
    url: str = "http://localhost/"
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        self.headers = _normalize_headers(self.headers)
        self.body = _encode_body(self.body)

    @classmethod
    def from_json(
        cls,
        method: str,
        url: str,
        payload: Any,
        headers: Mapping[str, str] | None = None,
    ) -> "HandlerRequest":
        merged = {"content-type": JSON_CONTENT_TYPE}
        merged.update(_normalize_headers(headers))
        return cls(method=method, url=url, headers=merged, body=json.dumps(payload).encode("utf-8"))

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or "/"

    @property
    def query(self) -> dict[str, str]:
        return dict(parse_qsl(urlsplit(self.url).query, keep_blank_values=True))

    def header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name.lower(), default)

    def text(self) -> str:
        return self.body.decode("utf-8")

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))


@dataclass(slots=True)
class HandlerResponse:
    status: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def __post_init__(self) -> None:
        self.headers = _normalize_headers(self.headers)
        self.body = _encode_body(self.body)

    @classmethod
    def json_response(
        cls,
        payload: Any,
        status: int = 200,
        headers: Mapping[str, str] | None = None,
    ) -> "HandlerResponse":
        merged = {"content-type": JSON_CONTENT_TYPE}
        merged.update(_normalize_headers(headers))
        return cls(status=status, headers=merged, body=json.dumps(payload, default=str).encode("utf-8"))

    @classmethod
    def text_response(cls, text: str, status: int = 200) -> "HandlerResponse":
        return cls(status=status, headers={"content-type": TEXT_CONTENT_TYPE}, body=text.encode("utf-8"))

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self) -> str:
        return self.body.decode("utf-8")

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))


class ExecutionContext:
    """Per-request context handed to handlers as their third argument."""

    def __init__(self) -> None:
        self.passed_through = False
        self._pending: list[asyncio.Future[Any]] = []

    @property
    def pending(self) -> int:
        return sum(1 for task in self._pending if not task.done())

    def wait_until(self, awaitable: Awaitable[Any]) -> asyncio.Future[Any]:
        task = asyncio.ensure_future(awaitable)
        self._pending.append(task)
        return task

    def pass_through_on_exception(self) -> None:
        self.passed_through = True

    async def settle(self) -> list[BaseException]:
        """Await everything registered through ``wait_until`` and return the failures."""
        tasks, self._pending = self._pending, []
        if not tasks:
            return []
        results = await asyncio.gather(*tasks, return_exceptions=True)
        failures = [result for result in results if isinstance(result, BaseException)]
        for failure in failures:
            logger.warning(
                f"background task failed: {failure}",
                extra={"component": "handler", "error_type": type(failure).__name__},
            )
        return failures


Handler = Callable[[HandlerRequest, Mapping[str, Any], ExecutionContext], Any]


def coerce_response(result: Any) -> HandlerResponse:
    if isinstance(result, HandlerResponse):
        return result
    if isinstance(result, (dict, list)):
        return HandlerResponse.json_response(result)
    if isinstance(result, str):
        return HandlerResponse.text_response(result)
    if isinstance(result, (bytes, bytearray)):
        return HandlerResponse(body=bytes(result))
    raise TypeError(f"handler returned unsupported response type {type(result).__name__}")


async def invoke_handler(
    handler: Handler,
    request: HandlerRequest,
    bindings: Mapping[str, Any],
    ctx: ExecutionContext | None = None,
) -> HandlerResponse:
    context = ctx if ctx is not None else ExecutionContext()
    result = handler(request, bindings, context)
    if inspect.isawaitable(result):
        result = await result
    return coerce_response(result)
