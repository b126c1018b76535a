import asyncio
from typing import Any

import pytest

from flareharness.core.handler import (
    ExecutionContext,
    HandlerRequest,
    HandlerResponse,
    coerce_response,
    invoke_handler,
)


def test_request_normalizes_fields() -> None:
    request = HandlerRequest(
        method="post",
        url="http://localhost:8787/cms/articles?slug=hello&draft=",
        headers={"Content-Type": "application/json"},
        body='{"title": "Hello"}',
    )
    assert request.method == "POST"
    assert request.path == "/cms/articles"
    assert request.query == {"slug": "hello", "draft": ""}
    assert request.header("content-type") == "application/json"
    assert request.json() == {"title": "Hello"}
    assert isinstance(request.body, bytes)


def test_request_from_json_sets_content_type() -> None:
    request = HandlerRequest.from_json("PUT", "http://localhost/kv", {"key": "a"})
    assert request.header("Content-Type", "").startswith("application/json")
    assert request.json() == {"key": "a"}


def test_json_response_round_trip() -> None:
    response = HandlerResponse.json_response({"ok": True}, status=201)
    assert response.status == 201
    assert response.ok is True
    assert response.headers["content-type"].startswith("application/json")
    assert response.json() == {"ok": True}


def test_coerce_response_accepts_common_shapes() -> None:
    assert coerce_response({"a": 1}).json() == {"a": 1}
    assert coerce_response("plain").text() == "plain"
    assert coerce_response(b"raw").body == b"raw"
    with pytest.raises(TypeError, match="unsupported response type"):
        coerce_response(None)


def test_invoke_handler_passes_bindings_and_context() -> None:
    seen: dict[str, Any] = {}

    def handler(request: HandlerRequest, env: dict[str, Any], ctx: ExecutionContext) -> HandlerResponse:
        seen["env"] = env
        seen["ctx"] = ctx
        return HandlerResponse.text_response(f"{request.method} {request.path}")

    bindings = {"TEST_KV": object()}
    ctx = ExecutionContext()
    response = asyncio.run(invoke_handler(handler, HandlerRequest(url="http://localhost/ping"), bindings, ctx))
    assert response.text() == "GET /ping"
    assert seen["env"] is bindings
    assert seen["ctx"] is ctx


def test_invoke_handler_awaits_async_handlers() -> None:
    async def handler(request: HandlerRequest, env: dict[str, Any], ctx: ExecutionContext) -> dict[str, Any]:
        await asyncio.sleep(0)
        return {"bindings": sorted(env)}

    response = asyncio.run(invoke_handler(handler, HandlerRequest(), {"B": 1, "A": 2}))
    assert response.json() == {"bindings": ["A", "B"]}


def test_invoke_handler_propagates_handler_errors() -> None:
    def handler(request: HandlerRequest, env: dict[str, Any], ctx: ExecutionContext) -> HandlerResponse:
        raise RuntimeError("handler exploded")

    with pytest.raises(RuntimeError, match="handler exploded"):
        asyncio.run(invoke_handler(handler, HandlerRequest(), {}))


def test_execution_context_settles_background_work() -> None:
    state: list[str] = []

    async def scenario() -> list[BaseException]:
        ctx = ExecutionContext()

        async def audit() -> None:
            await asyncio.sleep(0.01)
            state.append("audited")

        async def broken() -> None:
            raise ValueError("audit sink down")

        ctx.wait_until(audit())
        ctx.wait_until(broken())
        ctx.pass_through_on_exception()
        assert ctx.passed_through is True
        failures = await ctx.settle()
        assert ctx.pending == 0
        return failures

    failures = asyncio.run(scenario())
    assert state == ["audited"]
    assert len(failures) == 1
    assert isinstance(failures[0], ValueError)
