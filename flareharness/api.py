"""FastAPI front for serving a foreign request handler over HTTP."""

from __future__ import annotations

from typing import Any, Mapping

try:
    from fastapi import FastAPI, Request, Response
    from fastapi.responses import JSONResponse
    from starlette.background import BackgroundTask
except Exception:  # pragma: no cover - optional dependency
    FastAPI = None  # type: ignore[assignment]
    Request = Any  # type: ignore[assignment]
    Response = Any  # type: ignore[assignment]
    JSONResponse = Any  # type: ignore[assignment]
    BackgroundTask = None  # type: ignore[assignment]

from flareharness.core.handler import ExecutionContext, Handler, HandlerRequest, invoke_handler
from flareharness.core.logging import get_logger


HANDLER_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
HEALTH_PATH = "/__flareharness/health"


def create_app(handler: Handler, bindings: Mapping[str, Any]) -> Any:
    if FastAPI is None or BackgroundTask is None:
        raise RuntimeError("FastAPI is not installed. Install with: pip install 'flareharness[api]'")

    logger = get_logger("flareharness.api")
    app = FastAPI(title="flareharness", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get(HEALTH_PATH)
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "bindings": sorted(bindings),
        }

    @app.api_route("/{path:path}", methods=HANDLER_METHODS)
    async def dispatch(request: Request, path: str) -> Response:
        handler_request = HandlerRequest(
            method=request.method,
            url=str(request.url),
            headers=dict(request.headers),
            body=await request.body(),
        )
        ctx = ExecutionContext()
        try:
            result = await invoke_handler(handler, handler_request, bindings, ctx)
        except Exception as exc:
            logger.exception(
                f"handler raised for {handler_request.method} {handler_request.path}",
                extra={"component": "api", "error_type": type(exc).__name__, "error_message": str(exc)},
            )
            await ctx.settle()
            return JSONResponse(
                status_code=502 if ctx.passed_through else 500,
                content={"error": type(exc).__name__, "detail": str(exc)},
            )
        return Response(
            content=result.body,
            status_code=result.status,
            headers=result.headers,
            background=BackgroundTask(ctx.settle),
        )

    return app


async def serve_app(app: Any, *, host: str, port: int, log_level: str = "info") -> None:
    """Run ``app`` on the current event loop so it shares the emulators' loop."""
    try:
        import uvicorn
    except ImportError as exc:
        raise RuntimeError("uvicorn is not installed. Install with: pip install 'flareharness[api]'") from exc

    server = uvicorn.Server(uvicorn.Config(app, host=host, port=int(port), log_level=log_level))
    await server.serve()
