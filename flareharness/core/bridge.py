"""Adapt continuation-passing foreign calls into awaitables."""

from __future__ import annotations

import asyncio
import functools
import threading
import time
from typing import Any, Awaitable, Callable

from flareharness.core.logging import EventLogger, get_logger


RESOLVED = "resolved"
REJECTED = "rejected"
EXPIRED = "expired"

logger = get_logger("flareharness.bridge")


class BridgeRejection(RuntimeError):
    """Raised when a foreign call settles through its failure continuation.

    ``error`` is exactly the value handed to the continuation, which need not
    be an exception.
    """

    def __init__(self, error: Any) -> None:
        self.error = error
        super().__init__(f"foreign call rejected: {error!r}")


class BridgeTimeout(TimeoutError):
    def __init__(self, name: str, timeout_seconds: float) -> None:
        self.name = name
        self.timeout_seconds = timeout_seconds
        super().__init__(f"foreign call '{name}' did not settle within {timeout_seconds:g}s")


def _rejection(error: Any) -> BridgeRejection:
    rejection = BridgeRejection(error)
    if isinstance(error, BaseException):
        rejection.__cause__ = error
    return rejection


def _callable_name(function: Callable[..., Any]) -> str:
    return getattr(function, "__qualname__", None) or getattr(function, "__name__", None) or repr(function)


class PendingCompletion:
    """One in-flight foreign call.

    ``resolve`` and ``reject`` are the continuations handed to foreign code.
    Whichever runs first settles the future; later calls are counted in
    ``ignored`` and otherwise dropped. Continuations may run on any thread.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, *, name: str = "") -> None:
        self.name = name
        self.outcome: str | None = None
        self.ignored = 0
        self.future: asyncio.Future[Any] = loop.create_future()
        self._loop = loop
        self._lock = threading.Lock()

    @property
    def settled(self) -> bool:
        return self.outcome is not None

    def resolve(self, value: Any = None) -> bool:
        return self._settle(RESOLVED, value)

    def reject(self, error: Any = None) -> bool:
        return self._settle(REJECTED, error)

    def expire(self) -> bool:
        return self._settle(EXPIRED, None)

    def _settle(self, outcome: str, payload: Any) -> bool:
        with self._lock:
            if self.outcome is not None:
                self.ignored += 1
                logger.debug(
                    "ignored continuation after settlement",
                    extra={"component": "bridge", "payload": {"call": self.name, "attempted": outcome, "outcome": self.outcome}},
                )
                return False
            self.outcome = outcome
        if outcome == EXPIRED:
            return True
        if self._on_loop_thread():
            self._apply(outcome, payload)
        else:
            self._loop.call_soon_threadsafe(self._apply, outcome, payload)
        return True

    def _on_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    def _apply(self, outcome: str, payload: Any) -> None:
        if self.future.done():
            return
        if outcome == RESOLVED:
            self.future.set_result(payload)
        else:
            self.future.set_exception(_rejection(payload))


class CPSBridge:
    def __init__(self, *, timeout_seconds: float | None = None, event_logger: EventLogger | None = None) -> None:
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("bridge timeout_seconds must be greater than zero")
        self.timeout_seconds = timeout_seconds
        self.event_logger = event_logger

    async def call(self, function: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Invoke ``function(*args, on_success, on_failure, **kwargs)`` and await its settlement."""
        loop = asyncio.get_running_loop()
        pending = PendingCompletion(loop, name=_callable_name(function))
        started = time.perf_counter()
        try:
            function(*args, pending.resolve, pending.reject, **kwargs)
        except Exception as exc:
            # a raise after settlement is dropped like any late continuation
            pending.reject(exc)

        try:
            if self.timeout_seconds is None:
                value = await pending.future
            else:
                value = await asyncio.wait_for(pending.future, self.timeout_seconds)
        except TimeoutError:
            pending.expire()
            timeout = BridgeTimeout(pending.name, self.timeout_seconds or 0.0)
            self._emit(pending, started, outcome="failure", error=timeout)
            raise timeout from None
        except BridgeRejection as exc:
            self._emit(pending, started, outcome="failure", error=exc)
            raise
        self._emit(pending, started, outcome="success")
        return value

    def wrap(self, function: Callable[..., Any]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(function)
        async def bridged(*args: Any, **kwargs: Any) -> Any:
            return await self.call(function, *args, **kwargs)

        return bridged

    def _emit(
        self,
        pending: PendingCompletion,
        started: float,
        *,
        outcome: str,
        error: BaseException | None = None,
    ) -> None:
        if self.event_logger is None:
            return
        self.event_logger.emit(
            message="foreign call settled" if outcome == "success" else "foreign call failed",
            component="bridge",
            action="bridge_call",
            outcome=outcome,
            event_type="info",
            duration_seconds=time.perf_counter() - started,
            error=error,
            payload={"call": pending.name, "settlement": pending.outcome},
            level="DEBUG" if outcome == "success" else "WARNING",
        )


def wrap(function: Callable[..., Any], *, timeout_seconds: float | None = None) -> Callable[..., Awaitable[Any]]:
    return CPSBridge(timeout_seconds=timeout_seconds).wrap(function)


async def bridge_call(function: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    return await CPSBridge().call(function, *args, **kwargs)
