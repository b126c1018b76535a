"""Emulated platform service interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from typing import Any

from flareharness.config.schema import BindingConfig
from flareharness.core.logging import EventLogger


class EmulatorDisposedError(RuntimeError):
    pass


class ServiceEmulator(ABC):
    """One binding's emulated service.

    The emulator object is itself the live handle shared with the foreign
    module. Every operation on it is a coroutine and calls on one handle are
    serialized through ``self._op_lock`` so they complete in issuance order.
    """

    def __init__(self) -> None:
        self.running = False
        self.disposed = False
        self.binding: str | None = None
        self.options: dict[str, Any] = {}
        self.event_logger: EventLogger | None = None
        self._op_lock = asyncio.Lock()

    def set_event_logger(self, event_logger: EventLogger) -> None:
        self.event_logger = event_logger

    async def start(self, config: BindingConfig) -> None:
        if self.disposed:
            raise EmulatorDisposedError(f"{self.kind} binding '{config.name}' was already disposed")
        self.binding = config.name
        self.options = dict(config.options)
        await self._start()
        self.running = True
        self._emit("emulator ready", action="emulator_ready", event_type="start", payload=self.describe())

    async def stop(self) -> None:
        if self.disposed:
            return
        self.running = False
        self.disposed = True
        await self._stop()
        self._emit("emulator disposed", action="emulator_dispose", event_type="end")

    def _require_running(self) -> None:
        if self.disposed:
            raise EmulatorDisposedError(f"{self.kind} binding '{self.binding}' was disposed")
        if not self.running:
            raise RuntimeError(f"{self.kind} binding '{self.binding}' is not started")

    def _emit(self, message: str, *, action: str, event_type: str, payload: dict[str, object] | None = None) -> None:
        if self.event_logger is None:
            return
        self.event_logger.emit(
            message=message,
            component="emulator",
            action=action,
            binding=self.binding,
            binding_kind=self.kind,
            event_type=event_type,
            outcome="success",
            payload=payload,
        )

    def describe(self) -> dict[str, object]:
        return {"binding": self.binding, "kind": self.kind, "running": self.running}

    @abstractmethod
    async def _start(self) -> None: ...

    @abstractmethod
    async def _stop(self) -> None: ...

    @property
    @abstractmethod
    def kind(self) -> str: ...
