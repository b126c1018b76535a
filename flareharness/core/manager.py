"""Lifecycle management for the emulated platform bindings."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Sequence

from flareharness.config.schema import (
    KIND_KV,
    KIND_OBJECT_STORE,
    KIND_RELATIONAL,
    BindingConfig,
    HarnessConfig,
)
from flareharness.core.logging import EventLogger, get_logger
from flareharness.core.plugin import PluginRegistry
from flareharness.services.base import ServiceEmulator


class BindingNotConfigured(LookupError):
    def __init__(self, name: str, *, expected_kind: str | None = None, actual_kind: str | None = None) -> None:
        self.name = name
        self.expected_kind = expected_kind
        self.actual_kind = actual_kind
        if actual_kind is None:
            message = f"binding '{name}' is not configured"
        else:
            message = f"binding '{name}' is a {actual_kind} binding, not {expected_kind}"
        super().__init__(message)


class EmulatorStartupError(RuntimeError):
    def __init__(self, message: str, *, bindings: Sequence[str] = ()) -> None:
        self.bindings = list(bindings)
        super().__init__(message)


class PlatformEmulatorManager:
    def __init__(
        self,
        bindings: Sequence[BindingConfig],
        *,
        ready_timeout_seconds: float = 10.0,
        plugin_registry: PluginRegistry | None = None,
        event_logger: EventLogger | None = None,
    ) -> None:
        if ready_timeout_seconds <= 0:
            raise ValueError("ready_timeout_seconds must be greater than zero")
        seen: set[str] = set()
        for binding in bindings:
            if binding.name in seen:
                raise ValueError(f"duplicate binding name '{binding.name}'")
            seen.add(binding.name)
        self.binding_configs = list(bindings)
        self.ready_timeout_seconds = ready_timeout_seconds
        self.plugin_registry = plugin_registry or PluginRegistry()
        self.event_logger = event_logger
        self.logger = get_logger("flareharness.manager")
        self.started = False
        self.disposed = False
        self._configs = {binding.name: binding for binding in self.binding_configs}
        self._emulators: dict[str, ServiceEmulator] = {}

    @classmethod
    def from_config(cls, config: HarnessConfig, *, event_logger: EventLogger | None = None) -> "PlatformEmulatorManager":
        return cls(
            config.bindings,
            ready_timeout_seconds=config.emulator.ready_timeout_seconds,
            event_logger=event_logger,
        )

    async def __aenter__(self) -> "PlatformEmulatorManager":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.dispose()

    async def start(self) -> None:
        if self.disposed:
            raise RuntimeError("emulator manager was disposed and cannot be restarted")
        if self.started:
            return

        pairs = [(binding, self.plugin_registry.instantiate(binding)) for binding in self.binding_configs]
        for _, emulator in pairs:
            if self.event_logger is not None:
                emulator.set_event_logger(self.event_logger)

        started = time.perf_counter()
        try:
            results = await asyncio.wait_for(
                asyncio.gather(*(emulator.start(binding) for binding, emulator in pairs), return_exceptions=True),
                timeout=self.ready_timeout_seconds,
            )
        except TimeoutError:
            pending = [binding.name for binding, emulator in pairs if not emulator.running]
            await self._stop_all([emulator for _, emulator in pairs])
            error = EmulatorStartupError(
                f"emulators not ready within {self.ready_timeout_seconds:g}s: {', '.join(pending)}",
                bindings=pending,
            )
            self._emit("emulator startup timed out", action="provision", outcome="failure", error=error, level="ERROR")
            raise error from None

        failures = [(binding, result) for (binding, _), result in zip(pairs, results) if isinstance(result, BaseException)]
        if failures:
            await self._stop_all([emulator for _, emulator in pairs])
            binding, cause = failures[0]
            error = EmulatorStartupError(
                f"binding '{binding.name}' failed to start: {cause}",
                bindings=[item.name for item, _ in failures],
            )
            self._emit("emulator startup failed", action="provision", outcome="failure", error=error, level="ERROR")
            raise error from cause

        self._emulators = {binding.name: emulator for binding, emulator in pairs}
        self.started = True
        self._emit(
            "bindings provisioned",
            action="provision",
            outcome="success",
            duration_seconds=time.perf_counter() - started,
            payload={"bindings": sorted(self._emulators)},
        )

    async def dispose(self) -> None:
        if self.disposed:
            self.logger.debug("emulator manager already disposed", extra={"component": "manager"})
            return
        self.disposed = True
        if not self.started:
            return
        errors = await self._stop_all(list(self._emulators.values()))
        self._emit(
            "bindings disposed",
            action="dispose",
            outcome="failure" if errors else "success",
            error=errors[0] if errors else None,
            payload={"bindings": sorted(self._emulators)},
            level="WARNING" if errors else "INFO",
        )
        if errors:
            raise errors[0]

    async def _stop_all(self, emulators: list[ServiceEmulator]) -> list[BaseException]:
        results = await asyncio.gather(*(emulator.stop() for emulator in emulators), return_exceptions=True)
        errors: list[BaseException] = []
        for emulator, result in zip(emulators, results):
            if isinstance(result, BaseException):
                self.logger.warning(
                    f"failed to stop binding '{emulator.binding}': {result}",
                    extra={"component": "manager", "binding": emulator.binding},
                )
                errors.append(result)
        return errors

    def get(self, name: str) -> ServiceEmulator:
        if name not in self._configs:
            raise BindingNotConfigured(name)
        if not self.started:
            raise RuntimeError("emulator manager is not started")
        return self._emulators[name]

    def _typed(self, name: str, kind: str) -> Any:
        config = self._configs.get(name)
        if config is None:
            raise BindingNotConfigured(name, expected_kind=kind)
        if config.kind != kind:
            raise BindingNotConfigured(name, expected_kind=kind, actual_kind=config.kind)
        return self.get(name)

    def get_kv_namespace(self, name: str) -> Any:
        return self._typed(name, KIND_KV)

    def get_database(self, name: str) -> Any:
        return self._typed(name, KIND_RELATIONAL)

    def get_bucket(self, name: str) -> Any:
        return self._typed(name, KIND_OBJECT_STORE)

    def bindings(self) -> dict[str, ServiceEmulator]:
        if not self.started:
            raise RuntimeError("emulator manager is not started")
        return dict(self._emulators)

    def status(self) -> dict[str, Any]:
        return {
            "started": self.started,
            "disposed": self.disposed,
            "bindings": [
                {
                    "name": binding.name,
                    "kind": binding.kind,
                    "module": binding.module,
                    "running": bool(self._emulators.get(binding.name) and self._emulators[binding.name].running),
                }
                for binding in self.binding_configs
            ],
        }

    def _emit(
        self,
        message: str,
        *,
        action: str,
        outcome: str,
        duration_seconds: float | None = None,
        error: BaseException | None = None,
        payload: dict[str, object] | None = None,
        level: str = "INFO",
    ) -> None:
        if self.event_logger is None:
            return
        self.event_logger.emit(
            message=message,
            component="manager",
            action=action,
            outcome=outcome,
            event_type="info",
            duration_seconds=duration_seconds,
            error=error,
            payload=payload,
            level=level,
        )
