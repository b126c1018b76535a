"""End-to-end pipeline: build, provision, migrate, load, drain, dispose."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
import inspect
from pathlib import Path
import time
from types import ModuleType
from typing import Any, AsyncIterator, Callable

from flareharness.config.schema import HarnessConfig, RegistrationConfig
from flareharness.core.bridge import CPSBridge
from flareharness.core.build import BuildOrchestrator, BuildResult
from flareharness.core.drain import AsyncDrainScheduler, DrainBudget
from flareharness.core.foreign import ForeignModuleError, load_module, resolve_attribute, unload_module
from flareharness.core.handler import ExecutionContext, Handler, HandlerRequest, HandlerResponse, invoke_handler
from flareharness.core.logging import EventLogger, configure_logging, get_logger
from flareharness.core.manager import PlatformEmulatorManager
from flareharness.core.migrate import SchemaMigrator
from flareharness.core.registry import GLOBAL_SLOT, BindingSlot, inject_bindings
from flareharness.services.base import ServiceEmulator


@dataclass(slots=True)
class HarnessResult:
    build: BuildResult | None
    bindings: list[str]
    statements_applied: int
    module_name: str
    duration_seconds: float

    def to_dict(self) -> dict[str, object]:
        return {
            "ok": True,
            "build": self.build.to_dict() if self.build else None,
            "bindings": list(self.bindings),
            "statements_applied": self.statements_applied,
            "module_name": self.module_name,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass(slots=True)
class HarnessEnvironment:
    manager: PlatformEmulatorManager
    bindings: dict[str, ServiceEmulator]
    statements_applied: int
    bridge: CPSBridge
    drainer: AsyncDrainScheduler
    module_path: Path | None = None
    module_name: str | None = None
    registration: RegistrationConfig = field(default_factory=RegistrationConfig)
    slot: BindingSlot = GLOBAL_SLOT
    module: ModuleType | None = None
    _loaded: list[ModuleType] = field(default_factory=list)

    async def call(self, function: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await self.bridge.call(function, *args, **kwargs)

    async def drain(self) -> None:
        await self.drainer.drain()

    async def invoke(
        self,
        handler: Handler,
        request: HandlerRequest,
        ctx: ExecutionContext | None = None,
    ) -> HandlerResponse:
        return await invoke_handler(handler, request, self.bindings, ctx)

    async def load_module(self, path: str | Path | None = None, module_name: str | None = None) -> ModuleType:
        target = Path(path) if path is not None else self.module_path
        if target is None:
            raise ForeignModuleError("no foreign module path configured (project.module_path)")
        if self.registration.mode == "global":
            # module-level code may read the slot while importing
            self.slot.register(self.bindings)
        module = load_module(target, module_name or self.module_name)
        self._loaded.append(module)
        if self.registration.mode == "inject":
            outcome = inject_bindings(module, self.bindings, self.registration.init_hook)
            if inspect.isawaitable(outcome):
                await outcome
        self.module = module
        return module

    def close(self) -> None:
        for module in self._loaded:
            unload_module(module)
        self._loaded.clear()
        if self.registration.mode == "global":
            self.slot.clear()


class Harness:
    def __init__(self, config: HarnessConfig, *, event_logger: EventLogger | None = None) -> None:
        self.config = config
        configure_logging(config.logging)
        self.logger = get_logger("flareharness.harness", level=config.logging.level)
        self.event_logger = event_logger or EventLogger(
            logger=get_logger("flareharness.events", level=config.logging.level),
            service_name=config.logging.service_name,
        )
        self.root_dir = Path(config.project.root_dir)

    def _resolve(self, path: str) -> Path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.root_dir / candidate
        return candidate

    @property
    def module_path(self) -> Path | None:
        if not self.config.project.module_path:
            return None
        return self._resolve(self.config.project.module_path)

    @property
    def schema_path(self) -> Path | None:
        if not self.config.schema.path:
            return None
        return self._resolve(self.config.schema.path)

    def build(self) -> BuildResult | None:
        if not self.config.build.enabled:
            self.logger.info("build disabled; using existing module", extra={"component": "build"})
            return None
        orchestrator = BuildOrchestrator(
            self.root_dir,
            self.config.build.command,
            timeout_seconds=self.config.build.timeout_seconds,
            module_path=self.module_path,
            event_logger=self.event_logger,
        )
        return orchestrator.build()

    async def migrate(self, manager: PlatformEmulatorManager) -> int:
        schema_path = self.schema_path
        if schema_path is None:
            return 0
        database = manager.get_database(self.config.schema.database)
        migrator = SchemaMigrator(transactional=self.config.schema.transactional, event_logger=self.event_logger)
        return await migrator.apply_file(schema_path, database)

    @asynccontextmanager
    async def environment(self, *, build: bool = False) -> AsyncIterator[HarnessEnvironment]:
        if build:
            self.build()
        manager = PlatformEmulatorManager.from_config(self.config, event_logger=self.event_logger)
        await manager.start()
        env: HarnessEnvironment | None = None
        try:
            applied = await self.migrate(manager)
            env = HarnessEnvironment(
                manager=manager,
                bindings=manager.bindings(),
                statements_applied=applied,
                bridge=CPSBridge(timeout_seconds=self.config.bridge.timeout_seconds, event_logger=self.event_logger),
                drainer=AsyncDrainScheduler(DrainBudget.from_config(self.config.drain), event_logger=self.event_logger),
                module_path=self.module_path,
                module_name=self.config.project.module_name or None,
                registration=self.config.registration,
            )
            yield env
        finally:
            if env is not None:
                env.close()
            await manager.dispose()

    async def run(self) -> HarnessResult:
        started = time.perf_counter()
        build_result = self.build()
        async with self.environment() as env:
            module = await env.load_module()
            await env.drain()
            result = HarnessResult(
                build=build_result,
                bindings=sorted(env.bindings),
                statements_applied=env.statements_applied,
                module_name=module.__name__,
                duration_seconds=time.perf_counter() - started,
            )
        self.event_logger.emit(
            message="harness run complete",
            component="harness",
            action="run",
            outcome="success",
            event_type="end",
            duration_seconds=result.duration_seconds,
            payload={"bindings": result.bindings, "statements_applied": result.statements_applied},
        )
        return result

    def run_sync(self) -> HarnessResult:
        return asyncio.run(self.run())

    def resolve_handler(self, module: ModuleType) -> Handler:
        """Return the request handler produced by the configured factory (``project.handler``)."""
        factory_name = self.config.project.handler
        if not factory_name:
            raise ForeignModuleError("no handler factory configured (project.handler)")
        factory = resolve_attribute(module, factory_name)
        if not callable(factory):
            raise ForeignModuleError(f"handler factory '{factory_name}' is not callable")
        handler = factory()
        if not callable(handler):
            raise ForeignModuleError(f"handler factory '{factory_name}' did not return a callable")
        return handler
