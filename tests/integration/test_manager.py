import asyncio
import sys
import types
from typing import Any

import pytest

from flareharness.config.schema import KIND_KV, KIND_OBJECT_STORE, KIND_RELATIONAL, BindingConfig
from flareharness.core.manager import BindingNotConfigured, EmulatorStartupError, PlatformEmulatorManager
from flareharness.services.base import EmulatorDisposedError, ServiceEmulator


def _bindings() -> list[BindingConfig]:
    return [
        BindingConfig(name="TEST_KV", kind=KIND_KV),
        BindingConfig(name="DB", kind=KIND_RELATIONAL),
        BindingConfig(name="TEST_R2", kind=KIND_OBJECT_STORE),
    ]


class _SlowEmulator(ServiceEmulator):
    @property
    def kind(self) -> str:
        return KIND_KV

    async def _start(self) -> None:
        await asyncio.sleep(5)

    async def _stop(self) -> None:
        return None


class _BrokenEmulator(ServiceEmulator):
    @property
    def kind(self) -> str:
        return KIND_KV

    async def _start(self) -> None:
        raise OSError("port already in use")

    async def _stop(self) -> None:
        return None


def _install_fake_module(monkeypatch: pytest.MonkeyPatch, name: str, emulator_type: type[ServiceEmulator]) -> None:
    module = types.ModuleType(name)
    module.Emulator = emulator_type
    monkeypatch.setitem(sys.modules, name, module)
    monkeypatch.setenv("FLAREHARNESS_EXTRA_ALLOWED_MODULES", name)


def test_manager_provisions_all_kinds() -> None:
    async def scenario() -> dict[str, Any]:
        async with PlatformEmulatorManager(_bindings()) as manager:
            kv = manager.get_kv_namespace("TEST_KV")
            db = manager.get_database("DB")
            bucket = manager.get_bucket("TEST_R2")
            await kv.put("hello", "world")
            await db.exec("CREATE TABLE t (id INTEGER)")
            await bucket.put("k", "v")
            assert set(manager.bindings()) == {"TEST_KV", "DB", "TEST_R2"}
            assert manager.bindings()["TEST_KV"] is kv
            assert await kv.get("hello") == "world"
            status = manager.status()
        assert manager.disposed is True
        assert kv.running is False
        return status

    status = asyncio.run(scenario())
    assert status["started"] is True
    assert all(item["running"] for item in status["bindings"])


def test_unknown_binding_is_reported() -> None:
    async def scenario() -> None:
        async with PlatformEmulatorManager(_bindings()) as manager:
            with pytest.raises(BindingNotConfigured, match="'MISSING' is not configured"):
                manager.get("MISSING")
            with pytest.raises(LookupError):
                manager.get_kv_namespace("MISSING")

    asyncio.run(scenario())


def test_wrong_kind_lookup_is_reported() -> None:
    async def scenario() -> None:
        async with PlatformEmulatorManager(_bindings()) as manager:
            with pytest.raises(BindingNotConfigured, match="is a kv binding, not relational") as exc_info:
                manager.get_database("TEST_KV")
            assert exc_info.value.actual_kind == KIND_KV

    asyncio.run(scenario())


def test_dispose_is_idempotent_and_invalidates_handles() -> None:
    async def scenario() -> None:
        manager = PlatformEmulatorManager(_bindings())
        await manager.start()
        kv = manager.get_kv_namespace("TEST_KV")
        await manager.dispose()
        await manager.dispose()
        with pytest.raises(EmulatorDisposedError):
            await kv.get("hello")
        with pytest.raises(RuntimeError, match="cannot be restarted"):
            await manager.start()

    asyncio.run(scenario())


def test_context_manager_disposes_on_assertion_failure() -> None:
    holder: dict[str, PlatformEmulatorManager] = {}

    async def scenario() -> None:
        async with PlatformEmulatorManager(_bindings()) as manager:
            holder["manager"] = manager
            raise AssertionError("test failed")

    with pytest.raises(AssertionError):
        asyncio.run(scenario())
    assert holder["manager"].disposed is True


def test_emulators_are_isolated_per_manager() -> None:
    async def scenario() -> None:
        async with PlatformEmulatorManager(_bindings()) as first:
            async with PlatformEmulatorManager(_bindings()) as second:
                await first.get_kv_namespace("TEST_KV").put("shared", "first")
                assert await second.get_kv_namespace("TEST_KV").get("shared") is None

    asyncio.run(scenario())


def test_ready_timeout_raises_startup_error(monkeypatch: pytest.MonkeyPatch) -> None:
    _install_fake_module(monkeypatch, "slow_emulator_module", _SlowEmulator)
    bindings = [
        BindingConfig(name="DB", kind=KIND_RELATIONAL),
        BindingConfig(name="SLOW", kind=KIND_KV, module="slow_emulator_module"),
    ]

    async def scenario() -> PlatformEmulatorManager:
        manager = PlatformEmulatorManager(bindings, ready_timeout_seconds=0.1)
        with pytest.raises(EmulatorStartupError, match="not ready within 0.1s") as exc_info:
            await manager.start()
        assert exc_info.value.bindings == ["SLOW"]
        return manager

    manager = asyncio.run(scenario())
    assert manager.started is False


def test_partial_start_failure_stops_started_emulators(monkeypatch: pytest.MonkeyPatch) -> None:
    _install_fake_module(monkeypatch, "broken_emulator_module", _BrokenEmulator)
    bindings = [
        BindingConfig(name="DB", kind=KIND_RELATIONAL),
        BindingConfig(name="BROKEN", kind=KIND_KV, module="broken_emulator_module"),
    ]

    async def scenario() -> None:
        manager = PlatformEmulatorManager(bindings)
        with pytest.raises(EmulatorStartupError, match="'BROKEN' failed to start") as exc_info:
            await manager.start()
        assert isinstance(exc_info.value.__cause__, OSError)

    asyncio.run(scenario())


def test_duplicate_binding_names_are_rejected() -> None:
    with pytest.raises(ValueError, match="duplicate binding name"):
        PlatformEmulatorManager(
            [BindingConfig(name="X", kind=KIND_KV), BindingConfig(name="X", kind=KIND_OBJECT_STORE)]
        )
