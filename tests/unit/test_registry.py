import logging
from pathlib import Path
import sys
import types

import pytest

from flareharness.core.foreign import ForeignModuleError, load_module, resolve_attribute, unload_module
from flareharness.core.registry import BindingSlot, inject_bindings


def test_slot_register_and_require() -> None:
    slot = BindingSlot("test")
    with pytest.raises(LookupError, match="no bindings are registered"):
        slot.require()
    bindings = {"TEST_KV": object()}
    slot.register(bindings)
    assert slot.current() is bindings
    assert slot.require() is bindings
    slot.clear()
    assert slot.current() is None


def test_slot_is_last_write_wins_and_warns(caplog: pytest.LogCaptureFixture) -> None:
    slot = BindingSlot("test")
    first = {"A": 1}
    second = {"B": 2}
    logger = logging.getLogger("flareharness.registry")
    logger.addHandler(caplog.handler)
    try:
        slot.register(first)
        slot.register(second)
    finally:
        logger.removeHandler(caplog.handler)
    assert slot.current() is second
    assert slot.registrations == 2
    assert any("overwriting registered bindings" in record.getMessage() for record in caplog.records)


def test_slot_registered_context_clears_on_error() -> None:
    slot = BindingSlot("test")
    with pytest.raises(RuntimeError):
        with slot.registered({"DB": object()}):
            assert slot.current() is not None
            raise RuntimeError("assertion failed")
    assert slot.current() is None


def test_inject_bindings_calls_init_hook() -> None:
    received: list[dict[str, object]] = []
    module = types.ModuleType("fake_worker")
    module.setup_bindings = lambda bindings: received.append(bindings) or "initialized"
    bindings = {"TEST_KV": object()}
    assert inject_bindings(module, bindings) == "initialized"
    assert received == [bindings]


def test_inject_bindings_with_custom_hook() -> None:
    module = types.ModuleType("fake_worker")
    module.configure = lambda bindings: sorted(bindings)
    assert inject_bindings(module, {"B": 1, "A": 2}, hook_name="configure") == ["A", "B"]


def test_inject_bindings_requires_hook() -> None:
    module = types.ModuleType("fake_worker")
    with pytest.raises(ForeignModuleError, match="does not define 'setup_bindings'"):
        inject_bindings(module, {})
    module.setup_bindings = "not callable"
    with pytest.raises(ForeignModuleError, match="is not callable"):
        inject_bindings(module, {})


def test_load_module_from_path(tmp_path: Path) -> None:
    module_path = tmp_path / "compiled.py"
    module_path.write_text("VALUE = 7\n\ndef answer():\n    return VALUE * 6\n", encoding="utf-8")
    module = load_module(module_path, module_name="compiled_for_test")
    try:
        assert module.__name__ == "compiled_for_test"
        assert sys.modules["compiled_for_test"] is module
        assert resolve_attribute(module, "answer")() == 42
    finally:
        unload_module(module)
    assert "compiled_for_test" not in sys.modules


def test_load_module_generates_unique_names(tmp_path: Path) -> None:
    module_path = tmp_path / "compiled.py"
    module_path.write_text("VALUE = 1\n", encoding="utf-8")
    first = load_module(module_path)
    second = load_module(module_path)
    try:
        assert first is not second
        assert first.__name__ != second.__name__
    finally:
        unload_module(first)
        unload_module(second)


def test_load_module_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ForeignModuleError, match="foreign module not found"):
        load_module(tmp_path / "absent.py")


def test_load_module_import_error_is_wrapped(tmp_path: Path) -> None:
    module_path = tmp_path / "broken.py"
    module_path.write_text("raise ImportError('missing runtime')\n", encoding="utf-8")
    with pytest.raises(ForeignModuleError, match="missing runtime") as exc_info:
        load_module(module_path, module_name="broken_for_test")
    assert isinstance(exc_info.value.__cause__, ImportError)
    assert "broken_for_test" not in sys.modules


def test_resolve_attribute_reports_missing_names() -> None:
    module = types.ModuleType("fake_worker")
    with pytest.raises(ForeignModuleError, match="has no attribute 'get_handler'"):
        resolve_attribute(module, "get_handler")
