"""Emulator plugin loading and instantiation."""

from __future__ import annotations

import importlib
import os

from flareharness.config.schema import BindingConfig, DEFAULT_EMULATOR_MODULES
from flareharness.services.base import ServiceEmulator


class PluginError(RuntimeError):
    pass


ALLOWED_EMULATOR_MODULES = frozenset(DEFAULT_EMULATOR_MODULES.values())


def _allowed_modules() -> set[str]:
    extra_raw = os.environ.get("FLAREHARNESS_EXTRA_ALLOWED_MODULES", "")
    extras = {item.strip() for item in extra_raw.split(",") if item.strip()}
    return set(ALLOWED_EMULATOR_MODULES).union(extras)


def load_emulator_type(module_path: str) -> type[ServiceEmulator]:
    if module_path not in _allowed_modules():
        raise PluginError(f"module '{module_path}' is not in the allowed module list")
    try:
        module = importlib.import_module(module_path)
    except Exception as exc:
        raise PluginError(f"failed to import module '{module_path}': {exc}") from exc

    emulator_type = getattr(module, "Emulator", None)
    if emulator_type is None:
        raise PluginError(f"module '{module_path}' does not expose Emulator")
    if not isinstance(emulator_type, type) or not issubclass(emulator_type, ServiceEmulator):
        raise PluginError(f"Emulator in '{module_path}' must subclass ServiceEmulator")
    return emulator_type


class PluginRegistry:
    def instantiate(self, binding: BindingConfig) -> ServiceEmulator:
        emulator = load_emulator_type(binding.module)()
        if emulator.kind != binding.kind:
            raise PluginError(
                f"module '{binding.module}' provides a {emulator.kind} emulator, binding '{binding.name}' needs {binding.kind}"
            )
        return emulator
