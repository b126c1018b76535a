"""Loading the built foreign module from its output path."""

from __future__ import annotations

import importlib.util
from pathlib import Path
import sys
from types import ModuleType
from typing import Any
from uuid import uuid4

from flareharness.core.logging import get_logger


logger = get_logger("flareharness.foreign")


class ForeignModuleError(RuntimeError):
    pass


def load_module(path: str | Path, module_name: str | None = None) -> ModuleType:
    module_path = Path(path)
    if not module_path.is_file():
        raise ForeignModuleError(f"foreign module not found: {module_path}")
    name = module_name or f"flareharness_foreign_{module_path.stem}_{uuid4().hex[:8]}"
    spec = importlib.util.spec_from_file_location(name, module_path)
    if spec is None or spec.loader is None:
        raise ForeignModuleError(f"cannot load '{module_path}' as a python module")
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        sys.modules.pop(name, None)
        raise ForeignModuleError(f"failed to import foreign module '{module_path}': {exc}") from exc
    logger.debug("foreign module loaded", extra={"component": "foreign", "payload": {"path": str(module_path), "name": name}})
    return module


def unload_module(module: ModuleType) -> None:
    if sys.modules.get(module.__name__) is module:
        del sys.modules[module.__name__]


def resolve_attribute(module: ModuleType, name: str) -> Any:
    if not name:
        raise ForeignModuleError("attribute name must be non-empty")
    target: Any = module
    for part in name.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise ForeignModuleError(f"foreign module '{module.__name__}' has no attribute '{name}'") from exc
    return target
