"""Handing binding maps to the foreign module."""

from __future__ import annotations

from contextlib import contextmanager
import threading
from types import ModuleType
from typing import Any, Iterator, Mapping

from flareharness.core.foreign import ForeignModuleError
from flareharness.core.logging import get_logger


DEFAULT_INIT_HOOK = "setup_bindings"

logger = get_logger("flareharness.registry")


class BindingSlot:
    """Process-wide holder for the active binding map.

    Registration is last-write-wins; only one environment can be served
    through a slot at a time.
    """

    def __init__(self, name: str = "global") -> None:
        self.name = name
        self.registrations = 0
        self._bindings: Mapping[str, Any] | None = None
        self._lock = threading.Lock()

    def register(self, bindings: Mapping[str, Any]) -> None:
        with self._lock:
            if self._bindings is not None and self._bindings is not bindings:
                logger.warning(
                    f"overwriting registered bindings in slot '{self.name}'",
                    extra={"component": "registry", "payload": {"previous": sorted(self._bindings), "next": sorted(bindings)}},
                )
            self._bindings = bindings
            self.registrations += 1

    def current(self) -> Mapping[str, Any] | None:
        with self._lock:
            return self._bindings

    def require(self) -> Mapping[str, Any]:
        bindings = self.current()
        if bindings is None:
            raise LookupError(f"no bindings are registered in slot '{self.name}'")
        return bindings

    def clear(self) -> None:
        with self._lock:
            self._bindings = None

    @contextmanager
    def registered(self, bindings: Mapping[str, Any]) -> Iterator[Mapping[str, Any]]:
        self.register(bindings)
        try:
            yield bindings
        finally:
            self.clear()


GLOBAL_SLOT = BindingSlot()


def inject_bindings(module: ModuleType, bindings: Mapping[str, Any], hook_name: str = DEFAULT_INIT_HOOK) -> Any:
    """Call the module's init hook with the binding map and return whatever it returns."""
    hook = getattr(module, hook_name, None)
    if hook is None:
        raise ForeignModuleError(f"foreign module '{module.__name__}' does not define '{hook_name}'")
    if not callable(hook):
        raise ForeignModuleError(f"'{hook_name}' in foreign module '{module.__name__}' is not callable")
    return hook(bindings)
