"""Async FFI test harness with emulated edge platform bindings."""

from .core.bridge import BridgeRejection, BridgeTimeout, CPSBridge, bridge_call, wrap
from .core.build import BuildFailure, BuildOrchestrator, BuildResult
from .core.drain import AsyncDrainScheduler, DrainBudget
from .core.handler import ExecutionContext, HandlerRequest, HandlerResponse, invoke_handler
from .core.harness import Harness, HarnessEnvironment, HarnessResult
from .core.manager import BindingNotConfigured, EmulatorStartupError, PlatformEmulatorManager
from .core.migrate import SchemaApplicationFailure, SchemaMigrator, split_statements
from .core.registry import GLOBAL_SLOT, BindingSlot, inject_bindings

__version__ = "0.1.0"

__all__ = [
    "AsyncDrainScheduler",
    "BindingNotConfigured",
    "BindingSlot",
    "BridgeRejection",
    "BridgeTimeout",
    "BuildFailure",
    "BuildOrchestrator",
    "BuildResult",
    "CPSBridge",
    "DrainBudget",
    "EmulatorStartupError",
    "ExecutionContext",
    "GLOBAL_SLOT",
    "HandlerRequest",
    "HandlerResponse",
    "Harness",
    "HarnessEnvironment",
    "HarnessResult",
    "PlatformEmulatorManager",
    "SchemaApplicationFailure",
    "SchemaMigrator",
    "bridge_call",
    "inject_bindings",
    "invoke_handler",
    "split_statements",
    "wrap",
]
