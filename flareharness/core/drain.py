"""Best-effort settling of fire-and-forget asynchronous work."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import inspect
import time
from typing import Any, Callable

from flareharness.config.schema import DrainConfig
from flareharness.core.logging import EventLogger, emit_metric, get_logger


@dataclass(slots=True)
class DrainBudget:
    iterations: int = 10
    interval_seconds: float = 0.2

    def __post_init__(self) -> None:
        if self.iterations < 0:
            raise ValueError("drain iterations must be greater than or equal to zero")
        if self.interval_seconds < 0:
            raise ValueError("drain interval_seconds must be greater than or equal to zero")

    @classmethod
    def from_config(cls, config: DrainConfig) -> "DrainBudget":
        return cls(iterations=config.iterations, interval_seconds=config.interval_seconds)

    @property
    def total_seconds(self) -> float:
        return self.iterations * self.interval_seconds


class AsyncDrainScheduler:
    """Yield the loop for a fixed budget so scheduled foreign work can land.

    This is a heuristic. Work that takes longer than the budget is not
    awaited and will not be visible to assertions that follow ``drain``.
    """

    def __init__(self, budget: DrainBudget | None = None, *, event_logger: EventLogger | None = None) -> None:
        self.budget = budget or DrainBudget()
        self.event_logger = event_logger
        self.logger = get_logger("flareharness.drain")
        self.drains = 0
        self.failures: list[BaseException] = []

    async def drain(self) -> None:
        started = time.perf_counter()
        for _ in range(self.budget.iterations):
            await asyncio.sleep(0)
            await asyncio.sleep(self.budget.interval_seconds)
        self.drains += 1
        if self.event_logger is not None:
            elapsed = time.perf_counter() - started
            self.event_logger.emit(
                message="drain complete",
                component="drain",
                action="drain",
                outcome="success",
                event_type="info",
                duration_seconds=elapsed,
                payload={"iterations": self.budget.iterations, "interval_seconds": self.budget.interval_seconds},
                level="DEBUG",
            )
            emit_metric(
                self.event_logger.logger,
                name="drain_seconds",
                value=elapsed,
                component="drain",
                payload={"iterations": self.budget.iterations},
                level="DEBUG",
            )

    async def run(self, entry_point: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        result = entry_point(*args, **kwargs)
        if inspect.isawaitable(result):
            result = asyncio.ensure_future(result)
            result.add_done_callback(self._report_failure)
        await self.drain()
        return result

    def _report_failure(self, task: asyncio.Future[Any]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        self.failures.append(error)
        if self.event_logger is not None:
            self.event_logger.emit(
                message="drained entry point failed",
                component="drain",
                action="drain_run",
                outcome="failure",
                event_type="error",
                error=error,
                level="WARNING",
            )
        else:
            self.logger.warning(
                f"drained entry point failed: {error}",
                extra={"component": "drain", "error_type": type(error).__name__},
            )
