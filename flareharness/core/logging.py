"""Structured ECS logging for harness lifecycle events."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import json
import logging
from pathlib import Path
from typing import Callable

from flareharness.config.schema import LoggingConfig


ROOT_LOGGER = "flareharness"
DEFAULT_LOG_FILE = "logs/flareharness.log"

# (ECS section, ECS field, LogRecord attribute set through ``extra``)
_RECORD_FIELDS: tuple[tuple[str, str, str], ...] = (
    ("event", "action", "event_action"),
    ("event", "type", "event_type"),
    ("event", "outcome", "event_outcome"),
    ("event", "duration", "event_duration"),
    ("error", "message", "error_message"),
    ("error", "type", "error_type"),
    ("flareharness", "component", "component"),
    ("flareharness", "binding", "binding"),
    ("flareharness", "kind", "binding_kind"),
    ("flareharness", "payload", "payload"),
)


def _is_empty(value: object) -> bool:
    return value is None or value == "" or value == {} or value == []


class ECSJsonFormatter(logging.Formatter):
    """One compact JSON document per record; empty fields and sections are dropped."""

    def __init__(self, service_name: str = ROOT_LOGGER) -> None:
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        document: dict[str, dict[str, object] | object] = {
            "@timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(timespec="microseconds"),
            "message": record.getMessage(),
            "log": {"level": record.levelname.lower(), "logger": record.name},
            "service": {"name": getattr(record, "service_name", None) or self.service_name},
            "event": {"kind": "event", "category": getattr(record, "event_category", None) or "process"},
        }
        for section, name, attribute in _RECORD_FIELDS:
            value = getattr(record, attribute, None)
            if _is_empty(value):
                continue
            document.setdefault(section, {})[name] = value  # type: ignore[index]
        if record.exc_info:
            document.setdefault("error", {})["stack_trace"] = self.formatException(record.exc_info)  # type: ignore[index]
        return json.dumps(document, separators=(",", ":"), default=str)


def configure_logging(config: LoggingConfig, force: bool = False) -> None:
    root = logging.getLogger(ROOT_LOGGER)
    if root.handlers and not force:
        return

    if config.sink == "file":
        log_file = Path(config.file_path or DEFAULT_LOG_FILE)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(ECSJsonFormatter(service_name=config.service_name))

    for existing in list(root.handlers):
        root.removeHandler(existing)
        existing.close()
    root.addHandler(handler)
    root.setLevel(config.level)
    root.propagate = False


def get_logger(name: str, level: str = "INFO") -> logging.Logger:
    """Return ``name``, routed through the configured ``flareharness`` root when it has a sink."""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    routed = name == ROOT_LOGGER or name.startswith(f"{ROOT_LOGGER}.")
    if routed and logging.getLogger(ROOT_LOGGER).handlers:
        logger.setLevel(level)
        logger.propagate = True
        return logger

    handler = logging.StreamHandler()
    handler.setFormatter(ECSJsonFormatter())
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger


def emit_metric(
    logger: logging.Logger,
    *,
    name: str,
    value: float,
    component: str = "harness",
    payload: dict[str, object] | None = None,
    level: str = "INFO",
) -> None:
    metric_name = name.strip() or "metric"
    logger.log(
        getattr(logging, level.upper(), logging.INFO),
        f"metric:{metric_name}",
        extra={
            "component": component,
            "event_action": metric_name,
            "event_category": "metric",
            "event_type": "info",
            "event_outcome": "success",
            "payload": {"metric_name": metric_name, "metric_value": float(value), **(payload or {})},
        },
    )


@dataclass(slots=True)
class EventLogger:
    """Lifecycle events (build, provision, migrate, bridge, drain) as ECS records.

    ``publish_hook`` receives a flat copy of every event; a failing hook is
    logged and never interrupts the harness.
    """

    logger: logging.Logger
    service_name: str
    publish_hook: Callable[[dict[str, object]], None] | None = None

    def emit(
        self,
        *,
        message: str,
        component: str,
        action: str,
        binding: str | None = None,
        binding_kind: str | None = None,
        outcome: str | None = None,
        event_type: str | None = None,
        duration_seconds: float | None = None,
        error: BaseException | None = None,
        payload: dict[str, object] | None = None,
        level: str = "INFO",
    ) -> None:
        self.logger.log(
            getattr(logging, level.upper(), logging.INFO),
            message,
            extra={
                "service_name": self.service_name,
                "component": component,
                "event_action": action,
                "event_category": "process",
                "event_type": event_type,
                "event_outcome": outcome,
                # ECS durations are nanoseconds
                "event_duration": None if duration_seconds is None else int(duration_seconds * 1_000_000_000),
                "error_message": None if error is None else str(error),
                "error_type": None if error is None else type(error).__name__,
                "binding": binding,
                "binding_kind": binding_kind,
                "payload": payload,
            },
        )
        if self.publish_hook is None:
            return
        event = {
            "service_name": self.service_name,
            "component": component,
            "action": action,
            "binding": binding or "",
            "binding_kind": binding_kind or "",
            "event_type": event_type or "",
            "outcome": outcome or "",
            "message": message,
            "payload": payload or {},
            "timestamp": datetime.now(UTC).isoformat(timespec="microseconds"),
            "level": level.upper(),
        }
        try:
            self.publish_hook(event)
        except Exception:
            self.logger.debug("event publish hook failed", exc_info=True, extra={"component": component})
