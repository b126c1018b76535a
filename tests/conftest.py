from __future__ import annotations

from pathlib import Path
import shlex
from typing import Any, Callable

import pytest

from flareharness.config.schema import HarnessConfig, parse_config


FIXTURES_DIR = Path(__file__).parent / "fixtures"
WORKER_SOURCE = FIXTURES_DIR / "worker.py"
SCHEMA_SOURCE = FIXTURES_DIR / "schema.sql"


def copy_worker_command() -> str:
    return f"mkdir -p target && cp {shlex.quote(str(WORKER_SOURCE))} target/worker.py"


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@pytest.fixture
def worker_build_command() -> str:
    return copy_worker_command()


@pytest.fixture
def schema_source() -> Path:
    return SCHEMA_SOURCE


@pytest.fixture
def worker_source() -> Path:
    return WORKER_SOURCE


@pytest.fixture
def harness_config(tmp_path: Path) -> Callable[..., HarnessConfig]:
    """Build a config rooted in a temp project whose build copies the fixture worker."""

    def _factory(**overrides: Any) -> HarnessConfig:
        schema_path = tmp_path / "schema.sql"
        if not schema_path.exists():
            schema_path.write_text(SCHEMA_SOURCE.read_text(encoding="utf-8"), encoding="utf-8")
        base: dict[str, Any] = {
            "project": {
                "root_dir": str(tmp_path),
                "module_path": "target/worker.py",
                "handler": "get_handler",
            },
            "build": {"command": copy_worker_command(), "timeout_seconds": 30},
            "bindings": {
                "kv_namespaces": ["TEST_KV"],
                "databases": ["DB"],
                "buckets": ["TEST_R2"],
            },
            "schema": {"path": "schema.sql", "database": "DB"},
            "drain": {"iterations": 3, "interval_seconds": 0.01},
            "logging": {"level": "WARNING"},
        }
        return parse_config(_merge(base, overrides))

    return _factory
