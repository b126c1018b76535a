"""Readiness diagnostics for a harness config."""

from __future__ import annotations

from dataclasses import dataclass
import importlib.util
from pathlib import Path
import shlex
import shutil
from typing import Any
from urllib.parse import urlparse

from flareharness.config.schema import KIND_KV, HarnessConfig
from flareharness.core.plugin import PluginError, load_emulator_type


@dataclass(slots=True)
class DoctorCheck:
    name: str
    ok: bool
    detail: str


def _resolve(root_dir: Path, path: str) -> Path:
    candidate = Path(path)
    if not candidate.is_absolute():
        candidate = root_dir / candidate
    return candidate


def _build_tool(command: str) -> str:
    try:
        parts = shlex.split(command)
    except ValueError:
        parts = command.split()
    return parts[0] if parts else ""


def _redis_backends(config: HarnessConfig) -> list[tuple[str, str]]:
    return [
        (binding.name, str(binding.options.get("redis_url", config.kv.redis_url)))
        for binding in config.bindings_of_kind(KIND_KV)
        if str(binding.options.get("backend", "memory")).lower() == "redis"
    ]


def _redis_url_has_credentials(redis_url: str) -> bool:
    try:
        parsed = urlparse(redis_url)
    except ValueError:
        return False
    return bool(str(parsed.password or "").strip())


def run_diagnostics(config: HarnessConfig, *, check_redis: bool = False) -> dict[str, Any]:
    checks: list[DoctorCheck] = []
    root_dir = Path(config.project.root_dir)

    checks.append(
        DoctorCheck(
            name="project_root",
            ok=root_dir.is_dir(),
            detail=f"root_dir={root_dir}" if root_dir.is_dir() else f"project root '{root_dir}' does not exist",
        )
    )

    if config.build.enabled:
        tool = _build_tool(config.build.command)
        located = shutil.which(tool) if tool else None
        checks.append(
            DoctorCheck(
                name="build_tool",
                ok=located is not None,
                detail=f"{tool} -> {located}" if located else f"build tool '{tool}' not found on PATH",
            )
        )
    else:
        checks.append(DoctorCheck(name="build_tool", ok=True, detail="build disabled"))

    if config.project.module_path:
        module_path = _resolve(root_dir, config.project.module_path)
        exists = module_path.is_file()
        checks.append(
            DoctorCheck(
                name="module_path",
                ok=exists or config.build.enabled,
                detail=(
                    f"module present at {module_path}"
                    if exists
                    else (
                        f"module will be produced by the build at {module_path}"
                        if config.build.enabled
                        else f"module not found at {module_path} and build is disabled"
                    )
                ),
            )
        )
    else:
        checks.append(DoctorCheck(name="module_path", ok=False, detail="project.module_path is not configured"))

    if config.schema.path:
        schema_path = _resolve(root_dir, config.schema.path)
        checks.append(
            DoctorCheck(
                name="schema_file",
                ok=schema_path.is_file(),
                detail=f"schema at {schema_path} -> {config.schema.database}"
                if schema_path.is_file()
                else f"schema file not found: {schema_path}",
            )
        )
    else:
        checks.append(DoctorCheck(name="schema_file", ok=True, detail="no schema configured"))

    plugin_errors: list[str] = []
    for binding in config.bindings:
        try:
            load_emulator_type(binding.module)
        except PluginError as exc:
            plugin_errors.append(f"{binding.name}: {exc}")
    checks.append(
        DoctorCheck(
            name="bindings",
            ok=bool(config.bindings) and not plugin_errors,
            detail=(
                "; ".join(plugin_errors)
                if plugin_errors
                else (
                    ", ".join(f"{binding.name}={binding.kind}" for binding in config.bindings)
                    if config.bindings
                    else "no bindings configured"
                )
            ),
        )
    )

    redis_backends = _redis_backends(config)
    if redis_backends:
        client_available = importlib.util.find_spec("redis") is not None
        checks.append(
            DoctorCheck(
                name="kv_redis_client",
                ok=client_available,
                detail="redis client installed" if client_available else "redis backend needs: pip install 'flareharness[redis]'",
            )
        )
        anonymous = [name for name, url in redis_backends if not _redis_url_has_credentials(url)]
        checks.append(
            DoctorCheck(
                name="kv_redis_auth",
                ok=config.environment == "development" or not anonymous,
                detail=(
                    f"redis URL without credentials for: {', '.join(anonymous)}"
                    if anonymous
                    else "kv redis auth configured"
                ),
            )
        )
        if check_redis and client_available:
            for name, url in redis_backends:
                ok, detail = probe_redis(url, timeout_seconds=config.kv.connect_timeout_seconds)
                checks.append(DoctorCheck(name=f"kv_redis_probe:{name}", ok=ok, detail=detail))
    else:
        checks.append(DoctorCheck(name="kv_backend", ok=True, detail="kv bindings use the memory backend"))

    return {
        "ok": all(item.ok for item in checks),
        "checks": [
            {
                "name": item.name,
                "ok": item.ok,
                "detail": item.detail,
            }
            for item in checks
        ],
        "bindings": [
            {"name": binding.name, "kind": binding.kind, "module": binding.module}
            for binding in config.bindings
        ],
    }


def probe_redis(redis_url: str, *, timeout_seconds: float = 1.0) -> tuple[bool, str]:
    import redis

    client = redis.Redis.from_url(
        redis_url,
        socket_connect_timeout=timeout_seconds,
        socket_timeout=timeout_seconds,
    )
    parsed = urlparse(redis_url)
    endpoint = f"{parsed.hostname or 'localhost'}:{parsed.port or 6379}"
    try:
        client.ping()
        return (True, f"reachable ({endpoint})")
    except redis.RedisError as exc:
        return (False, f"unreachable ({endpoint}): {exc}")
    finally:
        client.close()
