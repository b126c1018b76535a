"""CLI entry point for flareharness."""

from __future__ import annotations

import argparse
import asyncio
import ipaddress
import json
from pathlib import Path
from typing import Any, Sequence

from flareharness.config.loader import initialize_config, load_config
from flareharness.config.schema import KIND_RELATIONAL, HarnessConfig
from flareharness.core.build import BuildFailure
from flareharness.core.doctor import run_diagnostics
from flareharness.core.foreign import ForeignModuleError
from flareharness.core.harness import Harness
from flareharness.core.manager import BindingNotConfigured, EmulatorStartupError, PlatformEmulatorManager
from flareharness.core.migrate import SchemaApplicationFailure, SchemaMigrator
from flareharness.core.plugin import PluginError


DEFAULT_CONFIG = Path(__file__).parent / "config" / "defaults.yml"

HARNESS_ERRORS = (
    BuildFailure,
    BindingNotConfigured,
    EmulatorStartupError,
    SchemaApplicationFailure,
    ForeignModuleError,
    PluginError,
)


def _host_is_loopback(host: str) -> bool:
    normalized = host.strip().lower()
    if normalized == "localhost":
        return True
    try:
        parsed = ipaddress.ip_address(normalized)
    except ValueError:
        return False
    return parsed.is_loopback


def _error_payload(exc: BaseException) -> dict[str, Any]:
    payload: dict[str, Any] = {"ok": False, "error": str(exc), "type": type(exc).__name__}
    if isinstance(exc, BuildFailure):
        payload["build"] = exc.to_dict()
    elif isinstance(exc, SchemaApplicationFailure):
        payload["statement"] = {"index": exc.statement.index, "sql": exc.statement.sql}
        payload["applied"] = exc.applied
    return payload


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="flareharness")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Create starter config")
    init_parser.add_argument("--config", type=Path, default=Path("./flareharness.yml"))
    init_parser.add_argument("--force", action="store_true")

    run_parser = subparsers.add_parser("run", help="Build, provision, migrate, load and drain once")
    run_parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG)
    run_parser.add_argument("--skip-build", action="store_true", help="Use the module already on disk")

    migrate_parser = subparsers.add_parser("migrate", help="Apply the schema to an ephemeral database")
    migrate_parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG)
    migrate_parser.add_argument("--schema", type=Path, default=None, help="Schema file overriding schema.path")

    doctor_parser = subparsers.add_parser("doctor", help="Run configuration and readiness diagnostics")
    doctor_parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG)
    doctor_parser.add_argument("--check-redis", action="store_true", help="Ping configured redis kv backends")

    bindings_parser = subparsers.add_parser("bindings", help="Show configured bindings")
    bindings_parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG)

    logs_parser = subparsers.add_parser("logs", help="Show log sink configuration")
    logs_parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG)

    serve_parser = subparsers.add_parser("serve", help="Serve the foreign handler over HTTP")
    serve_parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG)
    serve_parser.add_argument("--host", type=str, default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--skip-build", action="store_true", help="Use the module already on disk")

    return parser


def cmd_init(config_path: Path, force: bool) -> int:
    initialize_config(config_path, force=force)
    print(f"wrote config: {config_path}")
    return 0


def cmd_run(config_path: Path, *, skip_build: bool = False) -> int:
    config = load_config(config_path)
    if skip_build:
        config.build.enabled = False
    harness = Harness(config)
    try:
        result = harness.run_sync()
    except HARNESS_ERRORS as exc:
        print(json.dumps(_error_payload(exc), indent=2))
        return 1
    print(json.dumps(result.to_dict(), indent=2))
    return 0


async def _migrate(config: HarnessConfig, schema_path: Path) -> dict[str, Any]:
    databases = config.bindings_of_kind(KIND_RELATIONAL)
    if not databases:
        raise ValueError("migrate requires at least one database binding")
    target_name = config.schema.database or databases[0].name
    target = next(binding for binding in databases if binding.name == target_name)
    async with PlatformEmulatorManager([target], ready_timeout_seconds=config.emulator.ready_timeout_seconds) as manager:
        database = manager.get_database(target.name)
        applied = await SchemaMigrator(transactional=config.schema.transactional).apply_file(schema_path, database)
        tables = await database.table_names()
    return {
        "ok": True,
        "database": target.name,
        "schema": str(schema_path),
        "statements": applied,
        "tables": tables,
    }


def cmd_migrate(config_path: Path, *, schema: Path | None = None) -> int:
    config = load_config(config_path)
    harness_schema = Harness(config).schema_path
    schema_path = schema or harness_schema
    if schema_path is None:
        raise ValueError("no schema configured; set schema.path or pass --schema")
    try:
        payload = asyncio.run(_migrate(config, schema_path))
    except HARNESS_ERRORS as exc:
        print(json.dumps(_error_payload(exc), indent=2))
        return 1
    print(json.dumps(payload, indent=2))
    return 0


def cmd_doctor(config_path: Path, *, check_redis: bool) -> int:
    config = load_config(config_path)
    report = run_diagnostics(config, check_redis=check_redis)
    print(json.dumps(report, indent=2))
    return 0 if bool(report.get("ok")) else 1


def cmd_bindings(config_path: Path) -> int:
    config = load_config(config_path)
    payload = {
        "bindings": [
            {
                "name": binding.name,
                "kind": binding.kind,
                "module": binding.module,
                "options": {key: value for key, value in binding.options.items() if key != "redis_url"},
            }
            for binding in config.bindings
        ],
        "schema_database": config.schema.database or None,
        "registration": {
            "mode": config.registration.mode,
            "init_hook": config.registration.init_hook,
        },
    }
    print(json.dumps(payload, indent=2))
    return 0


def cmd_logs(config_path: Path) -> int:
    config = load_config(config_path)
    payload = {
        "format": config.logging.fmt,
        "level": config.logging.level,
        "sink": config.logging.sink,
        "file_path": config.logging.file_path,
        "service_name": config.logging.service_name,
    }
    print(json.dumps(payload, indent=2))
    return 0


async def _serve(harness: Harness, *, host: str, port: int) -> None:
    from flareharness.api import create_app, serve_app

    harness.build()
    async with harness.environment() as env:
        module = await env.load_module()
        handler = harness.resolve_handler(module)
        app = create_app(handler, env.bindings)
        await serve_app(app, host=host, port=port, log_level=harness.config.logging.level.lower())


def cmd_serve(config_path: Path, *, host: str | None, port: int | None, skip_build: bool = False) -> int:
    config = load_config(config_path)
    if skip_build:
        config.build.enabled = False
    bind_host = host or config.api.host
    bind_port = config.api.port if port is None else port
    if not _host_is_loopback(bind_host):
        raise RuntimeError("refusing to expose emulated bindings on a non-loopback host")
    harness = Harness(config)
    try:
        asyncio.run(_serve(harness, host=bind_host, port=bind_port))
    except KeyboardInterrupt:
        return 0
    except HARNESS_ERRORS as exc:
        print(json.dumps(_error_payload(exc), indent=2))
        return 1
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "init":
        return cmd_init(args.config, args.force)
    if args.command == "run":
        return cmd_run(args.config, skip_build=args.skip_build)
    if args.command == "migrate":
        return cmd_migrate(args.config, schema=args.schema)
    if args.command == "doctor":
        return cmd_doctor(args.config, check_redis=args.check_redis)
    if args.command == "bindings":
        return cmd_bindings(args.config)
    if args.command == "logs":
        return cmd_logs(args.config)
    if args.command == "serve":
        return cmd_serve(args.config, host=args.host, port=args.port, skip_build=args.skip_build)
    parser.error(f"unknown command {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
