"""Dataclasses for top-level harness config."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


KIND_KV = "kv"
KIND_RELATIONAL = "relational"
KIND_OBJECT_STORE = "object_store"

DEFAULT_EMULATOR_MODULES = {
    KIND_KV: "flareharness.services.kv.emulator",
    KIND_RELATIONAL: "flareharness.services.relational.emulator",
    KIND_OBJECT_STORE: "flareharness.services.objectstore.emulator",
}

# config section key -> binding kind
BINDING_SECTIONS = {
    "kv_namespaces": KIND_KV,
    "databases": KIND_RELATIONAL,
    "buckets": KIND_OBJECT_STORE,
}


@dataclass(slots=True)
class ProjectConfig:
    root_dir: str = "."
    module_path: str = ""
    module_name: str = ""
    handler: str = ""


@dataclass(slots=True)
class BuildConfig:
    enabled: bool = True
    command: str = "moon build --target js"
    timeout_seconds: float | None = None


@dataclass(slots=True)
class BindingConfig:
    name: str
    kind: str
    module: str = ""
    options: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.module:
            self.module = DEFAULT_EMULATOR_MODULES[self.kind]


@dataclass(slots=True)
class KVConfig:
    backend: str = "memory"
    redis_url: str = "redis://localhost:6379/15"
    key_prefix: str = "flareharness"
    connect_timeout_seconds: float = 1.0


@dataclass(slots=True)
class EmulatorConfig:
    ready_timeout_seconds: float = 10.0


@dataclass(slots=True)
class SchemaConfig:
    path: str = ""
    database: str = ""
    transactional: bool = False


@dataclass(slots=True)
class DrainConfig:
    iterations: int = 10
    interval_seconds: float = 0.2


@dataclass(slots=True)
class BridgeConfig:
    timeout_seconds: float | None = None


@dataclass(slots=True)
class RegistrationConfig:
    mode: str = "inject"
    init_hook: str = "setup_bindings"


@dataclass(slots=True)
class APIConfig:
    host: str = "127.0.0.1"
    port: int = 8787


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    fmt: str = "ecs_json"
    sink: str = "stdout"
    file_path: str | None = None
    service_name: str = "flareharness"


@dataclass(slots=True)
class HarnessConfig:
    environment: str
    project: ProjectConfig
    build: BuildConfig
    bindings: list[BindingConfig]
    kv: KVConfig
    emulator: EmulatorConfig
    schema: SchemaConfig
    drain: DrainConfig
    bridge: BridgeConfig
    registration: RegistrationConfig
    api: APIConfig
    logging: LoggingConfig

    def bindings_of_kind(self, kind: str) -> list[BindingConfig]:
        return [binding for binding in self.bindings if binding.kind == kind]


VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
VALID_LOG_FORMATS = {"json", "ecs_json"}
VALID_LOG_SINKS = {"stdout", "file"}
VALID_KV_BACKENDS = {"memory", "redis"}
VALID_REGISTRATION_MODES = {"inject", "global"}


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    raw = data.get(name, {})
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"'{name}' must be an object")
    return raw


def _parse_bool_value(raw: Any, *, field_name: str, default: bool) -> bool:
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        normalized = raw.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"{field_name} must be a boolean")


def _parse_optional_positive_float(raw: Any, *, field_name: str) -> float | None:
    if raw is None:
        return None
    value = float(raw)
    if value <= 0:
        raise ValueError(f"{field_name} must be greater than zero")
    return value


def _parse_bindings(raw: dict[str, Any]) -> list[BindingConfig]:
    bindings: list[BindingConfig] = []
    seen: set[str] = set()
    for section_key, kind in BINDING_SECTIONS.items():
        items = raw.get(section_key, [])
        if items is None:
            continue
        if not isinstance(items, list):
            raise ValueError(f"'bindings.{section_key}' must be a list")
        for item in items:
            if isinstance(item, str):
                name = item
                module = ""
                options: dict[str, Any] = {}
            elif isinstance(item, dict):
                name = str(item.get("name", ""))
                module = str(item.get("module", "") or "")
                options = item.get("options", {}) or {}
                if not isinstance(options, dict):
                    raise ValueError(f"binding '{name}' has invalid options payload")
            else:
                raise ValueError(f"'bindings.{section_key}' entries must be names or objects")
            name = name.strip()
            if not name:
                raise ValueError("binding requires a non-empty name")
            if name in seen:
                raise ValueError(f"duplicate binding name '{name}'")
            seen.add(name)
            bindings.append(BindingConfig(name=name, kind=kind, module=module, options=dict(options)))
    unknown = set(raw) - set(BINDING_SECTIONS)
    if unknown:
        raise ValueError(f"unknown binding section(s): {', '.join(sorted(unknown))}")
    return bindings


def parse_config(data: dict[str, Any]) -> HarnessConfig:
    environment = str(data.get("environment", "development"))

    project_raw = _section(data, "project")
    project = ProjectConfig(
        root_dir=str(project_raw.get("root_dir", ".")).strip() or ".",
        module_path=str(project_raw.get("module_path", "") or "").strip(),
        module_name=str(project_raw.get("module_name", "") or "").strip(),
        handler=str(project_raw.get("handler", "") or "").strip(),
    )

    build_raw = _section(data, "build")
    build_enabled = _parse_bool_value(build_raw.get("enabled"), field_name="build.enabled", default=True)
    build_command = str(build_raw.get("command", "moon build --target js") or "").strip()
    if build_enabled and not build_command:
        raise ValueError("build.command must be non-empty when build is enabled")
    build = BuildConfig(
        enabled=build_enabled,
        command=build_command,
        timeout_seconds=_parse_optional_positive_float(
            build_raw.get("timeout_seconds"),
            field_name="build.timeout_seconds",
        ),
    )

    bindings = _parse_bindings(_section(data, "bindings"))

    kv_raw = _section(data, "kv")
    kv_backend = str(kv_raw.get("backend", "memory")).lower()
    if kv_backend not in VALID_KV_BACKENDS:
        raise ValueError(f"invalid kv backend '{kv_backend}'")
    kv_connect_timeout = float(kv_raw.get("connect_timeout_seconds", 1.0))
    if kv_connect_timeout <= 0:
        raise ValueError("kv connect_timeout_seconds must be greater than zero")
    kv = KVConfig(
        backend=kv_backend,
        redis_url=str(kv_raw.get("redis_url", "redis://localhost:6379/15")),
        key_prefix=str(kv_raw.get("key_prefix", "flareharness")).strip() or "flareharness",
        connect_timeout_seconds=kv_connect_timeout,
    )
    for binding in bindings:
        if binding.kind != KIND_KV:
            continue
        binding.options.setdefault("backend", kv.backend)
        binding.options.setdefault("redis_url", kv.redis_url)
        binding.options.setdefault("key_prefix", kv.key_prefix)
        binding.options.setdefault("connect_timeout_seconds", kv.connect_timeout_seconds)

    emulator_raw = _section(data, "emulator")
    ready_timeout = float(emulator_raw.get("ready_timeout_seconds", 10.0))
    if ready_timeout <= 0:
        raise ValueError("emulator ready_timeout_seconds must be greater than zero")
    emulator = EmulatorConfig(ready_timeout_seconds=ready_timeout)

    schema_raw = _section(data, "schema")
    schema = SchemaConfig(
        path=str(schema_raw.get("path", "") or "").strip(),
        database=str(schema_raw.get("database", "") or "").strip(),
        transactional=_parse_bool_value(
            schema_raw.get("transactional"),
            field_name="schema.transactional",
            default=False,
        ),
    )
    relational_names = [binding.name for binding in bindings if binding.kind == KIND_RELATIONAL]
    if schema.database and schema.database not in relational_names:
        raise ValueError(f"schema.database '{schema.database}' is not a configured database binding")
    if schema.path and not relational_names:
        raise ValueError("schema.path requires at least one database binding")
    if schema.path and not schema.database:
        schema.database = relational_names[0]

    drain_raw = _section(data, "drain")
    iterations = int(drain_raw.get("iterations", 10))
    if iterations < 0:
        raise ValueError("drain iterations must be greater than or equal to zero")
    interval_seconds = float(drain_raw.get("interval_seconds", 0.2))
    if interval_seconds < 0:
        raise ValueError("drain interval_seconds must be greater than or equal to zero")
    drain = DrainConfig(iterations=iterations, interval_seconds=interval_seconds)

    bridge_raw = _section(data, "bridge")
    bridge = BridgeConfig(
        timeout_seconds=_parse_optional_positive_float(
            bridge_raw.get("timeout_seconds"),
            field_name="bridge.timeout_seconds",
        )
    )

    registration_raw = _section(data, "registration")
    registration_mode = str(registration_raw.get("mode", "inject")).lower()
    if registration_mode not in VALID_REGISTRATION_MODES:
        raise ValueError(f"invalid registration mode '{registration_mode}'")
    init_hook = str(registration_raw.get("init_hook", "setup_bindings")).strip()
    if registration_mode == "inject" and not init_hook:
        raise ValueError("registration.init_hook must be non-empty in inject mode")
    registration = RegistrationConfig(mode=registration_mode, init_hook=init_hook)

    api_raw = _section(data, "api")
    port = int(api_raw.get("port", 8787))
    if port < 0 or port > 65535:
        raise ValueError("api port must be between 0 and 65535")
    api = APIConfig(host=str(api_raw.get("host", "127.0.0.1")), port=port)

    logging_raw = _section(data, "logging")
    level = str(logging_raw.get("level", "INFO")).upper()
    if level not in VALID_LOG_LEVELS:
        raise ValueError(f"invalid log level '{level}'")
    log_format = str(logging_raw.get("format", "ecs_json"))
    if log_format not in VALID_LOG_FORMATS:
        raise ValueError(f"invalid log format '{log_format}'")
    sink = str(logging_raw.get("sink", "stdout"))
    if sink not in VALID_LOG_SINKS:
        raise ValueError(f"invalid log sink '{sink}'")
    logging_config = LoggingConfig(
        level=level,
        fmt=log_format,
        sink=sink,
        file_path=logging_raw.get("file_path"),
        service_name=str(logging_raw.get("service_name", "flareharness")),
    )

    return HarnessConfig(
        environment=environment,
        project=project,
        build=build,
        bindings=bindings,
        kv=kv,
        emulator=emulator,
        schema=schema,
        drain=drain,
        bridge=bridge,
        registration=registration,
        api=api,
        logging=logging_config,
    )
