"""Harness config files: YAML documents with ``${VAR}`` and ``${VAR:-default}`` references."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Mapping

import yaml

from flareharness.config.schema import HarnessConfig, parse_config


DEFAULT_CONFIG_PATH = Path(__file__).with_name("defaults.yml")
ENV_REFERENCE = re.compile(r"\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<default>.*?))?\}")


def read_config_document(path: str | Path, *, environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    config_path = Path(path)
    if not config_path.is_file():
        raise FileNotFoundError(f"config file does not exist: {config_path}")
    document = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ValueError(f"config root must be a mapping: {config_path}")
    return expand_env(document, environ=os.environ if environ is None else environ)


def load_config(path: str | Path) -> HarnessConfig:
    return parse_config(read_config_document(path))


def initialize_config(path: str | Path, force: bool = False) -> Path:
    target = Path(path)
    if target.exists() and not force:
        raise FileExistsError(f"config already exists: {target}")
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(DEFAULT_CONFIG_PATH.read_text(encoding="utf-8"), encoding="utf-8")
    return target


def expand_env(value: Any, *, environ: Mapping[str, str]) -> Any:
    """Resolve environment references in every string of a parsed YAML tree.

    Mapping keys are left alone. A reference without a default whose variable
    is unset raises ``ValueError``.
    """
    if isinstance(value, dict):
        return {key: expand_env(item, environ=environ) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env(item, environ=environ) for item in value]
    if not isinstance(value, str) or "${" not in value:
        return value

    def _lookup(match: re.Match[str]) -> str:
        name = match.group("name")
        if name in environ:
            return environ[name]
        if match.group("default") is not None:
            return match.group("default")
        raise ValueError(f"missing required environment variable '{name}' referenced by '{match.group(0)}'")

    return ENV_REFERENCE.sub(_lookup, value)
