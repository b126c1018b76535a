from __future__ import annotations

from pathlib import Path
import tomllib


def _pyproject() -> dict:
    pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    return tomllib.loads(pyproject_path.read_text(encoding="utf-8"))


def test_api_extra_includes_uvicorn_standard() -> None:
    api_dependencies = _pyproject().get("project", {}).get("optional-dependencies", {}).get("api", [])
    assert any(str(item).startswith("uvicorn[standard]") for item in api_dependencies)
    assert any(str(item).startswith("fastapi") for item in api_dependencies)


def test_runtime_dependencies_cover_config_and_database() -> None:
    dependencies = [str(item) for item in _pyproject()["project"]["dependencies"]]
    assert any(item.startswith("PyYAML") for item in dependencies)
    assert any(item.startswith("aiosqlite") for item in dependencies)


def test_console_script_points_at_cli_main() -> None:
    assert _pyproject()["project"]["scripts"]["flareharness"] == "flareharness.cli:main"
