from pathlib import Path

from flareharness.config.schema import parse_config
from flareharness.core.doctor import run_diagnostics


def _check(report: dict, name: str) -> dict:
    return next(item for item in report["checks"] if item["name"] == name)


def test_run_diagnostics_passes_for_prebuilt_module(tmp_path: Path) -> None:
    (tmp_path / "worker.py").write_text("VALUE = 1\n", encoding="utf-8")
    (tmp_path / "schema.sql").write_text("CREATE TABLE t (id INTEGER);\n", encoding="utf-8")
    config = parse_config(
        {
            "project": {"root_dir": str(tmp_path), "module_path": "worker.py"},
            "build": {"enabled": False},
            "bindings": {"kv_namespaces": ["TEST_KV"], "databases": ["DB"]},
            "schema": {"path": "schema.sql"},
        }
    )
    report = run_diagnostics(config)
    assert report["ok"] is True
    assert _check(report, "build_tool")["detail"] == "build disabled"
    assert _check(report, "schema_file")["ok"] is True
    assert "TEST_KV=kv" in _check(report, "bindings")["detail"]
    assert [item["name"] for item in report["bindings"]] == ["TEST_KV", "DB"]


def test_run_diagnostics_flags_missing_root_and_build_tool(tmp_path: Path) -> None:
    config = parse_config(
        {
            "project": {"root_dir": str(tmp_path / "absent"), "module_path": "out.py"},
            "build": {"command": "definitely-not-a-build-tool --release"},
            "bindings": {"databases": ["DB"]},
        }
    )
    report = run_diagnostics(config)
    assert report["ok"] is False
    assert _check(report, "project_root")["ok"] is False
    build_check = _check(report, "build_tool")
    assert build_check["ok"] is False
    assert "definitely-not-a-build-tool" in build_check["detail"]
    assert _check(report, "module_path")["ok"] is True


def test_run_diagnostics_flags_missing_schema_and_module(tmp_path: Path) -> None:
    config = parse_config(
        {
            "project": {"root_dir": str(tmp_path), "module_path": "missing.py"},
            "build": {"enabled": False},
            "bindings": {"databases": ["DB"]},
            "schema": {"path": "missing.sql"},
        }
    )
    report = run_diagnostics(config)
    assert report["ok"] is False
    assert "build is disabled" in _check(report, "module_path")["detail"]
    assert "schema file not found" in _check(report, "schema_file")["detail"]


def test_run_diagnostics_requires_bindings(tmp_path: Path) -> None:
    config = parse_config(
        {
            "project": {"root_dir": str(tmp_path), "module_path": "worker.py"},
            "bindings": {},
        }
    )
    report = run_diagnostics(config)
    assert _check(report, "bindings")["ok"] is False
    assert _check(report, "bindings")["detail"] == "no bindings configured"


def test_run_diagnostics_flags_anonymous_redis_outside_development(tmp_path: Path) -> None:
    config = parse_config(
        {
            "environment": "ci",
            "project": {"root_dir": str(tmp_path), "module_path": "worker.py"},
            "bindings": {"kv_namespaces": ["TEST_KV"]},
            "kv": {"backend": "redis", "redis_url": "redis://redis:6379/0"},
        }
    )
    report = run_diagnostics(config)
    auth_check = _check(report, "kv_redis_auth")
    assert auth_check["ok"] is False
    assert "TEST_KV" in auth_check["detail"]


def test_run_diagnostics_accepts_credentialed_redis(tmp_path: Path) -> None:
    config = parse_config(
        {
            "environment": "ci",
            "project": {"root_dir": str(tmp_path), "module_path": "worker.py"},
            "bindings": {"kv_namespaces": ["TEST_KV"]},
            "kv": {"backend": "redis", "redis_url": "redis://:s3cret@redis:6379/0"},
        }
    )
    report = run_diagnostics(config)
    assert _check(report, "kv_redis_auth")["ok"] is True
