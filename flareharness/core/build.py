"""Foreign module build step."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import subprocess
import time
from typing import Mapping

from flareharness.core.logging import EventLogger, emit_metric


@dataclass(slots=True)
class BuildResult:
    command: str
    returncode: int
    stdout: str
    stderr: str
    duration_seconds: float
    module_path: Path | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "command": self.command,
            "returncode": self.returncode,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_seconds": round(self.duration_seconds, 3),
            "module_path": str(self.module_path) if self.module_path else None,
        }


class BuildFailure(RuntimeError):
    def __init__(
        self,
        command: str,
        returncode: int | None,
        stdout: str = "",
        stderr: str = "",
        *,
        reason: str = "",
        timed_out: bool = False,
    ) -> None:
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.timed_out = timed_out
        if not reason:
            reason = "timed out" if timed_out else f"exited with status {returncode}"
        self.reason = reason
        message = f"build command '{command}' {reason}"
        detail = stderr.strip() or stdout.strip()
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        return {
            "command": self.command,
            "returncode": self.returncode,
            "timed_out": self.timed_out,
            "reason": self.reason,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class BuildOrchestrator:
    def __init__(
        self,
        root_dir: str | Path,
        command: str,
        *,
        timeout_seconds: float | None = None,
        env: Mapping[str, str] | None = None,
        module_path: str | Path | None = None,
        event_logger: EventLogger | None = None,
    ) -> None:
        self.root_dir = Path(root_dir)
        self.command = command
        self.timeout_seconds = timeout_seconds
        self.env = dict(env) if env is not None else None
        self.module_path = self._resolve(module_path) if module_path else None
        self.event_logger = event_logger

    def _resolve(self, path: str | Path) -> Path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.root_dir / candidate
        return candidate

    def build(self) -> BuildResult:
        if not self.root_dir.is_dir():
            self._fail(BuildFailure(self.command, None, reason=f"cannot run: project root '{self.root_dir}' does not exist"))

        environment = None
        if self.env is not None:
            environment = dict(os.environ)
            environment.update(self.env)

        self._emit("build started", outcome=None, event_type="start")
        started = time.perf_counter()
        try:
            proc = subprocess.run(
                self.command,
                shell=True,
                cwd=self.root_dir,
                env=environment,
                check=False,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            self._fail(
                BuildFailure(
                    self.command,
                    None,
                    _as_text(exc.stdout),
                    _as_text(exc.stderr),
                    timed_out=True,
                )
            )
        duration = time.perf_counter() - started

        if proc.returncode != 0:
            self._fail(BuildFailure(self.command, proc.returncode, proc.stdout, proc.stderr))
        if self.module_path is not None and not self.module_path.exists():
            self._fail(
                BuildFailure(
                    self.command,
                    proc.returncode,
                    proc.stdout,
                    proc.stderr,
                    reason=f"did not produce '{self.module_path}'",
                )
            )

        result = BuildResult(
            command=self.command,
            returncode=proc.returncode,
            stdout=proc.stdout,
            stderr=proc.stderr,
            duration_seconds=duration,
            module_path=self.module_path,
        )
        self._emit(
            "build succeeded",
            outcome="success",
            event_type="end",
            duration_seconds=duration,
            payload={"module_path": str(self.module_path) if self.module_path else None},
        )
        if self.event_logger is not None:
            emit_metric(self.event_logger.logger, name="build_seconds", value=duration, component="build")
        return result

    def _fail(self, failure: BuildFailure) -> None:
        self._emit(
            "build failed",
            outcome="failure",
            event_type="end",
            error=failure,
            payload={"returncode": failure.returncode, "timed_out": failure.timed_out},
            level="ERROR",
        )
        raise failure

    def _emit(
        self,
        message: str,
        *,
        outcome: str | None,
        event_type: str,
        duration_seconds: float | None = None,
        error: BaseException | None = None,
        payload: dict[str, object] | None = None,
        level: str = "INFO",
    ) -> None:
        if self.event_logger is None:
            return
        base_payload: dict[str, object] = {"command": self.command, "root_dir": str(self.root_dir)}
        if payload:
            base_payload.update(payload)
        self.event_logger.emit(
            message=message,
            component="build",
            action="build",
            outcome=outcome,
            event_type=event_type,
            duration_seconds=duration_seconds,
            error=error,
            payload=base_payload,
            level=level,
        )
