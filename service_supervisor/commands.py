"""Bounded execution of external CLIs (docker, compose, restart scripts)."""

from __future__ import annotations

import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CommandResult:
    argv: list[str]
    returncode: int | None
    stdout: str
    stderr: str
    elapsed_ms: float
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.returncode == 0

    @property
    def output(self) -> str:
        if self.stderr and self.stdout:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr

    def describe(self) -> str:
        if self.error:
            return self.error
        if self.returncode != 0:
            tail = (self.stderr or self.stdout).strip().splitlines()[-1:] or [""]
            return f"exit {self.returncode}: {tail[0][:300]}".rstrip(": ")
        return "exit 0"


def executable_available(argv: list[str]) -> bool:
    if not argv:
        return False
    exe = argv[0]
    if "/" in exe:
        return Path(exe).is_file()
    return shutil.which(exe) is not None


def run_command(argv: list[str], *, timeout_seconds: float, cwd: str | None = None) -> CommandResult:
    """
    Run argv and capture its output. Never raises for command-level failures;
    timeouts and missing executables are reported through `error`.
    """
    started = time.perf_counter()

    def _elapsed() -> float:
        return round((time.perf_counter() - started) * 1000.0, 3)

    if not argv:
        return CommandResult(argv=[], returncode=None, stdout="", stderr="", elapsed_ms=0.0, error="empty_command")

    try:
        proc = subprocess.run(
            list(argv),
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=max(0.1, float(timeout_seconds)),
            cwd=cwd,
            check=False,
        )
    except subprocess.TimeoutExpired:
        logger.warning("Command timed out", command=" ".join(argv), timeout_seconds=timeout_seconds)
        return CommandResult(
            argv=list(argv), returncode=None, stdout="", stderr="", elapsed_ms=_elapsed(),
            error=f"timeout after {timeout_seconds:g}s",
        )
    except FileNotFoundError as exc:
        return CommandResult(
            argv=list(argv), returncode=None, stdout="", stderr="", elapsed_ms=_elapsed(),
            error=f"not_found: {exc.filename or argv[0]}",
        )
    except OSError as exc:
        return CommandResult(
            argv=list(argv), returncode=None, stdout="", stderr="", elapsed_ms=_elapsed(),
            error=f"{type(exc).__name__}: {exc}",
        )

    result = CommandResult(
        argv=list(argv),
        returncode=proc.returncode,
        stdout=(proc.stdout or "").strip(),
        stderr=(proc.stderr or "").strip(),
        elapsed_ms=_elapsed(),
    )
    if not result.ok:
        logger.debug("Command failed", command=" ".join(argv), returncode=proc.returncode)
    return result
