"""Diagnostics snapshots captured when the service is critical."""

from __future__ import annotations

import asyncio
import json
import os
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import structlog

from .commands import CommandResult, run_command
from .config import DiagnosticsConfig, ServiceConfig
from .docker_unix import compute_stats_percentages, container_stats
from .errors import DiagnosticsFailure
from .host import collect_host_snapshot
from .models import ProbeResult, SnapshotRef

logger = structlog.get_logger(__name__)

SNAPSHOT_PREFIX = "diagnostics-"
SNAPSHOT_SUFFIX = ".log"


def truncate_tail(text: str, max_bytes: int) -> str:
    raw = text.encode("utf-8", errors="replace")
    if len(raw) <= max_bytes:
        return text
    dropped = len(raw) - max_bytes
    kept = raw[-max_bytes:].decode("utf-8", errors="ignore")
    return f"[... truncated {dropped} bytes]\n{kept}"


def filter_process_lines(ps_output: str, pattern: str) -> str:
    try:
        rx = re.compile(pattern)
    except re.error:
        rx = re.compile(re.escape(pattern))
    lines = ps_output.splitlines()
    header = lines[:1]
    matched = [ln for ln in lines[1:] if rx.search(ln)]
    return "\n".join(header + matched)


class DiagnosticsCollector:
    def __init__(
        self,
        config: DiagnosticsConfig,
        service: ServiceConfig,
        *,
        runner: Callable[..., CommandResult] = run_command,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.service = service
        self.directory = Path(config.directory)
        self._runner = runner
        self._clock = clock

    def _snapshot_path(self, now_ts: float) -> Path:
        stamp = datetime.fromtimestamp(now_ts, tz=timezone.utc).strftime("%Y%m%d-%H%M%S")
        path = self.directory / f"{SNAPSHOT_PREFIX}{stamp}{SNAPSHOT_SUFFIX}"
        n = 1
        while path.exists():
            path = self.directory / f"{SNAPSHOT_PREFIX}{stamp}-{n}{SNAPSHOT_SUFFIX}"
            n += 1
        return path

    async def _command_section(self, title: str, argv: list[str]) -> tuple[str, str, str | None]:
        try:
            result = await asyncio.to_thread(
                self._runner, argv, timeout_seconds=self.config.command_timeout_seconds
            )
        except Exception as exc:
            err = f"{type(exc).__name__}: {exc}"
            return title, f"[{' '.join(argv)} failed: {err}]", f"{title}: {err}"
        body = result.output
        if not result.ok:
            note = f"[{' '.join(argv)} failed: {result.describe()}]"
            body = f"{body}\n{note}" if body else note
            return title, body, f"{title}: {result.describe()}"
        return title, body, None

    async def _container_resources_section(self) -> tuple[str, str, str | None]:
        title = "Container Resources"
        try:
            resp = await asyncio.to_thread(
                container_stats,
                socket_path=self.service.docker_socket_path,
                name=self.service.container,
                timeout_seconds=self.config.command_timeout_seconds,
            )
        except Exception as exc:
            err = f"{type(exc).__name__}: {exc}"
            return title, f"[docker stats failed: {err}]", f"{title}: {err}"
        if not resp.ok:
            return title, f"[docker stats failed: {resp.error or resp.status}]", f"{title}: {resp.error or resp.status}"
        return title, json.dumps(compute_stats_percentages(resp.data), sort_keys=True), None

    async def _process_section(self) -> tuple[str, str, str | None]:
        title, body, err = await self._command_section("Process List", ["ps", "aux"])
        if err is None:
            body = filter_process_lines(body, self.config.process_filter)
        return title, body, err

    def _header(self, now_ts: float, results: list[ProbeResult] | None) -> str:
        lines = [
            "=== Service Diagnostics ===",
            f"Service: {self.service.name} (container {self.service.container})",
            f"Timestamp: {datetime.fromtimestamp(now_ts, tz=timezone.utc).isoformat()}",
        ]
        if results:
            lines.append("")
            lines.append("Probe results:")
            lines.extend(f"  {r.summary()}" for r in results)
        return "\n".join(lines)

    async def collect(self, results: list[ProbeResult] | None = None) -> SnapshotRef:
        """
        Write one snapshot and prune old ones.
        A failing section is noted in the snapshot; failing to write the
        snapshot raises DiagnosticsFailure.
        """
        if not self.config.enabled:
            raise DiagnosticsFailure("diagnostics disabled")

        now_ts = float(self._clock())
        container = self.service.container
        sections = await asyncio.gather(
            self._command_section("Container Status", ["docker", "ps", "-a", "--filter", f"name={container}"]),
            self._command_section(
                f"Container Logs (last {self.config.log_tail_lines} lines)",
                ["docker", "logs", container, "--tail", str(self.config.log_tail_lines)],
            ),
            self._container_resources_section(),
            self._command_section("Memory", ["free", "-h"]),
            self._command_section("Disk", ["df", "-h"]),
            self._command_section("Load", ["uptime"]),
            self._command_section(
                "Network Connectivity",
                ["curl", "-sS", "-I", "--max-time", "5", self.config.connectivity_url],
            ),
            self._process_section(),
            self._command_section(
                "Recent System Logs", ["journalctl", "-u", "docker", "--no-pager", "--lines=20"]
            ),
        )

        host = await asyncio.to_thread(collect_host_snapshot, disk_paths=self.config.disk_paths)
        all_sections = [("Host Snapshot", json.dumps(host, sort_keys=True, indent=2), None), *sections]

        parts = [self._header(now_ts, results), ""]
        titles: list[str] = []
        errors: list[str] = []
        for title, body, err in all_sections:
            titles.append(title)
            if err:
                errors.append(err)
            parts.append(f"=== {title} ===")
            parts.append(truncate_tail(body or "", self.config.max_section_bytes))
            parts.append("")

        path = self._snapshot_path(now_ts)
        tmp = path.with_name(f".{path.name}.tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp.write_text("\n".join(parts), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            raise DiagnosticsFailure(f"cannot write snapshot {path}: {exc}") from exc

        logger.info("Diagnostics collected", path=str(path), section_errors=len(errors))
        pruned = self.prune(now_ts=now_ts)
        return SnapshotRef(path=str(path), created_ts=now_ts, sections=titles, errors=errors, pruned=pruned)

    def list_snapshots(self) -> list[Path]:
        """Snapshots, newest first."""
        if not self.directory.is_dir():
            return []
        items: list[tuple[float, Path]] = []
        for p in self.directory.glob(f"{SNAPSHOT_PREFIX}*{SNAPSHOT_SUFFIX}"):
            try:
                items.append((p.stat().st_mtime, p))
            except OSError:
                continue
        items.sort(key=lambda x: (x[0], x[1].name), reverse=True)
        return [p for _, p in items]

    def prune(self, *, now_ts: float | None = None) -> list[str]:
        """
        Keep a snapshot if it is among the newest `keep_count` or younger
        than `max_age_seconds`; delete the rest.
        """
        now = float(self._clock() if now_ts is None else now_ts)
        pruned: list[str] = []
        for idx, p in enumerate(self.list_snapshots()):
            if idx < self.config.keep_count:
                continue
            try:
                age = now - p.stat().st_mtime
            except OSError:
                continue
            if age < self.config.max_age_seconds:
                continue
            try:
                p.unlink()
                pruned.append(str(p))
            except OSError as exc:
                logger.warning("Could not prune snapshot", path=str(p), error=str(exc))
        if pruned:
            logger.info("Pruned diagnostics snapshots", count=len(pruned))
        return pruned
