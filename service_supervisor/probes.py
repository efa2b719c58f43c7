"""Health probes for the managed service and the set that runs them."""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import replace
from typing import Any

import httpx
import structlog

from .commands import run_command
from .config import ProbeConfig, SupervisorConfig
from .docker_unix import compute_stats_percentages, container_stats, inspect_container, summarize_container_state
from .errors import ProbeFailure
from .host import disk_usage_percent, format_percent, memory_used_percent
from .models import ProbeResult

logger = structlog.get_logger(__name__)

DEFAULT_PROBE_TIMEOUT_SECONDS = 10.0


class Probe:
    """A read-only check of one aspect of service health."""

    kind = "probe"

    def __init__(self, name: str, *, timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS) -> None:
        self.name = name
        self.timeout_seconds = float(timeout_seconds)

    async def run(self) -> ProbeResult:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, timeout_seconds={self.timeout_seconds})"


class ContainerLivenessProbe(Probe):
    kind = "container"

    def __init__(
        self,
        name: str,
        *,
        container: str,
        socket_path: str,
        warning_percent: float | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(name, **kwargs)
        self.container = container
        self.socket_path = socket_path
        self.warning_percent = float(warning_percent) if warning_percent is not None else None

    async def _resource_usage(self) -> dict[str, float | None]:
        """CPU and memory percentages; empty when stats are unavailable. Never fails the check."""
        try:
            resp = await asyncio.to_thread(
                container_stats,
                socket_path=self.socket_path,
                name=self.container,
                timeout_seconds=self.timeout_seconds,
            )
        except Exception as exc:
            logger.debug("Container stats unavailable", container=self.container, error=f"{type(exc).__name__}: {exc}")
            return {}
        if not resp.ok:
            return {}

        usage = compute_stats_percentages(resp.data)
        for key, label in (("cpu_percent", "cpu"), ("mem_percent", "memory")):
            value = usage.get(key)
            if value is not None and self.warning_percent is not None and value > self.warning_percent:
                logger.warning(
                    "Container resource usage high",
                    container=self.container,
                    resource=label,
                    used=format_percent(value),
                    warning=format_percent(self.warning_percent),
                )
        return usage

    async def run(self) -> ProbeResult:
        resp = await asyncio.to_thread(
            inspect_container,
            socket_path=self.socket_path,
            name=self.container,
            timeout_seconds=self.timeout_seconds,
        )
        if resp.status == 404:
            return ProbeResult(name=self.name, ok=False, detail=f"container {self.container} not found")
        if not resp.ok:
            raise ProbeFailure(f"docker inspect {self.container} failed: {resp.error or resp.status}")

        state = summarize_container_state(resp.data)
        if state.get("running") is not True:
            return ProbeResult(
                name=self.name,
                ok=False,
                detail=f"container {self.container} not running (status={state.get('status')})",
                details=state,
            )
        if state.get("health_status") == "unhealthy":
            return ProbeResult(
                name=self.name,
                ok=False,
                detail=f"container {self.container} reports unhealthy",
                details=state,
            )
        if self.warning_percent is not None:
            state = {**state, **await self._resource_usage()}
        return ProbeResult(name=self.name, ok=True, detail="running", details=state)


class HttpEndpointProbe(Probe):
    kind = "http"

    def __init__(
        self,
        name: str,
        *,
        url: str,
        allowed_status_codes: list[int] | None = None,
        body_pattern: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(name, **kwargs)
        self.url = url
        self.allowed_status_codes = list(allowed_status_codes) if allowed_status_codes else None
        self.body_pattern = re.compile(body_pattern, re.IGNORECASE) if body_pattern else None
        self._transport = transport

    def _status_ok(self, status_code: int) -> bool:
        if self.allowed_status_codes is not None:
            return status_code in self.allowed_status_codes
        return 200 <= status_code < 300

    async def run(self) -> ProbeResult:
        started = time.perf_counter()
        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout_seconds) as client:
            try:
                resp = await client.get(self.url, follow_redirects=True)
            except httpx.HTTPError as e:
                elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)
                return ProbeResult(
                    name=self.name,
                    ok=False,
                    detail=f"http_error: {type(e).__name__}: {e}",
                    elapsed_ms=elapsed_ms,
                    details={"url": self.url},
                )

        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)
        details = {"url": self.url, "status_code": resp.status_code}
        if not self._status_ok(resp.status_code):
            return ProbeResult(
                name=self.name, ok=False, detail=f"status {resp.status_code}", elapsed_ms=elapsed_ms, details=details
            )
        if self.body_pattern is not None and not self.body_pattern.search(resp.text or ""):
            return ProbeResult(
                name=self.name,
                ok=False,
                detail=f"body does not match {self.body_pattern.pattern!r}",
                elapsed_ms=elapsed_ms,
                details=details,
            )
        return ProbeResult(name=self.name, ok=True, detail=f"status {resp.status_code}", elapsed_ms=elapsed_ms, details=details)


class CommandProbe(Probe):
    """Dependency check through a CLI, e.g. `docker exec <c> redis-cli ping`."""

    kind = "command"

    def __init__(self, name: str, *, command: list[str], expect_output: str | None = None, **kwargs: Any) -> None:
        super().__init__(name, **kwargs)
        self.command = list(command)
        self.expect_output = re.compile(expect_output) if expect_output else None

    async def run(self) -> ProbeResult:
        result = await asyncio.to_thread(run_command, self.command, timeout_seconds=self.timeout_seconds)
        details = {"command": " ".join(self.command), "returncode": result.returncode}
        if not result.ok:
            return ProbeResult(
                name=self.name, ok=False, detail=result.describe(), elapsed_ms=result.elapsed_ms, details=details
            )
        if self.expect_output is not None and not self.expect_output.search(result.output):
            return ProbeResult(
                name=self.name,
                ok=False,
                detail=f"output does not match {self.expect_output.pattern!r}",
                elapsed_ms=result.elapsed_ms,
                details=details,
            )
        return ProbeResult(name=self.name, ok=True, detail="exit 0", elapsed_ms=result.elapsed_ms, details=details)


class TcpProbe(Probe):
    kind = "tcp"

    def __init__(self, name: str, *, host: str, port: int, **kwargs: Any) -> None:
        super().__init__(name, **kwargs)
        self.host = host
        self.port = int(port)

    async def run(self) -> ProbeResult:
        started = time.perf_counter()
        try:
            _reader, writer = await asyncio.open_connection(self.host, self.port)
        except OSError as exc:
            return ProbeResult(
                name=self.name,
                ok=False,
                detail=f"connect {self.host}:{self.port} failed: {exc}",
                details={"host": self.host, "port": self.port},
            )
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)
        return ProbeResult(
            name=self.name,
            ok=True,
            detail=f"connected {self.host}:{self.port}",
            elapsed_ms=elapsed_ms,
            details={"host": self.host, "port": self.port},
        )


class ResourceThresholdProbe(Probe):
    """
    Disk or memory usage against fixed percentage ceilings.

    Fails above `critical_percent`; above `warning_percent` it still passes
    but logs a warning.
    """

    kind = "resource"

    def __init__(
        self,
        name: str,
        *,
        resource: str,
        critical_percent: float,
        warning_percent: float | None = None,
        path: str = "/",
        **kwargs: Any,
    ) -> None:
        super().__init__(name, **kwargs)
        if resource not in ("disk", "memory"):
            raise ValueError(f"unknown resource: {resource!r}")
        self.resource = resource
        self.path = path
        self.critical_percent = float(critical_percent)
        self.warning_percent = float(warning_percent) if warning_percent is not None else None

    def _measure(self) -> float | None:
        if self.resource == "disk":
            return disk_usage_percent(self.path)
        return memory_used_percent()

    def _label(self) -> str:
        return f"disk {self.path}" if self.resource == "disk" else "memory"

    async def run(self) -> ProbeResult:
        used = await asyncio.to_thread(self._measure)
        if used is None:
            raise ProbeFailure(f"{self._label()} usage unavailable")

        details = {
            "resource": self.resource,
            "used_percent": used,
            "warning_percent": self.warning_percent,
            "critical_percent": self.critical_percent,
        }
        if self.resource == "disk":
            details["path"] = self.path

        if used > self.critical_percent:
            return ProbeResult(
                name=self.name,
                ok=False,
                detail=f"{self._label()} {format_percent(used)} > {format_percent(self.critical_percent)}",
                measurement=used,
                details=details,
            )
        if self.warning_percent is not None and used > self.warning_percent:
            logger.warning(
                "Resource usage high",
                probe=self.name,
                used=format_percent(used),
                warning=format_percent(self.warning_percent),
            )
            return ProbeResult(
                name=self.name,
                ok=True,
                detail=f"{self._label()} {format_percent(used)} > warning {format_percent(self.warning_percent)}",
                measurement=used,
                details=details,
            )
        return ProbeResult(
            name=self.name, ok=True, detail=f"{self._label()} {format_percent(used)}", measurement=used, details=details
        )


class ProbeSet:
    """Runs independent probes concurrently under per-probe and tick-wide timeouts."""

    def __init__(self, probes: list[Probe], *, tick_timeout_seconds: float = 60.0) -> None:
        names = [p.name for p in probes]
        if len(names) != len(set(names)):
            raise ValueError("probe names must be unique")
        self.probes = list(probes)
        self.tick_timeout_seconds = float(tick_timeout_seconds)

    async def _run_one(self, probe: Probe) -> ProbeResult:
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(probe.run(), timeout=probe.timeout_seconds)
        except asyncio.TimeoutError:
            result = ProbeResult(name=probe.name, ok=False, detail=f"timeout after {probe.timeout_seconds:g}s")
        except ProbeFailure as exc:
            result = ProbeResult(name=probe.name, ok=False, detail=str(exc))
        except Exception as exc:
            logger.warning("Probe raised", probe=probe.name, error=f"{type(exc).__name__}: {exc}")
            result = ProbeResult(name=probe.name, ok=False, detail=f"{type(exc).__name__}: {exc}")

        if result.name != probe.name:
            result = replace(result, name=probe.name)
        if result.elapsed_ms is None:
            result = replace(result, elapsed_ms=round((time.perf_counter() - started) * 1000.0, 3))

        if result.ok:
            logger.info("Probe passed", probe=probe.name, detail=result.detail)
        else:
            logger.error("Probe failed", probe=probe.name, detail=result.detail)
        return result

    async def run_all(self) -> list[ProbeResult]:
        if not self.probes:
            return []

        tasks = [asyncio.create_task(self._run_one(p)) for p in self.probes]
        _done, pending = await asyncio.wait(tasks, timeout=self.tick_timeout_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        results: list[ProbeResult] = []
        for probe, task in zip(self.probes, tasks):
            if task in pending or task.cancelled():
                results.append(
                    ProbeResult(
                        name=probe.name,
                        ok=False,
                        detail=f"timeout: probe run exceeded {self.tick_timeout_seconds:g}s",
                    )
                )
                continue
            results.append(task.result())
        return results


def build_probe(
    cfg: ProbeConfig,
    config: SupervisorConfig,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Probe:
    timeout = float(cfg.timeout_seconds or config.policy.probe_timeout_seconds)
    if cfg.type == "container":
        return ContainerLivenessProbe(
            cfg.name,
            container=cfg.container or config.service.container,
            socket_path=config.service.docker_socket_path,
            warning_percent=cfg.warning_percent if cfg.warning_percent is not None else 90.0,
            timeout_seconds=timeout,
        )
    if cfg.type == "http":
        return HttpEndpointProbe(
            cfg.name,
            url=str(cfg.url),
            allowed_status_codes=cfg.allowed_status_codes,
            body_pattern=cfg.body_pattern,
            transport=transport,
            timeout_seconds=timeout,
        )
    if cfg.type == "command":
        return CommandProbe(cfg.name, command=cfg.command, expect_output=cfg.expect_output, timeout_seconds=timeout)
    if cfg.type == "tcp":
        return TcpProbe(cfg.name, host=str(cfg.host), port=int(cfg.port or 0), timeout_seconds=timeout)

    critical = cfg.critical_percent
    if critical is None:
        critical = 90.0 if cfg.type == "disk" else 95.0
    return ResourceThresholdProbe(
        cfg.name,
        resource=cfg.type,
        path=cfg.path,
        critical_percent=critical,
        warning_percent=cfg.warning_percent,
        timeout_seconds=timeout,
    )


def build_probe_set(config: SupervisorConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> ProbeSet:
    probes = [build_probe(cfg, config, transport=transport) for cfg in config.probes]
    return ProbeSet(probes, tick_timeout_seconds=config.policy.tick_timeout_seconds)
