from __future__ import annotations

import http.client
import json
import socket
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote


class _UnixHTTPConnection(http.client.HTTPConnection):
    def __init__(self, *, socket_path: str, timeout: float) -> None:
        super().__init__("localhost", timeout=timeout)
        self._socket_path = socket_path

    def connect(self) -> None:  # type: ignore[override]
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        sock.connect(self._socket_path)
        self.sock = sock


@dataclass(frozen=True)
class DockerUnixResponse:
    status: int
    ok: bool
    data: Any
    error: str | None


def docker_unix_get_json(*, socket_path: str, path: str, timeout_seconds: float = 5.0) -> DockerUnixResponse:
    """
    Read-only Docker Engine API GET over the unix socket.
    Transport errors are returned in `error`, never raised.
    """
    sp = str(socket_path or "").strip()
    if not sp:
        return DockerUnixResponse(status=0, ok=False, data=None, error="missing_socket_path")
    p = str(path or "").strip()
    if not p.startswith("/"):
        p = "/" + p

    conn: _UnixHTTPConnection | None = None
    try:
        conn = _UnixHTTPConnection(socket_path=sp, timeout=max(0.5, float(timeout_seconds)))
        conn.request("GET", p, headers={"Host": "docker"})
        resp = conn.getresponse()
        raw = resp.read()
        status = int(resp.status)
        try:
            data = json.loads(raw.decode("utf-8")) if raw else None
        except ValueError:
            data = raw.decode("utf-8", errors="replace")
        ok = 200 <= status < 300
        return DockerUnixResponse(status=status, ok=ok, data=data, error=None if ok else f"http_{status}")
    except FileNotFoundError:
        return DockerUnixResponse(status=0, ok=False, data=None, error="socket_not_found")
    except (OSError, http.client.HTTPException) as exc:
        return DockerUnixResponse(status=0, ok=False, data=None, error=f"{type(exc).__name__}: {exc}")
    finally:
        if conn is not None:
            conn.close()


def inspect_container(*, socket_path: str, name: str, timeout_seconds: float = 5.0) -> DockerUnixResponse:
    return docker_unix_get_json(
        socket_path=socket_path,
        path=f"/containers/{quote(name, safe='')}/json",
        timeout_seconds=timeout_seconds,
    )


def container_stats(*, socket_path: str, name: str, timeout_seconds: float = 5.0) -> DockerUnixResponse:
    return docker_unix_get_json(
        socket_path=socket_path,
        path=f"/containers/{quote(name, safe='')}/stats?stream=false",
        timeout_seconds=timeout_seconds,
    )


def summarize_container_state(data: Any) -> dict[str, Any]:
    """Extract the fields the supervisor cares about from an inspect payload."""
    if not isinstance(data, dict):
        return {}
    state = data.get("State") if isinstance(data.get("State"), dict) else {}
    health = state.get("Health") if isinstance(state.get("Health"), dict) else {}
    health_status = health.get("Status") if isinstance(health.get("Status"), str) else None

    restart_count = None
    try:
        if data.get("RestartCount") is not None:
            restart_count = int(data["RestartCount"])
    except (TypeError, ValueError):
        restart_count = None

    exit_code = None
    try:
        if state.get("ExitCode") is not None:
            exit_code = int(state["ExitCode"])
    except (TypeError, ValueError):
        exit_code = None

    return {
        "running": state.get("Running") if isinstance(state.get("Running"), bool) else None,
        "status": state.get("Status") if isinstance(state.get("Status"), str) else None,
        "health_status": (health_status or "").strip() or None,
        "oom_killed": state.get("OOMKilled") if isinstance(state.get("OOMKilled"), bool) else None,
        "exit_code": exit_code,
        "restart_count": restart_count,
        "started_at": state.get("StartedAt") if isinstance(state.get("StartedAt"), str) else None,
    }


def compute_stats_percentages(data: Any) -> dict[str, float | None]:
    """CPU and memory percentages from a one-shot /stats payload, as `docker stats` computes them."""
    out: dict[str, float | None] = {"cpu_percent": None, "mem_percent": None}
    if not isinstance(data, dict):
        return out

    try:
        cpu = data["cpu_stats"]
        precpu = data["precpu_stats"]
        cpu_delta = float(cpu["cpu_usage"]["total_usage"]) - float(precpu["cpu_usage"]["total_usage"])
        sys_delta = float(cpu.get("system_cpu_usage") or 0) - float(precpu.get("system_cpu_usage") or 0)
        online = int(cpu.get("online_cpus") or len(cpu["cpu_usage"].get("percpu_usage") or []) or 1)
        if cpu_delta >= 0 and sys_delta > 0:
            out["cpu_percent"] = round((cpu_delta / sys_delta) * online * 100.0, 3)
    except (KeyError, TypeError, ValueError):
        pass

    try:
        mem = data["memory_stats"]
        usage = float(mem["usage"])
        stats = mem.get("stats") if isinstance(mem.get("stats"), dict) else {}
        usage -= float(stats.get("inactive_file") or stats.get("cache") or 0)
        limit = float(mem["limit"])
        if limit > 0:
            out["mem_percent"] = round(max(0.0, usage) / limit * 100.0, 3)
    except (KeyError, TypeError, ValueError):
        pass

    return out
