from __future__ import annotations

import os
import shutil
import socket
from pathlib import Path
from typing import Any


def read_linux_meminfo_kb(path: str = "/proc/meminfo") -> dict[str, int]:
    """
    Host memory counters in kB (Linux only).
    On other platforms, or if the file is unreadable, returns {}.
    """
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError:
        return {}

    values: dict[str, int] = {}
    for line in raw.splitlines():
        if ":" not in line:
            continue
        key, rest = line.split(":", 1)
        parts = rest.strip().split()
        if not parts:
            continue
        try:
            values[key.strip()] = int(parts[0])
        except ValueError:
            continue
    return values


def memory_used_percent(meminfo: dict[str, int] | None = None) -> float | None:
    info = read_linux_meminfo_kb() if meminfo is None else meminfo
    total = info.get("MemTotal")
    avail = info.get("MemAvailable")
    if not isinstance(total, int) or total <= 0 or not isinstance(avail, int):
        return None
    return round((1.0 - (avail / float(total))) * 100.0, 3)


def swap_used_percent(meminfo: dict[str, int] | None = None) -> float | None:
    info = read_linux_meminfo_kb() if meminfo is None else meminfo
    total = info.get("SwapTotal")
    free = info.get("SwapFree")
    if not isinstance(total, int) or total <= 0 or not isinstance(free, int):
        return None
    return round((1.0 - (free / float(total))) * 100.0, 3)


def disk_usage_percent(path: str) -> float | None:
    try:
        total, used, _free = shutil.disk_usage(path)
    except OSError:
        return None
    if total <= 0:
        return None
    return round((used / float(total)) * 100.0, 3)


def format_percent(value: Any) -> str:
    try:
        if value is None:
            return "n/a"
        return f"{float(value):.1f}%"
    except (TypeError, ValueError):
        return "n/a"


def collect_host_snapshot(*, disk_paths: list[str]) -> dict[str, Any]:
    meminfo = read_linux_meminfo_kb()

    disk: dict[str, Any] = {}
    for p in disk_paths:
        pp = str(p or "").strip()
        if not pp or not Path(pp).exists():
            continue
        pct = disk_usage_percent(pp)
        if pct is not None:
            disk[pp] = {"used_percent": pct}

    load1 = load5 = load15 = None
    try:
        load1, load5, load15 = (float(x) for x in os.getloadavg())
    except OSError:
        pass

    cpu_count = os.cpu_count() or 0
    load1_per_cpu = None
    if load1 is not None and cpu_count > 0:
        load1_per_cpu = round(load1 / float(cpu_count), 3)

    return {
        "hostname": socket.gethostname(),
        "mem_total_kb": meminfo.get("MemTotal"),
        "mem_available_kb": meminfo.get("MemAvailable"),
        "mem_used_percent": memory_used_percent(meminfo),
        "swap_used_percent": swap_used_percent(meminfo),
        "disk": disk,
        "cpu_count": cpu_count,
        "load1": load1,
        "load5": load5,
        "load15": load15,
        "load1_per_cpu": load1_per_cpu,
    }
