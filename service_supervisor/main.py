from __future__ import annotations

import argparse
import asyncio
import atexit
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, TextIO

import httpx
import structlog

from .classifier import classify, score
from .config import LoggingConfig, SupervisorConfig, load_config
from .diagnostics import DiagnosticsCollector
from .errors import StatePersistenceFailure, SupervisorBusy
from .models import HealthClassification
from .notifier import build_notifier
from .probes import build_probe_set
from .remediation import Remediator
from .state_store import StateStore
from .supervisor import Supervisor, cooldown_remaining

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_CRITICAL = 1
EXIT_FAILURE = 2
EXIT_BUSY = 75


def open_log_file(path: str) -> TextIO:
    """Append-mode log file, closed at interpreter exit."""
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    handle = open(path, "a", encoding="utf-8")
    atexit.register(handle.close)
    return handle


def configure_logging(cfg: LoggingConfig, *, level: str | None = None) -> None:
    level_name = str(level or cfg.level or "INFO").upper()
    level_int = getattr(logging, level_name, logging.INFO)

    renderer: Any
    if cfg.format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=cfg.file is None and sys.stdout.isatty())

    logger_factory: Any = structlog.PrintLoggerFactory()
    log_file_error = None
    if cfg.file:
        try:
            logger_factory = structlog.WriteLoggerFactory(file=open_log_file(cfg.file))
        except OSError as exc:
            log_file_error = str(exc)

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_int),
        logger_factory=logger_factory,
        cache_logger_on_first_use=True,
    )

    # Telegram tokens are embedded in request URLs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    if log_file_error:
        structlog.get_logger(__name__).warning("Log file unavailable, logging to stdout", error=log_file_error)


def build_supervisor(
    config: SupervisorConfig,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Supervisor:
    return Supervisor(
        service_name=config.service.name,
        policy=config.policy,
        probe_set=build_probe_set(config, transport=transport),
        store=StateStore(config.state.path),
        remediator=Remediator(config.remediation) if config.remediation.enabled else None,
        diagnostics=DiagnosticsCollector(config.diagnostics, config.service) if config.diagnostics.enabled else None,
        notifier=build_notifier(config.notifications, transport=transport),
    )


async def run_tick(supervisor: Supervisor) -> int:
    try:
        outcome = await supervisor.tick()
    except SupervisorBusy as exc:
        logger.warning("Skipping tick, another tick is running", error=str(exc))
        return EXIT_BUSY
    except StatePersistenceFailure as exc:
        logger.error("State persistence failed", error=str(exc))
        return EXIT_FAILURE
    return outcome.exit_code


async def run_check(supervisor: Supervisor) -> int:
    """Probe and classify only: no restart, no alert, no state write."""
    results = await supervisor.probe_set.run_all()
    classification = classify(results)
    passed, total, percent = score(results)
    for r in results:
        print(("✅ " if r.ok else "❌ ") + r.summary())
    print(f"Health: {classification.value} ({passed}/{total}, {percent}%)")
    return EXIT_CRITICAL if classification is HealthClassification.CRITICAL else EXIT_OK


def show_status(config: SupervisorConfig) -> int:
    store = StateStore(config.state.path)
    try:
        state = store.load()
    except StatePersistenceFailure as exc:
        print(f"State unreadable: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    diagnostics = DiagnosticsCollector(config.diagnostics, config.service)
    payload = {
        "state_path": str(store.path),
        **state.to_dict(),
        "max_attempts": config.policy.max_attempts,
        "cooldown_remaining_seconds": round(
            cooldown_remaining(state, now_ts=time.time(), cooldown_seconds=config.policy.cooldown_seconds), 1
        ),
        "diagnostics": [str(p) for p in diagnostics.list_snapshots()],
    }
    print(json.dumps(payload, indent=2, ensure_ascii=False))
    return EXIT_OK


def reset_state(config: SupervisorConfig) -> int:
    store = StateStore(config.state.path)
    try:
        with store.lock():
            store.reset()
    except SupervisorBusy as exc:
        print(f"Cannot reset while a tick is running: {exc}", file=sys.stderr)
        return EXIT_BUSY
    except StatePersistenceFailure as exc:
        print(f"Reset failed: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    print(f"State reset: {store.path}")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Health supervisor for a single managed service")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to YAML config (default: $SUPERVISOR_CONFIG or the bundled config.yaml)",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Run one supervision tick and exit (default)")
    mode.add_argument("--check", action="store_true", help="Run probes and print results; change nothing")
    mode.add_argument("--status", action="store_true", help="Print the persisted supervisor state")
    mode.add_argument("--reset-state", action="store_true", help="Operator reset of restart counters")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except (OSError, ValueError) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    if args.status:
        return show_status(config)
    if args.reset_state:
        return reset_state(config)

    configure_logging(config.logging, level=args.log_level)
    supervisor = build_supervisor(config)
    try:
        if args.check:
            return asyncio.run(run_check(supervisor))
        return asyncio.run(run_tick(supervisor))
    except Exception:
        logger.exception("Supervisor tick crashed")
        return EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
