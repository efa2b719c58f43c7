"""Durable storage of the supervisor's restart counters and last classifications."""

from __future__ import annotations

import fcntl
import json
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import structlog

from .errors import StatePersistenceFailure, SupervisorBusy
from .models import SupervisorState

logger = structlog.get_logger(__name__)


class StateStore:
    """
    JSON record at a fixed path.

    Writes go to a sibling temp file that is fsynced and then renamed over the
    record, so readers see either the previous or the new state, never a
    partial one.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_name(f"{self.path.name}.lock")

    def load(self) -> SupervisorState:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("No state file, starting from defaults", path=str(self.path))
            return SupervisorState()
        except OSError as exc:
            raise StatePersistenceFailure(f"cannot read {self.path}: {exc}") from exc

        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise StatePersistenceFailure(f"state file {self.path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise StatePersistenceFailure(f"state file {self.path} must hold a JSON object")
        return SupervisorState.from_dict(data)

    def save(self, state: SupervisorState) -> None:
        payload = json.dumps(state.to_dict(), ensure_ascii=False, sort_keys=True, indent=2)
        tmp = self.path.with_name(f"{self.path.name}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as exc:
            try:
                tmp.unlink()
            except OSError:
                pass
            raise StatePersistenceFailure(f"cannot write {self.path}: {exc}") from exc
        logger.debug("State saved", path=str(self.path))

    def reset(self) -> SupervisorState:
        """Operator reset: replace the record with defaults."""
        state = SupervisorState()
        self.save(state)
        logger.info("State reset", path=str(self.path))
        return state

    @contextmanager
    def lock(self) -> Iterator[None]:
        """
        Exclusive, non-blocking lock guarding one tick's read-modify-write.
        Raises SupervisorBusy if another tick holds it.
        """
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as exc:
            raise StatePersistenceFailure(f"cannot open lock {self.lock_path}: {exc}") from exc

        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as exc:
                raise SupervisorBusy(f"another tick holds {self.lock_path}") from exc
            try:
                os.ftruncate(fd, 0)
                os.write(fd, f"{os.getpid()}\n".encode("ascii"))
            except OSError:
                pass
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
