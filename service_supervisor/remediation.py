"""Restart action for the managed service."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import structlog

from .commands import CommandResult, executable_available, run_command
from .config import RemediationConfig
from .errors import RemediationFailure

logger = structlog.get_logger(__name__)

CommandRunner = Callable[..., CommandResult]


class Remediator:
    """
    Restarts the service with the configured restart script, or falls back to
    `docker compose down` / `up -d` when the script is not installed.
    """

    def __init__(
        self,
        config: RemediationConfig,
        *,
        runner: CommandRunner = run_command,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self._runner = runner
        self._sleep = sleep

    def plan(self) -> list[list[str]]:
        """The commands a restart will run, in order."""
        if self.config.restart_command and executable_available(self.config.restart_command):
            return [list(self.config.restart_command)]
        return [list(cmd) for cmd in self.config.fallback_commands if cmd]

    async def restart(self) -> list[str]:
        """
        Run the restart. Returns the commands that ran as display strings.
        Raises RemediationFailure if any command fails.
        """
        plan = self.plan()
        if not plan:
            raise RemediationFailure("no restart command configured")

        ran: list[str] = []
        for idx, argv in enumerate(plan):
            if idx > 0 and self.config.fallback_pause_seconds > 0:
                await self._sleep(self.config.fallback_pause_seconds)

            display = " ".join(argv)
            logger.info("Executing restart step", command=display, step=idx + 1, steps=len(plan))
            result = await asyncio.to_thread(
                self._runner,
                argv,
                timeout_seconds=self.config.command_timeout_seconds,
                cwd=self.config.working_dir,
            )
            ran.append(display)
            if not result.ok:
                raise RemediationFailure(f"{display}: {result.describe()}")
        return ran
