"""One supervision tick: probe, classify, remediate, diagnose, alert, persist."""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from typing import Awaitable, Callable

import structlog

from .classifier import classify, score
from .config import PolicyConfig
from .diagnostics import DiagnosticsCollector
from .errors import RemediationFailure
from .models import (
    HealthClassification,
    ProbeResult,
    RemediationResult,
    SnapshotRef,
    SupervisorState,
    TickOutcome,
)
from .notifier import NotificationContext, Notifier
from .probes import ProbeSet
from .remediation import Remediator
from .state_store import StateStore

logger = structlog.get_logger(__name__)


def cooldown_remaining(state: SupervisorState, *, now_ts: float, cooldown_seconds: float) -> float:
    """Seconds left before another restart may be attempted (0 when allowed)."""
    if state.last_restart_ts is None:
        return 0.0
    elapsed = float(now_ts) - float(state.last_restart_ts)
    if elapsed < 0:
        # Clock went backwards; stay conservative and wait out a full window.
        return float(cooldown_seconds)
    return max(0.0, float(cooldown_seconds) - elapsed)


class Supervisor:
    """
    Owns SupervisorState. Every other collaborator is handed what it needs and
    never touches the store.
    """

    def __init__(
        self,
        *,
        service_name: str,
        policy: PolicyConfig,
        probe_set: ProbeSet,
        store: StateStore,
        remediator: Remediator | None,
        diagnostics: DiagnosticsCollector | None,
        notifier: Notifier,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.service_name = service_name
        self.policy = policy
        self.probe_set = probe_set
        self.store = store
        self.remediator = remediator
        self.diagnostics = diagnostics
        self.notifier = notifier
        self._clock = clock
        self._sleep = sleep

    async def probe(self) -> tuple[HealthClassification, list[ProbeResult]]:
        results = await self.probe_set.run_all()
        classification = classify(results)
        passed, total, percent = score(results)
        logger.info(
            "Health check completed",
            classification=classification.value,
            passed=passed,
            total=total,
            percent=percent,
        )
        return classification, results

    async def tick(self) -> TickOutcome:
        with self.store.lock():
            return await self._tick_locked()

    async def _remediate(
        self, remediator: Remediator, state: SupervisorState, now_ts: float
    ) -> tuple[RemediationResult, SupervisorState]:
        attempt = state.restart_attempt_count + 1
        logger.info(
            "Attempting service restart",
            attempt=attempt,
            max_attempts=self.policy.max_attempts,
        )
        state = replace(state, restart_attempt_count=attempt, last_restart_ts=now_ts)

        try:
            commands = await remediator.restart()
        except RemediationFailure as exc:
            logger.error("Restart failed", attempt=attempt, error=str(exc))
            return RemediationResult(attempted=True, ok=False, attempt=attempt, error=str(exc)), state
        except Exception as exc:
            err = f"{type(exc).__name__}: {exc}"
            logger.error("Restart crashed", attempt=attempt, error=err)
            return RemediationResult(attempted=True, ok=False, attempt=attempt, error=err), state

        logger.info("Waiting for service to stabilize", settle_seconds=self.policy.settle_seconds)
        if self.policy.settle_seconds > 0:
            await self._sleep(self.policy.settle_seconds)

        verified, verification = await self.probe()
        ok = verified is HealthClassification.HEALTHY
        if ok:
            logger.info("Restart successful", attempt=attempt)
        else:
            logger.error("Service still unhealthy after restart", attempt=attempt, classification=verified.value)
        return (
            RemediationResult(
                attempted=True,
                ok=ok,
                attempt=attempt,
                command=commands,
                error=None if ok else f"post-restart classification {verified.value}",
                verification=verification,
            ),
            state,
        )

    async def _collect_diagnostics(self, results: list[ProbeResult]) -> SnapshotRef | None:
        if self.diagnostics is None:
            return None
        try:
            return await self.diagnostics.collect(results)
        except Exception as exc:
            logger.error("Diagnostics collection failed", error=f"{type(exc).__name__}: {exc}")
            return None

    async def _notify(self, coro: Awaitable[bool]) -> bool:
        try:
            return await coro
        except Exception as exc:
            logger.error("Notification failed", error=f"{type(exc).__name__}: {exc}")
            return False

    async def _tick_locked(self) -> TickOutcome:
        state = self.store.load()
        previous = state.last_classification
        now_ts = float(self._clock())

        initial, results = await self.probe()
        final = initial
        final_results = results
        remediation: RemediationResult | None = None
        escalate_now = False

        if initial is HealthClassification.CRITICAL:
            remaining = cooldown_remaining(state, now_ts=now_ts, cooldown_seconds=self.policy.cooldown_seconds)
            if remaining > 0:
                logger.warning("Restart cooldown active", remaining_seconds=round(remaining, 1))
                remediation = RemediationResult(
                    attempted=False, ok=False, attempt=state.restart_attempt_count,
                    skipped_reason=f"cooldown active, {remaining:.0f}s remaining",
                )
            elif state.restart_attempt_count >= self.policy.max_attempts:
                logger.error(
                    "Maximum restart attempts exceeded. Manual intervention required.",
                    restart_attempt_count=state.restart_attempt_count,
                    max_attempts=self.policy.max_attempts,
                )
                remediation = RemediationResult(
                    attempted=False, ok=False, attempt=state.restart_attempt_count,
                    skipped_reason="maximum restart attempts exceeded",
                )
                escalate_now = not state.escalated
                state = replace(state, escalated=True)
            elif self.remediator is None:
                remediation = RemediationResult(
                    attempted=False, ok=False, attempt=state.restart_attempt_count,
                    skipped_reason="remediation disabled",
                )
            else:
                remediation, state = await self._remediate(self.remediator, state, now_ts)
                if remediation.verification:
                    final = classify(remediation.verification)
                    final_results = remediation.verification

        if final is HealthClassification.HEALTHY and (
            previous is not HealthClassification.HEALTHY or state.restart_attempt_count != 0 or state.escalated
        ):
            if state.restart_attempt_count or state.escalated:
                logger.info("Service recovered, resetting restart counter", previous=previous.value)
            state = replace(state, restart_attempt_count=0, escalated=False)
        elif final is HealthClassification.DEGRADED and state.escalated:
            # Budget stays spent; a later relapse to critical escalates again.
            state = replace(state, escalated=False)

        snapshot = None
        if final is HealthClassification.CRITICAL:
            snapshot = await self._collect_diagnostics(final_results)

        context = NotificationContext(
            service=self.service_name,
            results=final_results,
            remediation=remediation,
            restart_attempt_count=state.restart_attempt_count,
            max_attempts=self.policy.max_attempts,
            snapshot_path=snapshot.path if snapshot else None,
        )
        notified = False
        last_notified = state.last_notified_classification
        if escalate_now:
            notified = await self._notify(self.notifier.escalate(context, last_notified))
            state = replace(state, last_notified_classification=final)
        elif final is not last_notified:
            notified = await self._notify(self.notifier.notify(last_notified, final, context))
            state = replace(state, last_notified_classification=final)

        state = replace(state, last_classification=final)
        self.store.save(state)

        logger.info(
            "Health monitoring completed",
            status=final.value,
            restart_attempt_count=state.restart_attempt_count,
        )
        return TickOutcome(
            initial=initial,
            final=final,
            results=final_results,
            state=state,
            remediation=remediation,
            escalated=escalate_now,
            notified=notified,
            snapshot=snapshot,
        )
