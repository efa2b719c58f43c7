from __future__ import annotations

from pathlib import Path

import pytest

from service_supervisor.config import PolicyConfig
from service_supervisor.errors import DiagnosticsFailure, RemediationFailure, StatePersistenceFailure, SupervisorBusy
from service_supervisor.models import HealthClassification, ProbeResult, SnapshotRef, SupervisorState
from service_supervisor.state_store import StateStore
from service_supervisor.supervisor import Supervisor, cooldown_remaining

NOW = 1_800_000_000.0

HEALTHY = HealthClassification.HEALTHY
DEGRADED = HealthClassification.DEGRADED
CRITICAL = HealthClassification.CRITICAL


def _results(passed: int, total: int = 7) -> list[ProbeResult]:
    return [ProbeResult(name=f"p{i}", ok=i < passed, detail="" if i < passed else "down") for i in range(total)]


class _ScriptedProbeSet:
    """Returns one scripted round per run_all(); the last round repeats."""

    def __init__(self, *rounds: list[ProbeResult]) -> None:
        self.rounds = list(rounds)
        self.calls = 0

    async def run_all(self) -> list[ProbeResult]:
        idx = min(self.calls, len(self.rounds) - 1)
        self.calls += 1
        return list(self.rounds[idx])


class _FakeRemediator:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0

    async def restart(self) -> list[str]:
        self.calls += 1
        if self.fail:
            raise RemediationFailure("restart-discourse.sh restart: exit 1: rebuild failed")
        return ["restart-discourse.sh restart"]


class _CrashingRemediator:
    def __init__(self) -> None:
        self.calls = 0

    async def restart(self) -> list[str]:
        self.calls += 1
        raise UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")


class _FakeNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple] = []

    async def notify(self, from_, to, context) -> bool:
        self.sent.append(("transition", from_, to, context))
        return True

    async def escalate(self, context, from_=CRITICAL) -> bool:
        self.sent.append(("escalation", from_, CRITICAL, context))
        return True


class _FakeDiagnostics:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0

    async def collect(self, results=None) -> SnapshotRef:
        self.calls += 1
        if self.fail:
            raise DiagnosticsFailure("disk full")
        return SnapshotRef(path="/tmp/diagnostics-test.log", created_ts=NOW)


class _BrokenStore(StateStore):
    def save(self, state: SupervisorState) -> None:
        raise StatePersistenceFailure("read-only filesystem")


class _Clock:
    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _make(
    tmp_path: Path,
    probe_set: _ScriptedProbeSet,
    *,
    state: SupervisorState | None = None,
    remediator: _FakeRemediator | None = None,
    diagnostics: _FakeDiagnostics | None = None,
    store: StateStore | None = None,
    clock: _Clock | None = None,
    use_remediator: bool = True,
) -> tuple[Supervisor, dict]:
    store = store or StateStore(tmp_path / "state.json")
    if state is not None:
        StateStore(store.path).save(state)
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    parts = {
        "store": store,
        "remediator": (remediator or _FakeRemediator()) if use_remediator else None,
        "diagnostics": diagnostics or _FakeDiagnostics(),
        "notifier": _FakeNotifier(),
        "sleeps": sleeps,
    }
    supervisor = Supervisor(
        service_name="discourse",
        policy=PolicyConfig(cooldown_seconds=300, max_attempts=3, settle_seconds=30),
        probe_set=probe_set,
        store=store,
        remediator=parts["remediator"],
        diagnostics=parts["diagnostics"],
        notifier=parts["notifier"],
        clock=clock or _Clock(),
        sleep=fake_sleep,
    )
    return supervisor, parts


def test_cooldown_remaining() -> None:
    state = SupervisorState(last_restart_ts=NOW - 120)
    assert cooldown_remaining(state, now_ts=NOW, cooldown_seconds=300) == 180
    assert cooldown_remaining(state, now_ts=NOW + 500, cooldown_seconds=300) == 0
    assert cooldown_remaining(SupervisorState(), now_ts=NOW, cooldown_seconds=300) == 0
    # Clock moved backwards past the last restart.
    assert cooldown_remaining(state, now_ts=NOW - 1000, cooldown_seconds=300) == 300


@pytest.mark.asyncio
async def test_healthy_steady_state_does_nothing(tmp_path: Path) -> None:
    supervisor, parts = _make(tmp_path, _ScriptedProbeSet(_results(7)))

    outcome = await supervisor.tick()

    assert outcome.initial is HEALTHY
    assert outcome.final is HEALTHY
    assert outcome.exit_code == 0
    assert outcome.remediation is None
    assert parts["remediator"].calls == 0
    assert parts["notifier"].sent == []
    assert parts["diagnostics"].calls == 0
    assert parts["store"].load() == SupervisorState()


@pytest.mark.asyncio
async def test_critical_inside_cooldown_skips_restart_and_stays_quiet(tmp_path: Path) -> None:
    state = SupervisorState(
        restart_attempt_count=1,
        last_restart_ts=NOW - 120,
        last_classification=CRITICAL,
        last_notified_classification=CRITICAL,
    )
    supervisor, parts = _make(tmp_path, _ScriptedProbeSet(_results(2)), state=state)

    outcome = await supervisor.tick()

    assert outcome.final is CRITICAL
    assert outcome.exit_code == 1
    assert parts["remediator"].calls == 0
    assert outcome.remediation is not None and outcome.remediation.attempted is False
    assert "cooldown" in (outcome.remediation.skipped_reason or "")
    assert parts["notifier"].sent == []
    assert parts["diagnostics"].calls == 1
    assert outcome.snapshot is not None

    saved = parts["store"].load()
    assert saved.restart_attempt_count == 1
    assert saved.last_restart_ts == NOW - 120


@pytest.mark.asyncio
async def test_exhausted_budget_escalates_once(tmp_path: Path) -> None:
    state = SupervisorState(
        restart_attempt_count=3,
        last_restart_ts=NOW - 1000,
        last_classification=CRITICAL,
        last_notified_classification=DEGRADED,
    )
    clock = _Clock()
    supervisor, parts = _make(tmp_path, _ScriptedProbeSet(_results(1)), state=state, clock=clock)

    outcome = await supervisor.tick()

    assert outcome.final is CRITICAL
    assert outcome.escalated is True
    assert parts["remediator"].calls == 0
    assert [s[0] for s in parts["notifier"].sent] == ["escalation"]
    assert parts["notifier"].sent[0][1] is DEGRADED

    saved = parts["store"].load()
    assert saved.last_notified_classification is CRITICAL
    assert saved.escalated is True
    assert saved.restart_attempt_count == 3

    clock.now += 600
    again = await supervisor.tick()
    assert again.escalated is False
    assert parts["remediator"].calls == 0
    assert len(parts["notifier"].sent) == 1


@pytest.mark.asyncio
async def test_successful_restart_recovers_and_notifies_once(tmp_path: Path) -> None:
    state = SupervisorState(
        restart_attempt_count=1,
        last_restart_ts=NOW - 1000,
        last_classification=CRITICAL,
        last_notified_classification=CRITICAL,
    )
    probe_set = _ScriptedProbeSet(_results(2), _results(7))
    supervisor, parts = _make(tmp_path, probe_set, state=state)

    outcome = await supervisor.tick()

    assert outcome.initial is CRITICAL
    assert outcome.final is HEALTHY
    assert outcome.exit_code == 0
    assert outcome.remediation is not None and outcome.remediation.ok is True
    assert outcome.remediation.attempt == 2
    assert parts["remediator"].calls == 1
    assert parts["sleeps"] == [30]
    assert probe_set.calls == 2
    assert parts["diagnostics"].calls == 0

    sent = parts["notifier"].sent
    assert len(sent) == 1
    assert sent[0][:3] == ("transition", CRITICAL, HEALTHY)

    saved = parts["store"].load()
    assert saved.restart_attempt_count == 0
    assert saved.last_restart_ts == NOW
    assert saved.last_classification is HEALTHY
    assert saved.last_notified_classification is HEALTHY


@pytest.mark.asyncio
async def test_restart_that_does_not_help_counts_attempt(tmp_path: Path) -> None:
    probe_set = _ScriptedProbeSet(_results(2), _results(3))
    supervisor, parts = _make(tmp_path, probe_set)

    outcome = await supervisor.tick()

    assert outcome.final is CRITICAL
    assert outcome.remediation is not None
    assert outcome.remediation.attempted is True
    assert outcome.remediation.ok is False
    assert [s[:3] for s in parts["notifier"].sent] == [("transition", HEALTHY, CRITICAL)]
    assert parts["diagnostics"].calls == 1

    saved = parts["store"].load()
    assert saved.restart_attempt_count == 1
    assert saved.last_restart_ts == NOW
    assert saved.last_notified_classification is CRITICAL


@pytest.mark.asyncio
async def test_restart_failure_counts_attempt_without_reprobe(tmp_path: Path) -> None:
    probe_set = _ScriptedProbeSet(_results(2), _results(7))
    supervisor, parts = _make(tmp_path, probe_set, remediator=_FakeRemediator(fail=True))

    outcome = await supervisor.tick()

    assert outcome.final is CRITICAL
    assert outcome.remediation is not None and outcome.remediation.error
    assert probe_set.calls == 1
    assert parts["sleeps"] == []
    saved = parts["store"].load()
    assert saved.restart_attempt_count == 1
    assert saved.last_restart_ts == NOW


@pytest.mark.asyncio
async def test_unexpected_restart_error_still_persists_attempt(tmp_path: Path) -> None:
    clock = _Clock()
    probe_set = _ScriptedProbeSet(_results(2), _results(7))
    remediator = _CrashingRemediator()
    supervisor, parts = _make(tmp_path, probe_set, remediator=remediator, clock=clock)

    outcome = await supervisor.tick()

    assert outcome.final is CRITICAL
    assert outcome.remediation is not None
    assert outcome.remediation.attempted is True
    assert outcome.remediation.ok is False
    assert outcome.remediation.error.startswith("UnicodeDecodeError")
    assert probe_set.calls == 1
    assert parts["diagnostics"].calls == 1
    saved = parts["store"].load()
    assert saved.restart_attempt_count == 1
    assert saved.last_restart_ts == NOW

    clock.now += 60
    again = await supervisor.tick()
    assert again.remediation is not None and again.remediation.attempted is False
    assert remediator.calls == 1


@pytest.mark.asyncio
async def test_relapse_after_degraded_escalates_again(tmp_path: Path) -> None:
    state = SupervisorState(
        restart_attempt_count=3,
        last_restart_ts=NOW - 1000,
        last_classification=CRITICAL,
        last_notified_classification=CRITICAL,
        escalated=True,
    )
    probe_set = _ScriptedProbeSet(_results(6))
    supervisor, parts = _make(tmp_path, probe_set, state=state)

    first = await supervisor.tick()
    assert first.final is DEGRADED
    saved = parts["store"].load()
    assert saved.escalated is False
    assert saved.restart_attempt_count == 3

    probe_set.rounds = [_results(1)]
    second = await supervisor.tick()

    assert second.final is CRITICAL
    assert second.escalated is True
    assert parts["remediator"].calls == 0
    sent = parts["notifier"].sent
    assert [s[:3] for s in sent] == [("transition", CRITICAL, DEGRADED), ("escalation", DEGRADED, CRITICAL)]
    assert parts["store"].load().escalated is True


@pytest.mark.asyncio
async def test_budget_is_spent_across_ticks_then_escalates(tmp_path: Path) -> None:
    clock = _Clock()
    supervisor, parts = _make(tmp_path, _ScriptedProbeSet(_results(2)), clock=clock)

    for _ in range(3):
        await supervisor.tick()
        clock.now += 301

    assert parts["remediator"].calls == 3
    assert parts["store"].load().restart_attempt_count == 3

    outcome = await supervisor.tick()
    assert outcome.escalated is True
    assert parts["remediator"].calls == 3
    kinds = [s[0] for s in parts["notifier"].sent]
    assert kinds == ["transition", "escalation"]


@pytest.mark.asyncio
async def test_recovery_without_restart_resets_counter_and_latch(tmp_path: Path) -> None:
    state = SupervisorState(
        restart_attempt_count=3,
        last_restart_ts=NOW - 60,
        last_classification=CRITICAL,
        last_notified_classification=CRITICAL,
        escalated=True,
    )
    supervisor, parts = _make(tmp_path, _ScriptedProbeSet(_results(7)), state=state)

    outcome = await supervisor.tick()

    assert outcome.final is HEALTHY
    saved = parts["store"].load()
    assert saved.restart_attempt_count == 0
    assert saved.escalated is False
    assert [s[:3] for s in parts["notifier"].sent] == [("transition", CRITICAL, HEALTHY)]


@pytest.mark.asyncio
async def test_ticks_inside_cooldown_are_idempotent(tmp_path: Path) -> None:
    state = SupervisorState(
        restart_attempt_count=2,
        last_restart_ts=NOW - 30,
        last_classification=CRITICAL,
        last_notified_classification=CRITICAL,
    )
    clock = _Clock()
    supervisor, parts = _make(tmp_path, _ScriptedProbeSet(_results(1)), state=state, clock=clock)
    path = parts["store"].path

    await supervisor.tick()
    first = path.read_text(encoding="utf-8")
    clock.now += 60
    await supervisor.tick()
    second = path.read_text(encoding="utf-8")

    assert first == second
    assert parts["notifier"].sent == []
    assert parts["remediator"].calls == 0


@pytest.mark.asyncio
async def test_notifications_are_edge_triggered(tmp_path: Path) -> None:
    probe_set = _ScriptedProbeSet(_results(6))
    supervisor, parts = _make(tmp_path, probe_set)

    await supervisor.tick()
    await supervisor.tick()
    probe_set.rounds = [_results(7)]
    await supervisor.tick()
    await supervisor.tick()

    assert [s[:3] for s in parts["notifier"].sent] == [
        ("transition", HEALTHY, DEGRADED),
        ("transition", DEGRADED, HEALTHY),
    ]
    assert parts["remediator"].calls == 0


@pytest.mark.asyncio
async def test_remediation_disabled_only_alerts(tmp_path: Path) -> None:
    supervisor, parts = _make(tmp_path, _ScriptedProbeSet(_results(0)), use_remediator=False)

    outcome = await supervisor.tick()

    assert outcome.final is CRITICAL
    assert outcome.remediation is not None
    assert outcome.remediation.skipped_reason == "remediation disabled"
    assert parts["store"].load().restart_attempt_count == 0
    assert len(parts["notifier"].sent) == 1


@pytest.mark.asyncio
async def test_diagnostics_failure_does_not_block_tick(tmp_path: Path) -> None:
    supervisor, parts = _make(
        tmp_path,
        _ScriptedProbeSet(_results(1)),
        state=SupervisorState(last_restart_ts=NOW - 10),
        diagnostics=_FakeDiagnostics(fail=True),
    )

    outcome = await supervisor.tick()

    assert outcome.final is CRITICAL
    assert outcome.snapshot is None
    assert parts["diagnostics"].calls == 1
    assert len(parts["notifier"].sent) == 1
    assert parts["store"].load().last_classification is CRITICAL


@pytest.mark.asyncio
async def test_persistence_failure_propagates(tmp_path: Path) -> None:
    store = _BrokenStore(tmp_path / "state.json")
    supervisor, _parts = _make(tmp_path, _ScriptedProbeSet(_results(7)), store=store)

    with pytest.raises(StatePersistenceFailure):
        await supervisor.tick()


@pytest.mark.asyncio
async def test_tick_refuses_to_run_concurrently(tmp_path: Path) -> None:
    supervisor, parts = _make(tmp_path, _ScriptedProbeSet(_results(7)))

    with StateStore(parts["store"].path).lock():
        with pytest.raises(SupervisorBusy):
            await supervisor.tick()
