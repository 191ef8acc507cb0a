from __future__ import annotations

import asyncio

import pytest

from conftest import FakeClock
from mission_control.models import AgentStatus, ArtifactType, MissionStatus, ProposalStatus, TaskStatus
from mission_control.self_healing import SelfHealingService
from mission_control.state_store import StateStore
from mission_control.watchdog import SignalType, Watchdog, WatchdogConfig


@pytest.fixture
def healer(store: StateStore, clock: FakeClock) -> SelfHealingService:
    return SelfHealingService(store, clock=clock)


@pytest.fixture
def watchdog(store: StateStore, healer: SelfHealingService, clock: FakeClock) -> Watchdog:
    return Watchdog(store, healer, clock=clock)


def _types(signals) -> list[str]:
    return [s.type for s in signals]


def test_stale_then_dead_agent(store: StateStore, watchdog: Watchdog, clock: FakeClock):
    agent = store.register_agent("builder", status=AgentStatus.RUNNING)

    clock.advance(60)
    assert watchdog.tick() == []

    clock.advance(40)
    signals = watchdog.tick()
    assert _types(signals) == [SignalType.AGENT_STALE]
    assert signals[0].severity == "warning"
    assert signals[0].details["seconds_since_heartbeat"] == 100.0
    assert store.get_agent(agent.id).status is AgentStatus.STALE

    clock.advance(90)
    assert _types(watchdog.tick()) == [SignalType.AGENT_DEAD]
    assert store.get_agent(agent.id).status is AgentStatus.DEAD


def test_scenario_dead_agent_reemitted_each_tick(store: StateStore, watchdog: Watchdog, clock: FakeClock):
    """dead 判定はクールダウンなしで tick ごとに再発行される。"""
    mission = store.create_mission("Heartbeat")
    agent = store.register_agent("worker", status=AgentStatus.RUNNING, mission_id=mission.id)
    clock.advance(200)

    first = watchdog.tick()
    assert _types(first) == [SignalType.AGENT_DEAD]
    assert first[0].severity == "critical"
    assert store.get_agent(agent.id).status is AgentStatus.DEAD

    clock.advance(1)
    second = watchdog.tick()
    assert _types(second) == [SignalType.AGENT_DEAD]
    assert len(watchdog.get_signals(signal_type=SignalType.AGENT_DEAD)) == 2


def test_dead_agent_triggers_single_proposal(
    store: StateStore, watchdog: Watchdog, healer: SelfHealingService, clock: FakeClock
):
    mission = store.create_mission("Healing")
    agent = store.register_agent("worker", status=AgentStatus.RUNNING, mission_id=mission.id)
    clock.advance(200)

    for _ in range(5):
        watchdog.tick()
        clock.advance(15)

    proposals = healer.list_proposals(mission_id=mission.id)
    assert len(proposals) == 1
    assert proposals[0].agent_id == agent.id
    assert proposals[0].risk_rating.value == "medium"
    assert proposals[0].failure_signature.startswith(f"agent_dead:{agent.id}:")
    assert watchdog.stats["healing_triggered"] == 3
    assert watchdog.get_status()["heal_attempts"] == {f"agent-{agent.id}": 3}


def test_agent_without_mission_is_not_healed(store: StateStore, watchdog: Watchdog, clock: FakeClock):
    store.register_agent("orphan", status=AgentStatus.RUNNING)
    clock.advance(300)
    assert _types(watchdog.tick()) == [SignalType.AGENT_DEAD]
    assert store.list_proposals() == []
    assert store.list_artifacts(artifact_type=ArtifactType.SIGNAL_REPORT) == []


def test_spawning_agents_are_ignored(store: StateStore, watchdog: Watchdog, clock: FakeClock):
    store.register_agent("booting")
    clock.advance(1000)
    assert watchdog.tick() == []


def test_mission_timeout_blocks_mission(store: StateStore, watchdog: Watchdog, clock: FakeClock):
    mission = store.create_mission("Long haul")
    store.update_mission(mission.id, status=MissionStatus.RUNNING)
    clock.advance(3601)

    signals = watchdog.tick()
    assert _types(signals) == [SignalType.MISSION_TIMEOUT]
    blocked = store.get_mission(mission.id)
    assert blocked.status is MissionStatus.BLOCKED
    assert blocked.blocked_reason == "Watchdog timeout: exceeded 60 minutes"
    reports = store.list_artifacts(mission_id=mission.id, artifact_type=ArtifactType.SIGNAL_REPORT)
    assert reports[0].payload["signal_type"] == SignalType.MISSION_TIMEOUT
    assert watchdog.get_active_issues()["blocked_missions"][0]["id"] == mission.id


def test_mission_stuck_only_without_running_tasks(store: StateStore, watchdog: Watchdog, clock: FakeClock):
    mission = store.create_mission("Idle")
    store.create_task(mission.id, "Waiting")
    busy = store.create_task(mission.id, "Busy")
    store.update_mission(mission.id, status=MissionStatus.RUNNING)
    store.update_task(busy.id, status=TaskStatus.RUNNING)
    clock.advance(120)
    store.update_task(busy.id, status=TaskStatus.COMPLETE)
    clock.advance(200)

    signals = watchdog.tick()
    assert _types(signals) == [SignalType.MISSION_STUCK]
    assert signals[0].details["pending_tasks"] == 1
    assert signals[0].details["completed_tasks"] == 1
    assert store.get_mission(mission.id).status is MissionStatus.RUNNING


def test_stuck_task_requests_low_risk_heal(
    store: StateStore, watchdog: Watchdog, healer: SelfHealingService, clock: FakeClock
):
    mission = store.create_mission("Slow task")
    task = store.create_task(mission.id, "Compile", agent_id="agent-1")
    store.update_task(task.id, status=TaskStatus.RUNNING)
    clock.advance(181)

    signals = watchdog.tick()
    assert _types(signals) == [SignalType.TASK_STUCK]
    report = store.list_artifacts(task_id=task.id, artifact_type=ArtifactType.SIGNAL_REPORT)
    assert len(report) == 1

    proposal = healer.list_proposals(mission_id=mission.id)[0]
    assert proposal.task_id == task.id
    assert proposal.risk_rating.value == "low"
    assert proposal.status is ProposalStatus.PENDING


def test_auto_heal_disabled_for_tasks(store: StateStore, healer: SelfHealingService, clock: FakeClock):
    watchdog = Watchdog(store, healer, WatchdogConfig(auto_heal_stuck_tasks=False), clock=clock)
    mission = store.create_mission("No heal")
    task = store.create_task(mission.id, "Compile")
    store.update_task(task.id, status=TaskStatus.RUNNING)
    clock.advance(500)
    assert _types(watchdog.tick()) == [SignalType.TASK_STUCK]
    assert healer.list_proposals() == []


def test_auto_apply_applies_within_threshold(store: StateStore, healer: SelfHealingService, clock: FakeClock):
    store.set_armed_mode(True, "low")
    watchdog = Watchdog(store, healer, clock=clock, auto_apply=True)
    mission = store.create_mission("Auto")
    task = store.create_task(mission.id, "Compile")
    store.update_task(task.id, status=TaskStatus.RUNNING)
    clock.advance(200)
    watchdog.tick()
    assert healer.list_proposals(mission_id=mission.id)[0].status is ProposalStatus.APPLIED


def test_circuit_breaker_signal_has_cooldown(store: StateStore, watchdog: Watchdog, clock: FakeClock):
    store.trip_circuit_breaker("too many failures")
    assert _types(watchdog.tick()) == [SignalType.CIRCUIT_BREAKER_TRIP]
    clock.advance(60)
    assert watchdog.tick() == []
    clock.advance(300)
    assert _types(watchdog.tick()) == [SignalType.CIRCUIT_BREAKER_TRIP]


def test_high_failure_rate(store: StateStore, watchdog: Watchdog, clock: FakeClock):
    missions = [store.create_mission(f"Batch {n}") for n in range(3)]
    for mission in missions[:2]:
        store.update_mission(mission.id, status=MissionStatus.FAILED)

    signals = watchdog.tick()
    assert _types(signals) == [SignalType.HIGH_FAILURE_RATE]
    assert signals[0].details == {"failure_rate": 67, "failed": 2, "total": 3, "window": "1 hour"}
    clock.advance(10)
    assert watchdog.tick() == []


def test_failure_rate_ignores_old_missions(store: StateStore, watchdog: Watchdog, clock: FakeClock):
    for n in range(3):
        mission = store.create_mission(f"Old {n}")
        store.update_mission(mission.id, status=MissionStatus.FAILED)
    clock.advance(hours=2)
    assert watchdog.tick() == []


def test_recover_agent(store: StateStore, watchdog: Watchdog, clock: FakeClock):
    mission = store.create_mission("Recover")
    agent = store.register_agent("worker", status=AgentStatus.RUNNING, mission_id=mission.id)

    assert watchdog.recover_agent("agent-missing")["success"] is False
    assert watchdog.recover_agent(agent.id)["success"] is False

    clock.advance(200)
    watchdog.tick()
    result = watchdog.recover_agent(agent.id)
    assert result == {"success": True, "agent_id": agent.id}

    recovered = store.get_agent(agent.id)
    assert recovered.status is AgentStatus.RUNNING
    assert recovered.last_heartbeat == clock.now
    assert watchdog.get_status()["heal_attempts"] == {}
    assert watchdog.stats["agents_recovered"] == 1
    assert watchdog.get_signals(severity="info")[0].type == SignalType.AGENT_RECOVERED
    assert watchdog.tick() == []


def test_get_signals_filters_and_subscribers(store: StateStore, watchdog: Watchdog, clock: FakeClock):
    received = []
    unsubscribe = watchdog.subscribe(received.append)
    store.register_agent("a", status=AgentStatus.RUNNING)
    store.trip_circuit_breaker("stop")
    clock.advance(100)
    watchdog.tick()

    assert _types(watchdog.get_signals(entity_type="agent")) == [SignalType.AGENT_STALE]
    assert _types(watchdog.get_signals(severity="critical")) == [SignalType.CIRCUIT_BREAKER_TRIP]
    assert len(watchdog.get_signals(limit=1)) == 1
    assert watchdog.get_signals(since=clock.advance(1)) == []
    assert len(received) == 2

    unsubscribe()
    clock.advance(10)
    watchdog.tick()
    assert len(received) == 2


@pytest.mark.asyncio
async def test_start_stop(watchdog: Watchdog):
    assert (await watchdog.start())["success"] is True
    assert watchdog.is_running
    assert (await watchdog.start())["success"] is False
    assert watchdog.health_check()["status"] == "ok"
    assert (await watchdog.stop())["success"] is True
    assert not watchdog.is_running
    assert (await watchdog.stop())["success"] is False


@pytest.mark.asyncio
async def test_stop_after_loop_already_ended(watchdog: Watchdog):
    assert (await watchdog.stop())["reason"] == "Not running"
    await watchdog.start()
    loop_task = watchdog._task
    loop_task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await loop_task
    assert not watchdog.is_running
    assert (await watchdog.stop()) == {"success": False, "reason": "Not running"}
    assert (await watchdog.start())["success"] is True
    assert (await watchdog.stop())["success"] is True
