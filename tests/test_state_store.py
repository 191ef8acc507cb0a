from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import FakeClock
from mission_control.db import SqlDocumentBackend
from mission_control.errors import ArtifactError, DependencyNotFoundError, NotFoundError, ValidationError
from mission_control.models import (
    AgentStatus,
    ApprovalStatus,
    ArtifactMode,
    ArtifactType,
    MissionStatus,
    TaskStatus,
)
from mission_control.state_store import JsonFileBackend, StateStore


def test_mission_crud_and_versioning(store: StateStore, clock: FakeClock):
    mission = store.create_mission("Launch", id="mission-launch")
    assert mission.status is MissionStatus.QUEUED
    assert store.version == 1
    with pytest.raises(ValidationError):
        store.create_mission("Launch again", id="mission-launch")
    with pytest.raises(ValidationError):
        store.create_mission("")

    clock.advance(5)
    running = store.update_mission(mission.id, status=MissionStatus.RUNNING)
    assert running.started_at == clock.now
    assert running.version == 2
    assert [m.id for m in store.list_missions(MissionStatus.RUNNING)] == [mission.id]
    with pytest.raises(NotFoundError) as excinfo:
        store.update_mission("mission-missing", status="running")
    assert excinfo.value.code == "MISSION_NOT_FOUND"


def test_returned_models_are_copies(store: StateStore):
    mission = store.create_mission("Copy")
    mission.title = "mutated"
    assert store.get_mission(mission.id).title == "Copy"


def test_task_dependencies_validated(store: StateStore):
    mission = store.create_mission("Deps")
    other = store.create_mission("Other")
    foreign = store.create_task(other.id, "Foreign")
    first = store.create_task(mission.id, "First")

    with pytest.raises(DependencyNotFoundError):
        store.create_task(mission.id, "Bad", deps=["task-missing"])
    with pytest.raises(DependencyNotFoundError):
        store.create_task(mission.id, "Cross", deps=[foreign.id])
    with pytest.raises(ValidationError):
        store.update_task(first.id, deps=[first.id])

    second = store.create_task(mission.id, "Second", deps=[first.id, first.id])
    assert second.deps == [first.id]
    assert store.get_mission(mission.id).task_ids == [first.id, second.id]


def test_task_timestamps(store: StateStore, clock: FakeClock):
    mission = store.create_mission("Times")
    task = store.create_task(mission.id, "Run")
    clock.advance(3)
    assert store.update_task(task.id, status=TaskStatus.RUNNING).started_at == clock.now
    clock.advance(3)
    done = store.update_task(task.id, status=TaskStatus.COMPLETE)
    assert done.completed_at == clock.now
    assert done.version == 3


def test_three_failures_trip_circuit_breaker(store: StateStore):
    mission = store.create_mission("Fragile")
    for _ in range(3):
        store.update_mission(mission.id, status=MissionStatus.FAILED)
        store.update_mission(mission.id, status=MissionStatus.RUNNING)

    assert store.get_mission(mission.id).failure_count == 3
    assert store.is_circuit_breaker_tripped()
    trips = store.list_artifacts(mission_id=mission.id, artifact_type=ArtifactType.CIRCUIT_BREAKER_TRIP)
    assert len(trips) == 1
    assert trips[0].payload["failure_count"] == 3

    store.reset_circuit_breaker()
    assert store.get_circuit_breaker() == {"tripped": False, "reason": None, "tripped_at": None}


def test_agents_and_heartbeats(store: StateStore, clock: FakeClock):
    mission = store.create_mission("Crew")
    agent = store.register_agent("worker", mission_id=mission.id, status=AgentStatus.RUNNING)
    assert agent.last_heartbeat == clock.now
    assert store.get_mission(mission.id).agent_ids == [agent.id]

    clock.advance(30)
    assert store.record_heartbeat(agent.id).last_heartbeat == clock.now
    assert store.list_agents(AgentStatus.RUNNING, mission.id)[0].id == agent.id
    assert store.list_agents(AgentStatus.DEAD) == []
    with pytest.raises(NotFoundError):
        store.register_agent("ghost", mission_id="mission-missing")


def test_artifact_validation(store: StateStore):
    mission = store.create_mission("Artifacts")
    with pytest.raises(ArtifactError) as bad_type:
        store.add_artifact("tarball", {}, mission_id=mission.id)
    assert bad_type.value.code == "INVALID_ARTIFACT_TYPE"
    with pytest.raises(ArtifactError) as bad_producer:
        store.add_artifact("git_diff", {}, mission_id=mission.id, producer="robot")
    assert bad_producer.value.code == "INVALID_PRODUCER"
    with pytest.raises(ArtifactError) as bad_payload:
        store.add_artifact(ArtifactType.SIGNAL_REPORT, {"signal_id": "s"}, mission_id=mission.id)
    assert bad_payload.value.code == "INVALID_ARTIFACT_PAYLOAD"


def test_append_only_and_immutable_artifacts(store: StateStore):
    mission = store.create_mission("Logs")
    log = store.add_artifact(
        ArtifactType.BUILD_LOG, {"lines": ["start"], "text": "a", "exit": 0}, mission_id=mission.id
    )
    assert log.mode is ArtifactMode.APPEND_ONLY

    updated = store.update_artifact(log.id, {"lines": ["done"], "text": "b", "exit": 0, "extra": 1}, ["out.txt"])
    assert updated.payload == {"lines": ["start", "done"], "text": "ab", "exit": 0, "extra": 1}
    assert updated.files == ["out.txt"]
    assert updated.version == 2

    with pytest.raises(ArtifactError) as overwrite:
        store.update_artifact(log.id, {"exit": 1})
    assert overwrite.value.code == "APPEND_ONLY_VIOLATION"

    diff = store.add_artifact(ArtifactType.GIT_DIFF, {"diff": "+x"}, mission_id=mission.id)
    assert diff.mode is ArtifactMode.IMMUTABLE
    with pytest.raises(ArtifactError) as immutable:
        store.update_artifact(diff.id, {"diff": "+y"})
    assert immutable.value.code == "IMMUTABLE_VIOLATION"


def test_approvals_resolve_once(store: StateStore):
    mission = store.create_mission("Approvals")
    approval = store.create_approval("deploy", mission_id=mission.id, payload={"proposal_id": "p-1"})
    resolved = store.resolve_approval(approval.id, "approved", "alice", "looks good")
    assert resolved.status is ApprovalStatus.APPROVED
    assert resolved.resolved_by == "alice"

    record = store.list_artifacts(mission_id=mission.id, artifact_type=ArtifactType.APPROVAL_RECORD)[0]
    assert record.payload["decision"] == "approved"
    assert record.payload["proposal_id"] == "p-1"
    assert record.provenance.producer.value == "human"

    with pytest.raises(ValidationError) as excinfo:
        store.resolve_approval(approval.id, "rejected", "bob")
    assert excinfo.value.code == "APPROVAL_ALREADY_RESOLVED"
    assert store.list_approvals(ApprovalStatus.PENDING) == []


def test_armed_mode_and_stats(store: StateStore):
    assert store.is_armed_mode() is False
    assert store.risk_threshold.value == "medium"
    store.set_armed_mode(True, "low")
    assert store.is_armed_mode() is True
    assert store.risk_threshold.value == "low"

    store.create_mission("Stats")
    stats = store.get_stats()
    assert stats["missions"] == {"total": 1, "by_status": {"queued": 1}}
    assert stats["armed_mode"] is True
    assert stats["version"] == store.version


def test_subscribe_and_unsubscribe(store: StateStore):
    events: list[tuple[str, dict]] = []
    unsubscribe = store.subscribe(lambda event, payload: events.append((event, payload)))
    mission = store.create_mission("Events")
    unsubscribe()
    store.create_task(mission.id, "Quiet")
    assert events == [("mission_created", {"mission_id": mission.id})]


def test_json_backend_round_trip(tmp_path: Path, clock: FakeClock):
    backend = JsonFileBackend(tmp_path / "state.json", tmp_path / "snaps")
    store = StateStore(backend, clock=clock)
    mission = store.create_mission("Durable")
    store.create_task(mission.id, "Persist me")
    store.set_armed_mode(True)
    label = store.create_snapshot("before-fix")

    assert (tmp_path / "snaps" / f"{label}.json").exists()
    reloaded = StateStore(JsonFileBackend(tmp_path / "state.json"), clock=clock)
    assert reloaded.version == store.version
    assert reloaded.get_mission(mission.id).title == "Durable"
    assert reloaded.list_tasks(mission.id)[0].title == "Persist me"
    assert reloaded.is_armed_mode() is True
    assert reloaded.get_state()["missions"][mission.id]["task_ids"] == reloaded.get_mission(mission.id).task_ids


def test_sqlite_backend_round_trip(tmp_path: Path, clock: FakeClock):
    url = f"sqlite:///{tmp_path / 'state.db'}"
    backend = SqlDocumentBackend(url)
    store = StateStore(backend, clock=clock)
    mission = store.create_mission("SQL")
    store.create_snapshot("first")
    store.create_snapshot("second")

    assert backend.list_snapshots() == ["first", "second"]
    reloaded = StateStore(SqlDocumentBackend(url), clock=clock)
    assert reloaded.get_mission(mission.id).title == "SQL"
    assert reloaded.version == store.version


def test_audit_log_written(tmp_path: Path, clock: FakeClock):
    store = StateStore(clock=clock, audit_dir=tmp_path / "audit")
    mission = store.create_mission("Audited")
    path = tmp_path / "audit" / "audit_2026-01-05.jsonl"
    entries = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert entries[0]["action"] == "mission_created"
    assert entries[0]["mission_id"] == mission.id
    assert entries[0]["version"] == 1
