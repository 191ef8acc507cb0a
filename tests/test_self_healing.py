from __future__ import annotations

from typing import Any

import pytest

from conftest import FakeClock
from mission_control.approval_policy import ApprovalPolicyService
from mission_control.errors import NotFoundError, ValidationError
from mission_control.models import ApprovalStatus, ArtifactType, MissionStatus, ProposalStatus
from mission_control.self_healing import SelfHealingService, self_heal_key
from mission_control.state_store import MemoryBackend, StateStore


@pytest.fixture
def healer(store: StateStore, clock: FakeClock) -> SelfHealingService:
    return SelfHealingService(store, ApprovalPolicyService(store, clock=clock), clock=clock)


@pytest.fixture
def mission_id(store: StateStore) -> str:
    mission = store.create_mission("Flaky build")
    store.update_mission(mission.id, status=MissionStatus.RUNNING)
    return mission.id


def _propose(healer: SelfHealingService, mission_id: str, signature: Any = "npm ERR! ENOENT", **kw: Any):
    kw.setdefault("risk_rating", "medium")
    return healer.generate_proposal(
        mission_id,
        signature,
        diagnosis="Missing lockfile",
        rollback_plan="git checkout package-lock.json",
        proposed_commands=["npm install"],
        **kw,
    )


def test_self_heal_key_is_stable():
    key = self_heal_key("npm ERR! ENOENT")
    assert len(key) == 16
    assert key == self_heal_key("npm ERR! ENOENT")
    assert self_heal_key({"b": 1, "a": 2}) == self_heal_key({"a": 2, "b": 1})
    assert key != self_heal_key("npm ERR! EACCES")


def test_generate_records_artifacts(store: StateStore, healer: SelfHealingService, mission_id: str):
    result = _propose(healer, mission_id)
    assert result["success"] is True
    assert result["requires_review"] is True

    proposal = healer.get_proposal(result["proposal_id"])
    assert proposal.status is ProposalStatus.PENDING
    report = store.get_artifact(result["failure_report_id"])
    assert report.type is ArtifactType.FAILURE_REPORT
    assert report.payload["self_heal_key"] == result["self_heal_key"]
    artifact = store.get_artifact(result["proposal_artifact_id"])
    assert artifact.payload["failure_report_id"] == report.id
    assert artifact.payload["rollback_plan"] == "git checkout package-lock.json"


def test_missing_required_fields(healer: SelfHealingService, mission_id: str):
    with pytest.raises(ValidationError) as excinfo:
        healer.generate_proposal(mission_id, "sig", diagnosis="", rollback_plan="")
    assert excinfo.value.details["fields"] == ["diagnosis", "rollback_plan"]
    with pytest.raises(NotFoundError):
        healer.generate_proposal("mission-missing", "sig", diagnosis="d", rollback_plan="r")


def test_unknown_risk_rating_rejected(store: StateStore, healer: SelfHealingService, mission_id: str):
    with pytest.raises(ValidationError) as excinfo:
        _propose(healer, mission_id, risk_rating="extreme")
    assert excinfo.value.code == "VALIDATION_ERROR"
    assert excinfo.value.details["field"] == "risk_rating"
    assert healer.list_proposals() == []


def test_duplicate_signature_blocked(store: StateStore, healer: SelfHealingService, mission_id: str):
    """同じ失敗シグネチャは 1 件だけ保存され、2 回目は最初の提案を参照する。"""
    first = _propose(healer, mission_id)
    second = _propose(healer, mission_id)

    assert second["success"] is False
    assert second["blocked"] is True
    assert second["reason"] == "Previously attempted fix detected"
    assert second["previous_proposal"]["id"] == first["proposal_id"]
    assert len(store.list_proposals()) == 1


def test_rejected_fix_still_blocks_reproposal(healer: SelfHealingService, mission_id: str):
    first = _propose(healer, mission_id)
    assert healer.reject_proposal(first["proposal_id"], reason="wrong fix")["success"] is True
    again = _propose(healer, mission_id)
    assert again["blocked"] is True
    assert again["previous_proposal"]["status"] == "rejected"


def test_pending_limit_per_mission(store: StateStore, clock: FakeClock, mission_id: str):
    healer = SelfHealingService(store, max_pending_per_mission=2, clock=clock)
    _propose(healer, mission_id, "sig-1")
    _propose(healer, mission_id, "sig-2")
    third = _propose(healer, mission_id, "sig-3")
    assert third["blocked"] is True
    assert third["reason"] == "Proposal limit reached"
    assert third["limit"] == 2


@pytest.mark.parametrize(
    ("armed", "threshold", "risk", "decision"),
    [
        (False, "high", "low", "needs_review"),
        (True, "medium", "low", "auto_apply"),
        (True, "medium", "medium", "auto_apply"),
        (True, "medium", "high", "needs_review"),
        (True, "low", "medium", "needs_review"),
        (True, "high", "high", "auto_apply"),
    ],
)
def test_evaluate_risk_gating(
    store: StateStore, healer: SelfHealingService, mission_id: str, armed, threshold, risk, decision
):
    store.set_armed_mode(armed, threshold)
    result = _propose(healer, mission_id, risk_rating=risk)
    evaluation = healer.evaluate_proposal(result["proposal_id"])
    assert evaluation["decision"] == decision


def test_evaluate_reasons(store: StateStore, healer: SelfHealingService, mission_id: str):
    proposal_id = _propose(healer, mission_id, risk_rating="high")["proposal_id"]
    assert healer.evaluate_proposal(proposal_id)["reason"] == "Armed mode not enabled"
    store.set_armed_mode(True, "medium")
    assert healer.evaluate_proposal(proposal_id)["reason"] == "Risk high exceeds threshold medium"


def test_scenario_apply_without_armed_mode_escalates(
    store: StateStore, healer: SelfHealingService, mission_id: str
):
    """armed mode が無効なら適用せず needs_review と承認リクエストを残す。"""
    proposal_id = _propose(healer, mission_id, risk_rating="medium")["proposal_id"]
    result = healer.apply_proposal(proposal_id)

    assert result["success"] is False
    assert result["status"] == "awaiting_approval"
    assert store.get_mission(mission_id).status is MissionStatus.NEEDS_REVIEW
    approval = store.get_approval(result["approval_id"])
    assert approval.status is ApprovalStatus.PENDING
    assert approval.payload["proposal_id"] == proposal_id
    records = store.list_artifacts(mission_id=mission_id, artifact_type=ArtifactType.APPROVAL_RECORD)
    assert [r.payload["decision"] for r in records] == ["requested"]
    assert store.backend.snapshots == {}

    again = healer.apply_proposal(proposal_id)
    assert again["approval_id"] == result["approval_id"]
    assert len(store.list_approvals()) == 1


def test_auto_apply_when_armed(store: StateStore, healer: SelfHealingService, mission_id: str):
    store.set_armed_mode(True, "medium")
    result = _propose(healer, mission_id, risk_rating="low")
    assert result["requires_review"] is False

    applied = healer.apply_proposal(result["proposal_id"])
    assert applied["success"] is True
    assert applied["status"] == "applied"
    assert applied["applied_by"] == "auto"
    assert applied["snapshot_label"] in store.backend.snapshots
    assert store.get_self_heal_record(result["self_heal_key"]).outcome == "applied"
    assert store.get_mission(mission_id).status is MissionStatus.RUNNING
    assert healer.apply_proposal(result["proposal_id"])["success"] is False


def test_human_approval_applies(store: StateStore, healer: SelfHealingService, mission_id: str):
    proposal_id = _propose(healer, mission_id)["proposal_id"]
    approval_id = healer.apply_proposal(proposal_id)["approval_id"]

    result = healer.resolve_approval(proposal_id, approved=True, resolved_by="alice", note="ok")
    assert result["status"] == "applied"
    assert result["applied_by"] == "alice"
    assert store.get_approval(approval_id).status is ApprovalStatus.APPROVED
    decisions = [
        r.payload["decision"]
        for r in store.list_artifacts(mission_id=mission_id, artifact_type=ArtifactType.APPROVAL_RECORD)
    ]
    assert decisions == ["requested", "approved", "applied"]
    assert store.get_mission(mission_id).status is MissionStatus.NEEDS_REVIEW


def test_direct_apply_closes_pending_approval(store: StateStore, healer: SelfHealingService, mission_id: str):
    """承認待ちのまま approved_by 付きで適用すると、承認リクエストも approved になる。"""
    proposal_id = _propose(healer, mission_id)["proposal_id"]
    approval_id = healer.apply_proposal(proposal_id)["approval_id"]

    result = healer.apply_proposal(proposal_id, approved_by="alice")
    assert result["status"] == "applied"
    approval = store.get_approval(approval_id)
    assert approval.status is ApprovalStatus.APPROVED
    assert approval.resolved_by == "alice"
    assert store.list_approvals(ApprovalStatus.PENDING) == []
    decisions = [
        r.payload["decision"]
        for r in store.list_artifacts(mission_id=mission_id, artifact_type=ArtifactType.APPROVAL_RECORD)
    ]
    assert decisions == ["requested", "approved", "applied"]


def test_human_rejection(store: StateStore, healer: SelfHealingService, mission_id: str):
    proposal_id = _propose(healer, mission_id)["proposal_id"]
    healer.apply_proposal(proposal_id)
    result = healer.resolve_approval(proposal_id, approved=False, resolved_by="bob", note="too risky")
    assert result["status"] == "rejected"
    proposal = healer.get_proposal(proposal_id)
    assert proposal.rejection_reason == "too risky"
    assert healer.resolve_approval(proposal_id, approved=True, resolved_by="bob")["success"] is False


def test_policy_approval_for_log_only_fix(store: StateStore, healer: SelfHealingService, mission_id: str):
    proposal_id = _propose(
        healer, mission_id, "log rotation", risk_rating="low", files_touched=["logs/app.log"]
    )["proposal_id"]
    assert healer.request_policy_approval(proposal_id)["success"] is False

    healer.apply_proposal(proposal_id)
    result = healer.request_policy_approval(proposal_id)
    assert result["success"] is True
    assert result["applied_by"] == "policy:PATH_LOGS_ONLY"
    matches = store.list_artifacts(mission_id=mission_id, artifact_type=ArtifactType.POLICY_MATCH_REPORT)
    assert matches[0].payload["policy_id"] == "PATH_LOGS_ONLY"


def test_policy_approval_declined_for_source_files(healer: SelfHealingService, mission_id: str):
    proposal_id = _propose(healer, mission_id, files_touched=["logs/a.log", "src/app.py"])["proposal_id"]
    healer.apply_proposal(proposal_id)
    result = healer.request_policy_approval(proposal_id)
    assert result["success"] is False
    assert result["reason"] == "No matching auto-approve policy"
    assert healer.get_proposal(proposal_id).status is ProposalStatus.AWAITING_APPROVAL


def test_rollback_lifecycle(store: StateStore, healer: SelfHealingService, mission_id: str):
    store.set_armed_mode(True, "high")
    result = _propose(healer, mission_id)
    proposal_id = result["proposal_id"]

    assert healer.mark_rollback_needed(proposal_id, "broke prod")["success"] is False
    assert healer.complete_rollback(proposal_id)["success"] is False

    healer.apply_proposal(proposal_id)
    marked = healer.mark_rollback_needed(proposal_id, "broke prod")
    assert marked["status"] == "needs_rollback"
    assert store.get_artifact(marked["failure_report_id"]).payload["diagnosis"] == "broke prod"
    assert store.get_self_heal_record(result["self_heal_key"]).outcome == "needs_rollback"

    done = healer.complete_rollback(proposal_id, notes="reverted")
    assert done["status"] == "rolled_back"
    assert healer.get_proposal(proposal_id).context["rollback_notes"] == "reverted"
    assert store.get_self_heal_record(result["self_heal_key"]).outcome == "rolled_back"
    assert _propose(healer, mission_id)["previous_proposal"]["status"] == "rolled_back"


def test_supersede_releases_key(
    store: StateStore, healer: SelfHealingService, clock: FakeClock, mission_id: str
):
    first = _propose(healer, mission_id)
    approval_id = healer.apply_proposal(first["proposal_id"])["approval_id"]

    result = healer.supersede_proposal(first["proposal_id"], note="replaced")
    assert result["status"] == "superseded"
    assert store.get_approval(approval_id).status is ApprovalStatus.REJECTED

    clock.advance(1)
    second = _propose(healer, mission_id)
    assert second["success"] is True
    assert healer.get_proposal_by_key(first["self_heal_key"]).id == second["proposal_id"]


def test_clear_old_proposals(store: StateStore, healer: SelfHealingService, clock: FakeClock, mission_id: str):
    old = _propose(healer, mission_id, "old failure")["proposal_id"]
    healer.reject_proposal(old)
    live = _propose(healer, mission_id, "live failure")["proposal_id"]
    clock.advance(days=8)

    assert healer.clear_old_proposals(7) == 1
    assert healer.get_proposal(old) is None
    assert healer.get_proposal(live) is not None
    assert _propose(healer, mission_id, "old failure")["blocked"] is True


def test_status_and_persistence(clock: FakeClock):
    backend = MemoryBackend()
    store = StateStore(backend, clock=clock)
    mission = store.create_mission("Persisted")
    healer = SelfHealingService(store, clock=clock)
    _propose(healer, mission.id)

    status = healer.get_status()
    assert status["total"] == 1
    assert status["by_status"]["pending"] == 1
    assert healer.health_check()["pending"] == 1

    reloaded = SelfHealingService(StateStore(backend, clock=clock), clock=clock)
    assert _propose(reloaded, mission.id)["blocked"] is True
    assert len(reloaded.get_pending_proposals()) == 1
