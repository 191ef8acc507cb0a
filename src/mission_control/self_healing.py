"""失敗シグネチャから冪等な自己修復プロポーザルを生成・適用するサービス。

selfHealKey = sha256(failure_signature)[:16] を冪等キーとし、同じ失敗に対する
重複プロポーザルを拒否する。適用は armed mode とリスク閾値で判定し、条件を
満たさない場合は人間のレビューへエスカレーションする。
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Optional

from .errors import NotFoundError, ValidationError
from .models import (
    ApprovalStatus,
    ArtifactType,
    MissionStatus,
    Producer,
    Proposal,
    ProposalStatus,
    RiskLevel,
    new_id,
    risk_rank,
    utcnow,
)
from .models.domain import Clock
from .state_store import StateStore

if TYPE_CHECKING:
    from .approval_policy import ApprovalPolicyService

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING_PER_MISSION = 5
APPLY_ACTION = "self_heal_apply"
ACTIVE_STATUSES = (ProposalStatus.PENDING, ProposalStatus.AWAITING_APPROVAL)
CLEARABLE_STATUSES = (ProposalStatus.REJECTED, ProposalStatus.ROLLED_BACK, ProposalStatus.SUPERSEDED)


def self_heal_key(failure_signature: Any) -> str:
    """失敗シグネチャから 16 桁の冪等キーを導出する。"""
    if isinstance(failure_signature, str):
        text = failure_signature
    else:
        text = json.dumps(failure_signature, sort_keys=True, default=str)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


class SelfHealingService:
    """自己修復プロポーザルの生成・評価・適用・ロールバックを管理する。"""

    def __init__(
        self,
        store: StateStore,
        approval_policy: Optional["ApprovalPolicyService"] = None,
        *,
        max_pending_per_mission: int = DEFAULT_MAX_PENDING_PER_MISSION,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.approval_policy = approval_policy
        self.max_pending_per_mission = max_pending_per_mission
        self.clock = clock

    def _require(self, proposal_id: str) -> Proposal:
        proposal = self.store.get_proposal(proposal_id)
        if proposal is None:
            raise NotFoundError("proposal", proposal_id)
        return proposal

    def _save(self, proposal: Proposal, **changes: Any) -> Proposal:
        updated = proposal.model_copy(update={**changes, "updated_at": self.clock()})
        return self.store.save_proposal(updated)

    def _find_previous(self, key: str) -> Optional[dict[str, Any]]:
        for proposal in self.store.list_proposals():
            if proposal.self_heal_key == key and proposal.status is not ProposalStatus.SUPERSEDED:
                return {"id": proposal.id, "status": proposal.status.value, "mission_id": proposal.mission_id}
        record = self.store.get_self_heal_record(key)
        if record is not None and record.outcome != ProposalStatus.SUPERSEDED.value:
            return {"id": record.proposal_id, "status": record.outcome, "mission_id": None}
        return None

    def _auto_apply_allowed(self, risk: RiskLevel) -> tuple[bool, str]:
        threshold = self.store.risk_threshold
        if not self.store.is_armed_mode():
            return False, "Armed mode not enabled"
        if risk_rank(risk) > risk_rank(threshold):
            return False, f"Risk {risk.value} exceeds threshold {threshold.value}"
        return True, f"Armed mode enabled and risk {risk.value} within threshold {threshold.value}"

    # ------------------------------------------------------------------
    # stage 1: propose

    def generate_proposal(
        self,
        mission_id: str,
        failure_signature: Any,
        diagnosis: str,
        rollback_plan: str,
        *,
        task_id: str | None = None,
        agent_id: str | None = None,
        proposed_commands: list[str] | None = None,
        files_touched: list[str] | None = None,
        risk_rating: RiskLevel | str = RiskLevel.MEDIUM,
        estimated_cost: float | None = None,
        context: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """失敗報告とプロポーザル成果物を記録し、pending のプロポーザルを登録する。"""
        required = {
            "mission_id": mission_id,
            "failure_signature": failure_signature,
            "diagnosis": diagnosis,
            "rollback_plan": rollback_plan,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", fields=missing)
        if self.store.get_mission(mission_id) is None:
            raise NotFoundError("mission", mission_id)
        try:
            risk = RiskLevel(risk_rating)
        except ValueError:
            raise ValidationError(f"Unknown risk rating: {risk_rating}", field="risk_rating") from None

        key = self_heal_key(failure_signature)
        previous = self._find_previous(key)
        if previous is not None:
            logger.info(f"Duplicate self-heal proposal blocked for key {key} (previous {previous['id']})")
            return {
                "success": False,
                "blocked": True,
                "reason": "Previously attempted fix detected",
                "previous_proposal": previous,
                "self_heal_key": key,
            }

        pending = [
            p
            for p in self.store.list_proposals()
            if p.mission_id == mission_id and p.status in ACTIVE_STATUSES
        ]
        if len(pending) >= self.max_pending_per_mission:
            logger.warning(f"Mission {mission_id} has {len(pending)} pending proposals; limit reached")
            return {
                "success": False,
                "blocked": True,
                "reason": "Proposal limit reached",
                "pending_count": len(pending),
                "limit": self.max_pending_per_mission,
                "self_heal_key": key,
            }

        proposal_id = new_id("proposal")
        failure_report = self.store.add_artifact(
            ArtifactType.FAILURE_REPORT,
            {
                "failure_signature": failure_signature,
                "diagnosis": diagnosis,
                "self_heal_key": key,
                "proposal_id": proposal_id,
            },
            mission_id=mission_id,
            task_id=task_id,
            producer=Producer.SYSTEM,
            agent_id=agent_id,
        )
        proposal_artifact = self.store.add_artifact(
            ArtifactType.SELF_HEAL_PROPOSAL,
            {
                "proposal_id": proposal_id,
                "self_heal_key": key,
                "diagnosis": diagnosis,
                "proposed_commands": list(proposed_commands or []),
                "files_touched": list(files_touched or []),
                "risk_rating": risk.value,
                "rollback_plan": rollback_plan,
                "failure_report_id": failure_report.id,
            },
            mission_id=mission_id,
            task_id=task_id,
            producer=Producer.SYSTEM,
            agent_id=agent_id,
        )
        now = self.clock()
        proposal = self.store.save_proposal(
            Proposal(
                id=proposal_id,
                mission_id=mission_id,
                task_id=task_id,
                agent_id=agent_id,
                self_heal_key=key,
                failure_signature=failure_signature,
                diagnosis=diagnosis,
                proposed_commands=list(proposed_commands or []),
                files_touched=list(files_touched or []),
                risk_rating=risk,
                rollback_plan=rollback_plan,
                estimated_cost=estimated_cost,
                context=dict(context or {}),
                failure_report_id=failure_report.id,
                proposal_artifact_id=proposal_artifact.id,
                created_at=now,
                updated_at=now,
            )
        )
        auto_apply, _ = self._auto_apply_allowed(risk)
        logger.info(f"Self-heal proposal {proposal.id} created for mission {mission_id} (risk={risk.value})")
        return {
            "success": True,
            "proposal_id": proposal.id,
            "self_heal_key": key,
            "failure_report_id": failure_report.id,
            "proposal_artifact_id": proposal_artifact.id,
            "risk_rating": risk.value,
            "requires_review": not auto_apply,
        }

    # ------------------------------------------------------------------
    # stage 2: evaluate / apply

    def evaluate_proposal(self, proposal_id: str) -> dict[str, Any]:
        """armed mode かつ risk <= 閾値なら auto_apply、それ以外は needs_review。"""
        proposal = self._require(proposal_id)
        if proposal.status not in ACTIVE_STATUSES:
            return {
                "success": False,
                "error": f"Proposal is {proposal.status.value}",
                "status": proposal.status.value,
            }
        allowed, reason = self._auto_apply_allowed(proposal.risk_rating)
        return {
            "success": True,
            "proposal_id": proposal_id,
            "decision": "auto_apply" if allowed else "needs_review",
            "reason": reason,
            "armed_mode": self.store.is_armed_mode(),
            "risk_rating": proposal.risk_rating.value,
            "risk_threshold": self.store.risk_threshold.value,
        }

    def apply_proposal(
        self,
        proposal_id: str,
        approved_by: str | None = None,
        skip_approval_check: bool = False,
    ) -> dict[str, Any]:
        proposal = self._require(proposal_id)
        if proposal.status not in ACTIVE_STATUSES:
            return {
                "success": False,
                "error": f"Cannot apply proposal in status {proposal.status.value}",
                "status": proposal.status.value,
            }

        if not skip_approval_check and approved_by is None:
            allowed, reason = self._auto_apply_allowed(proposal.risk_rating)
            if not allowed:
                return self._escalate(proposal, reason)

        if approved_by is not None and proposal.approval_id:
            # 承認待ちのまま直接適用された場合は、適用者の承認として閉じる
            approval = self.store.get_approval(proposal.approval_id)
            if approval is not None and approval.status is ApprovalStatus.PENDING:
                self.store.resolve_approval(proposal.approval_id, ApprovalStatus.APPROVED, approved_by)

        snapshot_label = self.store.create_snapshot(f"self_heal_{proposal.id}")
        applied_by = approved_by or "auto"
        proposal = self._save(
            proposal,
            status=ProposalStatus.APPLIED,
            applied_by=applied_by,
            applied_at=self.clock(),
            snapshot_label=snapshot_label,
        )
        self.store.record_self_heal_outcome(proposal.self_heal_key, proposal.id, ProposalStatus.APPLIED.value)
        self.store.add_artifact(
            ArtifactType.APPROVAL_RECORD,
            {
                "action": APPLY_ACTION,
                "decision": "applied",
                "approval_id": proposal.approval_id,
                "approved_by": applied_by,
                "proposal_id": proposal.id,
            },
            mission_id=proposal.mission_id,
            task_id=proposal.task_id,
            producer=Producer.HUMAN if approved_by and not approved_by.startswith("policy:") else Producer.SYSTEM,
        )
        logger.info(f"Self-heal proposal {proposal.id} applied by {applied_by}")
        return {
            "success": True,
            "status": proposal.status.value,
            "proposal_id": proposal.id,
            "applied_by": applied_by,
            "snapshot_label": snapshot_label,
        }

    def _escalate(self, proposal: Proposal, reason: str) -> dict[str, Any]:
        """ミッションを needs_review にし、承認リクエストを作成する。"""
        if proposal.status is ProposalStatus.AWAITING_APPROVAL and proposal.approval_id:
            return {
                "success": False,
                "status": proposal.status.value,
                "approval_id": proposal.approval_id,
                "reason": reason,
            }

        self.store.update_mission(
            proposal.mission_id,
            status=MissionStatus.NEEDS_REVIEW,
            blocked_reason=f"Self-heal proposal {proposal.id} requires review: {reason}",
        )
        approval = self.store.create_approval(
            APPLY_ACTION,
            mission_id=proposal.mission_id,
            description=f"Apply self-heal proposal {proposal.id}: {proposal.diagnosis}",
            risk_level=proposal.risk_rating,
            payload={
                "proposal_id": proposal.id,
                "self_heal_key": proposal.self_heal_key,
                "file_paths": proposal.files_touched,
                "proposed_commands": proposal.proposed_commands,
            },
        )
        self.store.add_artifact(
            ArtifactType.APPROVAL_RECORD,
            {
                "action": APPLY_ACTION,
                "decision": "requested",
                "approval_id": approval.id,
                "proposal_id": proposal.id,
                "note": reason,
            },
            mission_id=proposal.mission_id,
            task_id=proposal.task_id,
            producer=Producer.SYSTEM,
        )
        self._save(proposal, status=ProposalStatus.AWAITING_APPROVAL, approval_id=approval.id)
        logger.warning(f"Self-heal proposal {proposal.id} awaiting approval: {reason}")
        return {
            "success": False,
            "status": ProposalStatus.AWAITING_APPROVAL.value,
            "approval_id": approval.id,
            "reason": reason,
        }

    def request_policy_approval(self, proposal_id: str) -> dict[str, Any]:
        """承認待ちのプロポーザルを自動承認ポリシーに照合する。"""
        proposal = self._require(proposal_id)
        if self.approval_policy is None:
            return {"success": False, "error": "No approval policy configured"}
        if proposal.status is not ProposalStatus.AWAITING_APPROVAL or not proposal.approval_id:
            return {
                "success": False,
                "error": "Proposal is not awaiting approval",
                "status": proposal.status.value,
            }
        outcome = self.approval_policy.try_auto_approve(
            proposal.approval_id,
            {
                "action": APPLY_ACTION,
                "file_paths": proposal.files_touched,
                "risk_level": proposal.risk_rating.value,
                "mission_id": proposal.mission_id,
            },
        )
        if not outcome.get("approved"):
            return {
                "success": False,
                "status": proposal.status.value,
                "reason": outcome.get("reason") or outcome.get("error"),
            }
        return self.apply_proposal(proposal.id, approved_by=f"policy:{outcome['policy_id']}")

    def resolve_approval(
        self,
        proposal_id: str,
        approved: bool,
        resolved_by: str,
        note: str | None = None,
    ) -> dict[str, Any]:
        """人間のレビュー結果を反映する。承認なら適用、却下なら rejected。"""
        proposal = self._require(proposal_id)
        if proposal.status is not ProposalStatus.AWAITING_APPROVAL or not proposal.approval_id:
            return {
                "success": False,
                "error": "Proposal is not awaiting approval",
                "status": proposal.status.value,
            }
        decision = ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED
        self.store.resolve_approval(proposal.approval_id, decision, resolved_by, note)
        if approved:
            return self.apply_proposal(proposal.id, approved_by=resolved_by)
        return self.reject_proposal(proposal.id, reason=note or "Rejected by reviewer", rejected_by=resolved_by)

    def reject_proposal(
        self,
        proposal_id: str,
        reason: str | None = None,
        rejected_by: str | None = None,
    ) -> dict[str, Any]:
        proposal = self._require(proposal_id)
        if proposal.status not in ACTIVE_STATUSES:
            return {
                "success": False,
                "error": f"Cannot reject proposal in status {proposal.status.value}",
                "status": proposal.status.value,
            }
        proposal = self._save(
            proposal,
            status=ProposalStatus.REJECTED,
            rejection_reason=reason or "Rejected",
        )
        self.store.record_self_heal_outcome(proposal.self_heal_key, proposal.id, ProposalStatus.REJECTED.value)
        logger.info(f"Self-heal proposal {proposal.id} rejected by {rejected_by or 'unknown'}: {reason}")
        return {"success": True, "status": proposal.status.value, "proposal_id": proposal.id}

    def mark_rollback_needed(self, proposal_id: str, reason: str) -> dict[str, Any]:
        proposal = self._require(proposal_id)
        if proposal.status is not ProposalStatus.APPLIED:
            return {
                "success": False,
                "error": "Only applied proposals can be marked for rollback",
                "status": proposal.status.value,
            }
        proposal = self._save(proposal, status=ProposalStatus.NEEDS_ROLLBACK, rollback_reason=reason)
        self.store.record_self_heal_outcome(
            proposal.self_heal_key, proposal.id, ProposalStatus.NEEDS_ROLLBACK.value
        )
        report = self.store.add_artifact(
            ArtifactType.FAILURE_REPORT,
            {
                "failure_signature": f"rollback:{proposal.self_heal_key}",
                "diagnosis": reason,
                "self_heal_key": proposal.self_heal_key,
                "proposal_id": proposal.id,
                "snapshot_label": proposal.snapshot_label,
            },
            mission_id=proposal.mission_id,
            task_id=proposal.task_id,
            producer=Producer.SYSTEM,
        )
        logger.warning(f"Self-heal proposal {proposal.id} needs rollback: {reason}")
        return {
            "success": True,
            "status": proposal.status.value,
            "proposal_id": proposal.id,
            "failure_report_id": report.id,
            "snapshot_label": proposal.snapshot_label,
        }

    def complete_rollback(self, proposal_id: str, notes: str | None = None) -> dict[str, Any]:
        proposal = self._require(proposal_id)
        if proposal.status is not ProposalStatus.NEEDS_ROLLBACK:
            return {
                "success": False,
                "error": "Proposal is not awaiting rollback",
                "status": proposal.status.value,
            }
        context = {**proposal.context, "rollback_notes": notes} if notes else proposal.context
        proposal = self._save(proposal, status=ProposalStatus.ROLLED_BACK, context=context)
        self.store.record_self_heal_outcome(
            proposal.self_heal_key, proposal.id, ProposalStatus.ROLLED_BACK.value
        )
        logger.info(f"Self-heal proposal {proposal.id} rolled back")
        return {"success": True, "status": proposal.status.value, "proposal_id": proposal.id}

    def supersede_proposal(self, proposal_id: str, note: str | None = None) -> dict[str, Any]:
        """未適用のプロポーザルを superseded にし、冪等キーを解放する。"""
        proposal = self._require(proposal_id)
        if proposal.status not in ACTIVE_STATUSES:
            return {
                "success": False,
                "error": f"Cannot supersede proposal in status {proposal.status.value}",
                "status": proposal.status.value,
            }
        if proposal.approval_id:
            approval = self.store.get_approval(proposal.approval_id)
            if approval is not None and approval.status is ApprovalStatus.PENDING:
                self.store.resolve_approval(
                    proposal.approval_id, ApprovalStatus.REJECTED, "system", note or "superseded"
                )
        proposal = self._save(proposal, status=ProposalStatus.SUPERSEDED)
        self.store.record_self_heal_outcome(
            proposal.self_heal_key, proposal.id, ProposalStatus.SUPERSEDED.value
        )
        return {"success": True, "status": proposal.status.value, "proposal_id": proposal.id}

    # ------------------------------------------------------------------
    # queries

    def get_proposal(self, proposal_id: str) -> Optional[Proposal]:
        return self.store.get_proposal(proposal_id)

    def get_proposal_by_key(self, key: str) -> Optional[Proposal]:
        matches = [p for p in self.store.list_proposals() if p.self_heal_key == key]
        if not matches:
            return None
        return max(matches, key=lambda p: p.created_at)

    def list_proposals(
        self,
        status: ProposalStatus | str | None = None,
        mission_id: str | None = None,
    ) -> list[Proposal]:
        proposals = [
            p
            for p in self.store.list_proposals()
            if (status is None or p.status == status)
            and (mission_id is None or p.mission_id == mission_id)
        ]
        return sorted(proposals, key=lambda p: p.created_at)

    def get_pending_proposals(self) -> list[Proposal]:
        return self.list_proposals(status=ProposalStatus.PENDING)

    def get_awaiting_approval(self) -> list[Proposal]:
        return self.list_proposals(status=ProposalStatus.AWAITING_APPROVAL)

    def clear_old_proposals(self, max_age_days: int = 7) -> int:
        """終了済みの古いプロポーザルを削除する。冪等記録は残す。"""
        cutoff = self.clock() - timedelta(days=max_age_days)
        stale = [
            p.id
            for p in self.store.list_proposals()
            if p.status in CLEARABLE_STATUSES and p.updated_at < cutoff
        ]
        for proposal_id in stale:
            self.store.delete_proposal(proposal_id)
        if stale:
            logger.info(f"Cleared {len(stale)} old self-heal proposals")
        return len(stale)

    def get_status(self) -> dict[str, Any]:
        by_status: dict[str, int] = {status.value: 0 for status in ProposalStatus}
        for proposal in self.store.list_proposals():
            by_status[proposal.status.value] += 1
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "armed_mode": self.store.is_armed_mode(),
            "risk_threshold": self.store.risk_threshold.value,
            "max_pending_per_mission": self.max_pending_per_mission,
            "policy_enabled": self.approval_policy is not None,
        }

    def health_check(self) -> dict[str, Any]:
        status = self.get_status()
        return {
            "healthy": True,
            "pending": status["by_status"][ProposalStatus.PENDING.value],
            "awaiting_approval": status["by_status"][ProposalStatus.AWAITING_APPROVAL.value],
            "armed_mode": status["armed_mode"],
        }
