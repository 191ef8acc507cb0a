"""自己修復プロポーザルの API。"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Response, status
from pydantic import BaseModel, Field

from ..models import ProposalStatus, RiskLevel
from .deps import EngineDep, checked

router = APIRouter(prefix="/api/proposals", tags=["proposals"])


class ProposalCreate(BaseModel):
    """失敗シグネチャからプロポーザルを生成するリクエスト。"""

    mission_id: str
    failure_signature: Any
    diagnosis: str
    rollback_plan: str
    task_id: Optional[str] = None
    agent_id: Optional[str] = None
    proposed_commands: list[str] = Field(default_factory=list)
    files_touched: list[str] = Field(default_factory=list)
    risk_rating: RiskLevel = RiskLevel.MEDIUM
    estimated_cost: Optional[float] = None
    context: dict[str, Any] = Field(default_factory=dict)


class ApplyRequest(BaseModel):
    approved_by: Optional[str] = None


class ResolveRequest(BaseModel):
    approved: bool
    resolved_by: str
    note: Optional[str] = None


class ReasonRequest(BaseModel):
    reason: Optional[str] = None
    by: Optional[str] = None


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_proposal(payload: ProposalCreate, engine: EngineDep) -> dict[str, Any]:
    fields = payload.model_dump()
    return checked(
        engine.healer.generate_proposal(
            fields.pop("mission_id"),
            fields.pop("failure_signature"),
            fields.pop("diagnosis"),
            fields.pop("rollback_plan"),
            **fields,
        )
    )


@router.get("")
async def list_proposals(
    engine: EngineDep,
    proposal_status: Optional[ProposalStatus] = None,
    mission_id: Optional[str] = None,
) -> list[dict[str, Any]]:
    proposals = engine.healer.list_proposals(status=proposal_status, mission_id=mission_id)
    return [p.model_dump(mode="json") for p in proposals]


@router.get("/status")
async def healer_status(engine: EngineDep) -> dict[str, Any]:
    return engine.healer.get_status()


@router.get("/{proposal_id}")
async def get_proposal(proposal_id: str, engine: EngineDep) -> dict[str, Any]:
    proposal = engine.healer.get_proposal(proposal_id)
    if proposal is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="PROPOSAL_NOT_FOUND")
    return proposal.model_dump(mode="json")


@router.post("/{proposal_id}/evaluate")
async def evaluate_proposal(proposal_id: str, engine: EngineDep) -> dict[str, Any]:
    return checked(engine.healer.evaluate_proposal(proposal_id))


@router.post("/{proposal_id}/apply")
async def apply_proposal(
    proposal_id: str, payload: ApplyRequest, engine: EngineDep, response: Response
) -> dict[str, Any]:
    """承認者なしで gating を通らなければ 202 で承認待ちを返す。"""
    result = engine.healer.apply_proposal(proposal_id, approved_by=payload.approved_by)
    if result.get("status") == ProposalStatus.AWAITING_APPROVAL.value:
        response.status_code = status.HTTP_202_ACCEPTED
        return result
    return checked(result)


@router.post("/{proposal_id}/resolve")
async def resolve_proposal(proposal_id: str, payload: ResolveRequest, engine: EngineDep) -> dict[str, Any]:
    return checked(
        engine.healer.resolve_approval(proposal_id, payload.approved, payload.resolved_by, payload.note)
    )


@router.post("/{proposal_id}/policy-approve")
async def policy_approve(proposal_id: str, engine: EngineDep) -> dict[str, Any]:
    return checked(engine.healer.request_policy_approval(proposal_id))


@router.post("/{proposal_id}/reject")
async def reject_proposal(proposal_id: str, payload: ReasonRequest, engine: EngineDep) -> dict[str, Any]:
    return checked(engine.healer.reject_proposal(proposal_id, payload.reason, payload.by))


@router.post("/{proposal_id}/rollback")
async def mark_rollback(proposal_id: str, payload: ReasonRequest, engine: EngineDep) -> dict[str, Any]:
    return checked(engine.healer.mark_rollback_needed(proposal_id, payload.reason or "Rollback requested"))


@router.post("/{proposal_id}/rollback/complete")
async def complete_rollback(proposal_id: str, payload: ReasonRequest, engine: EngineDep) -> dict[str, Any]:
    return checked(engine.healer.complete_rollback(proposal_id, payload.reason))


@router.post("/{proposal_id}/supersede")
async def supersede_proposal(proposal_id: str, payload: ReasonRequest, engine: EngineDep) -> dict[str, Any]:
    return checked(engine.healer.supersede_proposal(proposal_id, payload.reason))
