"""承認ポリシー・armed mode・サーキットブレーカーの API。"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from ..models import RiskLevel
from .deps import EngineDep, checked

router = APIRouter(prefix="/api/policies", tags=["policies"])


class ApprovalRequest(BaseModel):
    action: Optional[str] = None
    tool_name: Optional[str] = None
    file_paths: list[str] = Field(default_factory=list)
    risk_level: Optional[RiskLevel] = None
    mission_id: Optional[str] = None


class RevokeRequest(BaseModel):
    reason: Optional[str] = None


class ArmedModeRequest(BaseModel):
    enabled: bool
    risk_threshold: Optional[RiskLevel] = None


@router.get("")
async def list_policies(engine: EngineDep) -> list[dict[str, Any]]:
    return engine.policies.get_policies()


@router.get("/status")
async def policy_status(engine: EngineDep) -> dict[str, Any]:
    return {
        **engine.policies.get_status(),
        "armed_mode": engine.store.is_armed_mode(),
        "risk_threshold": engine.store.risk_threshold.value,
        "circuit_breaker": engine.store.get_circuit_breaker(),
        "rate_limits": engine.rate_limits.get_status(),
    }


@router.post("/evaluate")
async def evaluate(payload: ApprovalRequest, engine: EngineDep) -> dict[str, Any]:
    request = payload.model_dump(mode="json", exclude_none=True)
    return engine.policies.evaluate_approval(request).to_dict()


@router.post("/{policy_id}/revoke")
async def revoke(policy_id: str, payload: RevokeRequest, engine: EngineDep) -> dict[str, Any]:
    return checked(engine.policies.revoke_policy(policy_id, payload.reason))


@router.post("/{policy_id}/reinstate")
async def reinstate(policy_id: str, engine: EngineDep) -> dict[str, Any]:
    return checked(engine.policies.reinstate_policy(policy_id))


@router.post("/armed-mode")
async def set_armed_mode(payload: ArmedModeRequest, engine: EngineDep) -> dict[str, Any]:
    engine.store.set_armed_mode(payload.enabled, payload.risk_threshold)
    return {"armed_mode": engine.store.is_armed_mode(), "risk_threshold": engine.store.risk_threshold.value}


@router.post("/circuit-breaker/reset")
async def reset_circuit_breaker(engine: EngineDep) -> dict[str, Any]:
    engine.store.reset_circuit_breaker()
    return engine.store.get_circuit_breaker()
