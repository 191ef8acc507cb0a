"""Watchdog とエージェントのハートビート API。"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from .deps import EngineDep, checked

router = APIRouter(prefix="/api/watchdog", tags=["watchdog"])


class AgentRegister(BaseModel):
    name: str = ""
    id: Optional[str] = None
    mission_id: Optional[str] = None
    task_id: Optional[str] = None


@router.get("/status")
async def watchdog_status(engine: EngineDep) -> dict[str, Any]:
    return engine.watchdog.get_status()


@router.get("/signals")
async def list_signals(
    engine: EngineDep,
    signal_type: Optional[str] = None,
    severity: Optional[str] = None,
    mission_id: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> list[dict[str, Any]]:
    signals = engine.watchdog.get_signals(
        signal_type=signal_type,
        severity=severity,
        mission_id=mission_id,
        since=since,
        limit=limit,
    )
    return [s.to_dict() for s in signals]


@router.get("/issues")
async def active_issues(engine: EngineDep) -> dict[str, Any]:
    return engine.watchdog.get_active_issues()


@router.post("/tick")
async def force_tick(engine: EngineDep) -> dict[str, Any]:
    """手動で 1 tick 実行し、発行された Signal を返す。"""
    signals = engine.watchdog.force_tick()
    return {"signals": [s.to_dict() for s in signals]}


@router.post("/start")
async def start_watchdog(engine: EngineDep) -> dict[str, Any]:
    return checked(await engine.watchdog.start())


@router.post("/stop")
async def stop_watchdog(engine: EngineDep) -> dict[str, Any]:
    return checked(await engine.watchdog.stop())


@router.post("/agents", status_code=status.HTTP_201_CREATED)
async def register_agent(payload: AgentRegister, engine: EngineDep) -> dict[str, Any]:
    fields = payload.model_dump(exclude_none=True)
    name = fields.pop("name", "")
    return engine.store.register_agent(name, **fields).model_dump(mode="json")


@router.get("/agents")
async def list_agents(engine: EngineDep, mission_id: Optional[str] = None) -> list[dict[str, Any]]:
    return [a.model_dump(mode="json") for a in engine.store.list_agents(mission_id=mission_id)]


@router.post("/agents/{agent_id}/heartbeat")
async def heartbeat(agent_id: str, engine: EngineDep) -> dict[str, Any]:
    return engine.store.record_heartbeat(agent_id).model_dump(mode="json")


@router.post("/agents/{agent_id}/recover")
async def recover_agent(agent_id: str, engine: EngineDep) -> dict[str, Any]:
    if engine.store.get_agent(agent_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="AGENT_NOT_FOUND")
    return checked(engine.watchdog.recover_agent(agent_id))
