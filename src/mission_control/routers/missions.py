"""Mission / Task / Artifact と依存グラフの API。"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from ..cost_estimator import DEFAULT_MODEL
from ..engine import MissionControl
from ..models import (
    ArtifactType,
    MissionClass,
    MissionContract,
    MissionStatus,
    Producer,
    TaskStatus,
    TaskType,
)
from .deps import EngineDep

router = APIRouter(prefix="/api/missions", tags=["missions"])


class MissionCreate(BaseModel):
    """ミッション作成リクエスト。"""

    title: str
    id: Optional[str] = None
    description: str = ""
    mission_class: MissionClass = MissionClass.IMPLEMENTATION
    contract: MissionContract = Field(default_factory=MissionContract)


class MissionUpdate(BaseModel):
    status: Optional[MissionStatus] = None
    blocked_reason: Optional[str] = None
    description: Optional[str] = None


class TaskCreate(BaseModel):
    """タスク作成リクエスト。deps は同一ミッション内のタスク ID。"""

    title: str
    id: Optional[str] = None
    instructions: str = ""
    task_type: TaskType = TaskType.WORK
    deps: list[str] = Field(default_factory=list)
    required_artifacts: list[ArtifactType] = Field(default_factory=list)
    agent_id: Optional[str] = None
    max_retries: int = 3


class TransitionRequest(BaseModel):
    status: TaskStatus
    error: Optional[str] = None


class ArtifactCreate(BaseModel):
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    task_id: Optional[str] = None
    producer: Producer = Producer.AGENT
    model: Optional[str] = None
    agent_id: Optional[str] = None
    files: list[str] = Field(default_factory=list)


class ArtifactAppend(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)
    files: list[str] = Field(default_factory=list)


def _require_mission(engine: MissionControl, mission_id: str) -> None:
    if engine.store.get_mission(mission_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="MISSION_NOT_FOUND")


@router.get("")
async def list_missions(engine: EngineDep, mission_status: Optional[MissionStatus] = None) -> list[dict[str, Any]]:
    return [m.model_dump(mode="json") for m in engine.store.list_missions(mission_status)]


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_mission(payload: MissionCreate, engine: EngineDep) -> dict[str, Any]:
    fields = payload.model_dump(exclude_none=True)
    title = fields.pop("title")
    return engine.store.create_mission(title, **fields).model_dump(mode="json")


@router.get("/{mission_id}")
async def get_mission(mission_id: str, engine: EngineDep) -> dict[str, Any]:
    mission = engine.store.get_mission(mission_id)
    if mission is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="MISSION_NOT_FOUND")
    return mission.model_dump(mode="json")


@router.patch("/{mission_id}")
async def update_mission(mission_id: str, payload: MissionUpdate, engine: EngineDep) -> dict[str, Any]:
    changes = payload.model_dump(exclude_none=True)
    return engine.store.update_mission(mission_id, **changes).model_dump(mode="json")


@router.get("/{mission_id}/tasks")
async def list_tasks(mission_id: str, engine: EngineDep) -> list[dict[str, Any]]:
    _require_mission(engine, mission_id)
    return [t.model_dump(mode="json") for t in engine.store.list_tasks(mission_id)]


@router.post("/{mission_id}/tasks", status_code=status.HTTP_201_CREATED)
async def create_task(mission_id: str, payload: TaskCreate, engine: EngineDep) -> dict[str, Any]:
    fields = payload.model_dump(exclude_none=True)
    title = fields.pop("title")
    return engine.store.create_task(mission_id, title, **fields).model_dump(mode="json")


@router.post("/{mission_id}/tasks/{task_id}/transition")
async def transition_task(
    mission_id: str, task_id: str, payload: TransitionRequest, engine: EngineDep
) -> dict[str, Any]:
    task = engine.store.get_task(task_id)
    if task is None or task.mission_id != mission_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="TASK_NOT_FOUND")
    result = engine.graph.transition_task(task_id, payload.status, error=payload.error)
    if not result.valid:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.to_dict())
    return result.to_dict()


@router.get("/{mission_id}/tasks/{task_id}/gate")
async def check_gate(mission_id: str, task_id: str, engine: EngineDep) -> dict[str, Any]:
    _require_mission(engine, mission_id)
    return {
        "task_gate": engine.graph.check_task_gate(task_id).to_dict(),
        "artifact_gate": engine.graph.check_artifact_gate(task_id).to_dict(),
        "dependencies": engine.graph.resolve_dependencies(task_id).to_dict(),
    }


@router.get("/{mission_id}/artifacts")
async def list_artifacts(
    mission_id: str,
    engine: EngineDep,
    task_id: Optional[str] = None,
    artifact_type: Optional[str] = None,
) -> list[dict[str, Any]]:
    _require_mission(engine, mission_id)
    artifacts = engine.store.list_artifacts(mission_id, task_id=task_id, artifact_type=artifact_type)
    return [a.model_dump(mode="json") for a in artifacts]


@router.post("/{mission_id}/artifacts", status_code=status.HTTP_201_CREATED)
async def create_artifact(mission_id: str, payload: ArtifactCreate, engine: EngineDep) -> dict[str, Any]:
    artifact = engine.store.add_artifact(
        payload.type,
        payload.payload,
        mission_id=mission_id,
        task_id=payload.task_id,
        producer=payload.producer,
        model=payload.model,
        agent_id=payload.agent_id,
        files=payload.files,
    )
    return artifact.model_dump(mode="json")


@router.post("/{mission_id}/artifacts/{artifact_id}/append")
async def append_artifact(
    mission_id: str, artifact_id: str, payload: ArtifactAppend, engine: EngineDep
) -> dict[str, Any]:
    _require_mission(engine, mission_id)
    return engine.store.update_artifact(artifact_id, payload.payload, payload.files).model_dump(mode="json")


@router.post("/{mission_id}/cost-estimate")
async def estimate_cost(
    mission_id: str,
    engine: EngineDep,
    model: str = DEFAULT_MODEL,
    record: bool = False,
) -> dict[str, Any]:
    estimate = engine.costs.estimate_mission_cost(mission_id, model=model)
    if estimate.get("success"):
        estimate["budget"] = engine.costs.check_budget(mission_id, estimate["max_cost"])
        if record:
            artifact = engine.costs.create_cost_estimate_artifact(mission_id, estimate)
            estimate["artifact_id"] = artifact.id if artifact else None
    return estimate


# ----------------------------------------------------------------------
# task graph


@router.get("/{mission_id}/graph/status")
async def graph_status(mission_id: str, engine: EngineDep) -> dict[str, Any]:
    return engine.graph.get_status(mission_id)


@router.get("/{mission_id}/graph/order")
async def graph_order(mission_id: str, engine: EngineDep) -> dict[str, Any]:
    ordering = engine.graph.compute_execution_order(mission_id)
    if not ordering.success:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=ordering.to_dict())
    return ordering.to_dict()


@router.get("/{mission_id}/graph/ready")
async def graph_ready(mission_id: str, engine: EngineDep) -> list[dict[str, Any]]:
    return [t.model_dump(mode="json") for t in engine.graph.get_ready_tasks(mission_id)]


@router.post("/{mission_id}/graph/promote")
async def graph_promote(mission_id: str, engine: EngineDep) -> dict[str, Any]:
    return {"promoted": engine.graph.promote_ready_tasks(mission_id)}


@router.get("/{mission_id}/graph/progress")
async def graph_progress(mission_id: str, engine: EngineDep) -> dict[str, Any]:
    return engine.graph.get_mission_progress(mission_id)


@router.get("/{mission_id}/graph/visualize", response_class=PlainTextResponse)
async def graph_visualize(mission_id: str, engine: EngineDep) -> str:
    return engine.graph.visualize(mission_id)
