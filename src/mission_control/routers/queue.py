"""エージェント実行キューの API。"""

from __future__ import annotations

from typing import Any, Literal, Optional

from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from .deps import EngineDep, checked

router = APIRouter(prefix="/api/queue", tags=["queue"])


class QueueTaskCreate(BaseModel):
    """キュー投入リクエスト。instruction か command のどちらかを渡す。"""

    name: str = ""
    id: Optional[str] = None
    agent_id: Optional[str] = None
    instruction: Optional[str] = None
    command: Optional[str] = None
    type: str = "task"
    dependencies: list[str] = Field(default_factory=list)
    priority: Literal["high", "normal"] = "normal"
    metadata: dict[str, Any] = Field(default_factory=dict)


@router.get("")
async def queue_status(engine: EngineDep) -> dict[str, Any]:
    return engine.queue.get_status()


@router.post("/tasks", status_code=status.HTTP_201_CREATED)
async def add_task(payload: QueueTaskCreate, engine: EngineDep) -> dict[str, Any]:
    fields = payload.model_dump()
    name = fields.pop("name")
    return engine.queue.add_task(name, **fields).to_dict()


@router.delete("/tasks/{task_id}")
async def remove_task(task_id: str, engine: EngineDep) -> dict[str, Any]:
    return checked(engine.queue.remove_task(task_id))


@router.post("/tasks/{task_id}/retry")
async def retry_task(task_id: str, engine: EngineDep) -> dict[str, Any]:
    return checked(engine.queue.retry_task(task_id))
