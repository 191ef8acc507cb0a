"""依存関係と優先度を考慮してエージェント実行を並行制御するキュー。

queue (待機) / active (実行中, max_concurrency まで) / history (完了・失敗) の
3 つを保持する。スケジューリングパスは同じイベントループ周回内の投入を
まとめて評価するため、同時に投入された high 優先度タスクが先に起動する。
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol

from .errors import MissionControlError, ValidationError
from .models import new_id, utcnow
from .models.domain import Clock
from .state_store import _atomic_write

if TYPE_CHECKING:
    from .preflight import Preflight

logger = logging.getLogger(__name__)

PRIORITIES = ("high", "normal")
STATUS_HISTORY_LIMIT = 20
DIAGNOSIS_TASK_TYPE = "deep-diagnosis"
_DATETIME_FIELDS = ("created", "start_time", "end_time")


@dataclass
class QueuedTask:
    """キューに投入された 1 件の実行単位。"""

    id: str
    name: str = ""
    agent_id: Optional[str] = None
    instruction: Optional[str] = None
    command: Optional[str] = None
    type: str = "task"
    dependencies: list[str] = field(default_factory=list)
    priority: str = "normal"
    metadata: dict[str, Any] = field(default_factory=dict)
    status: str = "pending"
    created: datetime = field(default_factory=utcnow)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error: Optional[str] = None
    result: Any = None
    seq: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["dependencies"] = list(self.dependencies)
        data["metadata"] = dict(self.metadata)
        for key in _DATETIME_FIELDS:
            value = data[key]
            data[key] = value.isoformat() if value else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueuedTask":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for key in _DATETIME_FIELDS:
            if values.get(key):
                values[key] = datetime.fromisoformat(values[key])
        return cls(**values)


class AgentExecutor(Protocol):
    async def execute(self, agent_id: Optional[str], instruction: str, task: QueuedTask) -> Any: ...


FailureHandler = Callable[[QueuedTask, "MissionQueue"], Any]
ChangeListener = Callable[[dict[str, Any]], None]


class MissionQueue:
    """max_concurrency を上限にタスクを起動するスケジューラ。"""

    def __init__(
        self,
        executor: AgentExecutor,
        state_path: Path | str | None = None,
        *,
        max_concurrency: int = 4,
        history_limit: int = 50,
        failure_handler: FailureHandler | None = None,
        preflight: Optional["Preflight"] = None,
        on_change: ChangeListener | None = None,
        clock: Clock = utcnow,
    ):
        if max_concurrency < 1:
            raise ValidationError("max_concurrency must be at least 1", field="max_concurrency")
        self.executor = executor
        self.state_path = Path(state_path) if state_path else None
        self.max_concurrency = max_concurrency
        self.history_limit = history_limit
        self.failure_handler = failure_handler
        self.preflight = preflight
        self.on_change = on_change
        self.clock = clock
        self.queue: list[QueuedTask] = []
        self.active: dict[str, QueuedTask] = {}
        self.history: list[QueuedTask] = []
        self._seq = itertools.count(1)
        self._pass_handle: Optional[asyncio.Handle] = None
        self._jobs: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # admission

    def add_task(
        self,
        name: str = "",
        *,
        id: str | None = None,
        agent_id: str | None = None,
        instruction: str | None = None,
        command: str | None = None,
        type: str = "task",
        dependencies: list[str] | None = None,
        priority: str = "normal",
        metadata: dict[str, Any] | None = None,
    ) -> QueuedTask:
        """タスクを投入し、次のイベントループ周回でスケジューリングする。"""
        task_id = id or new_id("qtask")
        if task_id in self.active or any(t.id == task_id for t in self.queue):
            raise ValidationError(f"Task {task_id} is already queued", field="id")
        if priority not in PRIORITIES:
            raise ValidationError(f"Unknown priority: {priority}", field="priority")

        deps: list[str] = []
        for dep in dependencies or []:
            dep = str(dep).strip()
            if dep and dep != task_id and dep not in deps:
                deps.append(dep)

        task = QueuedTask(
            id=task_id,
            name=name or task_id,
            agent_id=agent_id,
            instruction=instruction,
            command=command,
            type=type,
            dependencies=deps,
            priority=priority,
            metadata=dict(metadata or {}),
            created=self.clock(),
            seq=next(self._seq),
        )
        self.queue.append(task)
        logger.info(f"Queued task {task.id} ({task.name}) priority={priority} deps={deps}")
        self._persist()
        self._notify()
        self._request_pass()
        return task

    def _request_pass(self) -> None:
        if self._pass_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop yet; the first process() call picks the queue up
            return
        self._pass_handle = loop.call_soon(self._scheduled_pass)

    def _scheduled_pass(self) -> None:
        self._pass_handle = None
        self.process()

    # ------------------------------------------------------------------
    # scheduling

    def process(self) -> list[QueuedTask]:
        """1 回のスケジューリングパス。起動したタスクを返す。"""
        completed = {t.id for t in self.history if t.status == "completed"}
        ordered = sorted(self.queue, key=lambda t: (PRIORITIES.index(t.priority), t.seq))
        started: list[QueuedTask] = []
        for task in ordered:
            if len(self.active) >= self.max_concurrency:
                break
            if not all(dep in completed for dep in task.dependencies):
                continue
            self.queue.remove(task)
            task.status = "processing"
            task.start_time = self.clock()
            self.active[task.id] = task
            started.append(task)

        if not started:
            return started
        loop = asyncio.get_running_loop()
        for task in started:
            job = loop.create_task(self._run_task(task), name=f"queue-{task.id}")
            self._jobs.add(job)
            job.add_done_callback(self._jobs.discard)
        self._notify()
        return started

    def _run_preflight(self, task: QueuedTask) -> None:
        if self.preflight is None:
            return
        verdict = self.preflight.check(task)
        if not verdict.allowed:
            raise MissionControlError(verdict.reason or "Preflight denied", code=verdict.code or "PREFLIGHT_DENIED")

    async def _run_task(self, task: QueuedTask) -> None:
        try:
            self._run_preflight(task)
            instruction = task.instruction or task.command or task.name
            task.result = await self.executor.execute(task.agent_id, instruction, task)
            task.status = "completed"
            logger.info(f"Queued task {task.id} completed")
        except Exception as exc:
            task.status = "failed"
            if isinstance(exc, MissionControlError):
                task.error = f"{exc.code}: {exc.message}"
            else:
                task.error = str(exc) or exc.__class__.__name__
            logger.error(f"Queued task {task.id} failed: {task.error}")

        task.end_time = self.clock()
        self.active.pop(task.id, None)
        self.history.append(task)
        if len(self.history) > self.history_limit:
            self.history = self.history[-self.history_limit :]
        self._persist()
        self._notify()

        if task.status == "failed" and self.failure_handler is not None:
            try:
                self.failure_handler(task, self)
            except Exception as exc:
                logger.error(f"Failure handler raised for task {task.id}: {exc}")
        self._request_pass()

    async def drain(self, timeout: float | None = None) -> None:
        """保留中のパスと実行中タスクがなくなるまで待つ。"""

        async def _wait() -> None:
            while True:
                if self._jobs:
                    await asyncio.wait(set(self._jobs))
                elif self._pass_handle is not None:
                    await asyncio.sleep(0)
                else:
                    return

        await asyncio.wait_for(_wait(), timeout)

    # ------------------------------------------------------------------
    # manual intervention

    def remove_task(self, task_id: str) -> dict[str, Any]:
        for task in self.queue:
            if task.id == task_id:
                self.queue.remove(task)
                self._persist()
                self._notify()
                logger.info(f"Removed queued task {task_id}")
                return {"success": True, "task": task.to_dict()}
        return {"success": False, "error": f"Task {task_id} is not queued"}

    def retry_task(self, task_id: str) -> dict[str, Any]:
        """失敗した履歴エントリを同じ ID で再投入する。"""
        failed = next((t for t in self.history if t.id == task_id and t.status == "failed"), None)
        if failed is None:
            return {"success": False, "error": f"No failed task {task_id} in history"}
        self.history.remove(failed)
        task = self.add_task(
            failed.name,
            id=failed.id,
            agent_id=failed.agent_id,
            instruction=failed.instruction,
            command=failed.command,
            type=failed.type,
            dependencies=failed.dependencies,
            priority=failed.priority,
            metadata={**failed.metadata, "previous_error": failed.error},
        )
        return {"success": True, "task": task.to_dict()}

    # ------------------------------------------------------------------
    # status and persistence

    def get_status(self) -> dict[str, Any]:
        return {
            "processing": bool(self.active),
            "active_tasks": [t.to_dict() for t in self.active.values()],
            "queue": [t.to_dict() for t in self.queue],
            "history": [t.to_dict() for t in self.history[-STATUS_HISTORY_LIMIT:]],
            "max_concurrency": self.max_concurrency,
        }

    def _notify(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(self.get_status())
        except Exception as exc:
            logger.error(f"Queue change listener failed: {exc}")

    def _persist(self) -> None:
        if self.state_path is None:
            return
        document = {
            "saved_at": self.clock().isoformat(),
            "history": [t.to_dict() for t in self.history],
            "queue": [t.to_dict() for t in self.queue],
        }
        _atomic_write(self.state_path, json.dumps(document, ensure_ascii=False, indent=2, default=str))

    def load(self) -> int:
        """保存済みの履歴と待機タスクを復元する。実行中だったタスクは復元しない。"""
        if self.state_path is None or not self.state_path.exists():
            return 0
        document = json.loads(self.state_path.read_text(encoding="utf-8"))
        self.history = [QueuedTask.from_dict(d) for d in document.get("history", [])][-self.history_limit :]
        self.queue = [QueuedTask.from_dict(d) for d in document.get("queue", [])]
        for task in self.queue:
            task.status = "pending"
            task.start_time = None
        last_seq = max((t.seq for t in [*self.history, *self.queue]), default=0)
        self._seq = itertools.count(last_seq + 1)
        logger.info(f"Loaded queue state: {len(self.history)} history, {len(self.queue)} queued")
        self._request_pass()
        return len(self.history) + len(self.queue)


class FailureIntervention:
    """失敗したタスクに対して high 優先度の診断タスクを投入する。"""

    def __init__(self, enabled: bool = True, agent_id: str = "autopilot"):
        self.enabled = enabled
        self.agent_id = agent_id

    def __call__(self, task: QueuedTask, queue: MissionQueue) -> Optional[QueuedTask]:
        if not self.enabled or task.type == DIAGNOSIS_TASK_TYPE:
            return None
        logger.warning(f"Failure intervention: analysing failure in task {task.id}")
        failure_log = task.error or "Unknown runtime error"
        return queue.add_task(
            f"Diagnosis: {task.name}",
            agent_id=self.agent_id,
            instruction=f"Diagnose the failure of task {task.id} ({task.name}): {failure_log}",
            type=DIAGNOSIS_TASK_TYPE,
            priority="high",
            metadata={"original_task_id": task.id, "failure_log": failure_log},
        )
