"""ミッション単位のタスク依存グラフを構築・検証するエンジン。

ノードはタスク、エッジは ``deps`` (タスク → 依存先)。逆エッジ (依存元) も
保持し、フェーズゲート (work → verification → finalization) を評価する。
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from .errors import GraphIntegrityError, NotFoundError
from .models import Task, TaskStatus, TaskType
from .models.domain import TASK_TYPE_ORDER
from .state_store import StateStore

logger = logging.getLogger(__name__)

CYCLE_DETECTED = "CYCLE_DETECTED"
DEPENDENCY_NOT_FOUND = "DEPENDENCY_NOT_FOUND"
INVALID_TASK_TYPE = "INVALID_TASK_TYPE"
GATE_NOT_PASSED = "GATE_NOT_PASSED"
TASK_NOT_READY = "TASK_NOT_READY"
FINALIZATION_BLOCKED = "FINALIZATION_BLOCKED"
VERIFICATION_REQUIRED = "VERIFICATION_REQUIRED"
INVALID_TRANSITION = "INVALID_TRANSITION"
MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"

ALLOWED_TRANSITIONS: dict[TaskStatus, tuple[TaskStatus, ...]] = {
    TaskStatus.PENDING: (TaskStatus.READY, TaskStatus.BLOCKED),
    TaskStatus.READY: (TaskStatus.RUNNING, TaskStatus.BLOCKED),
    TaskStatus.RUNNING: (TaskStatus.COMPLETE, TaskStatus.FAILED, TaskStatus.BLOCKED),
    TaskStatus.BLOCKED: (TaskStatus.PENDING, TaskStatus.READY),
    TaskStatus.FAILED: (TaskStatus.PENDING,),
}

STATUS_ICONS: dict[TaskStatus, str] = {
    TaskStatus.COMPLETE: "[x]",
    TaskStatus.RUNNING: "[>]",
    TaskStatus.PENDING: "[ ]",
    TaskStatus.QUEUED: "[ ]",
    TaskStatus.READY: "[o]",
    TaskStatus.FAILED: "[!]",
    TaskStatus.BLOCKED: "[-]",
}

# statuses skipped by the ready-task scan
NOT_SCHEDULABLE = (TaskStatus.COMPLETE, TaskStatus.RUNNING, TaskStatus.FAILED, TaskStatus.BLOCKED)


def _task_ref(task: Task) -> dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status.value,
        "task_type": task.task_type.value,
    }


@dataclass(slots=True)
class TaskGraph:
    """ミッションの依存グラフ (キャッシュ対象)。"""

    mission_id: str
    nodes: dict[str, Task]
    edges: dict[str, list[str]]
    reverse_edges: dict[str, list[str]]
    by_type: dict[TaskType, list[str]]

    @property
    def edge_count(self) -> int:
        return sum(len(deps) for deps in self.edges.values())


@dataclass(slots=True)
class GateResult:
    passed: bool
    gate: str
    code: Optional[str] = None
    error: Optional[str] = None
    blocking: list[dict[str, Any]] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    present: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class CycleReport:
    has_cycle: bool
    cycle: list[str] = field(default_factory=list)
    message: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ExecutionOrder:
    success: bool
    order: list[str] = field(default_factory=list)
    code: Optional[str] = None
    error: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def unwrap(self) -> list[str]:
        """成功時は順序を返し、失敗時は GraphIntegrityError を送出する。"""
        if not self.success:
            raise GraphIntegrityError(self.error or "Graph integrity violated", code=self.code, **self.details)
        return self.order

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class DependencyResolution:
    task_id: str
    resolved: list[dict[str, Any]] = field(default_factory=list)
    unresolved: list[dict[str, Any]] = field(default_factory=list)

    @property
    def all_met(self) -> bool:
        return not self.unresolved

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "resolved": self.resolved,
            "unresolved": self.unresolved,
            "all_met": self.all_met,
        }


@dataclass(slots=True)
class TransitionResult:
    valid: bool
    task_id: str
    from_status: str
    to_status: str
    code: Optional[str] = None
    error: Optional[str] = None
    allowed: list[str] = field(default_factory=list)
    gate: Optional[GateResult] = None
    task: Optional[Task] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "task_id": self.task_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "code": self.code,
            "error": self.error,
            "allowed": self.allowed,
            "gate": self.gate.to_dict() if self.gate else None,
            "task": self.task.model_dump(mode="json") if self.task else None,
        }


class TaskGraphEngine:
    """依存グラフの構築・循環検出・実行順序・ゲート評価を提供する。"""

    def __init__(self, store: StateStore):
        self.store = store
        self._cache: dict[str, TaskGraph] = {}
        self._unsubscribe = store.subscribe(self._on_store_event)

    def _on_store_event(self, event: str, payload: dict[str, Any]) -> None:
        mission_id = payload.get("mission_id")
        if mission_id and (event.startswith("task_") or event.startswith("artifact_")):
            self.invalidate(mission_id)

    def invalidate(self, mission_id: str | None = None) -> None:
        """キャッシュを破棄する。mission_id 省略時は全件。"""
        if mission_id is None:
            self._cache.clear()
        else:
            self._cache.pop(mission_id, None)

    # ------------------------------------------------------------------
    # graph construction

    def build_graph(self, mission_id: str) -> TaskGraph:
        if self.store.get_mission(mission_id) is None:
            raise NotFoundError("mission", mission_id)
        tasks = self.store.list_tasks(mission_id)
        nodes = {task.id: task for task in tasks}
        edges = {task.id: list(task.deps) for task in tasks}
        reverse_edges: dict[str, list[str]] = {task.id: [] for task in tasks}
        by_type: dict[TaskType, list[str]] = {kind: [] for kind in TaskType}
        for task in tasks:
            by_type[task.task_type].append(task.id)
            for dep in task.deps:
                reverse_edges.setdefault(dep, []).append(task.id)
        graph = TaskGraph(mission_id, nodes, edges, reverse_edges, by_type)
        self._cache[mission_id] = graph
        return graph

    def get_graph(self, mission_id: str) -> TaskGraph:
        graph = self._cache.get(mission_id)
        if graph is None:
            graph = self.build_graph(mission_id)
        return graph

    def _require_task(self, task_id: str) -> Task:
        task = self.store.get_task(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    def _current(self, task: Task) -> Task:
        return self.get_graph(task.mission_id).nodes.get(task.id, task)

    # ------------------------------------------------------------------
    # dependencies

    def resolve_dependencies(self, task_id: str) -> DependencyResolution:
        """直接依存を解決済み (complete) と未解決に分類する。"""
        task = self._require_task(task_id)
        graph = self.get_graph(task.mission_id)
        resolution = DependencyResolution(task_id=task_id)
        for dep_id in task.deps:
            dep = graph.nodes.get(dep_id)
            if dep is None:
                resolution.unresolved.append(
                    {"id": dep_id, "title": None, "status": "missing", "task_type": None}
                )
            elif dep.status is TaskStatus.COMPLETE:
                resolution.resolved.append(_task_ref(dep))
            else:
                resolution.unresolved.append(_task_ref(dep))
        return resolution

    def get_all_dependencies(self, task_id: str) -> list[str]:
        """推移的に到達可能な依存タスク ID を発見順で返す。"""
        task = self._require_task(task_id)
        graph = self.get_graph(task.mission_id)
        seen: list[str] = []
        frontier = list(graph.edges.get(task_id, []))
        while frontier:
            dep_id = frontier.pop(0)
            if dep_id in seen or dep_id == task_id or dep_id not in graph.nodes:
                continue
            seen.append(dep_id)
            frontier.extend(graph.edges.get(dep_id, []))
        return seen

    # ------------------------------------------------------------------
    # integrity

    def detect_cycle(self, mission_id: str) -> CycleReport:
        """深さ優先探索で循環を検出し、循環パスを返す。"""
        graph = self.get_graph(mission_id)
        visited: set[str] = set()

        def visit(root_id: str) -> list[str] | None:
            # 明示的なスタックで辿る。path と on_stack は現在の探索経路。
            path: list[str] = [root_id]
            on_stack: set[str] = {root_id}
            pending = [iter(graph.edges.get(root_id, []))]
            visited.add(root_id)
            while pending:
                dep_id = next(pending[-1], None)
                if dep_id is None:
                    pending.pop()
                    on_stack.discard(path.pop())
                    continue
                if dep_id not in graph.nodes:
                    continue
                if dep_id in on_stack:
                    return [*path[path.index(dep_id):], dep_id]
                if dep_id not in visited:
                    visited.add(dep_id)
                    path.append(dep_id)
                    on_stack.add(dep_id)
                    pending.append(iter(graph.edges.get(dep_id, [])))
            return None

        for node_id in graph.nodes:
            if node_id in visited:
                continue
            cycle = visit(node_id)
            if cycle:
                message = f"Cycle detected: {' -> '.join(cycle)}"
                logger.warning(f"Mission {mission_id}: {message}")
                return CycleReport(has_cycle=True, cycle=cycle, message=message)
        return CycleReport(has_cycle=False)

    def compute_execution_order(self, mission_id: str) -> ExecutionOrder:
        """Kahn 法でトポロジカル順序を求める。同じ波では work → verification → finalization。"""
        graph = self.get_graph(mission_id)

        dangling = [
            {"task_id": task_id, "dependency": dep_id}
            for task_id, deps in graph.edges.items()
            for dep_id in deps
            if dep_id not in graph.nodes
        ]
        if dangling:
            return ExecutionOrder(
                success=False,
                code=DEPENDENCY_NOT_FOUND,
                error=f"{len(dangling)} dependencies reference unknown tasks",
                details={"missing": dangling},
            )

        cycle = self.detect_cycle(mission_id)
        if cycle.has_cycle:
            return ExecutionOrder(
                success=False,
                code=CYCLE_DETECTED,
                error=cycle.message,
                details={"cycle": cycle.cycle},
            )

        positions = {task_id: index for index, task_id in enumerate(graph.nodes)}

        def sort_key(task_id: str) -> tuple[int, int]:
            return TASK_TYPE_ORDER[graph.nodes[task_id].task_type], positions[task_id]

        in_degree = {task_id: len(graph.edges[task_id]) for task_id in graph.nodes}
        ready = [task_id for task_id, degree in in_degree.items() if degree == 0]
        order: list[str] = []
        while ready:
            ready.sort(key=sort_key)
            current = ready.pop(0)
            order.append(current)
            for dependent in graph.reverse_edges.get(current, []):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    ready.append(dependent)

        if len(order) != len(graph.nodes):
            remaining = [task_id for task_id in graph.nodes if task_id not in order]
            return ExecutionOrder(
                success=False,
                code=CYCLE_DETECTED,
                error=(
                    f"Execution order covers {len(order)} of {len(graph.nodes)} tasks; "
                    "cycle or possible missing dependency"
                ),
                details={"remaining": remaining},
            )
        return ExecutionOrder(success=True, order=order)

    def _ensure_integrity(self, mission_id: str) -> None:
        self.compute_execution_order(mission_id).unwrap()

    # ------------------------------------------------------------------
    # gates

    def check_work_gate(self, task: Task) -> GateResult:
        resolution = self.resolve_dependencies(task.id)
        if resolution.all_met:
            return GateResult(passed=True, gate="work")
        return GateResult(
            passed=False,
            gate="work",
            code=TASK_NOT_READY,
            error=f"Task {task.id} is waiting on {len(resolution.unresolved)} dependencies",
            blocking=resolution.unresolved,
        )

    def check_verification_gate(self, task: Task) -> GateResult:
        """上流の work タスクが全て完了するまで verification を開始させない。

        deps を持たない verification タスクはミッション全体の work を検証対象とする。
        """
        graph = self.get_graph(task.mission_id)
        if task.deps:
            upstream = self.get_all_dependencies(task.id)
        else:
            upstream = list(graph.by_type[TaskType.WORK])
        outstanding = [
            graph.nodes[task_id]
            for task_id in upstream
            if task_id in graph.nodes
            and graph.nodes[task_id].task_type is TaskType.WORK
            and graph.nodes[task_id].status is not TaskStatus.COMPLETE
        ]
        if outstanding:
            return GateResult(
                passed=False,
                gate="verification",
                code=VERIFICATION_REQUIRED,
                error=f"Verification blocked: {len(outstanding)} work tasks incomplete",
                blocking=[_task_ref(t) for t in outstanding],
            )

        direct = self.check_work_gate(task)
        if not direct.passed:
            direct.gate = "verification"
            return direct
        return GateResult(passed=True, gate="verification")

    def check_finalization_gate(self, task: Task) -> GateResult:
        """finalization はミッション全体の verification と work の完了が条件。"""
        graph = self.get_graph(task.mission_id)

        def incomplete(kind: TaskType) -> list[Task]:
            return [
                graph.nodes[task_id]
                for task_id in graph.by_type[kind]
                if task_id != task.id and graph.nodes[task_id].status is not TaskStatus.COMPLETE
            ]

        pending_verification = incomplete(TaskType.VERIFICATION)
        if pending_verification:
            return GateResult(
                passed=False,
                gate="finalization",
                code=FINALIZATION_BLOCKED,
                error=f"Finalization blocked: {len(pending_verification)} verification tasks incomplete",
                blocking=[_task_ref(t) for t in pending_verification],
            )
        pending_work = incomplete(TaskType.WORK)
        if pending_work:
            return GateResult(
                passed=False,
                gate="finalization",
                code=FINALIZATION_BLOCKED,
                error=f"Finalization blocked: {len(pending_work)} work tasks incomplete",
                blocking=[_task_ref(t) for t in pending_work],
            )

        direct = self.check_work_gate(task)
        if not direct.passed:
            direct.gate = "finalization"
            return direct
        return GateResult(passed=True, gate="finalization")

    def _gate_for(self, task: Task) -> GateResult:
        checks = {
            TaskType.WORK: self.check_work_gate,
            TaskType.VERIFICATION: self.check_verification_gate,
            TaskType.FINALIZATION: self.check_finalization_gate,
        }
        check = checks.get(task.task_type)
        if check is None:
            return GateResult(
                passed=False,
                gate=str(task.task_type),
                code=INVALID_TASK_TYPE,
                error=f"Unknown task type: {task.task_type}",
            )
        return check(task)

    def check_task_gate(self, task_id: str) -> GateResult:
        """タスク種別に応じたゲートを評価する。"""
        task = self._current(self._require_task(task_id))
        return self._gate_for(task)

    def check_artifact_gate(self, task_id: str) -> GateResult:
        """必須成果物が全てタスクに記録されているかを評価する。"""
        task = self._require_task(task_id)
        present = sorted({a.type.value for a in self.store.list_artifacts(task_id=task_id)})
        missing = [kind for kind in task.required_artifacts if kind not in present]
        if missing:
            return GateResult(
                passed=False,
                gate="artifact",
                code=GATE_NOT_PASSED,
                error=f"Missing required artifacts: {', '.join(missing)}",
                missing=missing,
                present=present,
            )
        return GateResult(passed=True, gate="artifact", present=present)

    # ------------------------------------------------------------------
    # queries

    def get_ready_tasks(self, mission_id: str) -> list[Task]:
        """ゲートを通過した実行可能タスクを種別順で返す。"""
        self._ensure_integrity(mission_id)
        graph = self.get_graph(mission_id)
        ready = [
            task
            for task in graph.nodes.values()
            if task.status not in NOT_SCHEDULABLE and self._gate_for(task).passed
        ]
        positions = {task_id: index for index, task_id in enumerate(graph.nodes)}
        ready.sort(key=lambda t: (TASK_TYPE_ORDER[t.task_type], positions[t.id]))
        return [task.model_copy(deep=True) for task in ready]

    def get_next_task(self, mission_id: str) -> Optional[Task]:
        ready = self.get_ready_tasks(mission_id)
        return ready[0] if ready else None

    def promote_ready_tasks(self, mission_id: str) -> list[str]:
        """ゲートを通過した pending タスクを ready に遷移させる。"""
        promoted: list[str] = []
        for task in self.get_ready_tasks(mission_id):
            if task.status is TaskStatus.PENDING:
                result = self.transition_task(task.id, TaskStatus.READY)
                if result.valid:
                    promoted.append(task.id)
        return promoted

    def get_mission_progress(self, mission_id: str) -> dict[str, Any]:
        graph = self.get_graph(mission_id)
        counts = {"completed": 0, "running": 0, "pending": 0, "ready": 0, "failed": 0, "blocked": 0}
        by_type = {kind.value: {"total": 0, "complete": 0} for kind in TaskType}
        for task in graph.nodes.values():
            by_type[task.task_type.value]["total"] += 1
            status = task.status
            if status is TaskStatus.COMPLETE:
                counts["completed"] += 1
                by_type[task.task_type.value]["complete"] += 1
            elif status is TaskStatus.RUNNING:
                counts["running"] += 1
            elif status is TaskStatus.FAILED:
                counts["failed"] += 1
            elif status is TaskStatus.BLOCKED:
                counts["blocked"] += 1
            else:
                counts["pending"] += 1
                if status is TaskStatus.READY:
                    counts["ready"] += 1
        total = len(graph.nodes)
        return {
            "mission_id": mission_id,
            "total": total,
            **counts,
            "percent_complete": round(counts["completed"] / total * 100) if total else 0,
            "by_type": by_type,
        }

    # ------------------------------------------------------------------
    # transitions

    def validate_transition(self, task_id: str, new_status: TaskStatus | str) -> TransitionResult:
        """遷移表とゲートに照らして状態遷移の可否を判定する。"""
        task = self._current(self._require_task(task_id))
        current = task.status
        allowed = [status.value for status in ALLOWED_TRANSITIONS.get(current, ())]
        try:
            target = TaskStatus(new_status)
        except ValueError:
            return TransitionResult(
                valid=False,
                task_id=task_id,
                from_status=current.value,
                to_status=str(new_status),
                code=INVALID_TRANSITION,
                error=f"Unknown status '{new_status}'. Allowed: {', '.join(allowed) or 'none'}",
                allowed=allowed,
            )

        if target.value not in allowed:
            return TransitionResult(
                valid=False,
                task_id=task_id,
                from_status=current.value,
                to_status=target.value,
                code=INVALID_TRANSITION,
                error=(
                    f"Invalid transition {current.value} -> {target.value}. "
                    f"Allowed: {', '.join(allowed) or 'none (terminal)'}"
                ),
                allowed=allowed,
            )

        retrying = current is TaskStatus.FAILED and target is TaskStatus.PENDING
        if retrying and task.retry_count >= task.max_retries:
            return TransitionResult(
                valid=False,
                task_id=task_id,
                from_status=current.value,
                to_status=target.value,
                code=MAX_RETRIES_EXCEEDED,
                error=f"Task {task_id} already retried {task.retry_count} of {task.max_retries} times",
                allowed=allowed,
            )

        gate: GateResult | None = None
        if target is TaskStatus.RUNNING:
            gate = self._gate_for(task)
        elif target is TaskStatus.COMPLETE:
            gate = self.check_artifact_gate(task_id)
        if gate is not None and not gate.passed:
            return TransitionResult(
                valid=False,
                task_id=task_id,
                from_status=current.value,
                to_status=target.value,
                code=gate.code,
                error=gate.error,
                allowed=allowed,
                gate=gate,
            )
        return TransitionResult(
            valid=True,
            task_id=task_id,
            from_status=current.value,
            to_status=target.value,
            allowed=allowed,
            gate=gate,
        )

    def transition_task(
        self, task_id: str, new_status: TaskStatus | str, *, error: str | None = None
    ) -> TransitionResult:
        """検証に通った遷移のみストアへ反映する。"""
        result = self.validate_transition(task_id, new_status)
        if not result.valid:
            logger.info(f"Transition rejected for {task_id}: {result.error}")
            return result
        changes: dict[str, Any] = {"status": result.to_status}
        if result.to_status == TaskStatus.FAILED:
            changes["error"] = error
        if result.from_status == TaskStatus.FAILED and result.to_status == TaskStatus.PENDING:
            task = self._require_task(task_id)
            changes["retry_count"] = task.retry_count + 1
            changes["error"] = None
        result.task = self.store.update_task(task_id, **changes)
        return result

    # ------------------------------------------------------------------
    # reporting

    def visualize(self, mission_id: str) -> str:
        """状態アイコン付きのテキストツリーを返す。"""
        graph = self.get_graph(mission_id)
        mission = self.store.get_mission(mission_id)
        title = mission.title if mission else mission_id
        lines = [f"Mission: {title} ({mission_id})"]

        ordering = self.compute_execution_order(mission_id)
        if not ordering.success:
            lines.append(f"!! {ordering.error}")
            sequence = list(graph.nodes)
        else:
            sequence = ordering.order

        depth: dict[str, int] = {}
        for task_id in sequence:
            deps = [d for d in graph.edges.get(task_id, []) if d in graph.nodes]
            depth[task_id] = 1 + max((depth.get(d, 0) for d in deps), default=-1)

        for task_id in sequence:
            task = graph.nodes[task_id]
            icon = STATUS_ICONS.get(task.status, "[?]")
            line = f"{'  ' * depth[task_id]}{icon} {task.title} [{task.task_type.value}]"
            dep_titles = [
                graph.nodes[d].title if d in graph.nodes else f"{d} (missing)"
                for d in graph.edges.get(task_id, [])
            ]
            if dep_titles:
                line += f" <- {', '.join(dep_titles)}"
            lines.append(line)
        return "\n".join(lines)

    def get_status(self, mission_id: str) -> dict[str, Any]:
        graph = self.get_graph(mission_id)
        cycle = self.detect_cycle(mission_id)
        ordering = self.compute_execution_order(mission_id)
        ready: list[Task] = self.get_ready_tasks(mission_id) if ordering.success else []
        return {
            "mission_id": mission_id,
            "node_count": len(graph.nodes),
            "edge_count": graph.edge_count,
            "progress": self.get_mission_progress(mission_id),
            "ready_tasks": [task.id for task in ready],
            "next_task": ready[0].id if ready else None,
            "has_cycle": cycle.has_cycle,
            "cycle_details": cycle.cycle if cycle.has_cycle else None,
            "integrity_error": None if ordering.success else ordering.to_dict(),
        }
