"""Versioned state document shared by every engine component.

The store keeps missions, tasks, agents, artifacts, approvals and self-heal
records in memory and writes the whole document through a backend after each
mutation. A single store call is the unit of atomicity.
"""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Protocol, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .errors import ArtifactError, DependencyNotFoundError, NotFoundError, ValidationError
from .models import (
    Agent,
    AgentStatus,
    Approval,
    ApprovalStatus,
    Artifact,
    ArtifactMode,
    ArtifactType,
    Mission,
    MissionStatus,
    Producer,
    Proposal,
    Provenance,
    RiskLevel,
    SelfHealRecord,
    Task,
    TaskStatus,
    new_id,
    utcnow,
)
from .models.artifacts import validate_payload
from .models.domain import Clock

MAX_FAILURES_PER_MISSION = 3

logger = logging.getLogger(__name__)

Listener = Callable[[str, dict[str, Any]], None]
ModelT = TypeVar("ModelT", bound=BaseModel)


class DocumentBackend(Protocol):
    def load(self) -> dict[str, Any] | None: ...

    def save(self, document: dict[str, Any]) -> None: ...

    def write_snapshot(self, label: str, document: dict[str, Any]) -> None: ...


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(content, encoding="utf-8", newline="\n")
    tmp.replace(path)


class MemoryBackend:
    """プロセス内のみで保持するバックエンド (テスト用)。"""

    def __init__(self) -> None:
        self.document: dict[str, Any] | None = None
        self.snapshots: dict[str, dict[str, Any]] = {}

    def load(self) -> dict[str, Any] | None:
        return copy.deepcopy(self.document)

    def save(self, document: dict[str, Any]) -> None:
        self.document = copy.deepcopy(document)

    def write_snapshot(self, label: str, document: dict[str, Any]) -> None:
        self.snapshots[label] = copy.deepcopy(document)


class JsonFileBackend:
    """JSON ファイルにドキュメントを保存するバックエンド。"""

    def __init__(self, path: Path | str, snapshot_dir: Path | str | None = None):
        self.path = Path(path)
        self.snapshot_dir = Path(snapshot_dir) if snapshot_dir else self.path.parent / "snapshots"

    def load(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        return json.loads(self.path.read_text(encoding="utf-8"))

    def save(self, document: dict[str, Any]) -> None:
        _atomic_write(self.path, json.dumps(document, ensure_ascii=False, indent=2))

    def write_snapshot(self, label: str, document: dict[str, Any]) -> None:
        target = self.snapshot_dir / f"{label}.json"
        _atomic_write(target, json.dumps(document, ensure_ascii=False, indent=2))


def _with_changes(model: ModelT, changes: dict[str, Any]) -> ModelT:
    data = model.model_dump()
    data.update(changes)
    return type(model).model_validate(data)


class StateStore:
    """ミッション状態の単一ドキュメントを管理するストア。"""

    def __init__(
        self,
        backend: DocumentBackend | None = None,
        *,
        clock: Clock = utcnow,
        audit_dir: Path | str | None = None,
        armed_mode: bool = False,
        risk_threshold: RiskLevel | str = RiskLevel.MEDIUM,
    ):
        self.backend = backend or MemoryBackend()
        self.clock = clock
        self.audit_dir = Path(audit_dir) if audit_dir else None
        self._listeners: list[Listener] = []
        self._version = 0
        self._missions: dict[str, Mission] = {}
        self._tasks: dict[str, Task] = {}
        self._agents: dict[str, Agent] = {}
        self._artifacts: dict[str, Artifact] = {}
        self._approvals: dict[str, Approval] = {}
        self._proposals: dict[str, Proposal] = {}
        self._self_heal_keys: dict[str, SelfHealRecord] = {}
        self._settings: dict[str, Any] = {
            "armed_mode": armed_mode,
            "risk_threshold": RiskLevel(risk_threshold).value,
            "circuit_breaker": {"tripped": False, "reason": None, "tripped_at": None},
        }

        document = self.backend.load()
        if document:
            self._hydrate(document)
            logger.info(f"Loaded state document version {self._version}")

    # ------------------------------------------------------------------
    # document plumbing

    def _hydrate(self, document: dict[str, Any]) -> None:
        self._version = int(document.get("_version", 0))
        self._missions = {k: Mission.model_validate(v) for k, v in document.get("missions", {}).items()}
        self._tasks = {k: Task.model_validate(v) for k, v in document.get("tasks", {}).items()}
        self._agents = {k: Agent.model_validate(v) for k, v in document.get("agents", {}).items()}
        self._artifacts = {k: Artifact.model_validate(v) for k, v in document.get("artifacts", {}).items()}
        self._approvals = {k: Approval.model_validate(v) for k, v in document.get("approvals", {}).items()}
        self._proposals = {k: Proposal.model_validate(v) for k, v in document.get("proposals", {}).items()}
        self._self_heal_keys = {
            k: SelfHealRecord.model_validate(v) for k, v in document.get("self_heal_keys", {}).items()
        }
        self._settings.update(document.get("settings", {}))

    def _document(self) -> dict[str, Any]:
        def dump(items: dict[str, BaseModel]) -> dict[str, Any]:
            return {key: value.model_dump(mode="json") for key, value in items.items()}

        return {
            "_version": self._version,
            "missions": dump(self._missions),
            "tasks": dump(self._tasks),
            "agents": dump(self._agents),
            "artifacts": dump(self._artifacts),
            "approvals": dump(self._approvals),
            "proposals": dump(self._proposals),
            "self_heal_keys": dump(self._self_heal_keys),
            "settings": copy.deepcopy(self._settings),
        }

    def _commit(self, event: str, payload: dict[str, Any]) -> None:
        self._version += 1
        self.backend.save(self._document())
        self._audit(event, payload)
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception as exc:
                logger.error(f"State listener failed on {event}: {exc}")

    def _audit(self, action: str, details: dict[str, Any]) -> None:
        if self.audit_dir is None:
            return
        now = self.clock()
        self.audit_dir.mkdir(parents=True, exist_ok=True)
        path = self.audit_dir / f"audit_{now:%Y-%m-%d}.jsonl"
        entry = {"ts": now.isoformat(), "action": action, "version": self._version}
        entry.update(details)
        with path.open("a", encoding="utf-8") as fh:
            json.dump(entry, fh, ensure_ascii=False, default=str)
            fh.write("\n")

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """変更通知を購読する。戻り値は購読解除関数。"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @staticmethod
    def _require(items: dict[str, ModelT], entity: str, entity_id: str) -> ModelT:
        item = items.get(entity_id)
        if item is None:
            raise NotFoundError(entity, entity_id)
        return item

    @property
    def version(self) -> int:
        return self._version

    # ------------------------------------------------------------------
    # missions

    def create_mission(self, title: str, **fields: Any) -> Mission:
        if not title:
            raise ValidationError("Mission title is required", field="title")
        now = self.clock()
        if fields.get("id") in self._missions:
            raise ValidationError(f"Mission already exists: {fields['id']}", field="id")
        mission = Mission.model_validate({"title": title, **fields, "created_at": now, "updated_at": now})
        self._missions[mission.id] = mission
        self._commit("mission_created", {"mission_id": mission.id})
        logger.info(f"Created mission {mission.id}: {mission.title}")
        return mission.model_copy(deep=True)

    def get_mission(self, mission_id: str) -> Optional[Mission]:
        mission = self._missions.get(mission_id)
        return mission.model_copy(deep=True) if mission else None

    def list_missions(self, status: MissionStatus | str | None = None) -> list[Mission]:
        return [
            m.model_copy(deep=True)
            for m in self._missions.values()
            if status is None or m.status == status
        ]

    def update_mission(self, mission_id: str, **changes: Any) -> Mission:
        mission = self._require(self._missions, "mission", mission_id)
        now = self.clock()
        new_status = changes.get("status")
        data: dict[str, Any] = dict(changes)
        if new_status == MissionStatus.RUNNING and mission.started_at is None:
            data.setdefault("started_at", now)
        became_failed = new_status == MissionStatus.FAILED and mission.status != MissionStatus.FAILED
        if became_failed:
            data["failure_count"] = mission.failure_count + 1
        data["updated_at"] = now
        data["version"] = mission.version + 1
        updated = _with_changes(mission, data)
        self._missions[mission_id] = updated
        self._commit(
            "mission_updated",
            {"mission_id": mission_id, "changes": sorted(changes), "status": updated.status.value},
        )

        if became_failed and updated.failure_count >= MAX_FAILURES_PER_MISSION:
            reason = f"Mission {mission_id} failed {updated.failure_count} times"
            self.trip_circuit_breaker(reason)
            self.add_artifact(
                ArtifactType.CIRCUIT_BREAKER_TRIP,
                {"reason": reason, "failure_count": updated.failure_count},
                mission_id=mission_id,
            )
        return updated.model_copy(deep=True)

    # ------------------------------------------------------------------
    # tasks

    def _validate_deps(self, mission_id: str, deps: Iterable[str], task_id: str | None = None) -> list[str]:
        normalized: list[str] = []
        for dep in deps:
            if dep == task_id:
                raise ValidationError(f"Task {task_id} cannot depend on itself", field="deps")
            dep_task = self._tasks.get(dep)
            if dep_task is None or dep_task.mission_id != mission_id:
                raise DependencyNotFoundError(
                    f"Dependency {dep} not found in mission {mission_id}",
                    dependency=dep,
                    mission_id=mission_id,
                )
            if dep not in normalized:
                normalized.append(dep)
        return normalized

    def create_task(self, mission_id: str, title: str, **fields: Any) -> Task:
        mission = self._require(self._missions, "mission", mission_id)
        if not title:
            raise ValidationError("Task title is required", field="title")
        task_id = fields.get("id")
        if task_id is not None and task_id in self._tasks:
            raise ValidationError(f"Task already exists: {task_id}", field="id")
        deps = self._validate_deps(mission_id, fields.pop("deps", None) or [], task_id)
        now = self.clock()
        task = Task.model_validate(
            {
                "mission_id": mission_id,
                "title": title,
                **fields,
                "deps": deps,
                "created_at": now,
                "updated_at": now,
            }
        )
        self._tasks[task.id] = task
        self._missions[mission_id] = _with_changes(
            mission,
            {"task_ids": [*mission.task_ids, task.id], "version": mission.version + 1},
        )
        self._commit("task_created", {"mission_id": mission_id, "task_id": task.id})
        return task.model_copy(deep=True)

    def get_task(self, task_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    def list_tasks(self, mission_id: str | None = None) -> list[Task]:
        return [
            t.model_copy(deep=True)
            for t in self._tasks.values()
            if mission_id is None or t.mission_id == mission_id
        ]

    def update_task(self, task_id: str, **changes: Any) -> Task:
        task = self._require(self._tasks, "task", task_id)
        data: dict[str, Any] = dict(changes)
        if "deps" in data:
            data["deps"] = self._validate_deps(task.mission_id, data["deps"] or [], task_id)
        now = self.clock()
        new_status = data.get("status")
        if new_status == TaskStatus.RUNNING:
            data.setdefault("started_at", now)
        elif new_status == TaskStatus.COMPLETE:
            data.setdefault("completed_at", now)
        data["updated_at"] = now
        data["version"] = task.version + 1
        updated = _with_changes(task, data)
        self._tasks[task_id] = updated
        self._commit(
            "task_updated",
            {"mission_id": task.mission_id, "task_id": task_id, "status": updated.status.value},
        )
        return updated.model_copy(deep=True)

    # ------------------------------------------------------------------
    # agents

    def register_agent(self, name: str = "", **fields: Any) -> Agent:
        mission_id = fields.get("mission_id")
        mission = self._require(self._missions, "mission", mission_id) if mission_id else None
        now = self.clock()
        agent = Agent.model_validate(
            {
                "name": name,
                "last_heartbeat": now,
                **fields,
                "created_at": now,
                "updated_at": now,
            }
        )
        self._agents[agent.id] = agent
        if mission is not None and agent.id not in mission.agent_ids:
            self._missions[mission.id] = _with_changes(
                mission,
                {"agent_ids": [*mission.agent_ids, agent.id], "version": mission.version + 1},
            )
        self._commit("agent_registered", {"agent_id": agent.id, "mission_id": mission_id})
        return agent.model_copy(deep=True)

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        agent = self._agents.get(agent_id)
        return agent.model_copy(deep=True) if agent else None

    def list_agents(
        self,
        status: AgentStatus | str | None = None,
        mission_id: str | None = None,
    ) -> list[Agent]:
        return [
            a.model_copy(deep=True)
            for a in self._agents.values()
            if (status is None or a.status == status)
            and (mission_id is None or a.mission_id == mission_id)
        ]

    def update_agent(self, agent_id: str, **changes: Any) -> Agent:
        agent = self._require(self._agents, "agent", agent_id)
        updated = _with_changes(
            agent, {**changes, "updated_at": self.clock(), "version": agent.version + 1}
        )
        self._agents[agent_id] = updated
        self._commit("agent_updated", {"agent_id": agent_id, "status": updated.status.value})
        return updated.model_copy(deep=True)

    def record_heartbeat(self, agent_id: str) -> Agent:
        return self.update_agent(agent_id, last_heartbeat=self.clock())

    # ------------------------------------------------------------------
    # artifacts

    def add_artifact(
        self,
        artifact_type: ArtifactType | str,
        payload: dict[str, Any] | None = None,
        *,
        mission_id: str | None = None,
        task_id: str | None = None,
        producer: Producer | str = Producer.SYSTEM,
        model: str | None = None,
        agent_id: str | None = None,
        files: list[str] | None = None,
    ) -> Artifact:
        """成果物を登録し、ミッションとタスクに紐付ける。"""
        try:
            kind = ArtifactType(artifact_type)
        except ValueError:
            raise ArtifactError(
                f"Invalid artifact type: {artifact_type}",
                code="INVALID_ARTIFACT_TYPE",
                artifact_type=str(artifact_type),
            ) from None
        try:
            source = Producer(producer)
        except ValueError:
            raise ArtifactError(
                f"Invalid producer: {producer}", code="INVALID_PRODUCER", producer=str(producer)
            ) from None
        mission = self._require(self._missions, "mission", mission_id) if mission_id else None
        task = self._require(self._tasks, "task", task_id) if task_id else None
        try:
            body = validate_payload(kind, payload or {})
        except PydanticValidationError as exc:
            raise ArtifactError(
                f"Invalid payload for {kind.value}: {exc.errors()}",
                code="INVALID_ARTIFACT_PAYLOAD",
                artifact_type=kind.value,
            ) from exc

        artifact = Artifact(
            type=kind,
            mission_id=mission_id,
            task_id=task_id,
            payload=body,
            files=list(files or []),
            provenance=Provenance(producer=source, model=model, agent_id=agent_id),
            created_at=self.clock(),
        )
        self._artifacts[artifact.id] = artifact
        if mission is not None:
            self._missions[mission.id] = _with_changes(
                mission,
                {"artifact_ids": [*mission.artifact_ids, artifact.id], "version": mission.version + 1},
            )
        if task is not None:
            self._tasks[task.id] = _with_changes(
                task,
                {"artifact_ids": [*task.artifact_ids, artifact.id], "version": task.version + 1},
            )
        self._commit(
            "artifact_added",
            {
                "artifact_id": artifact.id,
                "type": kind.value,
                "mission_id": mission_id,
                "task_id": task_id,
            },
        )
        return artifact.model_copy(deep=True)

    def update_artifact(
        self,
        artifact_id: str,
        payload: dict[str, Any] | None = None,
        files: list[str] | None = None,
    ) -> Artifact:
        """append-only 成果物にのみ追記する。既存内容は上書きしない。"""
        artifact = self._require(self._artifacts, "artifact", artifact_id)
        if artifact.mode is ArtifactMode.IMMUTABLE:
            raise ArtifactError(
                f"Artifact {artifact_id} of type {artifact.type.value} is immutable",
                code="IMMUTABLE_VIOLATION",
                artifact_id=artifact_id,
            )
        merged = dict(artifact.payload)
        for key, value in (payload or {}).items():
            if key not in merged:
                merged[key] = value
            elif isinstance(merged[key], list) and isinstance(value, list):
                merged[key] = [*merged[key], *value]
            elif isinstance(merged[key], str) and isinstance(value, str):
                merged[key] = merged[key] + value
            elif merged[key] != value:
                raise ArtifactError(
                    f"Cannot overwrite '{key}' on append-only artifact {artifact_id}",
                    code="APPEND_ONLY_VIOLATION",
                    artifact_id=artifact_id,
                    key=key,
                )
        updated = _with_changes(
            artifact,
            {
                "payload": merged,
                "files": [*artifact.files, *(files or [])],
                "updated_at": self.clock(),
                "version": artifact.version + 1,
            },
        )
        self._artifacts[artifact_id] = updated
        self._commit(
            "artifact_appended",
            {"artifact_id": artifact_id, "mission_id": artifact.mission_id, "task_id": artifact.task_id},
        )
        return updated.model_copy(deep=True)

    def get_artifact(self, artifact_id: str) -> Optional[Artifact]:
        artifact = self._artifacts.get(artifact_id)
        return artifact.model_copy(deep=True) if artifact else None

    def list_artifacts(
        self,
        mission_id: str | None = None,
        task_id: str | None = None,
        artifact_type: ArtifactType | str | None = None,
    ) -> list[Artifact]:
        return [
            a.model_copy(deep=True)
            for a in self._artifacts.values()
            if (mission_id is None or a.mission_id == mission_id)
            and (task_id is None or a.task_id == task_id)
            and (artifact_type is None or a.type == artifact_type)
        ]

    # ------------------------------------------------------------------
    # approvals

    def create_approval(self, action: str, **fields: Any) -> Approval:
        mission_id = fields.get("mission_id")
        if mission_id:
            self._require(self._missions, "mission", mission_id)
        approval = Approval.model_validate({"action": action, **fields, "created_at": self.clock()})
        self._approvals[approval.id] = approval
        self._commit("approval_created", {"approval_id": approval.id, "mission_id": mission_id})
        logger.info(f"Approval requested {approval.id}: {action}")
        return approval.model_copy(deep=True)

    def get_approval(self, approval_id: str) -> Optional[Approval]:
        approval = self._approvals.get(approval_id)
        return approval.model_copy(deep=True) if approval else None

    def list_approvals(self, status: ApprovalStatus | str | None = None) -> list[Approval]:
        return [
            a.model_copy(deep=True)
            for a in self._approvals.values()
            if status is None or a.status == status
        ]

    def resolve_approval(
        self,
        approval_id: str,
        decision: ApprovalStatus | str,
        resolved_by: str,
        note: str | None = None,
    ) -> Approval:
        approval = self._require(self._approvals, "approval", approval_id)
        outcome = ApprovalStatus(decision)
        if outcome is ApprovalStatus.PENDING:
            raise ValidationError("Approval decision cannot be pending", field="decision")
        if approval.status is not ApprovalStatus.PENDING:
            raise ValidationError(
                f"Approval {approval_id} already resolved as {approval.status.value}",
                code="APPROVAL_ALREADY_RESOLVED",
            )
        resolved = _with_changes(
            approval,
            {
                "status": outcome,
                "resolved_by": resolved_by,
                "resolution_note": note,
                "resolved_at": self.clock(),
            },
        )
        self._approvals[approval_id] = resolved
        self._commit(
            "approval_resolved",
            {"approval_id": approval_id, "status": outcome.value, "resolved_by": resolved_by},
        )
        if approval.mission_id:
            self.add_artifact(
                ArtifactType.APPROVAL_RECORD,
                {
                    "approval_id": approval_id,
                    "action": approval.action,
                    "decision": outcome.value,
                    "approved_by": resolved_by,
                    "proposal_id": approval.payload.get("proposal_id"),
                    "note": note,
                },
                mission_id=approval.mission_id,
                producer=Producer.HUMAN if not resolved_by.startswith("policy:") else Producer.SYSTEM,
            )
        return resolved.model_copy(deep=True)

    # ------------------------------------------------------------------
    # snapshots and safety switches

    def create_snapshot(self, label: str | None = None) -> str:
        label = label or f"snapshot_{self.clock():%Y%m%dT%H%M%S}_{new_id('s')[-6:]}"
        self.backend.write_snapshot(label, self._document())
        self._audit("snapshot_created", {"label": label})
        logger.info(f"State snapshot written: {label}")
        return label

    def set_armed_mode(self, enabled: bool, risk_threshold: RiskLevel | str | None = None) -> None:
        self._settings["armed_mode"] = bool(enabled)
        if risk_threshold is not None:
            self._settings["risk_threshold"] = RiskLevel(risk_threshold).value
        self._commit(
            "armed_mode_changed",
            {"armed_mode": bool(enabled), "risk_threshold": self._settings["risk_threshold"]},
        )
        logger.warning(f"Armed mode set to {enabled} (threshold={self._settings['risk_threshold']})")

    def is_armed_mode(self) -> bool:
        return bool(self._settings.get("armed_mode", False))

    @property
    def risk_threshold(self) -> RiskLevel:
        return RiskLevel(self._settings.get("risk_threshold", RiskLevel.MEDIUM.value))

    def trip_circuit_breaker(self, reason: str) -> None:
        self._settings["circuit_breaker"] = {
            "tripped": True,
            "reason": reason,
            "tripped_at": self.clock().isoformat(),
        }
        self._commit("circuit_breaker_tripped", {"reason": reason})
        logger.error(f"Circuit breaker tripped: {reason}")

    def reset_circuit_breaker(self) -> None:
        self._settings["circuit_breaker"] = {"tripped": False, "reason": None, "tripped_at": None}
        self._commit("circuit_breaker_reset", {})
        logger.info("Circuit breaker reset")

    def is_circuit_breaker_tripped(self) -> bool:
        return bool(self._settings.get("circuit_breaker", {}).get("tripped", False))

    def get_circuit_breaker(self) -> dict[str, Any]:
        return dict(self._settings.get("circuit_breaker", {}))

    # ------------------------------------------------------------------
    # self-heal records

    def save_proposal(self, proposal: Proposal) -> Proposal:
        stored = proposal.model_copy(deep=True)
        self._proposals[stored.id] = stored
        self._commit(
            "proposal_saved",
            {"proposal_id": stored.id, "mission_id": stored.mission_id, "status": stored.status.value},
        )
        return stored.model_copy(deep=True)

    def get_proposal(self, proposal_id: str) -> Optional[Proposal]:
        proposal = self._proposals.get(proposal_id)
        return proposal.model_copy(deep=True) if proposal else None

    def list_proposals(self) -> list[Proposal]:
        return [p.model_copy(deep=True) for p in self._proposals.values()]

    def delete_proposal(self, proposal_id: str) -> None:
        if self._proposals.pop(proposal_id, None) is not None:
            self._commit("proposal_deleted", {"proposal_id": proposal_id})

    def get_self_heal_record(self, self_heal_key: str) -> Optional[SelfHealRecord]:
        record = self._self_heal_keys.get(self_heal_key)
        return record.model_copy() if record else None

    def record_self_heal_outcome(self, self_heal_key: str, proposal_id: str, outcome: str) -> SelfHealRecord:
        record = SelfHealRecord(
            self_heal_key=self_heal_key,
            proposal_id=proposal_id,
            outcome=outcome,
            recorded_at=self.clock(),
        )
        self._self_heal_keys[self_heal_key] = record
        self._commit(
            "self_heal_outcome",
            {"self_heal_key": self_heal_key, "proposal_id": proposal_id, "outcome": outcome},
        )
        return record.model_copy()

    # ------------------------------------------------------------------
    # whole-document views

    def get_state(self) -> dict[str, Any]:
        """状態ドキュメント全体のディープコピーを返す。"""
        return self._document()

    def get_stats(self) -> dict[str, Any]:
        def count_by(items: Iterable[Any]) -> dict[str, int]:
            counts: dict[str, int] = {}
            for item in items:
                key = item.status.value
                counts[key] = counts.get(key, 0) + 1
            return counts

        return {
            "version": self._version,
            "missions": {"total": len(self._missions), "by_status": count_by(self._missions.values())},
            "tasks": {"total": len(self._tasks), "by_status": count_by(self._tasks.values())},
            "agents": {"total": len(self._agents), "by_status": count_by(self._agents.values())},
            "artifacts": len(self._artifacts),
            "approvals": {
                "total": len(self._approvals),
                "pending": sum(1 for a in self._approvals.values() if a.status is ApprovalStatus.PENDING),
            },
            "proposals": len(self._proposals),
            "armed_mode": self.is_armed_mode(),
            "risk_threshold": self.risk_threshold.value,
            "circuit_breaker": self.get_circuit_breaker(),
        }
