"""Mission / Task / Agent / Approval / Proposal のドメインモデル。"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """タイムゾーン付きの現在時刻 (UTC) を返す。"""
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """接頭辞付きの短い一意 ID を生成する。"""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class MissionStatus(str, Enum):
    """ミッションのステータスを表す列挙。"""

    QUEUED = "queued"
    RUNNING = "running"
    BLOCKED = "blocked"
    NEEDS_REVIEW = "needs_review"
    COMPLETE = "complete"
    FAILED = "failed"


class MissionClass(str, Enum):
    """ミッション分類を表す列挙。"""

    EXPLORATION = "exploration"
    IMPLEMENTATION = "implementation"
    MAINTENANCE = "maintenance"
    DESTRUCTIVE = "destructive"
    CONTINUOUS = "continuous"


class TaskType(str, Enum):
    """タスク種別 (実行フェーズ) を表す列挙。"""

    WORK = "work"
    VERIFICATION = "verification"
    FINALIZATION = "finalization"


class TaskStatus(str, Enum):
    """タスクのステータスを表す列挙。"""

    PENDING = "pending"
    READY = "ready"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    BLOCKED = "blocked"


class AgentStatus(str, Enum):
    """エージェントのステータスを表す列挙。"""

    SPAWNING = "spawning"
    RUNNING = "running"
    STALE = "stale"
    DEAD = "dead"
    COMPLETE = "complete"
    FAILED = "failed"


class RiskLevel(str, Enum):
    """リスク評価 (low < medium < high)。"""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    AUTO_APPROVED = "auto_approved"


class ProposalStatus(str, Enum):
    """自己修復プロポーザルのステータス。"""

    PENDING = "pending"
    AWAITING_APPROVAL = "awaiting_approval"
    APPLIED = "applied"
    REJECTED = "rejected"
    NEEDS_ROLLBACK = "needs_rollback"
    ROLLED_BACK = "rolled_back"
    SUPERSEDED = "superseded"


RISK_ORDER: dict[RiskLevel, int] = {
    RiskLevel.LOW: 1,
    RiskLevel.MEDIUM: 2,
    RiskLevel.HIGH: 3,
}

TASK_TYPE_ORDER: dict[TaskType, int] = {
    TaskType.WORK: 1,
    TaskType.VERIFICATION: 2,
    TaskType.FINALIZATION: 3,
}


def risk_rank(level: RiskLevel | str) -> int:
    """リスクレベルの順序値を返す。未知の値は最も高いリスクとして扱う。"""
    try:
        return RISK_ORDER[RiskLevel(level)]
    except ValueError:
        return RISK_ORDER[RiskLevel.HIGH]


class MissionContract(BaseModel):
    """ミッション契約 (必須成果物・リスク・許可ツール・実行モード)。"""

    required_artifacts: list[str] = Field(default_factory=list)
    risk_level: RiskLevel = RiskLevel.LOW
    allowed_tools: list[str] = Field(default_factory=list)
    execution_mode: str = Field(default="sandboxed")
    max_estimated_cost: Optional[float] = None


class Mission(BaseModel):
    """ミッションを表現するモデル。"""

    id: str = Field(default_factory=lambda: new_id("mission"))
    title: str
    description: str = ""
    status: MissionStatus = MissionStatus.QUEUED
    mission_class: MissionClass = MissionClass.IMPLEMENTATION
    contract: MissionContract = Field(default_factory=MissionContract)
    task_ids: list[str] = Field(default_factory=list)
    artifact_ids: list[str] = Field(default_factory=list)
    agent_ids: list[str] = Field(default_factory=list)
    failure_count: int = 0
    blocked_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1


class Task(BaseModel):
    """ミッション内の個別タスクを表現するモデル。"""

    id: str = Field(default_factory=lambda: new_id("task"))
    mission_id: str
    title: str
    instructions: str = ""
    task_type: TaskType = TaskType.WORK
    status: TaskStatus = TaskStatus.PENDING
    deps: list[str] = Field(default_factory=list)
    required_artifacts: list[str] = Field(default_factory=list)
    artifact_ids: list[str] = Field(default_factory=list)
    agent_id: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1


class Agent(BaseModel):
    """外部エージェントの監視用レコード。"""

    id: str = Field(default_factory=lambda: new_id("agent"))
    name: str = ""
    status: AgentStatus = AgentStatus.SPAWNING
    mission_id: Optional[str] = None
    task_id: Optional[str] = None
    last_heartbeat: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1


class Approval(BaseModel):
    """人間または自動ポリシーによる承認リクエスト。"""

    id: str = Field(default_factory=lambda: new_id("approval"))
    mission_id: Optional[str] = None
    action: str
    description: str = ""
    risk_level: RiskLevel = RiskLevel.MEDIUM
    payload: dict[str, Any] = Field(default_factory=dict)
    status: ApprovalStatus = ApprovalStatus.PENDING
    resolved_by: Optional[str] = None
    resolution_note: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None


class Proposal(BaseModel):
    """失敗シグネチャから生成された自己修復プロポーザル。"""

    id: str = Field(default_factory=lambda: new_id("proposal"))
    mission_id: str
    task_id: Optional[str] = None
    agent_id: Optional[str] = None
    self_heal_key: str
    failure_signature: Any = None
    diagnosis: str
    proposed_commands: list[str] = Field(default_factory=list)
    files_touched: list[str] = Field(default_factory=list)
    risk_rating: RiskLevel = RiskLevel.MEDIUM
    rollback_plan: str
    estimated_cost: Optional[float] = None
    context: dict[str, Any] = Field(default_factory=dict)
    status: ProposalStatus = ProposalStatus.PENDING
    failure_report_id: Optional[str] = None
    proposal_artifact_id: Optional[str] = None
    approval_id: Optional[str] = None
    applied_by: Optional[str] = None
    applied_at: Optional[datetime] = None
    snapshot_label: Optional[str] = None
    rejection_reason: Optional[str] = None
    rollback_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class SelfHealRecord(BaseModel):
    """selfHealKey ごとの冪等性記録。"""

    self_heal_key: str
    proposal_id: str
    outcome: str
    recorded_at: datetime = Field(default_factory=utcnow)
