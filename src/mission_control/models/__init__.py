"""ドメインモデルを公開するモジュール。"""

from __future__ import annotations

from .artifacts import Artifact, ArtifactMode, ArtifactType, Producer, Provenance, artifact_mode
from .domain import (
    Agent,
    AgentStatus,
    Approval,
    ApprovalStatus,
    Mission,
    MissionClass,
    MissionContract,
    MissionStatus,
    Proposal,
    ProposalStatus,
    RiskLevel,
    SelfHealRecord,
    Task,
    TaskStatus,
    TaskType,
    new_id,
    risk_rank,
    utcnow,
)

__all__ = [
    "Agent",
    "AgentStatus",
    "Approval",
    "ApprovalStatus",
    "Artifact",
    "ArtifactMode",
    "ArtifactType",
    "Mission",
    "MissionClass",
    "MissionContract",
    "MissionStatus",
    "Producer",
    "Proposal",
    "ProposalStatus",
    "Provenance",
    "RiskLevel",
    "SelfHealRecord",
    "Task",
    "TaskStatus",
    "TaskType",
    "artifact_mode",
    "new_id",
    "risk_rank",
    "utcnow",
]
