"""Artifact taxonomy, mutability modes and typed payloads.

Every artifact type belongs to a closed enum. Types the engine writes itself
carry a payload model; the remaining types are stored as opaque mappings.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .domain import RiskLevel, new_id, utcnow


class ArtifactType(str, Enum):
    # core
    GIT_DIFF = "git_diff"
    GIT_COMMIT = "git_commit"
    BUILD_LOG = "build_log"
    RUNTIME_LOG = "runtime_log"
    LIGHTHOUSE_REPORT = "lighthouse_report"
    CONSOLE_ERRORS = "console_errors"
    SCREENSHOT_DESKTOP = "screenshot_desktop"
    SCREENSHOT_MOBILE = "screenshot_mobile"
    # safety
    PLAN = "plan"
    VERIFICATION_REPORT = "verification_report"
    FAILURE_REPORT = "failure_report"
    SELF_HEAL_PROPOSAL = "self_heal_proposal"
    APPROVAL_RECORD = "approval_record"
    AGENT_RECIPE = "agent_recipe"
    EXIT_STATUS = "exit_status"
    SIGNAL_REPORT = "signal_report"
    CIRCUIT_BREAKER_TRIP = "circuit_breaker_trip"
    POLICY_MATCH_REPORT = "policy_match_report"
    PRE_FLIGHT_SNAPSHOT = "pre_flight_snapshot"
    CHANGE_PLAN = "change_plan"
    COST_ESTIMATE = "cost_estimate"
    RATE_LIMIT_EVENT = "rate_limit_event"
    # rankings
    VISIBILITY_MAP = "visibility_map"
    LOCAL_PACK_SNAPSHOT = "local_pack_snapshot"
    ORGANIC_SERP_SNAPSHOT = "organic_serp_snapshot"
    RANK_DELTA_REPORT = "rank_delta_report"
    SCAN_METADATA = "scan_metadata"
    COMPETITOR_ANALYSIS = "competitor_analysis"
    # execution
    MISSION_BOOTSTRAP = "mission_bootstrap"
    EXECUTION_VIOLATION = "execution_violation"


class ArtifactMode(str, Enum):
    IMMUTABLE = "immutable"
    APPEND_ONLY = "append_only"


APPEND_ONLY_TYPES = frozenset({ArtifactType.BUILD_LOG, ArtifactType.RUNTIME_LOG})


def artifact_mode(artifact_type: ArtifactType | str) -> ArtifactMode:
    if ArtifactType(artifact_type) in APPEND_ONLY_TYPES:
        return ArtifactMode.APPEND_ONLY
    return ArtifactMode.IMMUTABLE


class Producer(str, Enum):
    AGENT = "agent"
    WATCHDOG = "watchdog"
    SYSTEM = "system"
    HUMAN = "human"


class Provenance(BaseModel):
    producer: Producer = Producer.SYSTEM
    model: Optional[str] = None
    agent_id: Optional[str] = None


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")


class FailureReportPayload(_Payload):
    failure_signature: Any = None
    diagnosis: str = ""
    error: Optional[str] = None
    self_heal_key: Optional[str] = None
    proposal_id: Optional[str] = None


class SelfHealProposalPayload(_Payload):
    proposal_id: str
    self_heal_key: str
    diagnosis: str
    proposed_commands: list[str] = Field(default_factory=list)
    files_touched: list[str] = Field(default_factory=list)
    risk_rating: RiskLevel
    rollback_plan: str
    failure_report_id: Optional[str] = None


class ApprovalRecordPayload(_Payload):
    action: str
    decision: str
    approval_id: Optional[str] = None
    approved_by: Optional[str] = None
    proposal_id: Optional[str] = None
    note: Optional[str] = None


class SignalReportPayload(_Payload):
    signal_id: str
    signal_type: str
    severity: str
    entity_type: str
    entity_id: str
    details: dict[str, Any] = Field(default_factory=dict)


class CircuitBreakerTripPayload(_Payload):
    reason: str
    failure_count: int = 0


class PolicyMatchReportPayload(_Payload):
    policy_id: str
    risk_level: RiskLevel
    approval_id: Optional[str] = None
    request: dict[str, Any] = Field(default_factory=dict)


class CostEstimatePayload(_Payload):
    min_cost: float
    max_cost: float
    confidence: float
    currency: str = "USD"


class RateLimitEventPayload(_Payload):
    provider: str
    event: str
    details: dict[str, Any] = Field(default_factory=dict)


PAYLOAD_MODELS: dict[ArtifactType, type[BaseModel]] = {
    ArtifactType.FAILURE_REPORT: FailureReportPayload,
    ArtifactType.SELF_HEAL_PROPOSAL: SelfHealProposalPayload,
    ArtifactType.APPROVAL_RECORD: ApprovalRecordPayload,
    ArtifactType.SIGNAL_REPORT: SignalReportPayload,
    ArtifactType.CIRCUIT_BREAKER_TRIP: CircuitBreakerTripPayload,
    ArtifactType.POLICY_MATCH_REPORT: PolicyMatchReportPayload,
    ArtifactType.COST_ESTIMATE: CostEstimatePayload,
    ArtifactType.RATE_LIMIT_EVENT: RateLimitEventPayload,
}


def validate_payload(artifact_type: ArtifactType, payload: dict[str, Any]) -> dict[str, Any]:
    """Validate ``payload`` against the model registered for its type."""
    model = PAYLOAD_MODELS.get(artifact_type)
    if model is None:
        return dict(payload)
    return model.model_validate(payload).model_dump(mode="json")


class Artifact(BaseModel):
    id: str = Field(default_factory=lambda: new_id("artifact"))
    type: ArtifactType
    mission_id: Optional[str] = None
    task_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    files: list[str] = Field(default_factory=list)
    provenance: Provenance = Field(default_factory=Provenance)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    version: int = 1

    @property
    def mode(self) -> ArtifactMode:
        return artifact_mode(self.type)
