"""自動承認ポリシーを評価するサービス。

ポリシーは宣言的なルール (パス正規表現 または アクション許可リスト) として保持し、
実行時に revoke / reinstate できる。
"""

from __future__ import annotations

import logging
import re
from collections import deque
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from .errors import NotFoundError, ValidationError
from .models import ApprovalStatus, Artifact, ArtifactType, Producer, RiskLevel, risk_rank, utcnow
from .models.domain import Clock
from .state_store import StateStore

logger = logging.getLogger(__name__)

MATCH_HISTORY_LIMIT = 100


@dataclass(slots=True)
class Policy:
    """自動承認ルール。pattern か actions のどちらか一方を持つ。"""

    id: str
    description: str
    risk_level: RiskLevel = RiskLevel.LOW
    auto_approve: bool = True
    pattern: Optional[str] = None
    actions: tuple[str, ...] = ()
    _regex: Optional[re.Pattern[str]] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if bool(self.pattern) == bool(self.actions):
            raise ValidationError(
                f"Policy {self.id} must declare exactly one of pattern or actions",
                field="pattern",
            )
        self.risk_level = RiskLevel(self.risk_level)
        self.actions = tuple(action.lower() for action in self.actions)
        if self.pattern:
            self._regex = re.compile(self.pattern)

    @property
    def kind(self) -> str:
        return "path" if self.pattern else "action"

    def matches_path(self, path: str) -> bool:
        return self._regex is not None and self._regex.search(path) is not None

    def matches_action(self, name: str) -> bool:
        tokens = {token for token in re.split(r"[^a-z0-9]+", name.lower()) if token}
        return any(action in tokens for action in self.actions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "risk_level": self.risk_level.value,
            "auto_approve": self.auto_approve,
            "pattern": self.pattern,
            "actions": list(self.actions),
            "kind": self.kind,
        }


DEFAULT_POLICIES: tuple[Policy, ...] = (
    Policy("PATH_LOGS_ONLY", "Changes limited to log files", pattern=r"^(/logs/|logs/)"),
    Policy("PATH_TEMP_ONLY", "Changes limited to temp files", pattern=r"^(/tmp/|tmp/|/temp/|temp/)"),
    Policy("PATH_CACHE_ONLY", "Changes limited to cache files", pattern=r"^(/\.cache/|\.cache/|/cache/|cache/)"),
    Policy("PATH_NODE_MODULES", "Changes limited to node_modules", pattern=r"node_modules/"),
    Policy(
        "ACTION_READ_ONLY",
        "Read-only actions",
        actions=("list", "get", "inspect", "status", "health"),
    ),
)


def load_policies(path: Path | str) -> list[Policy]:
    """YAML ルールファイルからポリシーを読み込む。"""
    with Path(path).open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    rows = data.get("policies", []) if isinstance(data, dict) else []
    policies: list[Policy] = []
    for row in rows:
        policies.append(
            Policy(
                id=row["id"],
                description=row.get("description", ""),
                risk_level=row.get("risk_level", RiskLevel.LOW),
                auto_approve=bool(row.get("auto_approve", True)),
                pattern=row.get("pattern"),
                actions=tuple(row.get("actions") or ()),
            )
        )
    return policies


@dataclass(slots=True)
class ApprovalDecision:
    approved: bool
    reason: str
    policy_id: Optional[str] = None
    risk_level: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ApprovalPolicyService:
    """承認リクエストを宣言的ポリシーと照合する。"""

    def __init__(
        self,
        store: StateStore,
        policies: Optional[list[Policy] | tuple[Policy, ...]] = None,
        *,
        history_limit: int = MATCH_HISTORY_LIMIT,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.clock = clock
        self._policies: dict[str, Policy] = {}
        for policy in policies if policies is not None else DEFAULT_POLICIES:
            self.register_policy(policy)
        self._revoked: set[str] = set()
        self._history: deque[dict[str, Any]] = deque(maxlen=history_limit)

    def register_policy(self, policy: Policy) -> None:
        self._policies[policy.id] = policy

    def _active(self, kind: str) -> list[Policy]:
        return [p for p in self._policies.values() if p.kind == kind and p.id not in self._revoked]

    def evaluate_approval(self, request: Mapping[str, Any]) -> ApprovalDecision:
        """リクエストが自動承認できるかを判定する。high リスクは常に手動。"""
        risk = request.get("risk_level")
        if risk is not None and risk_rank(risk) >= risk_rank(RiskLevel.HIGH):
            return ApprovalDecision(
                approved=False,
                reason="High risk actions always require manual approval",
                risk_level=RiskLevel.HIGH.value,
            )

        names = [str(request[key]) for key in ("action", "tool_name") if request.get(key)]
        for policy in self._active("action"):
            if any(policy.matches_action(name) for name in names):
                return self._matched(policy, request)

        paths = [str(p) for p in request.get("file_paths") or []]
        if paths:
            for policy in self._active("path"):
                if all(policy.matches_path(path) for path in paths):
                    return self._matched(policy, request)

        return ApprovalDecision(approved=False, reason="No matching auto-approve policy")

    def _matched(self, policy: Policy, request: Mapping[str, Any]) -> ApprovalDecision:
        self._history.append(
            {
                "policy_id": policy.id,
                "action": request.get("action"),
                "file_paths": list(request.get("file_paths") or []),
                "mission_id": request.get("mission_id"),
                "auto_approve": policy.auto_approve,
                "timestamp": self.clock().isoformat(),
            }
        )
        logger.info(f"Policy {policy.id} matched action={request.get('action')}")
        reason = f"Matched policy {policy.id}: {policy.description}"
        if not policy.auto_approve:
            reason = f"{reason} (manual approval required)"
        return ApprovalDecision(
            approved=policy.auto_approve,
            reason=reason,
            policy_id=policy.id,
            risk_level=policy.risk_level.value,
        )

    def revoke_policy(self, policy_id: str, reason: str | None = None) -> dict[str, Any]:
        if policy_id not in self._policies:
            return {"success": False, "error": f"Unknown policy: {policy_id}"}
        self._revoked.add(policy_id)
        logger.warning(f"Policy {policy_id} revoked: {reason or 'no reason given'}")
        return {"success": True, "policy_id": policy_id, "revoked": True}

    def reinstate_policy(self, policy_id: str) -> dict[str, Any]:
        if policy_id not in self._revoked:
            return {"success": False, "error": f"Policy not revoked: {policy_id}"}
        self._revoked.discard(policy_id)
        logger.info(f"Policy {policy_id} reinstated")
        return {"success": True, "policy_id": policy_id, "revoked": False}

    def is_revoked(self, policy_id: str) -> bool:
        return policy_id in self._revoked

    def create_policy_match_artifact(
        self,
        mission_id: str,
        decision: ApprovalDecision,
        request: Mapping[str, Any],
        approval_id: str | None = None,
    ) -> Optional[Artifact]:
        if not decision.approved or decision.policy_id is None:
            return None
        return self.store.add_artifact(
            ArtifactType.POLICY_MATCH_REPORT,
            {
                "policy_id": decision.policy_id,
                "risk_level": decision.risk_level or RiskLevel.LOW.value,
                "approval_id": approval_id,
                "request": {
                    "action": request.get("action"),
                    "tool_name": request.get("tool_name"),
                    "file_paths": list(request.get("file_paths") or []),
                },
            },
            mission_id=mission_id,
            producer=Producer.SYSTEM,
        )

    def try_auto_approve(
        self, approval_id: str, request: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        """承認リクエストをポリシーで自動解決できれば解決する。"""
        approval = self.store.get_approval(approval_id)
        if approval is None:
            raise NotFoundError("approval", approval_id)
        if approval.status is not ApprovalStatus.PENDING:
            return {"success": False, "error": f"Approval already {approval.status.value}"}

        request = dict(request or {})
        request.setdefault("action", approval.action)
        request.setdefault("risk_level", approval.risk_level.value)
        request.setdefault("file_paths", approval.payload.get("file_paths", []))
        request.setdefault("mission_id", approval.mission_id)

        decision = self.evaluate_approval(request)
        if not decision.approved:
            return {"success": True, "approved": False, "reason": decision.reason}

        self.store.resolve_approval(
            approval_id,
            ApprovalStatus.AUTO_APPROVED,
            resolved_by=f"policy:{decision.policy_id}",
            note=decision.reason,
        )
        if approval.mission_id:
            self.create_policy_match_artifact(approval.mission_id, decision, request, approval_id)
        return {
            "success": True,
            "approved": True,
            "policy_id": decision.policy_id,
            "reason": decision.reason,
        }

    def get_policies(self) -> list[dict[str, Any]]:
        return [{**p.to_dict(), "revoked": p.id in self._revoked} for p in self._policies.values()]

    def get_status(self) -> dict[str, Any]:
        return {
            "policy_count": len(self._policies),
            "revoked": sorted(self._revoked),
            "match_count": len(self._history),
            "recent_matches": list(self._history)[-10:],
        }
