"""キュー実行前の安全確認 (サーキットブレーカー・レート制限・予算)。"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Optional

from .cost_estimator import CostEstimator
from .rate_limit import RateLimitService
from .state_store import StateStore

if TYPE_CHECKING:
    from .mission_queue import QueuedTask

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PreflightResult:
    allowed: bool
    code: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class Preflight:
    """タスク起動直前に実行可否を判定する。"""

    def __init__(
        self,
        store: StateStore,
        rate_limits: RateLimitService | None = None,
        costs: CostEstimator | None = None,
    ):
        self.store = store
        self.rate_limits = rate_limits
        self.costs = costs

    def check(self, task: "QueuedTask") -> PreflightResult:
        if self.store.is_circuit_breaker_tripped():
            breaker = self.store.get_circuit_breaker()
            return PreflightResult(
                allowed=False,
                code="CIRCUIT_BREAKER_OPEN",
                reason=f"Circuit breaker tripped: {breaker.get('reason')}",
            )

        metadata = task.metadata
        mission_id = metadata.get("mission_id")

        estimated_cost = metadata.get("estimated_cost")
        if self.costs is not None and mission_id and estimated_cost is not None:
            budget = self.costs.check_budget(mission_id, float(estimated_cost))
            if not budget["within_budget"]:
                return PreflightResult(allowed=False, code=budget.get("code"), reason=budget.get("reason"))

        provider = metadata.get("provider")
        if self.rate_limits is not None and provider:
            decision = self.rate_limits.check_rate_limit(provider, mission_id)
            if not decision.allowed:
                logger.warning(f"Preflight denied {task.id}: {decision.code}")
                return PreflightResult(allowed=False, code=decision.code, reason=decision.reason)
            self.rate_limits.record_call(provider)

        return PreflightResult(allowed=True)
