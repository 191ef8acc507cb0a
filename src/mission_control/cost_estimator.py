"""Token and API-call cost estimation with per-mission budget checks."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Optional

from .errors import NotFoundError
from .models import Artifact, ArtifactType, Producer, utcnow
from .models.domain import Clock
from .state_store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4"
BUDGET_WARNING_RATIO = 0.8
COST_HISTORY_LIMIT = 1000


@dataclass(frozen=True, slots=True)
class ModelCost:
    """Prices per 1K tokens."""

    input: float
    output: float
    min_billing: float


MODEL_COSTS: dict[str, ModelCost] = {
    "claude-opus-4": ModelCost(0.015, 0.075, 0.001),
    "claude-sonnet-4": ModelCost(0.003, 0.015, 0.0001),
    "claude-haiku": ModelCost(0.00025, 0.00125, 0.00001),
    "gemini-2.0-flash": ModelCost(0.000075, 0.0003, 0.00001),
    "gemini-1.5-pro": ModelCost(0.00125, 0.005, 0.0001),
    "gpt-4o": ModelCost(0.0025, 0.01, 0.0001),
    "gpt-4o-mini": ModelCost(0.00015, 0.0006, 0.00001),
}

API_CALL_COSTS: dict[str, float] = {
    "serp-api": 0.005,
    "ahrefs-api": 0.01,
    "perplexity-api": 0.005,
}

# (input, output) tokens per agent turn
SPAWN_TOKEN_BUDGETS: dict[str, tuple[int, int]] = {
    "low": (1000, 500),
    "medium": (3000, 1500),
    "high": (8000, 4000),
}


def _round(value: float) -> float:
    return round(value, 4)


class CostEstimator:
    def __init__(
        self,
        store: StateStore | None = None,
        models: dict[str, ModelCost] | None = None,
        api_costs: dict[str, float] | None = None,
        *,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.models = dict(models or MODEL_COSTS)
        self.api_costs = dict(api_costs or API_CALL_COSTS)
        self.clock = clock
        self._history: deque[dict[str, Any]] = deque(maxlen=COST_HISTORY_LIMIT)

    def estimate_task_cost(
        self,
        model: str = DEFAULT_MODEL,
        estimated_input_tokens: int = 0,
        estimated_output_tokens: int = 0,
        api_calls: dict[str, int] | None = None,
        retry_multiplier: float = 1.5,
    ) -> dict[str, Any]:
        """Return a min/max cost band and a confidence score for one task."""
        pricing = self.models.get(model)
        if pricing is None:
            return {
                "success": False,
                "error": f"Unknown model: {model}",
                "available_models": sorted(self.models),
            }

        input_cost = estimated_input_tokens / 1000 * pricing.input
        output_cost = estimated_output_tokens / 1000 * pricing.output
        token_cost = input_cost + output_cost
        min_cost = token_cost
        max_cost = token_cost * retry_multiplier * 1.2

        api_cost = 0.0
        api_breakdown: dict[str, float] = {}
        for name, count in (api_calls or {}).items():
            unit = self.api_costs.get(name, 0.0)
            cost = unit * count
            api_breakdown[name] = _round(cost)
            api_cost += cost
        min_cost += api_cost
        max_cost += api_cost * retry_multiplier

        min_cost = max(min_cost, pricing.min_billing)
        max_cost = max(max_cost, min_cost)

        confidence = 0.5
        if estimated_input_tokens > 0:
            confidence += 0.2
        if estimated_output_tokens > 0:
            confidence += 0.2
        if api_calls:
            confidence += 0.1

        return {
            "success": True,
            "model": model,
            "min_cost": _round(min_cost),
            "max_cost": _round(max_cost),
            "confidence": round(min(confidence, 1.0), 2),
            "currency": "USD",
            "breakdown": {
                "input_cost": _round(input_cost),
                "output_cost": _round(output_cost),
                "api_cost": _round(api_cost),
                "api_calls": api_breakdown,
                "retry_multiplier": retry_multiplier,
            },
        }

    def estimate_mission_cost(
        self,
        mission_id: str,
        task_estimates: dict[str, dict[str, Any]] | None = None,
        model: str = DEFAULT_MODEL,
    ) -> dict[str, Any]:
        """Sum task estimates across a mission, falling back to default budgets."""
        if self.store is None:
            return {"success": False, "error": "No state store configured"}
        mission = self.store.get_mission(mission_id)
        if mission is None:
            raise NotFoundError("mission", mission_id)

        estimates = task_estimates or {}
        total_min = 0.0
        total_max = 0.0
        breakdown: list[dict[str, Any]] = []
        for task in self.store.list_tasks(mission_id):
            overrides = estimates.get(task.id, {})
            estimate = self.estimate_task_cost(
                model=overrides.get("model", model),
                estimated_input_tokens=overrides.get("estimated_input_tokens", 2000),
                estimated_output_tokens=overrides.get("estimated_output_tokens", 1000),
                api_calls=overrides.get("api_calls"),
                retry_multiplier=overrides.get("retry_multiplier", 2),
            )
            if not estimate["success"]:
                return estimate
            total_min += estimate["min_cost"]
            total_max += estimate["max_cost"]
            breakdown.append(
                {
                    "task_id": task.id,
                    "title": task.title,
                    "min_cost": estimate["min_cost"],
                    "max_cost": estimate["max_cost"],
                }
            )

        return {
            "success": True,
            "mission_id": mission_id,
            "task_count": len(breakdown),
            "min_cost": _round(total_min),
            "max_cost": _round(total_max),
            "confidence": 0.7 if estimates else 0.3,
            "currency": "USD",
            "breakdown": breakdown,
        }

    def estimate_agent_spawn_cost(
        self,
        complexity: str = "medium",
        estimated_turns: int = 5,
        model: str = DEFAULT_MODEL,
    ) -> dict[str, Any]:
        input_tokens, output_tokens = SPAWN_TOKEN_BUDGETS.get(complexity, SPAWN_TOKEN_BUDGETS["medium"])
        estimate = self.estimate_task_cost(
            model=model,
            estimated_input_tokens=input_tokens * estimated_turns,
            estimated_output_tokens=output_tokens * estimated_turns,
        )
        if estimate["success"]:
            estimate.update({"complexity": complexity, "estimated_turns": estimated_turns})
        return estimate

    def record_actual_cost(
        self,
        mission_id: str,
        actual_cost: float,
        *,
        task_id: str | None = None,
        model: str | None = None,
        estimated_cost: float | None = None,
    ) -> dict[str, Any]:
        entry = {
            "mission_id": mission_id,
            "task_id": task_id,
            "model": model,
            "actual_cost": _round(actual_cost),
            "estimated_cost": estimated_cost,
            "variance": _round(actual_cost - estimated_cost) if estimated_cost is not None else None,
            "recorded_at": self.clock().isoformat(),
        }
        self._history.append(entry)
        return entry

    def get_cost_history(self, mission_id: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        rows = [row for row in self._history if mission_id is None or row["mission_id"] == mission_id]
        return rows[-limit:]

    def create_cost_estimate_artifact(self, mission_id: str, estimate: dict[str, Any]) -> Optional[Artifact]:
        if self.store is None or not estimate.get("success"):
            return None
        payload = {k: v for k, v in estimate.items() if k != "success"}
        return self.store.add_artifact(
            ArtifactType.COST_ESTIMATE,
            payload,
            mission_id=mission_id,
            producer=Producer.SYSTEM,
        )

    def check_budget(self, mission_id: str, estimated_cost: float) -> dict[str, Any]:
        """Compare a cost against the mission contract's ``max_estimated_cost``."""
        if self.store is None:
            return {"within_budget": True, "reason": "No state store configured"}
        mission = self.store.get_mission(mission_id)
        if mission is None:
            raise NotFoundError("mission", mission_id)
        budget = mission.contract.max_estimated_cost
        if budget is None:
            return {"within_budget": True, "budget": None, "estimated_cost": estimated_cost}
        if estimated_cost > budget:
            logger.warning(f"Mission {mission_id} estimate {estimated_cost} exceeds budget {budget}")
            return {
                "within_budget": False,
                "code": "BUDGET_EXCEEDED",
                "budget": budget,
                "estimated_cost": estimated_cost,
                "reason": f"Estimated cost ${estimated_cost:.4f} exceeds budget ${budget:.4f}",
            }
        result: dict[str, Any] = {
            "within_budget": True,
            "budget": budget,
            "estimated_cost": estimated_cost,
            "utilization": _round(estimated_cost / budget) if budget else 0,
        }
        if budget and estimated_cost >= budget * BUDGET_WARNING_RATIO:
            result["warning"] = f"Estimated cost is {estimated_cost / budget:.0%} of budget"
        return result

    def get_model_registry(self) -> dict[str, Any]:
        return {
            "models": {
                name: {"input": c.input, "output": c.output, "min_billing": c.min_billing}
                for name, c in self.models.items()
            },
            "api_calls": dict(self.api_costs),
            "default_model": DEFAULT_MODEL,
        }
