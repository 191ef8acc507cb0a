from __future__ import annotations

import pytest

from mission_control.cost_estimator import CostEstimator
from mission_control.errors import NotFoundError
from mission_control.models import ArtifactType
from mission_control.state_store import StateStore


@pytest.fixture
def costs(store: StateStore) -> CostEstimator:
    return CostEstimator(store)


def test_task_cost_band(costs: CostEstimator):
    estimate = costs.estimate_task_cost(
        "claude-sonnet-4", estimated_input_tokens=2000, estimated_output_tokens=1000
    )
    assert estimate["success"] is True
    assert estimate["min_cost"] == pytest.approx(0.021)
    assert estimate["max_cost"] == pytest.approx(0.0378)
    assert estimate["confidence"] == 0.9
    assert estimate["breakdown"]["input_cost"] == pytest.approx(0.006)


def test_api_calls_and_min_billing(costs: CostEstimator):
    with_api = costs.estimate_task_cost(
        "claude-sonnet-4",
        estimated_input_tokens=2000,
        estimated_output_tokens=1000,
        api_calls={"serp-api": 2},
    )
    assert with_api["min_cost"] == pytest.approx(0.031)
    assert with_api["max_cost"] == pytest.approx(0.0528)
    assert with_api["confidence"] == 1.0
    assert with_api["breakdown"]["api_calls"] == {"serp-api": 0.01}

    empty = costs.estimate_task_cost("claude-sonnet-4")
    assert empty["min_cost"] == empty["max_cost"] == pytest.approx(0.0001)
    assert empty["confidence"] == 0.5


def test_unknown_model(costs: CostEstimator):
    result = costs.estimate_task_cost("gpt-99")
    assert result["success"] is False
    assert "claude-sonnet-4" in result["available_models"]


def test_mission_cost_uses_default_budgets(store: StateStore, costs: CostEstimator):
    mission = store.create_mission("Two tasks")
    first = store.create_task(mission.id, "First")
    store.create_task(mission.id, "Second")

    estimate = costs.estimate_mission_cost(mission.id)
    assert estimate["task_count"] == 2
    assert estimate["min_cost"] == pytest.approx(0.042)
    assert estimate["max_cost"] == pytest.approx(0.1008)
    assert estimate["confidence"] == 0.3

    tuned = costs.estimate_mission_cost(
        mission.id, {first.id: {"estimated_input_tokens": 0, "estimated_output_tokens": 0}}
    )
    assert tuned["confidence"] == 0.7
    assert tuned["breakdown"][0]["min_cost"] == pytest.approx(0.0001)

    with pytest.raises(NotFoundError):
        costs.estimate_mission_cost("mission-missing")


def test_check_budget(store: StateStore, costs: CostEstimator):
    mission = store.create_mission("Budgeted", contract={"max_estimated_cost": 1.0})
    over = costs.check_budget(mission.id, 1.5)
    assert over["within_budget"] is False
    assert over["code"] == "BUDGET_EXCEEDED"

    close = costs.check_budget(mission.id, 0.85)
    assert close["within_budget"] is True
    assert close["warning"] == "Estimated cost is 85% of budget"

    relaxed = costs.check_budget(mission.id, 0.5)
    assert relaxed["utilization"] == 0.5
    assert "warning" not in relaxed

    unbounded = store.create_mission("Open")
    assert costs.check_budget(unbounded.id, 100.0)["within_budget"] is True


def test_cost_artifact_and_history(store: StateStore, costs: CostEstimator):
    mission = store.create_mission("Artifacts")
    store.create_task(mission.id, "Only")
    artifact = costs.create_cost_estimate_artifact(mission.id, costs.estimate_mission_cost(mission.id))
    assert artifact.type is ArtifactType.COST_ESTIMATE
    assert "success" not in artifact.payload
    assert costs.create_cost_estimate_artifact(mission.id, {"success": False}) is None

    entry = costs.record_actual_cost(mission.id, 0.05, estimated_cost=0.04)
    assert entry["variance"] == pytest.approx(0.01)
    assert costs.get_cost_history(mission.id) == [entry]
    assert costs.get_cost_history("other") == []


def test_spawn_cost_and_registry(costs: CostEstimator):
    spawn = costs.estimate_agent_spawn_cost("low", estimated_turns=2)
    assert spawn["complexity"] == "low"
    assert spawn["min_cost"] == pytest.approx(2000 / 1000 * 0.003 + 1000 / 1000 * 0.015)
    registry = costs.get_model_registry()
    assert registry["default_model"] == "claude-sonnet-4"
    assert "gpt-4o" in registry["models"]
