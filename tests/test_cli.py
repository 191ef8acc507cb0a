"""orchestrator CLI のオフラインコマンドと run を確認する。"""

from __future__ import annotations

import shlex
import sys
from pathlib import Path

import httpx
import pytest
import yaml
from typer.testing import CliRunner

import orchestrator.cli as cli
from conftest import build_mission
from mission_control.state_store import JsonFileBackend, StateStore

runner = CliRunner()


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """data/ 配下への書き込みを tmp_path に閉じ込める。"""
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def state_file(workdir: Path) -> tuple[Path, str]:
    path = workdir / "state.json"
    mission_id, _ = build_mission(StateStore(JsonFileBackend(path)))
    return path, mission_id


def test_graph_status_order_and_tree(state_file: tuple[Path, str]) -> None:
    path, mission_id = state_file
    status = runner.invoke(cli.app, ["graph", mission_id, "--state-path", str(path)])
    assert status.exit_code == 0
    assert '"node_count": 4' in status.stdout

    order = runner.invoke(cli.app, ["graph", mission_id, "--state-path", str(path), "--order"])
    assert order.exit_code == 0
    assert '"success": true' in order.stdout

    tree = runner.invoke(cli.app, ["graph", mission_id, "--state-path", str(path), "--visualize"])
    assert tree.exit_code == 0
    assert "Mission: Ship feature" in tree.stdout

    missing = runner.invoke(cli.app, ["graph", "mission-missing", "--state-path", str(path)])
    assert missing.exit_code == 1


def test_estimate_single_and_mission(state_file: tuple[Path, str]) -> None:
    path, mission_id = state_file
    single = runner.invoke(cli.app, ["estimate", "--state-path", str(path)])
    assert single.exit_code == 0
    assert '"min_cost"' in single.stdout

    unknown = runner.invoke(cli.app, ["estimate", "--model", "gpt-99", "--state-path", str(path)])
    assert unknown.exit_code == 1

    mission = runner.invoke(cli.app, ["estimate", mission_id, "--state-path", str(path)])
    assert mission.exit_code == 0
    assert '"task_count": 4' in mission.stdout
    assert '"within_budget": true' in mission.stdout


def test_tick_reports_no_signals(state_file: tuple[Path, str]) -> None:
    path, _ = state_file
    result = runner.invoke(cli.app, ["tick", "--state-path", str(path)])
    assert result.exit_code == 0
    assert '"signals": []' in result.stdout


def test_call_prints_status(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        if request.url.path == "/health":
            return httpx.Response(200, json={"status": "ok"})
        return httpx.Response(404, json={"detail": "MISSION_NOT_FOUND"})

    real_client = httpx.Client
    monkeypatch.setattr(
        cli.httpx, "Client", lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs)
    )

    ok = runner.invoke(cli.app, ["call", "--endpoint", "health", "--base-url", "http://mc.test/"])
    assert ok.exit_code == 0
    assert "status=200" in ok.stdout
    assert seen == ["http://mc.test/health"]

    missing = runner.invoke(cli.app, ["call", "--endpoint", "/api/missions/x", "--base-url", "http://mc.test"])
    assert missing.exit_code == 1

    unsupported = runner.invoke(cli.app, ["call", "--method", "PUT"])
    assert unsupported.exit_code == 2


def _plan(path: Path, *commands: str) -> Path:
    tasks = [{"name": f"step-{i}", "command": command} for i, command in enumerate(commands)]
    path.write_text(yaml.safe_dump({"tasks": tasks}), encoding="utf-8")
    return path


def test_run_executes_plan(workdir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MC_STORAGE_BACKEND", "memory")
    python = shlex.quote(sys.executable)
    plan = _plan(workdir / "plan.yaml", f"{python} -c \"print('hi')\"")

    result = runner.invoke(cli.app, ["run", str(plan), "--timeout", "60"])
    assert result.exit_code == 0
    assert '"status": "completed"' in result.stdout


def test_run_failure_adds_diagnosis(workdir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """失敗したタスクには診断タスクが続き、終了コードは 1 になる。"""
    monkeypatch.setenv("MC_STORAGE_BACKEND", "memory")
    python = shlex.quote(sys.executable)
    plan = _plan(workdir / "plan.yaml", f"{python} -c \"import sys; sys.exit(4)\"")

    result = runner.invoke(cli.app, ["run", str(plan), "--timeout", "60"])
    assert result.exit_code == 1
    assert '"status": "failed"' in result.stdout
    assert '"type": "deep-diagnosis"' in result.stdout


def test_run_rejects_empty_plan(workdir: Path) -> None:
    plan = workdir / "empty.yaml"
    plan.write_text("tasks: []\n", encoding="utf-8")
    assert runner.invoke(cli.app, ["run", str(plan)]).exit_code == 2
