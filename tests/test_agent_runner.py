from __future__ import annotations

import shlex
import sys
from pathlib import Path

import pytest
import yaml

from mission_control.errors import AgentExecutionError
from mission_control.mission_queue import QueuedTask
from orchestrator.agent_runner import ShellAgentExecutor, load_engine_config, spawn_agent_cli


def _write_engines(path: Path) -> Path:
    engines = {
        "engines": {
            "echo": {"command": [sys.executable, "-c", "import sys; print('agent', sys.argv[1])"]},
            "shell": {"command": "codex exec --full-auto", "workdir": "."},
        }
    }
    path.write_text(yaml.safe_dump(engines), encoding="utf-8")
    return path


def test_load_engine_config_fallbacks(tmp_path: Path) -> None:
    """設定ファイルやエンジン定義がなければ demo コマンドを返す。"""
    missing = load_engine_config("echo", tmp_path / "missing.yaml")
    assert missing["command"][0] == sys.executable

    config = _write_engines(tmp_path / "engines.yaml")
    assert load_engine_config("unknown", config)["command"] == missing["command"]
    assert load_engine_config("shell", config) == {"command": ["codex", "exec", "--full-auto"], "workdir": "."}


def test_spawn_agent_cli_writes_trace(tmp_path: Path) -> None:
    result = spawn_agent_cli(
        [sys.executable, "-c", "print('hello')"],
        "run-1",
        trace_dir=tmp_path,
        agent_id="coder",
        mission_id="mission-1",
    )
    assert result.returncode == 0
    log = (tmp_path / "run-1.log").read_text(encoding="utf-8")
    assert "# Mission ID: mission-1" in log
    assert "=== RETURN CODE ===\n0" in log
    assert "hello" in log


def test_spawn_agent_cli_records_launch_error(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        spawn_agent_cli(["definitely-not-a-real-agent-binary"], "run-2", trace_dir=tmp_path)
    assert "=== ERROR ===" in (tmp_path / "run-2.log").read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_executor_appends_instruction_to_engine_command(tmp_path: Path) -> None:
    executor = ShellAgentExecutor(
        "echo", engines_config=_write_engines(tmp_path / "engines.yaml"), trace_dir=tmp_path / "traces"
    )
    result = await executor.execute("coder", "hello", QueuedTask(id="qtask-1", name="greet"))
    assert result["returncode"] == 0
    assert result["stdout"].strip() == "agent hello"
    assert Path(result["trace_path"]).exists()


@pytest.mark.asyncio
async def test_executor_runs_task_command_and_reports_failure(tmp_path: Path) -> None:
    executor = ShellAgentExecutor(engines_config=tmp_path / "missing.yaml", trace_dir=tmp_path)
    command = f"{shlex.quote(sys.executable)} -c \"import sys; sys.exit(3)\""
    with pytest.raises(AgentExecutionError) as excinfo:
        await executor.execute(None, "ignored", QueuedTask(id="qtask-2", command=command))
    assert excinfo.value.details["returncode"] == 3
