"""Spawn agent CLI subprocesses for queued tasks and keep a trace log per run."""

from __future__ import annotations

import asyncio
import shlex
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import yaml

from mission_control.errors import AgentExecutionError
from mission_control.mission_queue import QueuedTask

TRACE_DIR_DEFAULT = Path("data/logs/agent_runs")
ENGINES_CONFIG_DEFAULT = Path("config/engines.yaml")


def load_engine_config(
    engine_name: str = "demo", config_path: Path | str = ENGINES_CONFIG_DEFAULT
) -> dict[str, Any]:
    """config/engines.yaml からエンジン定義を読み込む。未定義なら demo コマンド。"""
    fallback = {"command": [sys.executable, "-c", "print('demo')"], "workdir": None}
    path = Path(config_path)
    if not path.exists():
        return fallback

    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    engines = data.get("engines", {}) if isinstance(data, dict) else {}
    engine = engines.get(engine_name) if isinstance(engines, dict) else None
    if not isinstance(engine, dict):
        return fallback
    command = engine.get("command", fallback["command"])
    if isinstance(command, str):
        command = shlex.split(command)
    return {"command": list(command), "workdir": engine.get("workdir")}


def trace_path_for(run_id: str, trace_dir: Path | None = None) -> Path:
    target_dir = Path(trace_dir or TRACE_DIR_DEFAULT)
    target_dir.mkdir(parents=True, exist_ok=True)
    return target_dir / f"{run_id}.log"


def spawn_agent_cli(
    command: list[str],
    run_id: str,
    *,
    trace_dir: Path | None = None,
    timeout: float = 300.0,
    workdir: str | None = None,
    agent_id: str | None = None,
    mission_id: str | None = None,
) -> subprocess.CompletedProcess[str]:
    """
    エージェント CLI を起動し、run_id 単位でトレースを残す。

    Args:
        command: 実行する CLI コマンド
        run_id: トレースファイル名 (通常はキュータスク ID)
        trace_dir: ログ保存先 (省略時 data/logs/agent_runs)
        timeout: タイムアウト(秒)
        workdir: 作業ディレクトリ
        agent_id: エージェント ID (ログ用)
        mission_id: ミッション ID (ログ用)
    """
    trace_path = trace_path_for(run_id, trace_dir)
    try:
        result = subprocess.run(
            command,
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=workdir,
        )
    except Exception as e:
        _write_trace_log(trace_path, run_id, command, None, e, agent_id=agent_id, mission_id=mission_id)
        raise
    _write_trace_log(trace_path, run_id, command, result, None, agent_id=agent_id, mission_id=mission_id)
    return result


def _write_trace_log(
    trace_path: Path,
    run_id: str,
    command: list[str],
    result: subprocess.CompletedProcess[str] | None,
    error: Exception | None,
    agent_id: str | None = None,
    mission_id: str | None = None,
) -> None:
    """CLI 実行トレースをログに出力する。"""
    with trace_path.open("w", encoding="utf-8") as f:
        f.write(f"# Timestamp: {datetime.now(timezone.utc).isoformat()}\n")
        f.write(f"# Run ID: {run_id}\n")
        if mission_id:
            f.write(f"# Mission ID: {mission_id}\n")
        if agent_id:
            f.write(f"# Agent: {agent_id}\n")
        f.write(f"# Command: {' '.join(command)}\n\n")

        if error:
            f.write(f"=== ERROR ===\n{error}\n")
        elif result:
            f.write(f"=== RETURN CODE ===\n{result.returncode}\n\n")
            f.write(f"=== STDOUT ({len(result.stdout)} chars) ===\n")
            f.write(result.stdout or "(empty)\n\n")
            f.write(f"=== STDERR ({len(result.stderr)} chars) ===\n")
            f.write(result.stderr or "(empty)\n")


class ShellAgentExecutor:
    """キュータスクのシェルコマンド、またはエンジンコマンド + 指示を実行する。"""

    def __init__(
        self,
        engine: str = "demo",
        *,
        engines_config: Path | str = ENGINES_CONFIG_DEFAULT,
        trace_dir: Path | str | None = None,
        timeout: float = 300.0,
    ):
        self.engine = engine
        self.engines_config = Path(engines_config)
        self.trace_dir = Path(trace_dir) if trace_dir else None
        self.timeout = timeout

    def build_command(self, instruction: str, task: QueuedTask) -> tuple[list[str], Optional[str]]:
        if task.command:
            return shlex.split(task.command), None
        config = load_engine_config(task.metadata.get("engine", self.engine), self.engines_config)
        return [*config["command"], instruction], config["workdir"]

    async def execute(self, agent_id: Optional[str], instruction: str, task: QueuedTask) -> dict[str, Any]:
        command, workdir = self.build_command(instruction, task)
        result = await asyncio.to_thread(
            spawn_agent_cli,
            command,
            task.id,
            trace_dir=self.trace_dir,
            timeout=self.timeout,
            workdir=workdir,
            agent_id=agent_id,
            mission_id=task.metadata.get("mission_id"),
        )
        if result.returncode != 0:
            raise AgentExecutionError(
                f"Agent command exited with {result.returncode}",
                returncode=result.returncode,
                stderr=(result.stderr or "")[-500:],
            )
        return {
            "returncode": result.returncode,
            "stdout": (result.stdout or "")[-2000:],
            "trace_path": str(trace_path_for(task.id, self.trace_dir)),
        }
