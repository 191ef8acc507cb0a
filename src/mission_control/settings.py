from __future__ import annotations

"""エンジン全体の設定を管理するモジュール。"""

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """環境変数や .env から読み込む設定定義。"""

    app_name: str = Field(default="mission-control")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # storage
    storage_backend: Literal["memory", "json", "sqlite"] = Field(default="json")
    state_path: str = Field(default="./data/state.json")
    database_url: str = Field(default="sqlite:///./data/state.db")
    snapshot_dir: str = Field(default="./data/snapshots")
    audit_dir: Optional[str] = Field(default="./data/audit")

    # queue
    queue_state_path: str = Field(default="./data/queue-state.json")
    max_concurrency: int = Field(default=4, ge=1)
    history_limit: int = Field(default=50, ge=1)
    failure_intervention_enabled: bool = Field(default=True)

    # watchdog
    watchdog_tick_seconds: float = Field(default=15.0, gt=0)
    watchdog_stale_agent_seconds: float = Field(default=90.0)
    watchdog_dead_agent_seconds: float = Field(default=180.0)
    watchdog_stuck_mission_seconds: float = Field(default=300.0)
    watchdog_max_mission_seconds: float = Field(default=3600.0)
    watchdog_stuck_task_seconds: float = Field(default=180.0)
    watchdog_auto_heal_stale_agents: bool = Field(default=True)
    watchdog_auto_heal_stuck_tasks: bool = Field(default=True)
    watchdog_max_auto_heal_attempts: int = Field(default=3)
    watchdog_signal_history: int = Field(default=100)
    watchdog_signal_cooldown_seconds: float = Field(default=300.0)
    watchdog_auto_start: bool = Field(default=True)
    watchdog_auto_apply: bool = Field(default=False)

    # safety
    armed_mode: bool = Field(default=False)
    risk_threshold: Literal["low", "medium", "high"] = Field(default="medium")
    max_pending_proposals: int = Field(default=5)
    policy_file: Optional[str] = Field(default=None)

    # agents
    agent_executor: Literal["shell", "message_bus"] = Field(default="shell")
    engines_config: str = Field(default="config/engines.yaml")
    message_bus_dir: str = Field(default="./data/message_bus")
    agent_timeout: float = Field(default=300.0)
    trace_dir: str = Field(default="./data/logs/agent_runs")

    model_config = {
        "env_prefix": "MC_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


def get_settings() -> Settings:
    """設定の取得ヘルパー。"""
    return Settings()
