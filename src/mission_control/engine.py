"""Store → Graph → Queue → Watchdog → Self-Healing を明示的に組み立てる。"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .approval_policy import ApprovalPolicyService, load_policies
from .cost_estimator import CostEstimator
from .db import SqlDocumentBackend
from .mission_queue import AgentExecutor, FailureIntervention, MissionQueue
from .models import utcnow
from .models.domain import Clock
from .preflight import Preflight
from .rate_limit import RateLimitService
from .self_healing import SelfHealingService
from .settings import Settings, get_settings
from .state_store import DocumentBackend, JsonFileBackend, MemoryBackend, StateStore
from .task_graph import TaskGraphEngine
from .watchdog import Watchdog, WatchdogConfig

logger = logging.getLogger(__name__)


@dataclass
class MissionControl:
    """プロセス内で共有するエンジン一式。"""

    settings: Settings
    store: StateStore
    graph: TaskGraphEngine
    policies: ApprovalPolicyService
    healer: SelfHealingService
    watchdog: Watchdog
    rate_limits: RateLimitService
    costs: CostEstimator
    preflight: Preflight
    queue: MissionQueue

    async def start(self) -> None:
        """永続化済みキューの再開と Watchdog の起動を行う。"""
        if self.queue.queue:
            self.queue.process()
        if self.settings.watchdog_auto_start:
            await self.watchdog.start()

    async def stop(self) -> None:
        if self.watchdog.is_running:
            await self.watchdog.stop()

    def get_status(self) -> dict[str, Any]:
        queue = self.queue.get_status()
        return {
            "app": self.settings.app_name,
            "state": self.store.get_stats(),
            "watchdog": self.watchdog.health_check(),
            "self_healing": self.healer.health_check(),
            "queue": {
                "processing": queue["processing"],
                "active": len(queue["active_tasks"]),
                "queued": len(queue["queue"]),
                "max_concurrency": queue["max_concurrency"],
            },
        }


def build_backend(settings: Settings) -> DocumentBackend:
    if settings.storage_backend == "memory":
        return MemoryBackend()
    if settings.storage_backend == "sqlite":
        prefix = "sqlite:///"
        if settings.database_url.startswith(prefix):
            Path(settings.database_url[len(prefix) :]).parent.mkdir(parents=True, exist_ok=True)
        return SqlDocumentBackend(settings.database_url)
    return JsonFileBackend(settings.state_path, settings.snapshot_dir)


def build_store(settings: Settings, *, clock: Clock = utcnow) -> StateStore:
    return StateStore(
        build_backend(settings),
        clock=clock,
        audit_dir=settings.audit_dir,
        armed_mode=settings.armed_mode,
        risk_threshold=settings.risk_threshold,
    )


def build_executor(settings: Settings) -> AgentExecutor:
    """設定に応じてエージェント実行コラボレーターを選ぶ。"""
    if settings.agent_executor == "message_bus":
        from orchestrator.message_bus import MessageBusExecutor

        return MessageBusExecutor(Path(settings.message_bus_dir), timeout=settings.agent_timeout)

    from orchestrator.agent_runner import ShellAgentExecutor

    return ShellAgentExecutor(
        engines_config=settings.engines_config,
        trace_dir=settings.trace_dir,
        timeout=settings.agent_timeout,
    )


def build_engine(
    settings: Optional[Settings] = None,
    *,
    executor: Optional[AgentExecutor] = None,
    clock: Clock = utcnow,
) -> MissionControl:
    """設定からエンジン一式を構築する。グローバルな単一インスタンスは持たない。"""
    settings = settings or get_settings()
    store = build_store(settings, clock=clock)
    graph = TaskGraphEngine(store)

    policy_list = load_policies(settings.policy_file) if settings.policy_file else None
    policies = ApprovalPolicyService(store, policy_list, clock=clock)
    healer = SelfHealingService(
        store,
        policies,
        max_pending_per_mission=settings.max_pending_proposals,
        clock=clock,
    )
    watchdog = Watchdog(
        store,
        healer,
        WatchdogConfig.from_settings(settings),
        clock=clock,
        auto_apply=settings.watchdog_auto_apply,
    )
    rate_limits = RateLimitService(store, clock=clock)
    costs = CostEstimator(store, clock=clock)
    preflight = Preflight(store, rate_limits, costs)
    queue = MissionQueue(
        executor or build_executor(settings),
        settings.queue_state_path if settings.storage_backend != "memory" else None,
        max_concurrency=settings.max_concurrency,
        history_limit=settings.history_limit,
        failure_handler=FailureIntervention(settings.failure_intervention_enabled),
        preflight=preflight,
        clock=clock,
    )
    queue.load()
    logger.info(f"Mission control engine built (storage={settings.storage_backend})")
    return MissionControl(
        settings=settings,
        store=store,
        graph=graph,
        policies=policies,
        healer=healer,
        watchdog=watchdog,
        rate_limits=rate_limits,
        costs=costs,
        preflight=preflight,
        queue=queue,
    )
