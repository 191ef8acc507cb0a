"""エージェントのハートビート・ミッション/タスクの健全性を監視する Watchdog。

tick ごとに 4 つのチェック (agent / mission / task / system) を順に実行し、
検出した異常を Signal として発行する。dead エージェントと stuck タスクは
SelfHealingService にプロポーザル生成を依頼する。
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Optional

from .errors import MissionControlError
from .models import (
    Agent,
    AgentStatus,
    ArtifactType,
    MissionStatus,
    Producer,
    RiskLevel,
    Task,
    TaskStatus,
    new_id,
    utcnow,
)
from .models.domain import Clock
from .state_store import StateStore

if TYPE_CHECKING:
    from .self_healing import SelfHealingService
    from .settings import Settings

logger = logging.getLogger(__name__)

SignalListener = Callable[["Signal"], None]

FAILURE_RATE_WINDOW = timedelta(hours=1)
FAILURE_RATE_MIN_MISSIONS = 3
FAILURE_RATE_THRESHOLD = 0.5
ACTIVE_ISSUE_WINDOW = timedelta(minutes=10)
MONITORED_AGENT_STATUSES = (AgentStatus.RUNNING, AgentStatus.STALE, AgentStatus.DEAD)


class SignalType:
    AGENT_STALE = "agent_stale"
    AGENT_DEAD = "agent_dead"
    AGENT_RECOVERED = "agent_recovered"
    MISSION_STUCK = "mission_stuck"
    MISSION_TIMEOUT = "mission_timeout"
    TASK_STUCK = "task_stuck"
    CIRCUIT_BREAKER_TRIP = "circuit_breaker_trip"
    HIGH_FAILURE_RATE = "high_failure_rate"


@dataclass(slots=True)
class WatchdogConfig:
    """閾値はすべて秒単位。"""

    tick_seconds: float = 15
    stale_agent_seconds: float = 90
    dead_agent_seconds: float = 180
    stuck_mission_seconds: float = 300
    max_mission_seconds: float = 3600
    stuck_task_seconds: float = 180
    auto_heal_stale_agents: bool = True
    auto_heal_stuck_tasks: bool = True
    max_auto_heal_attempts: int = 3
    signal_history: int = 100
    signal_cooldown_seconds: float = 300

    @classmethod
    def from_settings(cls, settings: "Settings") -> "WatchdogConfig":
        return cls(
            tick_seconds=settings.watchdog_tick_seconds,
            stale_agent_seconds=settings.watchdog_stale_agent_seconds,
            dead_agent_seconds=settings.watchdog_dead_agent_seconds,
            stuck_mission_seconds=settings.watchdog_stuck_mission_seconds,
            max_mission_seconds=settings.watchdog_max_mission_seconds,
            stuck_task_seconds=settings.watchdog_stuck_task_seconds,
            auto_heal_stale_agents=settings.watchdog_auto_heal_stale_agents,
            auto_heal_stuck_tasks=settings.watchdog_auto_heal_stuck_tasks,
            max_auto_heal_attempts=settings.watchdog_max_auto_heal_attempts,
            signal_history=settings.watchdog_signal_history,
            signal_cooldown_seconds=settings.watchdog_signal_cooldown_seconds,
        )


@dataclass(slots=True)
class Signal:
    type: str
    severity: str
    entity_type: str
    entity_id: str
    mission_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: new_id("signal"))
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "mission_id": self.mission_id,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class Watchdog:
    """定期 tick で状態を検査し、異常を Signal として発行する。"""

    def __init__(
        self,
        store: StateStore,
        healer: Optional["SelfHealingService"] = None,
        config: WatchdogConfig | None = None,
        *,
        clock: Clock = utcnow,
        auto_apply: bool = False,
    ):
        self.store = store
        self.healer = healer
        self.config = config or WatchdogConfig()
        self.clock = clock
        self.auto_apply = auto_apply
        self._signals: deque[Signal] = deque(maxlen=self.config.signal_history)
        self._heal_attempts: dict[str, int] = {}
        self._subscribers: list[SignalListener] = []
        self._task: Optional[asyncio.Task[None]] = None
        self._tick_signals: Optional[list[Signal]] = None
        self.last_tick_at: Optional[datetime] = None
        self.stats = {"ticks": 0, "signals_emitted": 0, "healing_triggered": 0, "agents_recovered": 0}

    # ------------------------------------------------------------------
    # lifecycle

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> dict[str, Any]:
        if self.is_running:
            return {"success": False, "reason": "Already running"}
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="watchdog")
        logger.info(f"Watchdog started (tick={self.config.tick_seconds}s)")
        return {"success": True, "tick_seconds": self.config.tick_seconds}

    async def stop(self) -> dict[str, Any]:
        if self._task is None or not self.is_running:
            return {"success": False, "reason": "Not running"}
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Watchdog stopped")
        return {"success": True}

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.tick_seconds)
            self.tick()

    # ------------------------------------------------------------------
    # tick

    def tick(self) -> list[Signal]:
        """4 つのチェックを順に実行し、この tick で発行した Signal を返す。"""
        self.last_tick_at = self.clock()
        self.stats["ticks"] += 1
        self._tick_signals = []
        try:
            for check in (
                self._check_agents,
                self._check_missions,
                self._check_tasks,
                self._check_system,
            ):
                try:
                    check()
                except Exception as exc:
                    logger.error(f"Watchdog check {check.__name__} failed: {exc}")
            return list(self._tick_signals)
        finally:
            self._tick_signals = None

    def force_tick(self) -> list[Signal]:
        return self.tick()

    def _elapsed(self, since: Optional[datetime], fallback: datetime) -> float:
        return (self.clock() - (since or fallback)).total_seconds()

    # ------------------------------------------------------------------
    # agent heartbeats

    def _check_agents(self) -> None:
        for agent in self.store.list_agents():
            if agent.status not in MONITORED_AGENT_STATUSES:
                continue
            elapsed = self._elapsed(agent.last_heartbeat, agent.created_at)
            if elapsed >= self.config.dead_agent_seconds:
                self._handle_dead_agent(agent, elapsed)
            elif elapsed >= self.config.stale_agent_seconds:
                self._handle_stale_agent(agent, elapsed)

    def _agent_details(self, agent: Agent, elapsed: float, threshold: float) -> dict[str, Any]:
        return {
            "agent_name": agent.name,
            "seconds_since_heartbeat": round(elapsed, 1),
            "threshold_seconds": threshold,
            "last_heartbeat": agent.last_heartbeat.isoformat() if agent.last_heartbeat else None,
        }

    def _handle_stale_agent(self, agent: Agent, elapsed: float) -> None:
        self._emit_signal(
            Signal(
                type=SignalType.AGENT_STALE,
                severity="warning",
                entity_type="agent",
                entity_id=agent.id,
                mission_id=agent.mission_id,
                details=self._agent_details(agent, elapsed, self.config.stale_agent_seconds),
            )
        )
        if agent.status is not AgentStatus.STALE:
            self.store.update_agent(agent.id, status=AgentStatus.STALE)

    def _handle_dead_agent(self, agent: Agent, elapsed: float) -> None:
        signal = self._emit_signal(
            Signal(
                type=SignalType.AGENT_DEAD,
                severity="critical",
                entity_type="agent",
                entity_id=agent.id,
                mission_id=agent.mission_id,
                details=self._agent_details(agent, elapsed, self.config.dead_agent_seconds),
            )
        )
        if agent.status is not AgentStatus.DEAD:
            self.store.update_agent(agent.id, status=AgentStatus.DEAD)
        if self.config.auto_heal_stale_agents:
            self._trigger_agent_healing(agent, signal)

    def _trigger_agent_healing(self, agent: Agent, signal: Signal) -> Optional[dict[str, Any]]:
        if agent.mission_id is None:
            logger.info(f"Agent {agent.id} has no mission; skipping self-heal")
            return None
        heartbeat = agent.last_heartbeat.isoformat() if agent.last_heartbeat else "never"
        return self._request_healing(
            f"agent-{agent.id}",
            mission_id=agent.mission_id,
            task_id=agent.task_id,
            agent_id=agent.id,
            failure_signature=f"agent_dead:{agent.id}:{heartbeat}",
            diagnosis=f"Agent {agent.name or agent.id} ({agent.id}) stopped responding. Last heartbeat: {heartbeat}",
            proposed_commands=[
                f"# Restart agent {agent.id}",
                "# Review logs for crash cause",
            ],
            risk_rating=RiskLevel.MEDIUM,
            rollback_plan=f"Stop and cleanup agent {agent.id}, reset mission to blocked state",
            context={"signal": signal.to_dict()},
        )

    # ------------------------------------------------------------------
    # mission health

    def _check_missions(self) -> None:
        for mission in self.store.list_missions(MissionStatus.RUNNING):
            elapsed = self._elapsed(mission.started_at, mission.updated_at)
            if elapsed >= self.config.max_mission_seconds:
                self._handle_mission_timeout(mission.id, mission.title, elapsed)
                continue
            if elapsed < self.config.stuck_mission_seconds:
                continue
            tasks = self.store.list_tasks(mission.id)
            if any(t.status is TaskStatus.RUNNING for t in tasks):
                continue
            completed = [t for t in tasks if t.status is TaskStatus.COMPLETE]
            pending = [t for t in tasks if t.status in (TaskStatus.PENDING, TaskStatus.READY)]
            if pending and len(completed) < len(tasks):
                self._emit_signal(
                    Signal(
                        type=SignalType.MISSION_STUCK,
                        severity="warning",
                        entity_type="mission",
                        entity_id=mission.id,
                        mission_id=mission.id,
                        details={
                            "mission_title": mission.title,
                            "elapsed_seconds": round(elapsed, 1),
                            "total_tasks": len(tasks),
                            "completed_tasks": len(completed),
                            "pending_tasks": len(pending),
                        },
                    )
                )

    def _handle_mission_timeout(self, mission_id: str, title: str, elapsed: float) -> None:
        self._emit_signal(
            Signal(
                type=SignalType.MISSION_TIMEOUT,
                severity="critical",
                entity_type="mission",
                entity_id=mission_id,
                mission_id=mission_id,
                details={
                    "mission_title": title,
                    "elapsed_seconds": round(elapsed, 1),
                    "max_seconds": self.config.max_mission_seconds,
                },
            )
        )
        self.store.update_mission(
            mission_id,
            status=MissionStatus.BLOCKED,
            blocked_reason=f"Watchdog timeout: exceeded {self.config.max_mission_seconds / 60:g} minutes",
        )

    # ------------------------------------------------------------------
    # task health

    def _check_tasks(self) -> None:
        for task in self.store.list_tasks():
            if task.status is not TaskStatus.RUNNING:
                continue
            elapsed = self._elapsed(task.started_at, task.updated_at)
            if elapsed >= self.config.stuck_task_seconds:
                self._handle_stuck_task(task, elapsed)

    def _handle_stuck_task(self, task: Task, elapsed: float) -> None:
        signal = self._emit_signal(
            Signal(
                type=SignalType.TASK_STUCK,
                severity="warning",
                entity_type="task",
                entity_id=task.id,
                mission_id=task.mission_id,
                details={
                    "task_title": task.title,
                    "task_type": task.task_type.value,
                    "elapsed_seconds": round(elapsed, 1),
                    "threshold_seconds": self.config.stuck_task_seconds,
                    "agent_id": task.agent_id,
                },
            )
        )
        if not self.config.auto_heal_stuck_tasks:
            return
        started = task.started_at.isoformat() if task.started_at else task.updated_at.isoformat()
        self._request_healing(
            f"task-{task.id}",
            mission_id=task.mission_id,
            task_id=task.id,
            agent_id=task.agent_id,
            failure_signature=f"task_stuck:{task.id}:{started}",
            diagnosis=f'Task "{task.title}" appears stuck. Running for {round(elapsed)}s without progress.',
            proposed_commands=[
                f"# Check agent {task.agent_id} status",
                "# Review task dependencies",
                "# Consider restarting task",
            ],
            risk_rating=RiskLevel.LOW,
            rollback_plan=f"Reset task {task.id} to pending state",
            context={"signal": signal.to_dict()},
        )

    # ------------------------------------------------------------------
    # healing

    def _request_healing(self, attempt_key: str, **proposal: Any) -> Optional[dict[str, Any]]:
        if self.healer is None:
            return None
        attempts = self._heal_attempts.get(attempt_key, 0)
        if attempts >= self.config.max_auto_heal_attempts:
            logger.info(f"Max heal attempts reached for {attempt_key}")
            return None
        self._heal_attempts[attempt_key] = attempts + 1
        self.stats["healing_triggered"] += 1
        try:
            result = self.healer.generate_proposal(**proposal)
            if self.auto_apply and result.get("success"):
                result["apply"] = self.healer.apply_proposal(result["proposal_id"])
        except MissionControlError as exc:
            logger.error(f"Failed to create heal proposal for {attempt_key}: {exc}")
            return None
        return result

    def clear_heal_attempts(self, key: str | None = None) -> dict[str, Any]:
        if key is None:
            self._heal_attempts.clear()
        else:
            self._heal_attempts.pop(key, None)
        return {"success": True}

    # ------------------------------------------------------------------
    # system

    def _check_system(self) -> None:
        if self.store.is_circuit_breaker_tripped() and not self._has_recent_signal(
            SignalType.CIRCUIT_BREAKER_TRIP
        ):
            breaker = self.store.get_circuit_breaker()
            self._emit_signal(
                Signal(
                    type=SignalType.CIRCUIT_BREAKER_TRIP,
                    severity="critical",
                    entity_type="system",
                    entity_id="circuit_breaker",
                    details={"reason": breaker.get("reason"), "tripped_at": breaker.get("tripped_at")},
                )
            )
        self._check_failure_rate()

    def _check_failure_rate(self) -> None:
        now = self.clock()
        recent = [m for m in self.store.list_missions() if now - m.updated_at < FAILURE_RATE_WINDOW]
        if len(recent) < FAILURE_RATE_MIN_MISSIONS:
            return
        failed = sum(1 for m in recent if m.status is MissionStatus.FAILED)
        rate = failed / len(recent)
        if rate > FAILURE_RATE_THRESHOLD and not self._has_recent_signal(SignalType.HIGH_FAILURE_RATE):
            self._emit_signal(
                Signal(
                    type=SignalType.HIGH_FAILURE_RATE,
                    severity="critical",
                    entity_type="system",
                    entity_id="failure_rate",
                    details={
                        "failure_rate": round(rate * 100),
                        "failed": failed,
                        "total": len(recent),
                        "window": "1 hour",
                    },
                )
            )

    def _has_recent_signal(self, signal_type: str) -> bool:
        cutoff = self.clock() - timedelta(seconds=self.config.signal_cooldown_seconds)
        return any(s.type == signal_type and s.timestamp > cutoff for s in self._signals)

    # ------------------------------------------------------------------
    # signals

    def _emit_signal(self, signal: Signal) -> Signal:
        signal.timestamp = self.clock()
        self._signals.append(signal)
        self.stats["signals_emitted"] += 1
        if self._tick_signals is not None:
            self._tick_signals.append(signal)

        if signal.mission_id:
            try:
                self.store.add_artifact(
                    ArtifactType.SIGNAL_REPORT,
                    {
                        "signal_id": signal.id,
                        "signal_type": signal.type,
                        "severity": signal.severity,
                        "entity_type": signal.entity_type,
                        "entity_id": signal.entity_id,
                        "details": signal.details,
                    },
                    mission_id=signal.mission_id,
                    task_id=signal.entity_id if signal.entity_type == "task" else None,
                    producer=Producer.WATCHDOG,
                )
            except MissionControlError as exc:
                logger.error(f"Failed to record signal artifact for {signal.id}: {exc}")

        for listener in list(self._subscribers):
            try:
                listener(signal)
            except Exception as exc:
                logger.error(f"Watchdog subscriber failed on {signal.type}: {exc}")

        message = f"Signal {signal.type} ({signal.severity}) {signal.entity_type}:{signal.entity_id}"
        if signal.severity == "critical":
            logger.error(message)
        elif signal.severity == "warning":
            logger.warning(message)
        else:
            logger.info(message)
        return signal

    def subscribe(self, listener: SignalListener) -> Callable[[], None]:
        self._subscribers.append(listener)

        def unsubscribe() -> None:
            if listener in self._subscribers:
                self._subscribers.remove(listener)

        return unsubscribe

    def get_signals(
        self,
        signal_type: str | None = None,
        severity: str | None = None,
        entity_type: str | None = None,
        mission_id: str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[Signal]:
        signals = [
            s
            for s in self._signals
            if (signal_type is None or s.type == signal_type)
            and (severity is None or s.severity == severity)
            and (entity_type is None or s.entity_type == entity_type)
            and (mission_id is None or s.mission_id == mission_id)
            and (since is None or s.timestamp >= since)
        ]
        return signals[-limit:] if limit else signals

    def clear_signals(self) -> dict[str, Any]:
        self._signals.clear()
        return {"success": True}

    # ------------------------------------------------------------------
    # manual override

    def recover_agent(self, agent_id: str) -> dict[str, Any]:
        """stale / dead のエージェントを running に戻す唯一の手動操作。"""
        agent = self.store.get_agent(agent_id)
        if agent is None:
            return {"success": False, "error": f"Agent {agent_id} not found"}
        if agent.status not in (AgentStatus.STALE, AgentStatus.DEAD):
            return {"success": False, "error": f"Agent {agent_id} is not in stale/dead state"}

        self.store.update_agent(agent_id, status=AgentStatus.RUNNING, last_heartbeat=self.clock())
        self._heal_attempts.pop(f"agent-{agent_id}", None)
        self.stats["agents_recovered"] += 1
        self._emit_signal(
            Signal(
                type=SignalType.AGENT_RECOVERED,
                severity="info",
                entity_type="agent",
                entity_id=agent_id,
                mission_id=agent.mission_id,
                details={"agent_name": agent.name, "previous_status": agent.status.value},
            )
        )
        return {"success": True, "agent_id": agent_id}

    # ------------------------------------------------------------------
    # status

    def get_active_issues(self) -> dict[str, Any]:
        cutoff = self.clock() - ACTIVE_ISSUE_WINDOW
        return {
            "stale_agents": [
                {"id": a.id, "name": a.name, "mission_id": a.mission_id}
                for a in self.store.list_agents(AgentStatus.STALE)
            ],
            "dead_agents": [
                {"id": a.id, "name": a.name, "mission_id": a.mission_id}
                for a in self.store.list_agents(AgentStatus.DEAD)
            ],
            "blocked_missions": [
                {"id": m.id, "title": m.title, "reason": m.blocked_reason}
                for m in self.store.list_missions(MissionStatus.BLOCKED)
            ],
            "needs_review_missions": [
                {"id": m.id, "title": m.title, "reason": m.blocked_reason}
                for m in self.store.list_missions(MissionStatus.NEEDS_REVIEW)
            ],
            "circuit_breaker_tripped": self.store.is_circuit_breaker_tripped(),
            "recent_critical_signals": [
                s.to_dict() for s in self._signals if s.severity == "critical" and s.timestamp >= cutoff
            ],
        }

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "config": {
                "tick_seconds": self.config.tick_seconds,
                "stale_agent_seconds": self.config.stale_agent_seconds,
                "dead_agent_seconds": self.config.dead_agent_seconds,
                "stuck_mission_seconds": self.config.stuck_mission_seconds,
                "max_mission_seconds": self.config.max_mission_seconds,
                "stuck_task_seconds": self.config.stuck_task_seconds,
            },
            "auto_apply": self.auto_apply,
            "stats": dict(self.stats),
            "recent_signals": [s.to_dict() for s in list(self._signals)[-10:]],
            "heal_attempts": dict(self._heal_attempts),
        }

    def health_check(self) -> dict[str, Any]:
        issues = self.get_active_issues()
        return {
            "service": "watchdog",
            "status": "ok" if self.is_running else "stopped",
            "is_running": self.is_running,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "stats": dict(self.stats),
            "active_issues": {
                "stale_agents": len(issues["stale_agents"]),
                "dead_agents": len(issues["dead_agents"]),
                "blocked_missions": len(issues["blocked_missions"]),
                "circuit_breaker_tripped": issues["circuit_breaker_tripped"],
            },
            "recent_critical_signals": len(issues["recent_critical_signals"]),
            "checked_at": self.clock().isoformat(),
        }
