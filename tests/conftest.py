"""pytest 共通フィクスチャ (時計・ストア・グラフ・設定)。"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from mission_control.models import TaskType
from mission_control.settings import Settings
from mission_control.state_store import MemoryBackend, StateStore
from mission_control.task_graph import TaskGraphEngine


class FakeClock:
    """テストから進められる UTC 時計。"""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> StateStore:
    return StateStore(MemoryBackend(), clock=clock)


@pytest.fixture
def graph(store: StateStore) -> TaskGraphEngine:
    return TaskGraphEngine(store)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """ファイルを tmp_path に閉じ込めたメモリバックエンドの設定。"""
    return Settings(
        storage_backend="memory",
        state_path=str(tmp_path / "state.json"),
        snapshot_dir=str(tmp_path / "snapshots"),
        audit_dir=None,
        queue_state_path=str(tmp_path / "queue-state.json"),
        watchdog_auto_start=False,
        trace_dir=str(tmp_path / "traces"),
        message_bus_dir=str(tmp_path / "bus"),
        engines_config=str(tmp_path / "engines.yaml"),
        policy_file=None,
    )


def build_mission(store: StateStore, title: str = "Ship feature") -> tuple[str, dict[str, str]]:
    """work×2 → verification → finalization の標準的なミッションを作る。"""
    mission = store.create_mission(title)
    a = store.create_task(mission.id, "Implement API")
    b = store.create_task(mission.id, "Implement UI")
    verify = store.create_task(
        mission.id, "Run checks", task_type=TaskType.VERIFICATION, deps=[a.id, b.id]
    )
    final = store.create_task(
        mission.id, "Release", task_type=TaskType.FINALIZATION, deps=[verify.id]
    )
    return mission.id, {"a": a.id, "b": b.id, "verify": verify.id, "final": final.id}
