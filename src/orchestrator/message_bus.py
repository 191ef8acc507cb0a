from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, MutableMapping, Optional

from mission_control.errors import AgentExecutionError
from mission_control.mission_queue import QueuedTask

Message = Dict[str, Any]

BUS_ROOT = Path("data/message_bus")

logger = logging.getLogger(__name__)


def _load_bus(path: Path) -> List[Message]:
    if not path.exists():
        return []
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        logger.warning(f"Unreadable message bus file {path}: {exc}")
        return []


def append_message(path: Path, message: Message) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    history = _load_bus(path)
    history.append(
        {
            **message,
            "ts": message.get("ts") or datetime.now(timezone.utc).isoformat(),
        }
    )
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(history, ensure_ascii=False, indent=2), encoding="utf-8")
    tmp.replace(path)


def read_messages(path: Path) -> List[Message]:
    return _load_bus(path)


def _role_path(role: str, base_dir: Optional[Path]) -> Path:
    root = Path(base_dir or BUS_ROOT)
    root.mkdir(parents=True, exist_ok=True)
    return root / f"{role}.json"


def send_message(role: str, payload: Mapping[str, Any], base_dir: Optional[Path] = None) -> Path:
    """ロール宛にメッセージを JSON で保存する。"""

    target = _role_path(role, base_dir)
    append_message(target, dict(payload))
    return target


def receive_message(role: str, base_dir: Optional[Path] = None) -> MutableMapping[str, Any]:
    """ロール宛の最新メッセージを取得し、存在しなければ空辞書を返す。"""

    target = _role_path(role, base_dir)
    messages = read_messages(target)
    if not messages:
        return {}
    latest = dict(messages[-1])
    latest.pop("ts", None)
    return latest


def find_reply(agent: str, task_id: str, base_dir: Optional[Path] = None) -> Optional[Message]:
    """エージェントの outbox から task_id に対応する最新の返信を探す。"""

    for message in reversed(read_messages(_role_path(f"{agent}.outbox", base_dir))):
        if message.get("task_id") == task_id:
            return message
    return None


class MessageBusExecutor:
    """指示をエージェントの inbox に書き込み、outbox の返信を待つ。"""

    def __init__(
        self,
        base_dir: Optional[Path] = None,
        *,
        timeout: float = 300.0,
        poll_interval: float = 0.5,
    ):
        self.base_dir = Path(base_dir) if base_dir else None
        self.timeout = timeout
        self.poll_interval = poll_interval

    async def execute(self, agent_id: Optional[str], instruction: str, task: QueuedTask) -> Any:
        agent = agent_id or "default"
        send_message(
            f"{agent}.inbox",
            {
                "task_id": task.id,
                "name": task.name,
                "instruction": instruction,
                "metadata": task.metadata,
            },
            base_dir=self.base_dir,
        )
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        while True:
            reply = find_reply(agent, task.id, self.base_dir)
            if reply is not None:
                if reply.get("status") == "error" or reply.get("error"):
                    raise AgentExecutionError(
                        str(reply.get("error") or "Agent reported failure"),
                        agent_id=agent,
                        task_id=task.id,
                    )
                return reply.get("result")
            if loop.time() >= deadline:
                raise AgentExecutionError(
                    f"Timed out waiting for {agent} to reply to {task.id}",
                    code="AGENT_TIMEOUT",
                    agent_id=agent,
                    task_id=task.id,
                )
            await asyncio.sleep(self.poll_interval)
