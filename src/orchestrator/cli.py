# ruff: noqa: B008
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Optional

import httpx
import typer
import uvicorn
import yaml

from mission_control.cost_estimator import DEFAULT_MODEL
from mission_control.engine import MissionControl, build_engine
from mission_control.errors import MissionControlError
from mission_control.settings import Settings, get_settings

DEFAULT_BASE = os.getenv("MISSION_CONTROL_API_BASE", "http://127.0.0.1:8000")

app = typer.Typer(help="CLI entrypoint for the mission control engine.")


@app.callback()
def main_callback(
    log_level: Optional[str] = typer.Option(None, help="ログレベル (省略時 MC_LOG_LEVEL)"),
) -> None:
    level = (log_level or get_settings().log_level).upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _compose_url(base: str, endpoint: str) -> str:
    base = base.rstrip("/")
    endpoint = endpoint if endpoint.startswith("/") else f"/{endpoint}"
    return f"{base}{endpoint}"


def _offline_engine(state_path: Path, storage: str) -> MissionControl:
    """HTTP サーバーを介さず、保存済み状態からエンジンを組み立てる。"""
    overrides: dict[str, Any] = {"storage_backend": storage, "watchdog_auto_start": False}
    if storage == "json":
        overrides["state_path"] = str(state_path)
    elif storage == "sqlite":
        overrides["database_url"] = f"sqlite:///{state_path}"
    return build_engine(Settings(**overrides))


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Host to bind"),
    port: int = typer.Option(8000, help="Port to bind"),
) -> None:
    """FastAPI サーバーを起動する。"""

    run_id = str(int(time.time() * 1000))
    typer.echo(f"serve_start host={host} port={port} run_id={run_id}")
    uvicorn.run(
        "mission_control.http:build_app",
        factory=True,
        host=host,
        port=port,
        reload=False,
    )


@app.command()
def call(
    endpoint: str = typer.Option("/api/missions", help="API endpoint path"),
    method: str = typer.Option("GET", help="HTTP method (GET/POST/PATCH/DELETE)"),
    data: Optional[str] = typer.Option(None, help="JSON string for request body"),
    base_url: str = typer.Option(
        DEFAULT_BASE, help="Base URL (env MISSION_CONTROL_API_BASE で上書き可)"
    ),
    timeout: float = typer.Option(10.0, help="HTTP timeout seconds"),
) -> None:
    """Mission Control API を呼び出し、レスポンスを表示する。"""

    url = _compose_url(base_url, endpoint)
    method_norm = method.upper()
    if method_norm not in {"GET", "POST", "PATCH", "DELETE"}:
        typer.echo(f"Unsupported method: {method_norm}", err=True)
        raise typer.Exit(code=2)
    payload = json.loads(data) if data else None
    start = time.monotonic()
    try:
        with httpx.Client(timeout=timeout) as client:
            resp = client.request(method_norm, url, json=payload)
    except httpx.HTTPError as exc:  # pragma: no cover - network failures
        typer.echo(f"Request failed: {exc}", err=True)
        typer.echo("api_up=false")
        raise typer.Exit(code=1) from exc

    duration = int((time.monotonic() - start) * 1000)
    typer.echo(f"status={resp.status_code} duration_ms={duration}")
    try:
        typer.echo(json.dumps(resp.json(), ensure_ascii=False))
    except ValueError:
        typer.echo(resp.text)

    if resp.status_code >= 400:
        raise typer.Exit(code=1)


@app.command()
def graph(
    mission_id: str = typer.Argument(..., help="Mission ID"),
    state_path: Path = typer.Option(Path("data/state.json"), help="状態ファイル"),
    storage: str = typer.Option("json", help="json | sqlite"),
    order: bool = typer.Option(False, help="実行順序を表示する"),
    visualize: bool = typer.Option(False, help="テキストツリーを表示する"),
) -> None:
    """依存グラフの状態をオフラインで表示する。"""

    engine = _offline_engine(state_path, storage)
    try:
        if visualize:
            typer.echo(engine.graph.visualize(mission_id))
        elif order:
            ordering = engine.graph.compute_execution_order(mission_id)
            _echo_json(ordering.to_dict())
            if not ordering.success:
                raise typer.Exit(code=1)
        else:
            _echo_json(engine.graph.get_status(mission_id))
    except MissionControlError as exc:
        typer.echo(f"{exc.code}: {exc.message}", err=True)
        raise typer.Exit(code=1) from exc


@app.command()
def tick(
    state_path: Path = typer.Option(Path("data/state.json"), help="状態ファイル"),
    storage: str = typer.Option("json", help="json | sqlite"),
) -> None:
    """Watchdog を 1 tick だけ実行し、発行された Signal を表示する。"""

    engine = _offline_engine(state_path, storage)
    signals = engine.watchdog.force_tick()
    _echo_json({"signals": [s.to_dict() for s in signals], "issues": engine.watchdog.get_active_issues()})


@app.command()
def estimate(
    mission_id: Optional[str] = typer.Argument(None, help="Mission ID (省略時はトークン数から単発見積もり)"),
    model: str = typer.Option(DEFAULT_MODEL, help="価格表のモデル名"),
    input_tokens: int = typer.Option(2000, help="入力トークン数 (単発見積もり)"),
    output_tokens: int = typer.Option(1000, help="出力トークン数 (単発見積もり)"),
    state_path: Path = typer.Option(Path("data/state.json"), help="状態ファイル"),
    storage: str = typer.Option("json", help="json | sqlite"),
    record: bool = typer.Option(False, help="cost_estimate 成果物として記録する"),
) -> None:
    """ミッションのコスト見積もりと予算判定を表示する。"""

    engine = _offline_engine(state_path, storage)
    if mission_id is None:
        result = engine.costs.estimate_task_cost(
            model=model, estimated_input_tokens=input_tokens, estimated_output_tokens=output_tokens
        )
        _echo_json(result)
        if not result.get("success"):
            raise typer.Exit(code=1)
        return
    try:
        result = engine.costs.estimate_mission_cost(mission_id, model=model)
    except MissionControlError as exc:
        typer.echo(f"{exc.code}: {exc.message}", err=True)
        raise typer.Exit(code=1) from exc
    if not result.get("success"):
        _echo_json(result)
        raise typer.Exit(code=1)
    result["budget"] = engine.costs.check_budget(mission_id, result["max_cost"])
    if record:
        artifact = engine.costs.create_cost_estimate_artifact(mission_id, result)
        result["artifact_id"] = artifact.id if artifact else None
    _echo_json(result)


@app.command()
def run(
    plan: Path = typer.Argument(..., help="キュータスクを列挙した YAML/JSON ファイル"),
    max_concurrency: Optional[int] = typer.Option(None, help="同時実行数 (省略時は設定値)"),
    timeout: float = typer.Option(600.0, help="全体のタイムアウト(秒)"),
) -> None:
    """計画ファイルのタスクをキューへ投入し、すべて終わるまで実行する。"""

    data = yaml.safe_load(plan.read_text(encoding="utf-8")) or {}
    rows = data.get("tasks", []) if isinstance(data, dict) else data
    if not rows:
        typer.echo("tasks が空です", err=True)
        raise typer.Exit(code=2)

    settings = get_settings()
    overrides: dict[str, Any] = {"watchdog_auto_start": False}
    if max_concurrency:
        overrides["max_concurrency"] = max_concurrency
    engine = build_engine(settings.model_copy(update=overrides))

    submitted: set[str] = set()

    async def _run() -> None:
        for row in rows:
            fields = dict(row)
            submitted.add(engine.queue.add_task(fields.pop("name", ""), **fields).id)
        await engine.queue.drain(timeout)

    try:
        asyncio.run(_run())
    except MissionControlError as exc:
        typer.echo(f"{exc.code}: {exc.message}", err=True)
        raise typer.Exit(code=2) from exc

    history = [
        t.to_dict()
        for t in engine.queue.history
        if t.id in submitted or t.metadata.get("original_task_id") in submitted
    ]
    _echo_json({"history": history, "queued": [t.to_dict() for t in engine.queue.queue]})
    if any(t["status"] == "failed" for t in history) or engine.queue.queue:
        raise typer.Exit(code=1)


def main() -> None:  # pragma: no cover
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
