"""FastAPI のエントリーポイント。"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .engine import MissionControl, build_engine
from .errors import MissionControlError
from .routers import missions, policies, proposals, queue, watchdog
from .routers.deps import error_status
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)


def build_app(settings: Settings | None = None, engine: MissionControl | None = None) -> FastAPI:
    """FastAPI アプリを構築する。engine を渡さなければ設定から組み立てる。"""

    app_settings = engine.settings if engine is not None else settings or get_settings()
    mission_control = engine or build_engine(app_settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await mission_control.start()
        try:
            yield
        finally:
            await mission_control.stop()

    app = FastAPI(title=app_settings.app_name, debug=app_settings.debug, lifespan=lifespan)
    app.state.engine = mission_control

    @app.exception_handler(MissionControlError)
    async def mission_control_error(request: Request, exc: MissionControlError) -> JSONResponse:
        logger.info(f"Engine error {exc.code} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=error_status(exc), content={"detail": exc.code, **exc.to_dict()})

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        """単純なヘルスチェック応答を返す。"""

        return {"status": "ok", "app": app_settings.app_name, "version": __version__}

    @app.get("/api/status", tags=["health"])
    async def engine_status() -> dict:
        return mission_control.get_status()

    for module in (missions, queue, watchdog, proposals, policies):
        app.include_router(module.router)
    return app
