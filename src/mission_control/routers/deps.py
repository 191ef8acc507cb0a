"""ルーター共通の依存関係とエラー変換。"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request, status

from ..engine import MissionControl
from ..errors import (
    ArtifactError,
    DependencyNotFoundError,
    GraphIntegrityError,
    MissionControlError,
    NotFoundError,
    ValidationError,
)

CONFLICT_ARTIFACT_CODES = {"IMMUTABLE_VIOLATION", "APPEND_ONLY_VIOLATION"}


def get_engine(request: Request) -> MissionControl:
    return request.app.state.engine


EngineDep = Annotated[MissionControl, Depends(get_engine)]


def error_status(exc: MissionControlError) -> int:
    """エンジン例外を HTTP ステータスへ対応付ける。"""
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, GraphIntegrityError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, ArtifactError) and exc.code in CONFLICT_ARTIFACT_CODES:
        return status.HTTP_409_CONFLICT
    if isinstance(exc, (ValidationError, DependencyNotFoundError, ArtifactError)):
        if exc.code == "APPROVAL_ALREADY_RESOLVED":
            return status.HTTP_409_CONFLICT
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    return status.HTTP_409_CONFLICT


def checked(result: dict[str, Any]) -> dict[str, Any]:
    """``success: False`` の結果を 409 に変換する。"""
    if not result.get("success", True):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result)
    return result
