from __future__ import annotations

"""SQLModel ベースの状態ドキュメント永続化。"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Column
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import Field, Session, SQLModel, create_engine, select

DOCUMENT_ROW_ID = 1


class StateDocument(SQLModel, table=True):
    """最新の状態ドキュメントを 1 行で保持するテーブル。"""

    __tablename__ = "state_document"

    id: int | None = Field(default=None, primary_key=True)
    version: int = Field(default=0)
    document: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class StateSnapshot(SQLModel, table=True):
    """ラベル付きスナップショットを保持するテーブル。"""

    __tablename__ = "state_snapshot"

    id: int | None = Field(default=None, primary_key=True)
    label: str = Field(index=True)
    version: int = Field(default=0)
    document: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def get_engine(database_url: str) -> Engine:
    """同期エンジンを構築する。"""

    return create_engine(database_url, echo=False)


def init_db(database_url: str) -> Engine:
    """スキーマを一括で作成する初期化ヘルパー。"""

    engine = get_engine(database_url)
    SQLModel.metadata.create_all(engine)
    return engine


def get_session(engine: Engine) -> Session:
    """セッションを生成する。呼び出し側でクローズする。"""

    SessionLocal = sessionmaker(bind=engine, class_=Session, expire_on_commit=False)
    return SessionLocal()


class SqlDocumentBackend:
    """StateStore 用のバックエンド。ドキュメント全体を JSON カラムに保存する。"""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine = init_db(database_url)

    def load(self) -> dict[str, Any] | None:
        with get_session(self.engine) as session:
            row = session.get(StateDocument, DOCUMENT_ROW_ID)
            if row is None:
                return None
            return dict(row.document)

    def save(self, document: dict[str, Any]) -> None:
        with get_session(self.engine) as session:
            row = session.get(StateDocument, DOCUMENT_ROW_ID)
            if row is None:
                row = StateDocument(id=DOCUMENT_ROW_ID)
            row.document = document
            row.version = int(document.get("_version", 0))
            row.updated_at = datetime.now(timezone.utc)
            session.add(row)
            session.commit()

    def write_snapshot(self, label: str, document: dict[str, Any]) -> None:
        with get_session(self.engine) as session:
            session.add(
                StateSnapshot(
                    label=label,
                    version=int(document.get("_version", 0)),
                    document=document,
                )
            )
            session.commit()

    def list_snapshots(self) -> list[str]:
        with get_session(self.engine) as session:
            rows = session.exec(select(StateSnapshot).order_by(StateSnapshot.id)).all()
            return [row.label for row in rows]
