"""SQLModel table/entity definitions for persisted analyses and registered face identities."""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Column, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JsonColumnType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VisionAnalysis(SQLModel, table=True):
    """One successful pipeline result for one image."""

    __tablename__ = "vision_analysis"
    __table_args__ = (
        Index("ix_vision_analysis_user_created", "user_id", "created_at"),
        Index("ix_vision_analysis_session", "session_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(nullable=False)
    session_id: str | None = None
    kind: str = Field(nullable=False)
    image_sha256: str | None = None
    image_format: str | None = None
    file_name: str | None = None
    model_used: str | None = None
    confidence: float = 0.0
    processing_time_ms: float = 0.0
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JsonColumnType, nullable=False))
    image_meta: dict[str, Any] | None = Field(default=None, sa_column=Column(JsonColumnType))
    model_settings: dict[str, Any] | None = Field(default=None, sa_column=Column(JsonColumnType))
    created_at: datetime = Field(default_factory=_utcnow)


class FaceIdentity(SQLModel, table=True):
    """A named person with a reference face embedding, scoped to the user who registered it."""

    __tablename__ = "face_identity"
    __table_args__ = (Index("ix_face_identity_user", "user_id"),)

    id: int | None = Field(default=None, primary_key=True)
    user_id: str | None = None
    name: str = Field(nullable=False)
    embedding: list[float] = Field(default_factory=list, sa_column=Column(JsonColumnType, nullable=False))
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
