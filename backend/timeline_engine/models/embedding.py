"""Stored event embedding model."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Column, Index, LargeBinary, UniqueConstraint
from sqlmodel import Field, SQLModel


class EventEmbedding(SQLModel, table=True):
    __tablename__ = "event_embeddings"
    __table_args__ = (
        UniqueConstraint("event_id", "provider", name="uq_event_embedding_event_provider"),
        Index("ix_event_embeddings_provider_event", "provider", "event_id"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: str = Field(foreign_key="events.event_id", index=True)
    provider: str = Field(index=True)
    model: str
    dimension: int
    vector: bytes = Field(sa_column=Column(LargeBinary))
    vector_dtype: str = Field(default="float32")
    vector_norm: float | None = Field(default=None)
    content_hash: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)
