"""Cross-reference edge model.

Classes:
    CrossReference: Typed, scored relationship between two events stored in canonical id order.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

RELATIONSHIP_TYPES = ("causal", "thematic", "temporal", "person", "location", "follow-up")


class CrossReference(SQLModel, table=True):
    __tablename__ = "cross_references"
    __table_args__ = (
        UniqueConstraint(
            "event_id_1",
            "event_id_2",
            "relationship_type",
            name="uq_cross_reference_pair_type",
        ),
    )

    reference_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_id_1: str = Field(foreign_key="events.event_id", index=True)
    event_id_2: str = Field(foreign_key="events.event_id", index=True)
    relationship_type: str = Field(index=True)
    confidence_score: float
    analysis_details: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.utcnow)
