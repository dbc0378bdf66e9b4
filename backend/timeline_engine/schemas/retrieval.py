"""Schemas for similarity search, cross-references and tag suggestions.

Classes:
    SimilarityResult: Ranked neighbour of an event.
    CrossReferenceResult: Typed, scored relationship between two events.
    CrossReferenceReport: Detection output for one source event.
    TimelineAnalysisResult: Aggregated outcome of re-detecting every event's cross-references.
    TagSuggestion: Proposed tag with its similarity-weighted score.
    TagSuggestionTextRequest: Payload for suggesting tags for unsaved text.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

RelationshipType = Literal["causal", "thematic", "temporal", "person", "location", "follow-up"]


class SimilarityResult(BaseModel):
    candidate_event_id: str
    similarity_score: float
    rank: int = Field(ge=1)
    title: Optional[str] = None
    start_date: Optional[date] = None
    category: Optional[str] = None


class CrossReferenceResult(BaseModel):
    reference_id: str
    event_id_1: str
    event_id_2: str
    relationship_type: RelationshipType
    confidence_score: float = Field(ge=0.0, le=1.0)
    analysis_details: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class CrossReferenceReport(BaseModel):
    event_id: str
    cross_references: list[CrossReferenceResult] = Field(default_factory=list)
    incomplete: bool = False
    skipped_event_ids: list[str] = Field(default_factory=list)


class TimelineEventError(BaseModel):
    event_id: str
    message: str
    kind: str = "error"


class TimelineAnalysisResult(BaseModel):
    analyzed_count: int = 0
    cross_reference_count: int = 0
    skipped_count: int = 0
    errors: list[TimelineEventError] = Field(default_factory=list)


class TagSuggestion(BaseModel):
    tag_name: str
    confidence: float = Field(ge=0.0, le=1.0)
    score: float
    source_event_ids: list[str] = Field(default_factory=list)


class TagSuggestionTextRequest(BaseModel):
    title: str
    description: Optional[str] = None
    limit: int = Field(default=5, ge=0, le=50)

    @field_validator("title")
    @classmethod
    def validate_title(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("title must not be empty")
        return value.strip()
