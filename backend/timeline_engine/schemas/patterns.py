"""Schemas for timeline pattern detection."""

from __future__ import annotations

from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, Field

Trend = Literal["increasing", "decreasing", "stable"]


class CategoryPattern(BaseModel):
    category: str
    event_count: int
    first_date: date
    last_date: date
    frequency: float = Field(description="Events per 30 days across the active span")
    trend: Trend = "stable"
    common_tags: list[str] = Field(default_factory=list)
    description: str


class EventCluster(BaseModel):
    event_ids: list[str]
    event_count: int
    start_date: date
    end_date: date
    theme: Optional[str] = None
    mean_similarity: float
    description: str


class TemporalCluster(BaseModel):
    event_ids: list[str]
    event_count: int
    start_date: date
    end_date: date
    theme: Optional[str] = None
    description: str


class EraTransition(BaseModel):
    from_era_id: str
    to_era_id: str
    from_era_name: str
    to_era_name: str
    transition_date: date
    from_dominant_category: Optional[str] = None
    to_dominant_category: Optional[str] = None
    shift_score: float
    event_count: int
    description: str


class PatternReport(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    category_patterns: list[CategoryPattern] = Field(default_factory=list)
    clusters: list[EventCluster] = Field(default_factory=list)
    temporal_clusters: list[TemporalCluster] = Field(default_factory=list)
    era_transitions: list[EraTransition] = Field(default_factory=list)
