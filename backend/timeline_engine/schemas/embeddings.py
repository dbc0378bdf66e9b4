"""Schemas for embedding generation and batch jobs.

Classes:
    EmbeddingOutcome: Typed result of embedding a single event.
    BatchItemError: Per-event failure captured during a batch run.
    BatchEmbeddingResult: Aggregated counts for one ``generate_all`` pass.
    GenerateAllRequest: Payload for starting a background batch job.
    EmbeddingJobStatus: Lifecycle and result of a background job.
    ClearEmbeddingsResponse: Result of wiping stored embeddings.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class EmbeddingOutcome(BaseModel):
    event_id: str
    success: bool
    error: Optional[str] = None
    error_kind: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    dimension: Optional[int] = None


class BatchItemError(BaseModel):
    event_id: str
    message: str
    kind: str = "error"


class BatchEmbeddingResult(BaseModel):
    succeeded_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    errors: list[BatchItemError] = Field(default_factory=list)
    cancelled: bool = False


class GenerateAllRequest(BaseModel):
    force: bool = False


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class EmbeddingJobStatus(BaseModel):
    job_id: str
    provider: str
    state: JobState = JobState.PENDING
    force: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    result: Optional[BatchEmbeddingResult] = None
    error: Optional[str] = None


class ClearEmbeddingsResponse(BaseModel):
    success: bool
    removed_count: int = 0
