"""Embedding generation endpoints.

Endpoints:
    generate_event_embedding(event_id): Embed a single event.
    start_generate_all(payload): Launch a background batch job.
    get_job(job_id) / cancel_job(job_id): Inspect or cancel a batch job.
    clear_embeddings(provider): Remove stored embeddings.
    delete_event_embedding(event_id): Remove one event's embeddings.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status

from timeline_engine.api.deps import get_job_runner, get_retrieval_service, to_http_error
from timeline_engine.core.errors import RetrievalError
from timeline_engine.schemas import (
    ClearEmbeddingsResponse,
    EmbeddingJobStatus,
    EmbeddingOutcome,
    GenerateAllRequest,
)
from timeline_engine.services import EmbeddingJobRunner, RetrievalService

router = APIRouter(prefix="/embeddings", tags=["embeddings"])


@router.post("/events/{event_id}", response_model=EmbeddingOutcome)
async def generate_event_embedding(
    event_id: str,
    service: RetrievalService = Depends(get_retrieval_service),
) -> EmbeddingOutcome:
    outcome = await service.generate_for_event(event_id)
    if not outcome.success and outcome.error_kind == "not_found":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=outcome.error)
    return outcome


@router.delete("/events/{event_id}")
async def delete_event_embedding(
    event_id: str,
    service: RetrievalService = Depends(get_retrieval_service),
) -> dict[str, int]:
    try:
        removed = await service.delete_embedding(event_id)
    except RetrievalError as exc:
        raise to_http_error(exc) from exc
    return {"removed_count": removed}


@router.post("/generate", response_model=EmbeddingJobStatus, status_code=status.HTTP_202_ACCEPTED)
async def start_generate_all(
    payload: Optional[GenerateAllRequest] = Body(default=None),
    runner: EmbeddingJobRunner = Depends(get_job_runner),
) -> EmbeddingJobStatus:
    request = payload or GenerateAllRequest()
    try:
        return runner.start(force=request.force)
    except RetrievalError as exc:
        raise to_http_error(exc) from exc


@router.get("/jobs/{job_id}", response_model=EmbeddingJobStatus)
async def get_job(job_id: str, runner: EmbeddingJobRunner = Depends(get_job_runner)) -> EmbeddingJobStatus:
    try:
        return runner.get(job_id)
    except RetrievalError as exc:
        raise to_http_error(exc) from exc


@router.post("/jobs/{job_id}/cancel", response_model=EmbeddingJobStatus)
async def cancel_job(job_id: str, runner: EmbeddingJobRunner = Depends(get_job_runner)) -> EmbeddingJobStatus:
    try:
        return runner.cancel(job_id)
    except RetrievalError as exc:
        raise to_http_error(exc) from exc


@router.delete("", response_model=ClearEmbeddingsResponse)
async def clear_embeddings(
    provider: Optional[str] = Query(default=None),
    service: RetrievalService = Depends(get_retrieval_service),
) -> ClearEmbeddingsResponse:
    try:
        return await service.clear_all(provider)
    except RetrievalError as exc:
        raise to_http_error(exc) from exc
