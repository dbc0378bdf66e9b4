"""Per-event retrieval endpoints: similar events, cross-references and tag suggestions."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from timeline_engine.api.deps import get_retrieval_service, to_http_error
from timeline_engine.core.errors import RetrievalError
from timeline_engine.schemas import (
    CrossReferenceReport,
    CrossReferenceResult,
    SimilarityResult,
    TagSuggestion,
)
from timeline_engine.services import RetrievalService

router = APIRouter(prefix="/events", tags=["events"])


@router.get("/{event_id}/similar", response_model=list[SimilarityResult])
async def find_similar(
    event_id: str,
    threshold: Optional[float] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    service: RetrievalService = Depends(get_retrieval_service),
) -> list[SimilarityResult]:
    try:
        return await service.find_similar(event_id, threshold=threshold, limit=limit)
    except RetrievalError as exc:
        raise to_http_error(exc) from exc


@router.post("/{event_id}/cross-references", response_model=CrossReferenceReport)
async def detect_cross_references(
    event_id: str,
    service: RetrievalService = Depends(get_retrieval_service),
) -> CrossReferenceReport:
    try:
        return await service.detect_cross_references(event_id)
    except RetrievalError as exc:
        raise to_http_error(exc) from exc


@router.get("/{event_id}/cross-references", response_model=list[CrossReferenceResult])
async def get_cross_references(
    event_id: str,
    service: RetrievalService = Depends(get_retrieval_service),
) -> list[CrossReferenceResult]:
    try:
        return await service.get_cross_references(event_id)
    except RetrievalError as exc:
        raise to_http_error(exc) from exc


@router.get("/{event_id}/tag-suggestions", response_model=list[TagSuggestion])
async def suggest_tags(
    event_id: str,
    limit: Optional[int] = Query(default=None),
    service: RetrievalService = Depends(get_retrieval_service),
) -> list[TagSuggestion]:
    try:
        return await service.suggest_tags(event_id, limit)
    except RetrievalError as exc:
        raise to_http_error(exc) from exc
