"""Timeline-wide endpoints: pattern detection, full cross-reference analysis and text tagging."""

from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query

from timeline_engine.api.deps import get_retrieval_service, to_http_error
from timeline_engine.core.errors import RetrievalError
from timeline_engine.schemas import (
    PatternReport,
    TagSuggestion,
    TagSuggestionTextRequest,
    TimelineAnalysisResult,
)
from timeline_engine.services import RetrievalService

router = APIRouter(tags=["timeline"])


@router.get("/patterns", response_model=PatternReport)
async def detect_patterns(
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    service: RetrievalService = Depends(get_retrieval_service),
) -> PatternReport:
    try:
        return await service.detect_patterns(start_date, end_date)
    except RetrievalError as exc:
        raise to_http_error(exc) from exc


@router.post("/timeline/cross-references", response_model=TimelineAnalysisResult)
async def analyze_full_timeline(
    service: RetrievalService = Depends(get_retrieval_service),
) -> TimelineAnalysisResult:
    try:
        return await service.analyze_full_timeline()
    except RetrievalError as exc:
        raise to_http_error(exc) from exc


@router.post("/tag-suggestions", response_model=list[TagSuggestion])
async def suggest_tags_for_text(
    payload: TagSuggestionTextRequest,
    service: RetrievalService = Depends(get_retrieval_service),
) -> list[TagSuggestion]:
    try:
        return await service.suggest_tags_for_text(payload.title, payload.description, payload.limit)
    except RetrievalError as exc:
        raise to_http_error(exc) from exc
