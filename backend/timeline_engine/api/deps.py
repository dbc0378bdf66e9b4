"""FastAPI dependencies and error translation shared by the route modules.

Functions:
    get_embedding_provider(): Cached provider selected in settings.
    get_narrator(): Optional OpenAI client used to rewrite pattern descriptions.
    get_retrieval_service(session, provider, narrator): Per-request RetrievalService.
    get_job_runner(provider): Process-wide background job runner for the active provider.
    to_http_error(exc): Map an engine error to an HTTPException.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from fastapi import Depends, HTTPException, status
from sqlmodel.ext.asyncio.session import AsyncSession

from timeline_engine.core.config import get_settings
from timeline_engine.core.errors import (
    Busy,
    DimensionMismatch,
    NotFound,
    ProviderError,
    ProviderNotImplemented,
    ProviderTimeout,
    RateLimited,
    RetrievalError,
    ValidationError,
)
from timeline_engine.db.session import SessionLocal, get_session
from timeline_engine.services import (
    EmbeddingJobRunner,
    EmbeddingProvider,
    OpenAIService,
    RetrievalService,
    build_embedding_provider,
)

_STATUS_BY_ERROR: tuple[tuple[type[RetrievalError], int], ...] = (
    (NotFound, status.HTTP_404_NOT_FOUND),
    (DimensionMismatch, status.HTTP_400_BAD_REQUEST),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (Busy, status.HTTP_409_CONFLICT),
    (ProviderTimeout, status.HTTP_504_GATEWAY_TIMEOUT),
    (ProviderNotImplemented, status.HTTP_501_NOT_IMPLEMENTED),
    (RateLimited, status.HTTP_429_TOO_MANY_REQUESTS),
    (ProviderError, status.HTTP_502_BAD_GATEWAY),
)


def to_http_error(exc: RetrievalError) -> HTTPException:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=code, detail={"kind": exc.kind, "message": str(exc)})
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"kind": exc.kind, "message": str(exc)},
    )


@lru_cache()
def _cached_provider() -> EmbeddingProvider:
    return build_embedding_provider(get_settings())


def get_embedding_provider() -> EmbeddingProvider:
    try:
        return _cached_provider()
    except RetrievalError as exc:
        raise to_http_error(exc) from exc


@lru_cache()
def get_narrator() -> Optional[OpenAIService]:
    settings = get_settings()
    if not settings.enable_pattern_narration:
        return None
    return OpenAIService(settings=settings)


async def get_retrieval_service(
    session: AsyncSession = Depends(get_session),
    provider: EmbeddingProvider = Depends(get_embedding_provider),
    narrator: Optional[OpenAIService] = Depends(get_narrator),
) -> RetrievalService:
    return RetrievalService(session, provider, narrator=narrator)


_runners: dict[str, EmbeddingJobRunner] = {}


def get_job_runner(provider: EmbeddingProvider = Depends(get_embedding_provider)) -> EmbeddingJobRunner:
    runner = _runners.get(provider.name)
    if runner is None:
        runner = EmbeddingJobRunner(
            SessionLocal,
            lambda session: RetrievalService(session, provider).embedding_service,
            provider.name,
        )
        _runners[provider.name] = runner
    return runner
