"""In-process entry point for every retrieval operation.

``RetrievalService`` binds a database session, the active embedding provider and a
``RetrievalConfig`` and delegates to the specialised services. The HTTP routes are thin wrappers
around it.
"""

from __future__ import annotations

from datetime import date
import logging
from typing import Any, Optional

from sqlmodel.ext.asyncio.session import AsyncSession

from timeline_engine.core.config import RetrievalConfig, Settings, get_settings, resolve_config
from timeline_engine.core.errors import NotFound, ValidationError
from timeline_engine.schemas import (
    BatchEmbeddingResult,
    ClearEmbeddingsResponse,
    CrossReferenceReport,
    CrossReferenceResult,
    EmbeddingOutcome,
    PatternReport,
    SimilarityResult,
    TagSuggestion,
    TimelineAnalysisResult,
)
from timeline_engine.services.cross_reference import CrossReferenceService
from timeline_engine.services.embedding_store import EmbeddingStore, ProviderLocks
from timeline_engine.services.embeddings import EmbeddingService
from timeline_engine.services.event_store import EventStore, SQLEventStore
from timeline_engine.services.openai_client import OpenAIService
from timeline_engine.services.patterns import PatternService
from timeline_engine.services.providers import EmbeddingProvider
from timeline_engine.services.similarity import SimilarityCandidate, find_k_nearest_neighbors
from timeline_engine.services.tags import TagService

_LOGGER = logging.getLogger(__name__)


class RetrievalService:
    def __init__(
        self,
        session: AsyncSession,
        provider: EmbeddingProvider,
        *,
        config: RetrievalConfig | None = None,
        settings: Settings | None = None,
        event_store: EventStore | None = None,
        locks: ProviderLocks | None = None,
        narrator: OpenAIService | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._session = session
        self._provider = provider
        self._locks = locks
        self._narrator = narrator
        self.config = config or RetrievalConfig.from_settings(self._settings)
        self.event_store = event_store or SQLEventStore(session)
        self.embedding_store = EmbeddingStore(
            session,
            {provider.name: provider.dimension},
            models={provider.name: provider.model_name},
            locks=locks,
        )

        self._embedding_service = EmbeddingService(
            self.event_store,
            self.embedding_store,
            provider,
            timeout=self._settings.embedding_timeout_seconds,
            max_chars=self._settings.embedding_max_chars,
            batch_delay=self._settings.embedding_batch_delay_seconds,
            locks=locks,
        )
        self._cross_references = CrossReferenceService(
            session, self.event_store, self.embedding_store, provider.name, self.config
        )
        self._patterns = PatternService(
            self.event_store, self.embedding_store, provider.name, self.config, narrator=narrator
        )
        self._tags = TagService(
            self.event_store,
            self.embedding_store,
            provider,
            self.config,
            timeout=self._settings.embedding_timeout_seconds,
        )

    @property
    def provider(self) -> EmbeddingProvider:
        return self._provider

    @property
    def embedding_service(self) -> EmbeddingService:
        return self._embedding_service

    def with_config(self, overrides: dict[str, Any] | None) -> "RetrievalService":
        """Return a service sharing this session and provider but using adjusted thresholds."""

        if not overrides:
            return self
        return RetrievalService(
            self._session,
            self._provider,
            config=resolve_config(self.config, overrides),
            settings=self._settings,
            event_store=self.event_store,
            locks=self._locks,
            narrator=self._narrator,
        )

    async def generate_for_event(self, event_id: str) -> EmbeddingOutcome:
        return await self._embedding_service.generate_for_event(event_id)

    async def generate_all(self, force: bool = False) -> BatchEmbeddingResult:
        return await self._embedding_service.generate_all(force=force)

    async def find_similar(
        self,
        event_id: str,
        threshold: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> list[SimilarityResult]:
        threshold = self.config.similarity_threshold if threshold is None else threshold
        limit = self.config.similar_limit if limit is None else limit
        if not -1.0 <= threshold <= 1.0:
            raise ValidationError("threshold must be between -1 and 1")
        if limit < 0:
            raise ValidationError("limit must not be negative")

        await self.event_store.get_event_by_id(event_id)
        stored = await self.embedding_store.get(event_id, self._provider.name)
        if stored is None:
            raise NotFound(f"No embedding for source event {event_id}")

        events = {event.event_id: event for event in await self.event_store.list_events()}
        snapshot = await self.embedding_store.all_for_provider(self._provider.name)
        candidates = [
            SimilarityCandidate(event_id=candidate_id, vector=vector, start_date=events[candidate_id].start_date)
            for candidate_id, vector in snapshot
            if candidate_id in events
        ]
        neighbors = find_k_nearest_neighbors(stored.vector, candidates, limit, threshold, exclude_event_id=event_id)
        return [
            SimilarityResult(
                candidate_event_id=neighbor.event_id,
                similarity_score=round(neighbor.score, 6),
                rank=neighbor.rank,
                title=events[neighbor.event_id].title,
                start_date=events[neighbor.event_id].start_date,
                category=events[neighbor.event_id].category,
            )
            for neighbor in neighbors
        ]

    async def detect_cross_references(self, event_id: str) -> CrossReferenceReport:
        return await self._cross_references.detect_cross_references(event_id)

    async def get_cross_references(self, event_id: str) -> list[CrossReferenceResult]:
        return await self._cross_references.get_cross_references(event_id)

    async def analyze_full_timeline(self) -> TimelineAnalysisResult:
        return await self._cross_references.analyze_full_timeline()

    async def detect_patterns(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> PatternReport:
        if start_date and end_date and start_date > end_date:
            raise ValidationError("start_date must not be after end_date")
        return await self._patterns.detect_patterns(start_date, end_date)

    async def suggest_tags(self, event_id: str, limit: Optional[int] = None) -> list[TagSuggestion]:
        return await self._tags.suggest_tags(event_id, limit)

    async def suggest_tags_for_text(
        self,
        title: str,
        description: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[TagSuggestion]:
        return await self._tags.suggest_tags_for_text(title, description, limit)

    async def clear_all(self, provider: Optional[str] = None) -> ClearEmbeddingsResponse:
        removed = await self.embedding_store.clear_all(provider)
        return ClearEmbeddingsResponse(success=True, removed_count=removed)

    async def delete_embedding(self, event_id: str) -> int:
        await self.event_store.get_event_by_id(event_id)
        removed = await self.embedding_store.delete(event_id)
        _LOGGER.info("Deleted %s embeddings for event %s", removed, event_id)
        return removed
