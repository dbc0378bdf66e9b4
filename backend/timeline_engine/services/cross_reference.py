"""Cross-reference classification and persistence.

Classes:
    RelationshipSignal: One typed relationship fired by ``classify_pair``.
    CrossReferenceService: Detects, stores and reads cross-references for events.

Functions:
    classify_pair(a, b, similarity, config): Pure rule set producing zero or more signals for a pair.
    canonical_pair(a, b): Lexically ordered id pair used as the storage key.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import numpy as np
from sqlalchemy import delete, or_
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from timeline_engine.core.config import RetrievalConfig
from timeline_engine.core.errors import NotFound, RetrievalError
from timeline_engine.models import CrossReference
from timeline_engine.schemas import (
    CrossReferenceReport,
    CrossReferenceResult,
    TimelineAnalysisResult,
    TimelineEventError,
)
from timeline_engine.services.embedding_store import EmbeddingStore
from timeline_engine.services.event_store import EventRecord, EventStore
from timeline_engine.services.vector_math import batch_cosine_similarity

_LOGGER = logging.getLogger(__name__)

_CONFIDENCE_DIGITS = 6


@dataclass(slots=True)
class RelationshipSignal:
    relationship_type: str
    confidence: float
    earlier_event_id: str
    later_event_id: str
    details: dict[str, Any] = field(default_factory=dict)


def canonical_pair(first_id: str, second_id: str) -> tuple[str, str]:
    return (first_id, second_id) if first_id <= second_id else (second_id, first_id)


def _closeness(day_gap: int, scale: float) -> float:
    if scale <= 0:
        return 0.0
    return math.exp(-day_gap / scale)


def _clamp(value: float) -> float:
    return round(min(1.0, max(0.0, value)), _CONFIDENCE_DIGITS)


def _entity_weight(shared: int) -> float:
    return 0.6 + 0.4 * min(shared, 3) / 3


def classify_pair(
    a: EventRecord,
    b: EventRecord,
    similarity: float,
    config: RetrievalConfig,
) -> list[RelationshipSignal]:
    """Apply the relationship rules to one pair of events.

    The pair is first put in chronological order (ties by event id), so swapping ``a`` and ``b``
    yields the same signals.
    """

    earlier, later = sorted((a, b), key=lambda event: (event.start_date, event.event_id))
    gap = (later.start_date - earlier.start_date).days
    sim = float(similarity)
    same_category = earlier.category == later.category
    shared_tags = sorted(earlier.tag_keys & later.tag_keys)
    shared_people = sorted(earlier.person_keys & later.person_keys)
    shared_locations = sorted(earlier.location_keys & later.location_keys)

    base_details = {
        "similarity": round(sim, _CONFIDENCE_DIGITS),
        "day_gap": gap,
        "direction": {"from": earlier.event_id, "to": later.event_id},
        "same_category": same_category,
        "shared_tags": shared_tags,
        "shared_people": shared_people,
        "shared_locations": shared_locations,
    }

    candidates: list[tuple[str, float, dict[str, Any]]] = []

    if sim >= config.causal_threshold and 0 < gap <= config.causal_window_days and not same_category:
        closeness = _closeness(gap, config.causal_window_days / 4)
        candidates.append(
            ("causal", 0.7 * sim + 0.3 * closeness, {"similarity_weight": 0.7, "closeness": round(closeness, 6)})
        )

    if sim >= config.thematic_threshold and (same_category or shared_tags):
        tag_bonus = 0.1 * min(len(shared_tags), 3) / 3
        candidates.append(
            (
                "thematic",
                0.75 * sim + (0.15 if same_category else 0.0) + tag_bonus,
                {"similarity_weight": 0.75, "tag_bonus": round(tag_bonus, 6)},
            )
        )

    if gap <= config.temporal_window_days:
        closeness = _closeness(gap, config.temporal_decay_days)
        candidates.append(("temporal", closeness, {"closeness": round(closeness, 6)}))

    if shared_people:
        weight = _entity_weight(len(shared_people))
        candidates.append(("person", max(sim, 0.0) * weight, {"entity_weight": round(weight, 6)}))

    if shared_locations:
        weight = _entity_weight(len(shared_locations))
        candidates.append(("location", max(sim, 0.0) * weight, {"entity_weight": round(weight, 6)}))

    same_anchor = (
        earlier.primary_person is not None and earlier.primary_person == later.primary_person
    ) or (earlier.primary_location is not None and earlier.primary_location == later.primary_location)
    if (
        same_category
        and same_anchor
        and 0 < gap <= config.follow_up_window_days
        and sim >= config.follow_up_threshold
    ):
        closeness = _closeness(gap, config.follow_up_window_days / 3)
        candidates.append(
            ("follow-up", 0.6 * sim + 0.4 * closeness, {"similarity_weight": 0.6, "closeness": round(closeness, 6)})
        )

    signals: list[RelationshipSignal] = []
    for relationship_type, raw_confidence, weights in candidates:
        confidence = _clamp(raw_confidence)
        if confidence < config.min_confidence:
            continue
        signals.append(
            RelationshipSignal(
                relationship_type=relationship_type,
                confidence=confidence,
                earlier_event_id=earlier.event_id,
                later_event_id=later.event_id,
                details={**base_details, "signal": weights},
            )
        )
    return signals


def _to_result(row: CrossReference) -> CrossReferenceResult:
    return CrossReferenceResult(
        reference_id=row.reference_id,
        event_id_1=row.event_id_1,
        event_id_2=row.event_id_2,
        relationship_type=row.relationship_type,
        confidence_score=row.confidence_score,
        analysis_details=dict(row.analysis_details or {}),
        created_at=row.created_at,
    )


def _result_order(result: CrossReferenceResult) -> tuple:
    return (-result.confidence_score, result.relationship_type, result.event_id_1, result.event_id_2)


class CrossReferenceService:
    def __init__(
        self,
        session: AsyncSession,
        event_store: EventStore,
        embedding_store: EmbeddingStore,
        provider_name: str,
        config: RetrievalConfig,
    ) -> None:
        self._session = session
        self._events = event_store
        self._embeddings = embedding_store
        self._provider = provider_name
        self._config = config

    async def detect_cross_references(self, event_id: str) -> CrossReferenceReport:
        source = await self._events.get_event_by_id(event_id)
        source_embedding = await self._embeddings.get(event_id, self._provider)
        if source_embedding is None:
            raise NotFound(f"No embedding for source event {event_id}")

        events = await self._events.list_events()
        snapshot = await self._embeddings.all_for_provider(self._provider)
        vectors = snapshot.as_mapping()

        others: list[EventRecord] = []
        skipped: list[str] = []
        for event in events:
            if event.event_id == event_id:
                continue
            if event.event_id in vectors:
                others.append(event)
            else:
                skipped.append(event.event_id)

        signals: list[RelationshipSignal] = []
        if others:
            matrix = np.vstack([vectors[event.event_id] for event in others])
            scores = batch_cosine_similarity(source_embedding.vector, matrix)
            for event, score in zip(others, scores):
                signals.extend(classify_pair(source, event, float(score), self._config))

        rows = await self._replace_rows(event_id, signals)
        results = sorted((_to_result(row) for row in rows), key=_result_order)
        if skipped:
            _LOGGER.info(
                "Cross-reference detection for %s skipped %s events without embeddings", event_id, len(skipped)
            )
        return CrossReferenceReport(
            event_id=event_id,
            cross_references=results,
            incomplete=bool(skipped),
            skipped_event_ids=sorted(skipped),
        )

    async def _replace_rows(self, event_id: str, signals: Sequence[RelationshipSignal]) -> list[CrossReference]:
        await self._session.execute(
            delete(CrossReference).where(
                or_(CrossReference.event_id_1 == event_id, CrossReference.event_id_2 == event_id)
            )
        )
        rows: list[CrossReference] = []
        for signal in signals:
            first, second = canonical_pair(signal.earlier_event_id, signal.later_event_id)
            row = CrossReference(
                event_id_1=first,
                event_id_2=second,
                relationship_type=signal.relationship_type,
                confidence_score=signal.confidence,
                analysis_details=signal.details,
            )
            self._session.add(row)
            rows.append(row)
        await self._session.commit()
        return rows

    async def get_cross_references(self, event_id: str) -> list[CrossReferenceResult]:
        await self._events.get_event_by_id(event_id)
        statement = select(CrossReference).where(
            or_(CrossReference.event_id_1 == event_id, CrossReference.event_id_2 == event_id)
        )
        rows = (await self._session.exec(statement)).all()
        return sorted((_to_result(row) for row in rows), key=_result_order)

    async def analyze_full_timeline(self, event_ids: Optional[Sequence[str]] = None) -> TimelineAnalysisResult:
        """Re-run detection for every embedded event; one event's failure does not stop the rest."""

        snapshot = await self._embeddings.all_for_provider(self._provider)
        embedded = set(snapshot.event_ids)
        if event_ids is None:
            event_ids = [event.event_id for event in await self._events.list_events()]

        result = TimelineAnalysisResult()
        seen_pairs: set[tuple[str, str, str]] = set()
        for current_id in event_ids:
            if current_id not in embedded:
                result.skipped_count += 1
                continue
            try:
                report = await self.detect_cross_references(current_id)
            except RetrievalError as exc:
                _LOGGER.warning("Cross-reference analysis failed for event %s: %s", current_id, exc)
                result.errors.append(TimelineEventError(event_id=current_id, message=str(exc), kind=exc.kind))
                continue
            result.analyzed_count += 1
            for item in report.cross_references:
                seen_pairs.add((item.event_id_1, item.event_id_2, item.relationship_type))
        result.cross_reference_count = len(seen_pairs)
        return result
