"""Tag suggestions by analogy to similar events.

Functions:
    aggregate_tag_scores(neighbors, tags_by_event, exclude, limit): Similarity-weighted tag ranking.

Classes:
    TagService: Suggests tags for stored events or for free text.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable, Mapping, Optional, Sequence

from timeline_engine.core.config import RetrievalConfig
from timeline_engine.core.errors import NotFound, ValidationError
from timeline_engine.schemas import TagSuggestion
from timeline_engine.services.embedding_store import EmbeddingStore
from timeline_engine.services.event_store import EventStore
from timeline_engine.services.providers import EmbeddingProvider, embed_with_timeout
from timeline_engine.services.similarity import Neighbor, SimilarityCandidate, find_k_nearest_neighbors
from timeline_engine.services.vector_math import ensure_finite
from timeline_engine.utils.text import build_event_text, normalise_entity_name


def aggregate_tag_scores(
    neighbors: Sequence[Neighbor],
    tags_by_event: Mapping[str, Iterable[str]],
    *,
    exclude: Iterable[str] = (),
    limit: int,
) -> list[TagSuggestion]:
    """Score each tag by the summed similarity of the neighbours carrying it.

    Confidence is the tag's score divided by the summed similarity of all neighbours. Tags whose
    case-insensitive key is in ``exclude`` are dropped. Ties on score are ordered by tag name.
    """

    if limit <= 0 or not neighbors:
        return []
    excluded = {normalise_entity_name(name)[1] for name in exclude}
    total = sum(max(neighbor.score, 0.0) for neighbor in neighbors)

    scores: dict[str, float] = defaultdict(float)
    sources: dict[str, list[str]] = defaultdict(list)
    display: dict[str, str] = {}
    for neighbor in neighbors:
        weight = max(neighbor.score, 0.0)
        seen: set[str] = set()
        for name in tags_by_event.get(neighbor.event_id, ()):
            label, key = normalise_entity_name(name)
            if not key or key in excluded or key in seen:
                continue
            seen.add(key)
            display.setdefault(key, label)
            scores[key] += weight
            sources[key].append(neighbor.event_id)

    ranked = sorted(scores.items(), key=lambda item: (-item[1], display[item[0]].casefold()))
    suggestions: list[TagSuggestion] = []
    for key, score in ranked[:limit]:
        confidence = min(1.0, score / total) if total > 0 else 0.0
        suggestions.append(
            TagSuggestion(
                tag_name=display[key],
                confidence=round(confidence, 6),
                score=round(score, 6),
                source_event_ids=sources[key],
            )
        )
    return suggestions


class TagService:
    def __init__(
        self,
        event_store: EventStore,
        embedding_store: EmbeddingStore,
        provider: EmbeddingProvider,
        config: RetrievalConfig,
        *,
        timeout: float | None = None,
    ) -> None:
        self._events = event_store
        self._embeddings = embedding_store
        self._provider = provider
        self._config = config
        self._timeout = timeout

    def _resolve_limit(self, max_suggestions: Optional[int]) -> int:
        limit = self._config.tag_limit if max_suggestions is None else max_suggestions
        if limit < 0:
            raise ValidationError("max_suggestions must not be negative")
        return limit

    async def _candidates(self) -> tuple[list[SimilarityCandidate], dict[str, tuple[str, ...]]]:
        events = await self._events.list_events()
        vectors = (await self._embeddings.all_for_provider(self._provider.name)).as_mapping()
        candidates = [
            SimilarityCandidate(event_id=event.event_id, vector=vectors[event.event_id], start_date=event.start_date)
            for event in events
            if event.event_id in vectors
        ]
        return candidates, {event.event_id: event.tags for event in events}

    async def suggest_tags(self, event_id: str, max_suggestions: Optional[int] = None) -> list[TagSuggestion]:
        limit = self._resolve_limit(max_suggestions)
        current_tags = await self._events.get_event_tags(event_id)
        stored = await self._embeddings.get(event_id, self._provider.name)
        if stored is None:
            raise NotFound(f"No embedding for source event {event_id}")

        candidates, tags_by_event = await self._candidates()
        neighbors = find_k_nearest_neighbors(
            stored.vector,
            candidates,
            k=self._config.tag_neighbor_k,
            threshold=self._config.tag_min_similarity,
            exclude_event_id=event_id,
        )
        return aggregate_tag_scores(neighbors, tags_by_event, exclude=current_tags, limit=limit)

    async def suggest_tags_for_text(
        self,
        title: str,
        description: Optional[str] = None,
        max_suggestions: Optional[int] = None,
    ) -> list[TagSuggestion]:
        limit = self._resolve_limit(max_suggestions)
        text = build_event_text((title, description))
        if not text:
            raise ValidationError("Cannot suggest tags for empty text")
        vector = ensure_finite(await embed_with_timeout(self._provider, text, self._timeout))

        candidates, tags_by_event = await self._candidates()
        neighbors = find_k_nearest_neighbors(
            vector,
            candidates,
            k=self._config.tag_neighbor_k,
            threshold=self._config.tag_min_similarity,
        )
        return aggregate_tag_scores(neighbors, tags_by_event, limit=limit)
