"""Pattern mining across a window of the timeline.

Classes:
    PatternService: Builds category patterns, similarity clusters, temporal clusters and era transitions.

Functions:
    detect_category_patterns(events, window_start, window_end, config): Frequency and trend per category.
    detect_similarity_clusters(events, vectors, config): Union-find grouping over high-similarity pairs.
    detect_temporal_clusters(events, config): Greedy packing of events that happen close together.
    detect_era_transitions(events, eras, window_start, window_end, config): Category-mix shifts between adjacent eras.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from datetime import date
from typing import Mapping, Optional, Sequence

import numpy as np

from timeline_engine.core.config import RetrievalConfig
from timeline_engine.schemas import (
    CategoryPattern,
    EraTransition,
    EventCluster,
    PatternReport,
    TemporalCluster,
)
from timeline_engine.services.embedding_store import EmbeddingStore
from timeline_engine.services.event_store import EraRecord, EventRecord, EventStore
from timeline_engine.services.openai_client import OpenAIService
from timeline_engine.services.vector_math import pairwise_block_similarity

_LOGGER = logging.getLogger(__name__)

_CLUSTER_BLOCK_ROWS = 256
_DAYS_PER_MONTH = 30


def _dominant_category(events: Sequence[EventRecord]) -> Optional[str]:
    counts = Counter(event.category for event in events)
    if not counts:
        return None
    return sorted(counts.items(), key=lambda item: (-item[1], item[0]))[0][0]


def _pattern_order(count: int, earliest: date) -> tuple[int, int]:
    return (-count, earliest.toordinal())


def _trend(dates: Sequence[date], window_start: date, window_end: date, config: RetrievalConfig) -> str:
    if len(dates) < 2:
        return "stable"
    total_days = (window_end - window_start).days + 1
    buckets = config.trend_subwindows
    width = total_days / buckets
    counts = np.zeros(buckets, dtype=np.float64)
    for value in dates:
        index = min(int((value - window_start).days / width), buckets - 1)
        counts[max(index, 0)] += 1
    # a slope needs events spread over at least two sub-windows
    if np.count_nonzero(counts) < 2:
        return "stable"
    mean = counts.mean()
    positions = np.arange(buckets, dtype=np.float64)
    slope = float(np.polyfit(positions, counts, 1)[0])
    relative = slope / mean
    if abs(relative) < config.trend_noise_threshold:
        return "stable"
    return "increasing" if relative > 0 else "decreasing"


def _common_tags(events: Sequence[EventRecord], limit: int = 3) -> list[str]:
    counts: Counter[str] = Counter()
    display: dict[str, str] = {}
    for event in events:
        for name in event.tags:
            key = name.casefold()
            counts[key] += 1
            display.setdefault(key, name)
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [display[key] for key, count in ranked[:limit] if count >= 2]


def detect_category_patterns(
    events: Sequence[EventRecord],
    window_start: date,
    window_end: date,
    config: RetrievalConfig,
) -> list[CategoryPattern]:
    excluded = {name.lower() for name in config.excluded_pattern_categories}
    grouped: dict[str, list[EventRecord]] = defaultdict(list)
    for event in events:
        if event.category.lower() in excluded:
            continue
        grouped[event.category].append(event)

    patterns: list[CategoryPattern] = []
    for category, members in grouped.items():
        dates = sorted(event.start_date for event in members)
        first, last = dates[0], dates[-1]
        trend = _trend(dates, window_start, window_end, config)
        if len(members) < config.category_min_support and trend == "stable":
            continue
        active_days = (last - first).days + 1
        frequency = round(len(members) / max(active_days / _DAYS_PER_MONTH, 1.0), 3)
        description = (
            f"{len(members)} {category} events between {first.isoformat()} and {last.isoformat()}, "
            f"about {frequency:g} per month"
        )
        if trend != "stable":
            description += f", {trend} over time"
        patterns.append(
            CategoryPattern(
                category=category,
                event_count=len(members),
                first_date=first,
                last_date=last,
                frequency=frequency,
                trend=trend,
                common_tags=_common_tags(members),
                description=description,
            )
        )
    patterns.sort(key=lambda item: _pattern_order(item.event_count, item.first_date))
    return patterns


class _UnionFind:
    def __init__(self, size: int) -> None:
        self.parent = list(range(size))
        self.rank = [0] * size

    def find(self, node: int) -> int:
        parent = self.parent
        while parent[node] != node:
            parent[node] = parent[parent[node]]
            node = parent[node]
        return node

    def union(self, a: int, b: int) -> bool:
        root_a = self.find(a)
        root_b = self.find(b)
        if root_a == root_b:
            return False
        if self.rank[root_a] < self.rank[root_b]:
            self.parent[root_a] = root_b
        elif self.rank[root_a] > self.rank[root_b]:
            self.parent[root_b] = root_a
        else:
            self.parent[root_b] = root_a
            self.rank[root_a] += 1
        return True


def detect_similarity_clusters(
    events: Sequence[EventRecord],
    vectors: Mapping[str, np.ndarray],
    config: RetrievalConfig,
    *,
    block_rows: int = _CLUSTER_BLOCK_ROWS,
) -> list[EventCluster]:
    """Group events whose pairwise similarity exceeds ``cluster_threshold``, transitively.

    The similarity matrix is never materialised whole; rows are compared in blocks so memory
    stays proportional to ``block_rows * n``.
    """

    members = [event for event in events if event.event_id in vectors]
    size = len(members)
    if size < config.min_cluster_size:
        return []

    matrix = np.vstack([np.asarray(vectors[event.event_id], dtype=np.float64) for event in members])
    forest = _UnionFind(size)
    for start in range(0, size, block_rows):
        stop = min(start + block_rows, size)
        block = pairwise_block_similarity(matrix[start:stop], matrix)
        rows, cols = np.nonzero(block > config.cluster_threshold)
        for row, col in zip(rows.tolist(), cols.tolist()):
            global_row = start + row
            if col > global_row:
                forest.union(global_row, col)

    groups: dict[int, list[int]] = defaultdict(list)
    for index in range(size):
        groups[forest.find(index)].append(index)

    clusters: list[EventCluster] = []
    for indices in groups.values():
        if len(indices) < config.min_cluster_size:
            continue
        cluster_events = [members[index] for index in indices]
        sub = pairwise_block_similarity(matrix[indices], matrix[indices])
        upper = sub[np.triu_indices(len(indices), k=1)]
        mean_similarity = round(float(upper.mean()), 6) if upper.size else 1.0
        theme = _dominant_category(cluster_events)
        start_date = min(event.start_date for event in cluster_events)
        end_date = max(event.start_date for event in cluster_events)
        clusters.append(
            EventCluster(
                event_ids=sorted(event.event_id for event in cluster_events),
                event_count=len(cluster_events),
                start_date=start_date,
                end_date=end_date,
                theme=theme,
                mean_similarity=mean_similarity,
                description=(
                    f"{len(cluster_events)} closely related {theme or 'mixed'} events "
                    f"from {start_date.isoformat()} to {end_date.isoformat()}"
                ),
            )
        )
    clusters.sort(key=lambda item: _pattern_order(item.event_count, item.start_date))
    return clusters


def detect_temporal_clusters(events: Sequence[EventRecord], config: RetrievalConfig) -> list[TemporalCluster]:
    ordered = sorted(events, key=lambda event: (event.start_date, event.event_id))
    window = config.temporal_cluster_window_days
    groups: list[list[EventRecord]] = []
    current: list[EventRecord] = []
    for event in ordered:
        if current and (event.start_date - current[0].start_date).days > window:
            groups.append(current)
            current = []
        current.append(event)
    if current:
        groups.append(current)

    clusters: list[TemporalCluster] = []
    for group in groups:
        if len(group) < config.temporal_cluster_min_events:
            continue
        theme = _dominant_category(group)
        start_date = group[0].start_date
        end_date = group[-1].start_date
        clusters.append(
            TemporalCluster(
                event_ids=[event.event_id for event in group],
                event_count=len(group),
                start_date=start_date,
                end_date=end_date,
                theme=theme,
                description=(
                    f"A busy stretch of {len(group)} events between {start_date.isoformat()} "
                    f"and {end_date.isoformat()}, mostly {theme}"
                ),
            )
        )
    clusters.sort(key=lambda item: _pattern_order(item.event_count, item.start_date))
    return clusters


def _category_mix(events: Sequence[EventRecord]) -> dict[str, float]:
    counts = Counter(event.category for event in events)
    total = sum(counts.values())
    return {category: count / total for category, count in counts.items()}


def _total_variation(left: Mapping[str, float], right: Mapping[str, float]) -> float:
    keys = set(left) | set(right)
    return 0.5 * sum(abs(left.get(key, 0.0) - right.get(key, 0.0)) for key in keys)


def detect_era_transitions(
    events: Sequence[EventRecord],
    eras: Sequence[EraRecord],
    window_start: date,
    window_end: date,
    config: RetrievalConfig,
) -> list[EraTransition]:
    ordered = sorted(eras, key=lambda era: (era.start_date, era.era_id))
    by_era: dict[str, list[EventRecord]] = defaultdict(list)
    for event in events:
        if event.era_id:
            by_era[event.era_id].append(event)

    def overlaps(index: int) -> bool:
        era = ordered[index]
        era_end = era.end_date
        if era_end is None and index + 1 < len(ordered):
            era_end = ordered[index + 1].start_date
        return era.start_date <= window_end and (era_end is None or era_end >= window_start)

    transitions: list[EraTransition] = []
    for index in range(len(ordered) - 1):
        previous, following = ordered[index], ordered[index + 1]
        if not (overlaps(index) and overlaps(index + 1)):
            continue
        before = by_era.get(previous.era_id, [])
        after = by_era.get(following.era_id, [])
        if not before or not after:
            continue
        from_dominant = _dominant_category(before)
        to_dominant = _dominant_category(after)
        shift = round(_total_variation(_category_mix(before), _category_mix(after)), 6)
        if from_dominant == to_dominant and shift < config.era_shift_threshold:
            continue
        if from_dominant != to_dominant:
            description = (
                f"Moving from {previous.name} to {following.name}, life shifted from "
                f"{from_dominant} towards {to_dominant}"
            )
        else:
            description = (
                f"Moving from {previous.name} to {following.name}, the balance of events changed "
                f"while {to_dominant} stayed the main focus"
            )
        transitions.append(
            EraTransition(
                from_era_id=previous.era_id,
                to_era_id=following.era_id,
                from_era_name=previous.name,
                to_era_name=following.name,
                transition_date=following.start_date,
                from_dominant_category=from_dominant,
                to_dominant_category=to_dominant,
                shift_score=shift,
                event_count=len(before) + len(after),
                description=description,
            )
        )
    transitions.sort(key=lambda item: _pattern_order(item.event_count, item.transition_date))
    return transitions


class PatternService:
    def __init__(
        self,
        event_store: EventStore,
        embedding_store: EmbeddingStore,
        provider_name: str,
        config: RetrievalConfig,
        *,
        narrator: OpenAIService | None = None,
    ) -> None:
        self._events = event_store
        self._embeddings = embedding_store
        self._provider = provider_name
        self._config = config
        self._narrator = narrator

    async def detect_patterns(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> PatternReport:
        events = await self._events.list_events(start_date, end_date)
        report = PatternReport(start_date=start_date, end_date=end_date)
        if not events:
            return report

        window_start = start_date or min(event.start_date for event in events)
        window_end = end_date or max(event.start_date for event in events)

        snapshot = await self._embeddings.all_for_provider(self._provider)
        wanted = {event.event_id for event in events}
        vectors = snapshot.as_mapping(wanted)

        report.category_patterns = detect_category_patterns(events, window_start, window_end, self._config)
        report.clusters = detect_similarity_clusters(events, vectors, self._config)
        report.temporal_clusters = detect_temporal_clusters(events, self._config)
        report.era_transitions = detect_era_transitions(
            events, await self._events.list_eras(), window_start, window_end, self._config
        )
        _LOGGER.debug(
            "Detected %s category patterns, %s clusters, %s temporal clusters, %s era transitions",
            len(report.category_patterns),
            len(report.clusters),
            len(report.temporal_clusters),
            len(report.era_transitions),
        )

        if self._narrator is not None and self._narrator.is_configured:
            for items in (
                report.category_patterns,
                report.clusters,
                report.temporal_clusters,
                report.era_transitions,
            ):
                await self._narrate(items)
        return report

    async def _narrate(self, items: list) -> None:
        if not items:
            return
        rewritten = await self._narrator.narrate_patterns([item.description for item in items])
        for item, text in zip(items, rewritten):
            if text:
                item.description = text
