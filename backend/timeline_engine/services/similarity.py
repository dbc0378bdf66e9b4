"""Exact nearest-neighbour search over stored embeddings.

The search scans every candidate, O(n·d) per query with one matrix product, and is sized for
personal timelines of up to tens of thousands of events. There is no approximate index.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional, Sequence

import numpy as np

from timeline_engine.core.errors import DimensionMismatch
from timeline_engine.services.vector_math import as_vector, batch_cosine_similarity


@dataclass(slots=True)
class SimilarityCandidate:
    event_id: str
    vector: np.ndarray
    start_date: Optional[date] = None


@dataclass(slots=True)
class Neighbor:
    event_id: str
    score: float
    rank: int
    start_date: Optional[date] = None


def _ranking_key(event_id: str, score: float, start_date: Optional[date]):
    # score desc, then newer start date, then event id
    recency = -start_date.toordinal() if start_date is not None else 0
    return (-score, start_date is None, recency, event_id)


def rank_neighbors(
    scored: Iterable[tuple[str, float, Optional[date]]],
    k: int,
    threshold: float,
) -> list[Neighbor]:
    if k <= 0:
        return []
    kept = [item for item in scored if item[1] >= threshold]
    kept.sort(key=lambda item: _ranking_key(*item))
    return [
        Neighbor(event_id=event_id, score=float(score), rank=index + 1, start_date=start_date)
        for index, (event_id, score, start_date) in enumerate(kept[:k])
    ]


def find_k_nearest_neighbors(
    query_vector: Sequence[float] | np.ndarray,
    candidates: Sequence[SimilarityCandidate],
    k: int,
    threshold: float,
    exclude_event_id: Optional[str] = None,
) -> list[Neighbor]:
    """Return up to ``k`` candidates with similarity ``>= threshold``, best first.

    Equal scores are ordered by the more recent ``start_date`` first, then by event id.
    ``k <= 0`` or an empty candidate list yields an empty result.
    """

    if k <= 0:
        return []
    pool = [candidate for candidate in candidates if candidate.event_id != exclude_event_id]
    if not pool:
        return []

    query = as_vector(query_vector)
    for candidate in pool:
        if len(candidate.vector) != query.shape[0]:
            raise DimensionMismatch(query.shape[0], len(candidate.vector))

    matrix = np.vstack([np.asarray(candidate.vector, dtype=np.float64) for candidate in pool])
    scores = batch_cosine_similarity(query, matrix)
    passing = np.nonzero(scores >= threshold)[0]
    scored = [(pool[idx].event_id, float(scores[idx]), pool[idx].start_date) for idx in passing]
    return rank_neighbors(scored, k, threshold)
