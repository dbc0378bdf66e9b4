from datetime import date

import numpy as np
import pytest

from timeline_engine.services.similarity import SimilarityCandidate, find_k_nearest_neighbors

from conftest import basis, vector_with_similarity


def _candidate(event_id: str, similarity: float, day: date | None = None) -> SimilarityCandidate:
    return SimilarityCandidate(event_id=event_id, vector=np.array(vector_with_similarity(similarity)), start_date=day)


def test_results_are_ranked_and_thresholded():
    candidates = [
        _candidate("a", 0.95, date(2020, 1, 1)),
        _candidate("b", 0.40, date(2020, 1, 1)),
        _candidate("c", 0.80, date(2020, 1, 1)),
        _candidate("d", 0.76, date(2020, 1, 1)),
    ]
    results = find_k_nearest_neighbors(basis(), candidates, k=10, threshold=0.75)
    assert [item.event_id for item in results] == ["a", "c", "d"]
    assert [item.rank for item in results] == [1, 2, 3]
    scores = [item.score for item in results]
    assert scores == sorted(scores, reverse=True)
    assert all(score >= 0.75 for score in scores)


def test_ties_prefer_newer_events_then_lower_ids():
    same = vector_with_similarity(0.9)
    candidates = [
        SimilarityCandidate("old", np.array(same), date(2010, 5, 1)),
        SimilarityCandidate("new-b", np.array(same), date(2022, 5, 1)),
        SimilarityCandidate("new-a", np.array(same), date(2022, 5, 1)),
    ]
    results = find_k_nearest_neighbors(basis(), candidates, k=3, threshold=0.0)
    assert [item.event_id for item in results] == ["new-a", "new-b", "old"]


def test_query_event_is_excluded_and_k_truncates():
    candidates = [_candidate("self", 1.0), _candidate("x", 0.9), _candidate("y", 0.85)]
    results = find_k_nearest_neighbors(basis(), candidates, k=1, threshold=0.5, exclude_event_id="self")
    assert [item.event_id for item in results] == ["x"]


@pytest.mark.parametrize("k", [0, -3])
def test_non_positive_k_returns_empty(k):
    assert find_k_nearest_neighbors(basis(), [_candidate("x", 0.9)], k=k, threshold=0.0) == []


def test_empty_candidates_returns_empty():
    assert find_k_nearest_neighbors(basis(), [], k=5, threshold=0.0) == []


def test_ranking_invariant_on_random_vectors():
    rng = np.random.default_rng(3)
    query = rng.normal(size=8)
    candidates = [
        SimilarityCandidate(f"e{idx}", rng.normal(size=8), date(2000 + idx % 20, 1, 1)) for idx in range(200)
    ]
    results = find_k_nearest_neighbors(query, candidates, k=25, threshold=0.1)
    scores = [item.score for item in results]
    assert len(results) <= 25
    assert all(left >= right for left, right in zip(scores, scores[1:]))
    assert all(score >= 0.1 for score in scores)
