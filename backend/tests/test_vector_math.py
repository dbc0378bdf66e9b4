import numpy as np
import pytest

from timeline_engine.core.errors import DimensionMismatch, ValidationError
from timeline_engine.services.vector_math import (
    batch_cosine_similarity,
    cosine_similarity,
    ensure_finite,
    normalize,
    pairwise_block_similarity,
)
from timeline_engine.utils.text import build_event_text, compute_content_hash, normalise_for_embedding


def test_cosine_similarity_is_symmetric():
    rng = np.random.default_rng(7)
    for _ in range(20):
        a = rng.normal(size=16)
        b = rng.normal(size=16)
        assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a), abs=1e-12)


def test_self_similarity_is_one():
    vector = [0.3, -1.2, 4.5, 0.0, 2.2]
    assert cosine_similarity(vector, vector) == pytest.approx(1.0, abs=1e-12)


def test_zero_norm_returns_zero():
    assert cosine_similarity([0.0, 0.0, 0.0], [1.0, 2.0, 3.0]) == 0.0
    assert cosine_similarity([1.0, 2.0, 3.0], [0.0, 0.0, 0.0]) == 0.0


def test_dimension_mismatch_is_rejected():
    with pytest.raises(DimensionMismatch) as excinfo:
        cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])
    assert excinfo.value.kind == "dimension_mismatch"


def test_normalize_returns_unit_vector_and_keeps_zero_vector():
    unit = normalize([3.0, 4.0])
    assert np.allclose(unit, [0.6, 0.8])
    assert np.linalg.norm(unit) == pytest.approx(1.0)
    assert np.allclose(normalize([0.0, 0.0]), [0.0, 0.0])


def test_batch_similarity_matches_pairwise_and_handles_zero_rows():
    query = np.array([1.0, 0.0, 1.0])
    matrix = np.array([[1.0, 0.0, 1.0], [0.0, 1.0, 0.0], [0.0, 0.0, 0.0], [-1.0, 0.0, -1.0]])
    scores = batch_cosine_similarity(query, matrix)
    assert scores.dtype == np.float64
    assert np.allclose(scores, [1.0, 0.0, 0.0, -1.0])
    for row, score in zip(matrix, scores):
        assert cosine_similarity(query, row) == pytest.approx(score)


def test_batch_similarity_rejects_wrong_width():
    with pytest.raises(DimensionMismatch):
        batch_cosine_similarity([1.0, 0.0], np.ones((2, 3)))


def test_pairwise_block_similarity_is_square_for_same_input():
    rows = np.array([[1.0, 0.0], [0.0, 2.0], [1.0, 1.0]])
    sims = pairwise_block_similarity(rows, rows)
    assert sims.shape == (3, 3)
    assert np.allclose(np.diag(sims), 1.0)
    assert np.allclose(sims, sims.T)


def test_ensure_finite_rejects_nan_and_inf():
    with pytest.raises(ValidationError):
        ensure_finite([1.0, float("nan")])
    with pytest.raises(ValidationError):
        ensure_finite([float("inf"), 0.0])
    assert ensure_finite([1, 2]).dtype == np.float64


def test_normalise_for_embedding_is_platform_stable():
    collapsed_a, normalised_a = normalise_for_embedding("Line one\nLine two")
    collapsed_b, normalised_b = normalise_for_embedding("Line one\r\nLine  two")
    assert collapsed_a == collapsed_b
    assert normalised_a == normalised_b


def test_content_hash_ignores_case_and_whitespace_noise():
    assert compute_content_hash("First Job  at Acme") == compute_content_hash("first job at acme")
    assert compute_content_hash("first job") != compute_content_hash("second job")


def test_build_event_text_skips_empty_parts_and_truncates():
    assert build_event_text(["Title", None, "  ", "Body"]) == "Title\n\nBody"
    assert build_event_text(["abcdef"], max_chars=3) == "abc"
