"""Vector helpers shared by the similarity, pattern and tag services.

Functions:
    as_vector(values): Coerce a sequence into a 1-D float64 array.
    ensure_finite(values): Reject vectors holding NaN or infinite components.
    cosine_similarity(a, b): Cosine similarity with float64 accumulation.
    normalize(values): Scale a vector to unit length.
    batch_cosine_similarity(query, matrix): Cosine similarity of one query against every row.
    pairwise_block_similarity(block, matrix): Cosine similarity of each block row against every row.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from timeline_engine.core.errors import DimensionMismatch, ValidationError

ArrayLike = Sequence[float] | np.ndarray


def as_vector(values: ArrayLike) -> np.ndarray:
    vector = np.asarray(values, dtype=np.float64)
    if vector.ndim != 1:
        raise ValidationError("Embedding vectors must be one-dimensional")
    return vector


def ensure_finite(values: ArrayLike) -> np.ndarray:
    vector = as_vector(values)
    if not np.all(np.isfinite(vector)):
        raise ValidationError("Embedding vector contains NaN or infinite values")
    return vector


def cosine_similarity(a: ArrayLike, b: ArrayLike) -> float:
    """Return the cosine of the angle between ``a`` and ``b``.

    Zero-norm inputs yield 0.0 instead of dividing by zero. Vectors of different length raise
    ``DimensionMismatch``.
    """

    left = as_vector(a)
    right = as_vector(b)
    if left.shape[0] != right.shape[0]:
        raise DimensionMismatch(left.shape[0], right.shape[0])
    left_norm = float(np.linalg.norm(left))
    right_norm = float(np.linalg.norm(right))
    if left_norm == 0.0 or right_norm == 0.0:
        return 0.0
    value = float(np.dot(left, right) / (left_norm * right_norm))
    return float(np.clip(value, -1.0, 1.0))


def normalize(values: ArrayLike) -> np.ndarray:
    vector = as_vector(values)
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        return vector
    return vector / norm


def batch_cosine_similarity(query: ArrayLike, matrix: np.ndarray) -> np.ndarray:
    query_vec = as_vector(query)
    rows = np.asarray(matrix, dtype=np.float64)
    if rows.size == 0:
        return np.zeros(0, dtype=np.float64)
    if rows.ndim != 2:
        raise ValidationError("Candidate matrix must be two-dimensional")
    if rows.shape[1] != query_vec.shape[0]:
        raise DimensionMismatch(query_vec.shape[0], rows.shape[1])

    query_norm = float(np.linalg.norm(query_vec))
    if query_norm == 0.0:
        return np.zeros(rows.shape[0], dtype=np.float64)
    row_norms = np.linalg.norm(rows, axis=1)
    dots = rows @ query_vec
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(row_norms > 0.0, dots / (row_norms * query_norm), 0.0)
    return np.clip(scores, -1.0, 1.0)


def pairwise_block_similarity(block: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of each row in ``block`` against each row of ``matrix``."""

    block_rows = np.asarray(block, dtype=np.float64)
    rows = np.asarray(matrix, dtype=np.float64)
    block_norms = np.linalg.norm(block_rows, axis=1, keepdims=True)
    row_norms = np.linalg.norm(rows, axis=1, keepdims=True)
    block_unit = np.divide(block_rows, block_norms, out=np.zeros_like(block_rows), where=block_norms > 0)
    row_unit = np.divide(rows, row_norms, out=np.zeros_like(rows), where=row_norms > 0)
    return np.clip(block_unit @ row_unit.T, -1.0, 1.0)
