"""Convenience exports for API schemas.

Re-exports the pydantic models used across the engine so consumers can import from one module.
"""

from .embeddings import (
    BatchEmbeddingResult,
    BatchItemError,
    ClearEmbeddingsResponse,
    EmbeddingJobStatus,
    EmbeddingOutcome,
    GenerateAllRequest,
    JobState,
)
from .patterns import (
    CategoryPattern,
    EraTransition,
    EventCluster,
    PatternReport,
    TemporalCluster,
)
from .retrieval import (
    CrossReferenceReport,
    CrossReferenceResult,
    RelationshipType,
    SimilarityResult,
    TagSuggestion,
    TagSuggestionTextRequest,
    TimelineAnalysisResult,
    TimelineEventError,
)

__all__ = [
    "BatchEmbeddingResult",
    "BatchItemError",
    "ClearEmbeddingsResponse",
    "EmbeddingJobStatus",
    "EmbeddingOutcome",
    "GenerateAllRequest",
    "JobState",
    "CategoryPattern",
    "EraTransition",
    "EventCluster",
    "PatternReport",
    "TemporalCluster",
    "CrossReferenceReport",
    "CrossReferenceResult",
    "RelationshipType",
    "SimilarityResult",
    "TagSuggestion",
    "TagSuggestionTextRequest",
    "TimelineAnalysisResult",
    "TimelineEventError",
]
