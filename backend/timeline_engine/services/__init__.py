"""Service layer exports.

Expose the retrieval facade and the building blocks it composes for easy importing.
"""

from .openai_client import OpenAIService
from .providers import (
    CohereEmbeddingProvider,
    EmbeddingProvider,
    LocalEmbeddingProvider,
    OpenAIEmbeddingProvider,
    VoyageEmbeddingProvider,
    build_embedding_provider,
)
from .event_store import EraRecord, EventRecord, EventStore, SQLEventStore
from .embedding_store import EmbeddingSnapshot, EmbeddingStore, ProviderLocks, StoredEmbedding
from .embeddings import EmbeddingJobRunner, EmbeddingService
from .retrieval import RetrievalService

__all__ = [
    "OpenAIService",
    "EmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "CohereEmbeddingProvider",
    "VoyageEmbeddingProvider",
    "LocalEmbeddingProvider",
    "build_embedding_provider",
    "EraRecord",
    "EventRecord",
    "EventStore",
    "SQLEventStore",
    "EmbeddingSnapshot",
    "EmbeddingStore",
    "ProviderLocks",
    "StoredEmbedding",
    "EmbeddingJobRunner",
    "EmbeddingService",
    "RetrievalService",
]
