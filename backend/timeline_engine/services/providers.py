"""Embedding provider variants.

Every provider turns a single text into a fixed-length vector and declares its ``name``,
``model_name`` and ``dimension`` up front so stored vectors can be validated before they are
written.

Classes:
    EmbeddingProvider: Abstract base class for the ``embed(text) -> vector`` capability.
    OpenAIEmbeddingProvider: Remote embeddings through ``AsyncOpenAI``.
    CohereEmbeddingProvider: Remote embeddings through Cohere's REST API.
    VoyageEmbeddingProvider: Remote embeddings through Voyage AI's REST API.
    LocalEmbeddingProvider: Deterministic offline embeddings from a hashing vectorizer.

Functions:
    build_embedding_provider(settings): Instantiate the provider selected in settings.
    embed_with_timeout(provider, text, timeout): Await ``provider.embed`` with a deadline.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
import numpy as np
from openai import APIConnectionError, APIError, APITimeoutError, RateLimitError
from sklearn.feature_extraction.text import HashingVectorizer
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from timeline_engine.core.config import Settings, get_settings
from timeline_engine.core.errors import (
    ProviderError,
    ProviderNotImplemented,
    ProviderTimeout,
    RateLimited,
    ValidationError,
)
from timeline_engine.services.openai_client import OpenAIService

_LOGGER = logging.getLogger(__name__)

OPENAI_MODEL_DIMENSIONS = {
    "text-embedding-ada-002": 1536,
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
}
COHERE_MODEL_DIMENSIONS = {
    "embed-english-v3.0": 1024,
    "embed-multilingual-v3.0": 1024,
}
VOYAGE_MODEL_DIMENSIONS = {
    "voyage-2": 1024,
    "voyage-large-2": 1536,
}

SUPPORTED_PROVIDERS = ("openai", "cohere", "voyage", "local", "onnx")


class EmbeddingProvider(ABC):
    name: str
    model_name: str
    dimension: int

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Return the embedding of ``text``."""

    async def aclose(self) -> None:
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model_name!r}, dimension={self.dimension})"


def _known_dimension(table: dict[str, int], model: str, provider: str) -> int:
    try:
        return table[model]
    except KeyError as exc:
        raise ValidationError(f"Unknown {provider} embedding model '{model}'") from exc


class OpenAIEmbeddingProvider(EmbeddingProvider):
    name = "openai"

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        *,
        service: OpenAIService | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.model_name = model
        self.dimension = _known_dimension(OPENAI_MODEL_DIMENSIONS, model, self.name)
        self._service = service or OpenAIService(settings=settings)

    async def embed(self, text: str) -> list[float]:
        if not self._service.is_configured:
            raise ProviderError("OpenAI client not configured. Set OPENAI_API_KEY.")
        try:
            batch = await self._service.embed_texts([text], model=self.model_name)
        except RateLimitError as exc:
            raise RateLimited(f"OpenAI rate limit exceeded: {exc}") from exc
        except APITimeoutError as exc:
            raise ProviderTimeout(f"OpenAI request timed out: {exc}") from exc
        except (APIConnectionError, APIError) as exc:
            raise ProviderError(f"OpenAI embeddings request failed: {exc}") from exc
        if not batch.vectors:
            raise ProviderError("OpenAI returned no embedding")
        return batch.vectors[0]


class _HTTPEmbeddingProvider(EmbeddingProvider):
    """Shared request handling for JSON embedding APIs reached over httpx."""

    endpoint = "/embeddings"

    def __init__(
        self,
        model: str,
        *,
        api_key: Optional[str],
        base_url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        max_attempts: int = 5,
    ) -> None:
        self.model_name = model
        self._api_key = api_key
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._max_attempts = max_attempts

    @abstractmethod
    def _payload(self, text: str) -> dict[str, Any]: ...

    @abstractmethod
    def _extract(self, body: dict[str, Any]) -> list[float]: ...

    async def embed(self, text: str) -> list[float]:
        if not self._api_key:
            raise ProviderError(f"{self.name} API key not configured")
        async for attempt in AsyncRetrying(
            wait=wait_exponential(multiplier=1, min=1, max=20),
            stop=stop_after_attempt(self._max_attempts),
            retry=retry_if_exception_type(RateLimited),
            reraise=True,
        ):
            with attempt:
                return await self._post(text)
        raise ProviderError(f"{self.name} embeddings request was not attempted")

    async def _post(self, text: str) -> list[float]:
        headers = {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}
        try:
            response = await self._client.post(self.endpoint, json=self._payload(text), headers=headers)
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"{self.name} request timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"{self.name} request failed: {exc}") from exc

        if response.status_code == 429:
            _LOGGER.warning("%s embeddings rate limited", self.name)
            raise RateLimited(f"{self.name} rate limit exceeded")
        if response.status_code >= 400:
            raise ProviderError(f"{self.name} API error {response.status_code}: {response.text[:200]}")
        try:
            return self._extract(response.json())
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ProviderError(f"{self.name} returned an unexpected payload") from exc

    async def aclose(self) -> None:
        await self._client.aclose()


class CohereEmbeddingProvider(_HTTPEmbeddingProvider):
    name = "cohere"
    endpoint = "/embed"

    def __init__(self, model: str = "embed-english-v3.0", **kwargs) -> None:
        kwargs.setdefault("base_url", "https://api.cohere.ai/v1")
        super().__init__(model, **kwargs)
        self.dimension = _known_dimension(COHERE_MODEL_DIMENSIONS, model, self.name)

    def _payload(self, text: str) -> dict[str, Any]:
        return {"texts": [text], "model": self.model_name, "input_type": "search_document"}

    def _extract(self, body: dict[str, Any]) -> list[float]:
        return [float(value) for value in body["embeddings"][0]]


class VoyageEmbeddingProvider(_HTTPEmbeddingProvider):
    name = "voyage"
    endpoint = "/embeddings"

    def __init__(self, model: str = "voyage-2", **kwargs) -> None:
        kwargs.setdefault("base_url", "https://api.voyageai.com/v1")
        super().__init__(model, **kwargs)
        self.dimension = _known_dimension(VOYAGE_MODEL_DIMENSIONS, model, self.name)

    def _payload(self, text: str) -> dict[str, Any]:
        return {"input": [text], "model": self.model_name}

    def _extract(self, body: dict[str, Any]) -> list[float]:
        return [float(value) for value in body["data"][0]["embedding"]]


class LocalEmbeddingProvider(EmbeddingProvider):
    """Offline embeddings from hashed word uni- and bi-grams.

    Identical text always maps to the identical vector, so results are reproducible across
    processes without any model download.
    """

    name = "local"

    def __init__(self, dimension: int = 384) -> None:
        if dimension <= 0:
            raise ValidationError("Local embedding dimension must be positive")
        self.dimension = dimension
        self.model_name = f"hashing-v1-{dimension}"
        self._vectorizer = HashingVectorizer(
            n_features=dimension,
            ngram_range=(1, 2),
            norm="l2",
            alternate_sign=False,
            lowercase=True,
        )

    async def embed(self, text: str) -> list[float]:
        matrix = self._vectorizer.transform([text])
        dense = np.asarray(matrix.toarray()[0], dtype=np.float64)
        return dense.tolist()


async def embed_with_timeout(provider: EmbeddingProvider, text: str, timeout: float | None) -> list[float]:
    try:
        return await asyncio.wait_for(provider.embed(text), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise ProviderTimeout(f"{provider.name} embedding call exceeded {timeout}s") from exc


def build_embedding_provider(settings: Settings | None = None) -> EmbeddingProvider:
    settings = settings or get_settings()
    choice = settings.embedding_provider.strip().lower()
    model = settings.embedding_model

    if choice == "openai":
        return OpenAIEmbeddingProvider(model or "text-embedding-3-small", settings=settings)
    if choice == "cohere":
        return CohereEmbeddingProvider(
            model or "embed-english-v3.0",
            api_key=settings.cohere_api_key.get_secret_value() if settings.cohere_api_key else None,
            base_url=settings.cohere_base_url,
            timeout=settings.embedding_timeout_seconds,
        )
    if choice == "voyage":
        return VoyageEmbeddingProvider(
            model or "voyage-2",
            api_key=settings.voyage_api_key.get_secret_value() if settings.voyage_api_key else None,
            base_url=settings.voyage_base_url,
            timeout=settings.embedding_timeout_seconds,
        )
    if choice == "local":
        return LocalEmbeddingProvider(settings.local_embedding_dimension)
    if choice == "onnx":
        raise ProviderNotImplemented("The ONNX embedding provider is not implemented yet")
    raise ValidationError(
        f"Unknown embedding provider '{settings.embedding_provider}'. Expected one of {', '.join(SUPPORTED_PROVIDERS)}"
    )
