"""Async OpenAI client wrapper and related value objects.

Classes:
    EmbeddingBatch: Collected embedding vectors plus metadata returned from the embeddings API.
    OpenAIService: Handles embeddings and optional pattern narration with retry semantics.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence

from openai import AsyncOpenAI, RateLimitError
from tenacity import AsyncRetrying, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from timeline_engine.core.config import Settings, get_settings

_LOGGER = logging.getLogger(__name__)

PATTERN_NARRATION_PROMPT = (
    "You will receive numbered summaries of patterns found in a person's life timeline. "
    "Rewrite each summary as one warm, specific sentence addressed to the person. "
    "Do not invent facts that are not in the summary. "
    "Respond with valid JSON: [{\"index\": <number>, \"description\": <string>}]."
)

_EMBED_BATCH_MAX = 256


@dataclass(slots=True)
class EmbeddingBatch:
    vectors: list[list[float]]
    model: str
    dim: int
    model_revision: str | None = None


class OpenAIService:
    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        *,
        settings: Settings | None = None,
        max_attempts: int = 5,
    ) -> None:
        settings = settings or get_settings()
        api_key = settings.openai_api_key.get_secret_value() if settings.openai_api_key else None
        if client is not None:
            self._client = client
        elif api_key:
            self._client = AsyncOpenAI(api_key=api_key)
        else:
            self._client = None
        self._settings = settings
        self._max_attempts = max_attempts

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    async def embed_texts(self, texts: Iterable[str], *, model: str) -> EmbeddingBatch:
        docs = list(texts)
        if self._client is None:
            raise RuntimeError("OpenAI client not configured. Set OPENAI_API_KEY.")

        if not docs:
            return EmbeddingBatch(vectors=[], model=model, dim=0)

        vectors: list[list[float]] = []
        dim = 0
        model_revision: str | None = None

        for start in range(0, len(docs), _EMBED_BATCH_MAX):
            chunk = docs[start : start + _EMBED_BATCH_MAX]
            response = await self._create_embeddings(dict(model=model, input=chunk))
            chunk_vectors = [list(item.embedding) for item in response.data]
            vectors.extend(chunk_vectors)
            if not dim and chunk_vectors:
                dim = len(chunk_vectors[0])
            response_model = getattr(response, "model", None)
            if response_model:
                model_revision = response_model

        return EmbeddingBatch(vectors=vectors, model=model, dim=dim, model_revision=model_revision)

    async def _create_embeddings(self, payload: dict[str, Any]):
        async for attempt in AsyncRetrying(
            wait=wait_exponential(multiplier=1, min=1, max=20),
            stop=stop_after_attempt(self._max_attempts),
            retry=retry_if_exception_type(RateLimitError),
            reraise=True,
        ):
            with attempt:
                return await self._client.embeddings.create(**payload)

    async def narrate_patterns(
        self,
        summaries: Sequence[str],
        *,
        model: Optional[str] = None,
    ) -> list[str | None]:
        """Return a rewritten description per summary, or ``None`` where narration is unavailable."""

        if not summaries:
            return []

        if self._client is None or not self._settings.enable_pattern_narration:
            return [None for _ in summaries]

        chosen_model = model or self._settings.openai_chat_model
        user_prompt = "\n".join(f"{idx}. {text}" for idx, text in enumerate(summaries))
        payload = dict(
            model=chosen_model,
            messages=[
                {"role": "system", "content": PATTERN_NARRATION_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
            temperature=0.3,
            n=1,
        )

        try:
            response = await _retry_chat(self._client, payload)
        except Exception as exc:  # narration is optional; heuristic text stays in place
            _LOGGER.warning("Pattern narration failed: %s", exc)
            return [None for _ in summaries]

        content = getattr(response.choices[0].message, "content", "") or ""
        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            return [None for _ in summaries]
        if not isinstance(data, list):
            return [None for _ in summaries]

        descriptions: list[str | None] = [None for _ in summaries]
        for item in data:
            if not isinstance(item, dict):
                continue
            try:
                idx = int(item.get("index"))
            except (TypeError, ValueError):
                continue
            text = item.get("description")
            if 0 <= idx < len(descriptions) and isinstance(text, str) and text.strip():
                descriptions[idx] = text.strip()
        return descriptions


@retry(wait=wait_exponential(multiplier=1, min=1, max=20), stop=stop_after_attempt(3), reraise=True)
async def _retry_chat(client: AsyncOpenAI, payload: dict[str, Any]):
    return await client.chat.completions.create(**payload)
