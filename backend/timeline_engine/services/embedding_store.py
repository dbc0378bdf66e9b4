"""Persistence for event embeddings.

Classes:
    ProviderLocks: Registry of non-blocking per-provider locks serialising bulk writes and clears.
    StoredEmbedding: Decoded embedding row.
    EmbeddingSnapshot: Restartable, lazily decoded view of every embedding for one provider.
    EmbeddingStore: Validated reads and writes against the ``event_embeddings`` table.
"""

from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import AsyncIterator, Iterable, Iterator, Mapping, Optional, Sequence

import numpy as np
from sqlalchemy import delete, func
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from timeline_engine.core.errors import Busy, DimensionMismatch, ValidationError
from timeline_engine.models import EventEmbedding
from timeline_engine.services.vector_math import ensure_finite

_LOGGER = logging.getLogger(__name__)

_STORAGE_DTYPE = "float32"


class ProviderLocks:
    """One ``asyncio.Lock`` per provider name; a held lock fails the next caller with ``Busy``."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, provider: str) -> asyncio.Lock:
        lock = self._locks.get(provider)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[provider] = lock
        return lock

    def is_locked(self, provider: str) -> bool:
        lock = self._locks.get(provider)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def exclusive(self, provider: str, operation: str) -> AsyncIterator[None]:
        lock = self._lock_for(provider)
        if lock.locked():
            raise Busy(f"Cannot {operation}: another embedding operation is running for provider '{provider}'")
        await lock.acquire()
        try:
            yield
        finally:
            lock.release()


_default_locks = ProviderLocks()


def get_provider_locks() -> ProviderLocks:
    return _default_locks


@dataclass(slots=True)
class StoredEmbedding:
    event_id: str
    provider: str
    model: str
    dimension: int
    vector: np.ndarray
    content_hash: Optional[str]
    created_at: datetime


@dataclass(slots=True, frozen=True)
class _SnapshotRow:
    event_id: str
    model: str
    dimension: int
    payload: bytes
    dtype: str
    content_hash: Optional[str]


def _decode(payload: bytes, dtype: str, dimension: int) -> np.ndarray:
    vector = np.frombuffer(payload, dtype=np.dtype(dtype or _STORAGE_DTYPE))
    if vector.shape[0] != dimension:
        raise DimensionMismatch(dimension, vector.shape[0])
    return vector.astype(np.float64)


class EmbeddingSnapshot:
    """Embeddings captured at one point in time.

    Rows are fetched once when the snapshot is taken; vectors are decoded from their stored
    bytes only when iterated. Iterating again yields the same rows, and writes made after the
    snapshot was taken are not visible.
    """

    def __init__(self, provider: str, rows: Sequence[_SnapshotRow]) -> None:
        self.provider = provider
        self._rows = tuple(rows)

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[tuple[str, np.ndarray]]:
        for row in self._rows:
            yield row.event_id, _decode(row.payload, row.dtype, row.dimension)

    @property
    def event_ids(self) -> list[str]:
        return [row.event_id for row in self._rows]

    def content_hashes(self) -> dict[str, tuple[str, Optional[str]]]:
        return {row.event_id: (row.model, row.content_hash) for row in self._rows}

    def as_mapping(self, event_ids: Iterable[str] | None = None) -> dict[str, np.ndarray]:
        wanted = set(event_ids) if event_ids is not None else None
        return {
            row.event_id: _decode(row.payload, row.dtype, row.dimension)
            for row in self._rows
            if wanted is None or row.event_id in wanted
        }


class EmbeddingStore:
    """Embedding rows keyed by (event, provider).

    ``dimensions`` registers the vector length per provider and ``models`` optionally pins the
    active model per provider. Reads only return rows matching both, so vectors left behind by
    a previous model or dimension behave as missing until they are re-embedded.
    """

    def __init__(
        self,
        session: AsyncSession,
        dimensions: Mapping[str, int],
        *,
        models: Mapping[str, str] | None = None,
        locks: ProviderLocks | None = None,
    ) -> None:
        self._session = session
        self._dimensions = dict(dimensions)
        self._models = dict(models or {})
        self._locks = locks or get_provider_locks()

    def _current(self, statement, provider: str):
        statement = statement.where(EventEmbedding.provider == provider)
        if provider in self._dimensions:
            statement = statement.where(EventEmbedding.dimension == self._dimensions[provider])
        model = self._models.get(provider)
        if model is not None:
            statement = statement.where(EventEmbedding.model == model)
        return statement

    def dimension(self, provider: str) -> int:
        try:
            return self._dimensions[provider]
        except KeyError as exc:
            raise ValidationError(f"No dimension registered for provider '{provider}'") from exc

    async def put(
        self,
        event_id: str,
        vector: Sequence[float] | np.ndarray,
        provider: str,
        model: str,
        content_hash: Optional[str] = None,
    ) -> StoredEmbedding:
        expected = self.dimension(provider)
        values = ensure_finite(vector)
        if values.shape[0] != expected:
            raise DimensionMismatch(expected, values.shape[0])

        stored = values.astype(np.float32)
        statement = select(EventEmbedding).where(
            EventEmbedding.event_id == event_id,
            EventEmbedding.provider == provider,
        )
        row = (await self._session.exec(statement)).first()
        now = datetime.utcnow()
        if row is None:
            row = EventEmbedding(event_id=event_id, provider=provider, model=model, dimension=expected, vector=b"")
        row.model = model
        row.dimension = expected
        row.vector = stored.tobytes()
        row.vector_dtype = _STORAGE_DTYPE
        row.vector_norm = float(np.linalg.norm(values))
        row.content_hash = content_hash
        row.created_at = now
        self._session.add(row)
        await self._session.commit()
        return StoredEmbedding(
            event_id=event_id,
            provider=provider,
            model=model,
            dimension=expected,
            vector=stored.astype(np.float64),
            content_hash=content_hash,
            created_at=now,
        )

    async def get(self, event_id: str, provider: str) -> StoredEmbedding | None:
        statement = self._current(select(EventEmbedding).where(EventEmbedding.event_id == event_id), provider)
        row = (await self._session.exec(statement)).first()
        if row is None:
            return None
        return StoredEmbedding(
            event_id=row.event_id,
            provider=row.provider,
            model=row.model,
            dimension=row.dimension,
            vector=_decode(row.vector, row.vector_dtype, row.dimension),
            content_hash=row.content_hash,
            created_at=row.created_at,
        )

    async def all_for_provider(self, provider: str) -> EmbeddingSnapshot:
        statement = self._current(
            select(
                EventEmbedding.event_id,
                EventEmbedding.model,
                EventEmbedding.dimension,
                EventEmbedding.vector,
                EventEmbedding.vector_dtype,
                EventEmbedding.content_hash,
            ),
            provider,
        ).order_by(EventEmbedding.event_id)
        result = await self._session.exec(statement)
        rows = [
            _SnapshotRow(
                event_id=event_id,
                model=model,
                dimension=dimension,
                payload=payload,
                dtype=dtype,
                content_hash=content_hash,
            )
            for event_id, model, dimension, payload, dtype, content_hash in result.all()
        ]
        return EmbeddingSnapshot(provider, rows)

    async def current_event_ids(self, provider: str, model: str, content_hashes: Mapping[str, str]) -> set[str]:
        """Return event ids whose stored vector matches ``model`` and the expected content hash."""

        snapshot = await self.all_for_provider(provider)
        current: set[str] = set()
        for event_id, (stored_model, stored_hash) in snapshot.content_hashes().items():
            expected_hash = content_hashes.get(event_id)
            if stored_model == model and expected_hash is not None and stored_hash == expected_hash:
                current.add(event_id)
        return current

    async def count(self, provider: str) -> int:
        statement = self._current(select(func.count()).select_from(EventEmbedding), provider)
        return int((await self._session.exec(statement)).one())

    async def delete(self, event_id: str, provider: Optional[str] = None) -> int:
        statement = delete(EventEmbedding).where(EventEmbedding.event_id == event_id)
        if provider is not None:
            statement = statement.where(EventEmbedding.provider == provider)
        result = await self._session.execute(statement)
        await self._session.commit()
        return int(result.rowcount or 0)

    async def clear_all(self, provider: Optional[str] = None) -> int:
        """Delete every stored embedding, or only ``provider``'s; irreversible."""

        providers = [provider] if provider else sorted(set(self._dimensions) | set(await self._stored_providers()))
        async with AsyncExitStack() as stack:
            for name in providers:
                await stack.enter_async_context(self._locks.exclusive(name, "clear embeddings"))
            statement = delete(EventEmbedding)
            if provider is not None:
                statement = statement.where(EventEmbedding.provider == provider)
            result = await self._session.execute(statement)
            await self._session.commit()
            removed = int(result.rowcount or 0)
        _LOGGER.info("Cleared %s embeddings (provider=%s)", removed, provider or "all")
        return removed

    async def _stored_providers(self) -> list[str]:
        result = await self._session.exec(select(EventEmbedding.provider).distinct())
        return list(result.all())
