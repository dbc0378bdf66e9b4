"""Embedding generation for single events and whole timelines.

Classes:
    EmbeddingService: Embeds one event or every event missing a current embedding.
    EmbeddingJobRunner: Runs ``generate_all`` as a cancellable asyncio task and tracks its status.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional
from uuid import uuid4

from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from timeline_engine.core.errors import Busy, NotFound, RetrievalError, ValidationError
from timeline_engine.schemas import (
    BatchEmbeddingResult,
    BatchItemError,
    EmbeddingJobStatus,
    EmbeddingOutcome,
    JobState,
)
from timeline_engine.services.embedding_store import EmbeddingStore, ProviderLocks, StoredEmbedding, get_provider_locks
from timeline_engine.services.event_store import EventRecord, EventStore
from timeline_engine.services.providers import EmbeddingProvider, embed_with_timeout
from timeline_engine.utils.text import compute_content_hash

_LOGGER = logging.getLogger(__name__)


class EmbeddingService:
    def __init__(
        self,
        event_store: EventStore,
        embedding_store: EmbeddingStore,
        provider: EmbeddingProvider,
        *,
        timeout: float | None = None,
        max_chars: int | None = None,
        batch_delay: float = 0.0,
        locks: ProviderLocks | None = None,
    ) -> None:
        self._events = event_store
        self._embeddings = embedding_store
        self._provider = provider
        self._timeout = timeout
        self._max_chars = max_chars
        self._batch_delay = batch_delay
        self._locks = locks or get_provider_locks()

    def _text_for(self, event: EventRecord) -> str:
        return event.embedding_text(self._max_chars)

    async def _embed_event(self, event: EventRecord) -> StoredEmbedding:
        text = self._text_for(event)
        if not text:
            raise ValidationError(f"Event {event.event_id} has no text to embed")
        vector = await embed_with_timeout(self._provider, text, self._timeout)
        return await self._embeddings.put(
            event.event_id,
            vector,
            self._provider.name,
            self._provider.model_name,
            content_hash=compute_content_hash(text),
        )

    async def generate_for_event(self, event_id: str) -> EmbeddingOutcome:
        """Embed one event; failures come back as an unsuccessful outcome instead of raising."""

        try:
            event = await self._events.get_event_by_id(event_id)
            stored = await self._embed_event(event)
        except RetrievalError as exc:
            _LOGGER.warning("Embedding failed for event %s: %s", event_id, exc)
            return EmbeddingOutcome(
                event_id=event_id,
                success=False,
                error=str(exc),
                error_kind=exc.kind,
                provider=self._provider.name,
                model=self._provider.model_name,
            )
        return EmbeddingOutcome(
            event_id=event_id,
            success=True,
            provider=stored.provider,
            model=stored.model,
            dimension=stored.dimension,
        )

    async def generate_all(
        self,
        force: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
        on_started: Optional[Callable[[], None]] = None,
    ) -> BatchEmbeddingResult:
        """Embed every event that lacks a current embedding for the active provider.

        Holds the provider's exclusive lock for the whole pass, so a concurrent ``clear_all`` or a
        second batch fails with ``Busy``. Per-event failures are collected and never stop the
        pass; ``cancel_event`` is checked before each provider call.
        """

        async with self._locks.exclusive(self._provider.name, "generate embeddings"):
            if on_started is not None:
                on_started()
            events = await self._events.list_events()
            result = BatchEmbeddingResult()
            current: set[str] = set()
            if not force:
                hashes = {event.event_id: compute_content_hash(self._text_for(event)) for event in events}
                current = await self._embeddings.current_event_ids(
                    self._provider.name, self._provider.model_name, hashes
                )

            _LOGGER.info(
                "Embedding batch started for provider %s: %s events, %s already current",
                self._provider.name,
                len(events),
                len(current),
            )
            for event in events:
                if cancel_event is not None and cancel_event.is_set():
                    result.cancelled = True
                    break
                if event.event_id in current:
                    result.skipped_count += 1
                    continue
                try:
                    await self._embed_event(event)
                except RetrievalError as exc:
                    _LOGGER.warning("Embedding failed for event %s: %s", event.event_id, exc)
                    result.failed_count += 1
                    result.errors.append(BatchItemError(event_id=event.event_id, message=str(exc), kind=exc.kind))
                else:
                    result.succeeded_count += 1
                if self._batch_delay > 0:
                    await asyncio.sleep(self._batch_delay)

        _LOGGER.info(
            "Embedding batch finished: %s succeeded, %s failed, %s skipped%s",
            result.succeeded_count,
            result.failed_count,
            result.skipped_count,
            " (cancelled)" if result.cancelled else "",
        )
        return result


class _Job:
    __slots__ = ("status", "cancel_event", "task")

    def __init__(self, status: EmbeddingJobStatus) -> None:
        self.status = status
        self.cancel_event = asyncio.Event()
        self.task: asyncio.Task | None = None


class EmbeddingJobRunner:
    """Tracks background ``generate_all`` jobs; each job gets its own database session."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        build_service: Callable[[AsyncSession], EmbeddingService],
        provider_name: str,
        *,
        locks: ProviderLocks | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._build_service = build_service
        self._provider_name = provider_name
        self._locks = locks or get_provider_locks()
        self._jobs: dict[str, _Job] = {}

    def _active(self) -> Optional[_Job]:
        for job in self._jobs.values():
            if job.status.state in (JobState.PENDING, JobState.RUNNING):
                return job
        return None

    def start(self, force: bool = False) -> EmbeddingJobStatus:
        active = self._active()
        if active is not None or self._locks.is_locked(self._provider_name):
            raise Busy(f"An embedding job is already running for provider '{self._provider_name}'")

        status = EmbeddingJobStatus(job_id=str(uuid4()), provider=self._provider_name, force=force)
        job = _Job(status)
        self._jobs[status.job_id] = job
        job.task = asyncio.create_task(self._run(job))
        return status.model_copy()

    def get(self, job_id: str) -> EmbeddingJobStatus:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFound(f"Embedding job {job_id} not found")
        return job.status.model_copy()

    def cancel(self, job_id: str) -> EmbeddingJobStatus:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFound(f"Embedding job {job_id} not found")
        job.cancel_event.set()
        return job.status.model_copy()

    async def wait(self, job_id: str) -> EmbeddingJobStatus:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFound(f"Embedding job {job_id} not found")
        if job.task is not None:
            await asyncio.shield(job.task)
        return job.status.model_copy()

    def _mark_running(self, job: _Job) -> None:
        job.status.state = JobState.RUNNING

    async def _run(self, job: _Job) -> None:
        try:
            async with self._session_factory() as session:
                service = self._build_service(session)
                result = await service.generate_all(
                    force=job.status.force,
                    cancel_event=job.cancel_event,
                    on_started=lambda: self._mark_running(job),
                )
        except RetrievalError as exc:
            job.status.state = JobState.FAILED
            job.status.error = str(exc)
            _LOGGER.warning("Embedding job %s failed: %s", job.status.job_id, exc)
        except Exception as exc:  # the task has no awaiting caller; record the failure on the job
            job.status.state = JobState.FAILED
            job.status.error = str(exc)
            _LOGGER.exception("Embedding job %s crashed", job.status.job_id)
        else:
            job.status.result = result
            job.status.state = JobState.CANCELLED if result.cancelled else JobState.COMPLETED
        finally:
            job.status.finished_at = datetime.utcnow()
