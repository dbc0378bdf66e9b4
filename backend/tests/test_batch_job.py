import asyncio
from datetime import date

import pytest

from timeline_engine.core.errors import Busy, NotFound
from timeline_engine.schemas import JobState
from timeline_engine.services import RetrievalService

from conftest import basis, vector_with_similarity


async def _seed(make_event, count: int = 10, failing: tuple[int, ...] = ()):
    events = []
    for index in range(count):
        marker = " fail-me" if index in failing else ""
        events.append(await make_event(f"Memory {index}{marker}", date(2000 + index, 1, 1)))
    return events


@pytest.mark.asyncio
async def test_batch_collects_failures_and_retries_only_missing(service, provider, make_event):
    events = await _seed(make_event, failing=(3, 7))
    provider.fail_markers = {"fail-me"}

    result = await service.generate_all()
    assert result.succeeded_count == 8
    assert result.failed_count == 2
    assert {error.event_id for error in result.errors} == {events[3].event_id, events[7].event_id}
    assert all(error.kind == "provider_error" for error in result.errors)
    assert await service.embedding_store.count("fake") == 8

    provider.fail_markers.clear()
    provider.calls.clear()
    rerun = await service.generate_all()
    assert len(provider.calls) == 2
    assert rerun.succeeded_count == 2
    assert rerun.skipped_count == 8


@pytest.mark.asyncio
async def test_batch_is_idempotent_unless_forced_or_text_changes(service, provider, event_store, make_event):
    events = await _seed(make_event, count=4)
    await service.generate_all()

    provider.calls.clear()
    again = await service.generate_all()
    assert provider.calls == []
    assert again.skipped_count == 4

    await event_store.update_event_text(events[1].event_id, description="Added a longer description")
    changed = await service.generate_all()
    assert changed.succeeded_count == 1
    assert len(provider.calls) == 1

    provider.calls.clear()
    forced = await service.generate_all(force=True)
    assert forced.succeeded_count == 4
    assert len(provider.calls) == 4


@pytest.mark.asyncio
async def test_generate_for_event_reports_failure_without_raising(service, provider, make_event):
    event = await make_event("Broken upload fail-me", date(2012, 5, 5))
    provider.fail_markers = {"fail-me"}

    outcome = await service.generate_for_event(event.event_id)
    assert not outcome.success
    assert outcome.error_kind == "provider_error"
    assert await service.embedding_store.get(event.event_id, "fake") is None

    missing = await service.generate_for_event("no-such-event")
    assert not missing.success
    assert missing.error_kind == "not_found"


@pytest.mark.asyncio
async def test_second_batch_on_same_provider_is_busy(service, provider, locks, make_event):
    await _seed(make_event, count=2)
    provider.gate = asyncio.Event()

    first = asyncio.create_task(service.generate_all())
    await provider.called.wait()
    with pytest.raises(Busy):
        await service.generate_all()
    with pytest.raises(Busy):
        await service.clear_all()
    assert locks.is_locked("fake")

    provider.gate.set()
    result = await first
    assert result.succeeded_count == 2
    assert not locks.is_locked("fake")


@pytest.mark.asyncio
async def test_job_runner_completes_and_reports_status(job_runner, make_event):
    await _seed(make_event, count=3)

    started = job_runner.start()
    assert started.state in (JobState.PENDING, JobState.RUNNING)
    finished = await job_runner.wait(started.job_id)
    assert finished.state is JobState.COMPLETED
    assert finished.result is not None
    assert finished.result.succeeded_count == 3
    assert finished.finished_at is not None
    assert job_runner.get(started.job_id).state is JobState.COMPLETED

    with pytest.raises(NotFound):
        job_runner.get("unknown-job")


@pytest.mark.asyncio
async def test_job_runner_cancel_stops_between_events(job_runner, provider, session, make_event):
    await _seed(make_event, count=5)
    provider.gate = asyncio.Event()

    status = job_runner.start()
    await provider.called.wait()
    assert job_runner.get(status.job_id).state is JobState.RUNNING

    with pytest.raises(Busy):
        job_runner.start()
    with pytest.raises(Busy):
        await RetrievalService(session, provider).clear_all()

    job_runner.cancel(status.job_id)
    provider.gate.set()
    finished = await job_runner.wait(status.job_id)
    assert finished.state is JobState.CANCELLED
    assert finished.result.cancelled
    assert finished.result.succeeded_count == 1

    follow_up = job_runner.start()
    assert (await job_runner.wait(follow_up.job_id)).result.succeeded_count == 4


@pytest.mark.asyncio
async def test_reads_during_a_paused_batch_see_a_partial_embedding_set(job_runner, provider, service, make_event):
    a = await make_event("Moved to Oslo", date(2020, 8, 1), "travel")
    b = await make_event("Moved flat in Oslo", date(2020, 8, 20), "travel")
    stale = await make_event("Oslo winter", date(2020, 12, 1), "travel")
    missing = await make_event("Oslo spring", date(2021, 4, 1), "travel")
    store = service.embedding_store
    await store.put(a.event_id, basis(), "fake", "fake-embed-v1")
    await store.put(b.event_id, vector_with_similarity(0.9), "fake", "fake-embed-v1")
    await store.put(stale.event_id, vector_with_similarity(0.95), "fake", "fake-embed-v0")

    provider.gate = asyncio.Event()
    status = job_runner.start()
    await provider.called.wait()
    assert job_runner.get(status.job_id).state is JobState.RUNNING

    similar = await service.find_similar(a.event_id, threshold=-1.0, limit=10)
    assert [item.candidate_event_id for item in similar] == [b.event_id]

    report = await service.detect_cross_references(a.event_id)
    assert report.incomplete
    assert report.skipped_event_ids == sorted([stale.event_id, missing.event_id])

    patterns = await service.detect_patterns()
    assert [cluster.event_ids for cluster in patterns.clusters] == [sorted([a.event_id, b.event_id])]

    provider.gate.set()
    finished = await job_runner.wait(status.job_id)
    assert finished.state is JobState.COMPLETED
    assert finished.result.succeeded_count == 4


@pytest.mark.asyncio
async def test_case_only_edit_keeps_the_stored_embedding_current(service, provider, event_store, make_event):
    event = await make_event("First job at Acme", date(2010, 9, 1), "work")
    await service.generate_all()

    await event_store.update_event_text(event.event_id, title="FIRST JOB  at acme")
    provider.calls.clear()
    result = await service.generate_all()
    assert provider.calls == []
    assert result.skipped_count == 1
