from datetime import date

import pytest

from timeline_engine.core.config import RetrievalConfig
from timeline_engine.core.errors import NotFound
from timeline_engine.services import EventRecord, RetrievalService
from timeline_engine.services.cross_reference import canonical_pair, classify_pair

from conftest import FakeEmbeddingProvider, basis, vector_with_similarity


def _record(event_id: str, day: date, category: str = "other", **kwargs) -> EventRecord:
    return EventRecord.build(event_id=event_id, title=event_id, start_date=day, category=category, **kwargs)


async def _put(service: RetrievalService, event_id: str, vector) -> None:
    await service.embedding_store.put(event_id, vector, "fake", "fake-embed-v1")


def _pair_rows(report, first: str, second: str) -> set[tuple]:
    key = canonical_pair(first, second)
    return {
        (item.event_id_1, item.event_id_2, item.relationship_type, item.confidence_score)
        for item in report.cross_references
        if (item.event_id_1, item.event_id_2) == key
    }


@pytest.mark.asyncio
async def test_identical_events_are_similar_and_thematic(service, make_event):
    first = await make_event("Started piano lessons", date(2016, 1, 10), "education", description="Weekly lessons")
    second = await make_event("Started piano lessons", date(2018, 4, 2), "education", description="Weekly lessons")
    assert (await service.generate_for_event(first.event_id)).success
    assert (await service.generate_for_event(second.event_id)).success

    similar = await service.find_similar(first.event_id, threshold=0.75, limit=10)
    assert [item.candidate_event_id for item in similar] == [second.event_id]
    assert similar[0].similarity_score == pytest.approx(1.0, abs=1e-6)
    assert similar[0].rank == 1

    report = await service.detect_cross_references(first.event_id)
    thematic = [item for item in report.cross_references if item.relationship_type == "thematic"]
    assert len(thematic) == 1
    assert thematic[0].confidence_score >= 0.8
    assert not report.incomplete


@pytest.mark.asyncio
async def test_moderate_similarity_across_categories_is_causal_only(session, provider, locks, make_event):
    config = RetrievalConfig(causal_threshold=0.5)
    service = RetrievalService(session, provider, config=config, locks=locks)
    job = await make_event("Joined a startup", date(2024, 1, 1), "work")
    course = await make_event("Enrolled in a night course", date(2024, 3, 1), "education")
    await _put(service, job.event_id, basis())
    await _put(service, course.event_id, vector_with_similarity(0.6))

    report = await service.detect_cross_references(job.event_id)
    assert [item.relationship_type for item in report.cross_references] == ["causal"]
    causal = report.cross_references[0]
    assert causal.analysis_details["direction"] == {"from": job.event_id, "to": course.event_id}
    assert causal.analysis_details["day_gap"] == 60
    assert 0.0 <= causal.confidence_score <= 1.0


@pytest.mark.asyncio
async def test_detection_is_symmetric_for_a_pair(service, make_event):
    a = await make_event("Trip to Kyoto", date(2019, 4, 1), "travel", people=["Mia"], locations=["Kyoto"], tags=["japan"])
    b = await make_event("Tea ceremony", date(2019, 4, 12), "travel", people=["mia"], locations=["Kyoto"], tags=["Japan"])
    c = await make_event("New job", date(2021, 1, 1), "work")
    await _put(service, a.event_id, basis())
    await _put(service, b.event_id, vector_with_similarity(0.85))
    await _put(service, c.event_id, vector_with_similarity(0.2, axis=2))

    from_a = _pair_rows(await service.detect_cross_references(a.event_id), a.event_id, b.event_id)
    from_b = _pair_rows(await service.detect_cross_references(b.event_id), a.event_id, b.event_id)
    assert from_a
    assert from_a == from_b
    types = {row[2] for row in from_a}
    assert {"thematic", "temporal", "person", "location", "follow-up"} <= types
    for first_id, second_id, _, _ in from_a:
        assert first_id < second_id


def test_classify_pair_is_order_independent():
    config = RetrievalConfig()
    a = _record("a", date(2020, 1, 1), "work", people=["Sam"])
    b = _record("b", date(2020, 1, 20), "work", people=["Sam"])
    forward = classify_pair(a, b, 0.9, config)
    backward = classify_pair(b, a, 0.9, config)
    assert [(s.relationship_type, s.confidence, s.earlier_event_id) for s in forward] == [
        (s.relationship_type, s.confidence, s.earlier_event_id) for s in backward
    ]
    assert all(signal.earlier_event_id == "a" for signal in forward)


def test_temporal_signal_fires_without_semantic_similarity():
    config = RetrievalConfig()
    signals = classify_pair(_record("a", date(2020, 1, 1)), _record("b", date(2020, 1, 11), "work"), 0.0, config)
    assert [signal.relationship_type for signal in signals] == ["temporal"]
    assert signals[0].confidence == pytest.approx(0.513417, abs=1e-6)


def test_shared_people_and_locations_scale_with_similarity():
    config = RetrievalConfig()
    a = _record("a", date(2010, 1, 1), "milestone", people=["Ana"], locations=["Porto", "Braga"])
    b = _record("b", date(2015, 1, 1), "achievement", people=["ANA "], locations=["braga"])
    signals = {signal.relationship_type: signal for signal in classify_pair(a, b, 0.8, config)}
    assert signals["person"].confidence == pytest.approx(0.8 * (0.6 + 0.4 / 3), abs=1e-6)
    assert signals["location"].details["shared_locations"] == ["braga"]
    assert "follow-up" not in signals


def test_follow_up_requires_same_anchor_and_category():
    config = RetrievalConfig()
    a = _record("a", date(2021, 5, 1), "challenge", people=["Dr. Lee", "Kim"])
    b = _record("b", date(2021, 5, 31), "challenge", people=["dr. lee"])
    types = {signal.relationship_type for signal in classify_pair(a, b, 0.6, config)}
    assert types == {"follow-up", "person", "temporal"}

    c = _record("c", date(2021, 5, 31), "challenge", people=["Kim"])
    assert "follow-up" not in {signal.relationship_type for signal in classify_pair(a, c, 0.6, config)}


def test_low_confidence_signals_are_dropped():
    config = RetrievalConfig(min_confidence=0.9)
    signals = classify_pair(_record("a", date(2020, 1, 1)), _record("b", date(2020, 1, 11)), 0.0, config)
    assert signals == []


@pytest.mark.asyncio
async def test_missing_candidate_embeddings_mark_report_incomplete(service, make_event):
    a = await make_event("Bought a house", date(2020, 6, 1), "milestone")
    b = await make_event("Renovated kitchen", date(2020, 6, 20), "milestone")
    c = await make_event("Housewarming", date(2020, 7, 1), "milestone")
    await _put(service, a.event_id, basis())
    await _put(service, b.event_id, vector_with_similarity(0.9))

    report = await service.detect_cross_references(a.event_id)
    assert report.incomplete
    assert report.skipped_event_ids == [c.event_id]
    assert all(c.event_id not in (item.event_id_1, item.event_id_2) for item in report.cross_references)


@pytest.mark.asyncio
async def test_detection_replaces_stored_rows(service, make_event):
    a = await make_event("Adopted a dog", date(2022, 2, 1), "milestone")
    b = await make_event("Dog training class", date(2022, 2, 15), "milestone")
    await _put(service, a.event_id, basis())
    await _put(service, b.event_id, vector_with_similarity(0.95))

    first = await service.detect_cross_references(a.event_id)
    again = await service.detect_cross_references(a.event_id)
    stored = await service.get_cross_references(a.event_id)
    assert len(stored) == len(first.cross_references) == len(again.cross_references)
    confidences = [item.confidence_score for item in stored]
    assert confidences == sorted(confidences, reverse=True)

    await _put(service, b.event_id, basis(axis=5))
    await service.detect_cross_references(a.event_id)
    remaining = {item.relationship_type for item in await service.get_cross_references(a.event_id)}
    assert "thematic" not in remaining


@pytest.mark.asyncio
async def test_missing_source_embedding_or_event_raises_not_found(service, make_event):
    event = await make_event("Unembedded", date(2020, 1, 1))
    with pytest.raises(NotFound, match="No embedding for source event"):
        await service.detect_cross_references(event.event_id)
    with pytest.raises(NotFound):
        await service.detect_cross_references("does-not-exist")


@pytest.mark.asyncio
async def test_analyze_full_timeline_counts_pairs_and_skips_unembedded(service, make_event):
    a = await make_event("Moved to Berlin", date(2017, 1, 1), "travel")
    b = await make_event("Found a flat in Berlin", date(2017, 1, 20), "travel")
    await make_event("No text embedded yet", date(2017, 2, 1), "travel")
    await _put(service, a.event_id, basis())
    await _put(service, b.event_id, vector_with_similarity(0.9))

    result = await service.analyze_full_timeline()
    assert result.analyzed_count == 2
    assert result.skipped_count == 1
    assert result.errors == []
    stored = await service.get_cross_references(a.event_id)
    assert result.cross_reference_count == len(stored)


@pytest.mark.asyncio
async def test_vectors_from_a_previous_model_count_as_missing(session, locks, service, make_event):
    a = await make_event("Learned to sail", date(2018, 5, 1), "achievement")
    b = await make_event("Sailed to Mallorca", date(2018, 5, 20), "achievement")
    c = await make_event("Sold the boat", date(2018, 6, 1), "achievement")
    for event in (a, b, c):
        assert (await service.generate_for_event(event.event_id)).success

    upgraded = FakeEmbeddingProvider(dimension=16, model_name="fake-embed-v2")
    migrated = RetrievalService(session, upgraded, locks=locks)
    assert (await migrated.generate_for_event(a.event_id)).success
    assert (await migrated.generate_for_event(b.event_id)).success

    similar = await migrated.find_similar(a.event_id, threshold=-1.0, limit=10)
    assert [item.candidate_event_id for item in similar] == [b.event_id]

    report = await migrated.detect_cross_references(a.event_id)
    assert report.incomplete
    assert report.skipped_event_ids == [c.event_id]
    assert all(c.event_id not in (item.event_id_1, item.event_id_2) for item in report.cross_references)

    with pytest.raises(NotFound, match="No embedding for source event"):
        await migrated.detect_cross_references(c.event_id)

    patterns = await migrated.detect_patterns()
    assert all(c.event_id not in cluster.event_ids for cluster in patterns.clusters)

    timeline = await migrated.analyze_full_timeline()
    assert timeline.analyzed_count == 2
    assert timeline.skipped_count == 1
    assert timeline.errors == []


@pytest.mark.asyncio
async def test_same_dimension_model_change_is_not_mixed(session, locks, service, make_event):
    a = await make_event("First flat", date(2015, 1, 1), "milestone")
    b = await make_event("Second flat", date(2016, 1, 1), "milestone")
    await _put(service, a.event_id, basis())
    await service.embedding_store.put(b.event_id, basis(), "fake", "fake-embed-v0")

    assert await service.find_similar(a.event_id, threshold=-1.0) == []
    report = await service.detect_cross_references(a.event_id)
    assert report.skipped_event_ids == [b.event_id]
