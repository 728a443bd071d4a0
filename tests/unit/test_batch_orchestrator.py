"""Unit tests for the batch orchestrator."""

import asyncio

import pytest

from models.domain import MatchOutcome, MatchStatus, ShelfImage
from services.product_matching.errors import (
    NoEligibleDetections,
    SearchMisconfigured,
    SearchUnavailable,
)
from services.product_matching.models import DetectionAttributes, DetectionSnapshot, SearchResult
from services.product_matching.pipeline import ItemState, PipelineConfig
from services.product_matching.progress import ProgressChannel
from services.product_matching.stage_store import StageStore
from workers.batch_orchestrator import (
    BatchOrchestrator,
    BatchStats,
    ItemResult,
    clamp_concurrency,
    eligible_detections,
    with_search_retries,
)


def _orchestrator(db_session, fake_catalog, fake_comparator, concurrency=4, **config):
    return BatchOrchestrator(
        fake_catalog.search,
        fake_comparator,
        StageStore(db_session),
        config=PipelineConfig(**config),
        concurrency=concurrency,
        admission_batch_size=10,
        admission_pause=0,
        search_retries=0,
        search_backoff=0,
    )


async def _run(orchestrator, snapshots):
    channel = ProgressChannel()
    results = await orchestrator.run(snapshots, channel)
    events = [event async for event in channel.events()]
    return results, events


def _images(db_session, count):
    images = []
    for i in range(count):
        image = ShelfImage(image_url=f"https://images.example/shelf-{i}.jpg", store_name="Kroger")
        db_session.add(image)
        images.append(image)
    db_session.commit()
    return images


def test_clamp_concurrency():
    assert clamp_concurrency(None, default=20, maximum=200) == 20
    assert clamp_concurrency(0, default=20, maximum=200) == 1
    assert clamp_concurrency(500, default=20, maximum=200) == 200


def test_batch_stats_accumulate():
    stats = BatchStats(total=3)
    for state in (ItemState.SAVED, ItemState.FAILED, ItemState.MANUAL_REVIEW):
        stats.record(ItemResult(detection_id=1, detection_index=0, label="x", state=state))

    assert stats.counters() == {
        "processed": 3,
        "total": 3,
        "success": 1,
        "no_match": 0,
        "manual_review": 1,
        "errors": 1,
        "cancelled": 0,
    }


@pytest.mark.asyncio
async def test_search_retries_recover_from_unavailable():
    calls = []

    async def flaky(attributes):
        calls.append(attributes)
        if len(calls) < 3:
            raise SearchUnavailable("busy")
        return SearchResult(candidates=[], search_term="Acme")

    result = await with_search_retries(flaky, retries=2, backoff=0)(DetectionAttributes(brand="Acme"))

    assert result.search_term == "Acme"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_search_retries_give_up():
    async def down(attributes):
        raise SearchUnavailable("busy")

    with pytest.raises(SearchUnavailable):
        await with_search_retries(down, retries=1, backoff=0)(DetectionAttributes(brand="Acme"))


@pytest.mark.asyncio
async def test_misconfigured_search_is_not_retried():
    calls = []

    async def misconfigured(attributes):
        calls.append(attributes)
        raise SearchMisconfigured("no credentials")

    with pytest.raises(SearchMisconfigured):
        await with_search_retries(misconfigured, retries=3, backoff=0)(DetectionAttributes(brand="Acme"))
    assert len(calls) == 1


def test_eligible_detections_filters_scope(db_session, make_detection, shelf_image):
    other_image = _images(db_session, 1)[0]
    ready = make_detection(detection_index=0)
    make_detection(detection_index=1, brand_name="Unknown", product_name=None)
    make_detection(detection_index=2, fully_analyzed=True)
    make_detection(image=other_image, detection_index=0)

    snapshots = eligible_detections(db_session, image_id=shelf_image.id)

    assert [s.detection_id for s in snapshots] == [ready.id]


def test_eligible_detections_raises_when_empty(db_session, shelf_image):
    with pytest.raises(NoEligibleDetections):
        eligible_detections(db_session, image_id=shelf_image.id)


def test_eligible_detections_requires_scope(db_session):
    with pytest.raises(ValueError):
        eligible_detections(db_session)


@pytest.mark.asyncio
async def test_batch_counts_and_single_complete_event(
    db_session, make_detection, make_candidate, fake_catalog, fake_comparator
):
    fake_catalog.candidates = [make_candidate("A")]
    fake_comparator.statuses = {"A": MatchStatus.IDENTICAL}
    matched = make_detection(detection_index=0)
    unmatched = make_detection(detection_index=1, brand_name="Zenith", product_name="Zenith Water")
    snapshots = [DetectionSnapshot.from_detection(d) for d in (matched, unmatched)]

    results, events = await _run(_orchestrator(db_session, fake_catalog, fake_comparator), snapshots)

    assert [r.state for r in results] == [ItemState.SAVED, ItemState.NO_MATCH]
    assert events[0].type == "start"
    assert [e.type for e in events].count("complete") == 1
    final = events[-1]
    assert final.type == "complete"
    assert (final.processed, final.success, final.no_match, final.errors) == (2, 1, 1, 0)
    assert len(final.results) == 2
    saved = next(r for r in final.results if r.status == "saved")
    assert saved.saved_match["gtin"] == "A"


@pytest.mark.asyncio
async def test_failing_item_does_not_stop_the_batch(
    db_session, make_detection, make_candidate, fake_catalog, fake_comparator
):
    images = _images(db_session, 5)
    detections = [make_detection(image=image) for image in images]
    fake_catalog.candidates = [make_candidate("A")]
    fake_comparator.statuses = {"A": MatchStatus.IDENTICAL}
    fake_comparator.slow_images = {images[2].image_url}

    snapshots = [DetectionSnapshot.from_detection(d) for d in detections]
    orchestrator = _orchestrator(
        db_session, fake_catalog, fake_comparator, concurrency=5, item_timeout_seconds=0.2
    )
    results, events = await _run(orchestrator, snapshots)

    by_id = {r.detection_id: r for r in results}
    assert by_id[detections[2].id].state == ItemState.FAILED
    assert by_id[detections[2].id].error.startswith("VisualMatchUnavailable")
    assert sum(1 for r in results if r.state == ItemState.SAVED) == 4
    assert events[-1].errors == 1
    assert events[-1].processed == 5


@pytest.mark.asyncio
async def test_invalid_region_fails_only_that_item(
    db_session, make_detection, make_candidate, fake_catalog, fake_comparator
):
    good = make_detection(detection_index=0)
    bad = make_detection(detection_index=1, x0=None)
    fake_catalog.candidates = [make_candidate("A")]
    fake_comparator.statuses = {"A": MatchStatus.IDENTICAL}

    results, events = await _run(
        _orchestrator(db_session, fake_catalog, fake_comparator),
        [DetectionSnapshot.from_detection(good), DetectionSnapshot.from_detection(bad)],
    )

    states = {r.detection_id: r.state for r in results}
    assert states == {good.id: ItemState.SAVED, bad.id: ItemState.FAILED}
    assert events[-1].errors == 1


@pytest.mark.asyncio
async def test_processed_is_monotonic_and_window_is_bounded(
    db_session, make_detection, make_candidate, fake_catalog, fake_comparator
):
    images = _images(db_session, 12)
    snapshots = [DetectionSnapshot.from_detection(make_detection(image=image)) for image in images]
    fake_catalog.candidates = [make_candidate("A"), make_candidate("B")]
    fake_comparator.delay = 0.01

    orchestrator = _orchestrator(db_session, fake_catalog, fake_comparator, concurrency=3)
    results, events = await _run(orchestrator, snapshots)

    processed = [e.processed for e in events]
    assert processed == sorted(processed)
    assert orchestrator.max_in_flight <= 3
    assert len(results) == 12
    assert all(r.outcome == MatchOutcome.NO_MATCH for r in results)


@pytest.mark.asyncio
async def test_stage_events_follow_stage_order_per_item(
    db_session, make_detection, make_candidate, fake_catalog, fake_comparator
):
    detection = make_detection()
    fake_catalog.candidates = [make_candidate("A")]

    _, events = await _run(
        _orchestrator(db_session, fake_catalog, fake_comparator),
        [DetectionSnapshot.from_detection(detection)],
    )

    stages = [e.stage for e in events if e.detection_id == detection.id]
    assert stages == ["searching", "prefiltering", "matching", "consolidating", "no_match"]


@pytest.mark.asyncio
async def test_abort_reports_cancelled_items(
    db_session, make_detection, make_candidate, fake_catalog, fake_comparator
):
    images = _images(db_session, 4)
    snapshots = [DetectionSnapshot.from_detection(make_detection(image=image)) for image in images]
    fake_catalog.candidates = [make_candidate("A")]
    fake_comparator.delay = 5

    orchestrator = _orchestrator(db_session, fake_catalog, fake_comparator, concurrency=2)
    channel = ProgressChannel()
    run = asyncio.create_task(orchestrator.run(snapshots, channel))

    events = []
    async for event in channel.events():
        events.append(event)
        if event.stage == "matching":
            orchestrator.cancel(abort=True)

    results = await run
    assert len(results) == 4
    assert all(r.state == ItemState.CANCELLED for r in results)
    assert events[-1].type == "complete"
    assert events[-1].cancelled == 4


@pytest.mark.asyncio
async def test_cancel_drains_in_flight_items_and_skips_the_rest(
    db_session, make_detection, make_candidate, fake_catalog, fake_comparator
):
    images = _images(db_session, 4)
    snapshots = [DetectionSnapshot.from_detection(make_detection(image=image)) for image in images]
    fake_catalog.candidates = [make_candidate("A")]
    fake_comparator.statuses = {"A": MatchStatus.IDENTICAL}
    fake_comparator.delay = 0.05

    orchestrator = _orchestrator(db_session, fake_catalog, fake_comparator, concurrency=2)
    channel = ProgressChannel()
    run = asyncio.create_task(orchestrator.run(snapshots, channel))

    events = []
    async for event in channel.events():
        events.append(event)
        if event.stage == "matching":
            orchestrator.cancel()

    results = await run
    assert [r.state for r in results] == [
        ItemState.SAVED,
        ItemState.SAVED,
        ItemState.CANCELLED,
        ItemState.CANCELLED,
    ]
    assert [r.detection_id for r in results] == [s.detection_id for s in snapshots]
    assert all(r.message == "Not started: batch cancelled" for r in results[2:])
    assert len(fake_catalog.calls) == 2
    complete = events[-1]
    assert complete.type == "complete"
    assert complete.success == 2
    assert complete.cancelled == 2
    assert complete.processed == 4
