"""
Batch matching over a scope of detections.

Runs ``MatchingPipeline`` for each eligible detection inside a bounded window,
publishes a progress event for every stage transition and item completion,
and terminates the progress channel with exactly one ``complete`` event that
carries the per-item results. A failing item never stops the batch.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, joinedload

from config import settings
from models.domain import Detection, MatchOutcome, ShelfImage
from services.product_matching.errors import (
    MatchingCancelled,
    NoEligibleDetections,
    SearchUnavailable,
    describe_error,
)
from services.product_matching.models import Candidate, DetectionSnapshot
from services.product_matching.pipeline import (
    ItemState,
    MatchingPipeline,
    PipelineConfig,
    PipelineResult,
    SearchFn,
)
from services.product_matching.progress import ItemResultPayload, ProgressChannel, ProgressEvent
from services.product_matching.stage_store import StageStore
from services.product_matching.visual_match import VisualComparator
from workers.bounded_window import BoundedWindow, WindowOutcome

logger = logging.getLogger(__name__)


@dataclass
class ItemResult:
    detection_id: int
    detection_index: int
    label: str
    state: ItemState
    outcome: Optional[MatchOutcome] = None
    selected: Optional[Candidate] = None
    selection_method: Optional[str] = None
    message: str = ""
    error: Optional[str] = None

    def payload(self) -> ItemResultPayload:
        saved_match = None
        if self.selected is not None:
            saved_match = {
                "gtin": self.selected.key,
                "product_name": self.selected.name,
                "brand_name": self.selected.brand,
                "image_url": self.selected.image_url,
                "selection_method": self.selection_method,
            }
        return ItemResultPayload(
            detection_id=self.detection_id,
            detection_index=self.detection_index,
            status=self.state.value,
            outcome=self.outcome.value if self.outcome else None,
            product_name=self.selected.name if self.selected else None,
            brand_name=self.selected.brand if self.selected else None,
            message=self.message or None,
            error=self.error,
            saved_match=saved_match,
        )


@dataclass
class BatchStats:
    total: int
    processed: int = 0
    success: int = 0
    no_match: int = 0
    manual_review: int = 0
    errors: int = 0
    cancelled: int = 0

    def record(self, result: ItemResult) -> None:
        self.processed += 1
        if result.state == ItemState.SAVED:
            self.success += 1
        elif result.state == ItemState.NO_MATCH:
            self.no_match += 1
        elif result.state == ItemState.MANUAL_REVIEW:
            self.manual_review += 1
        elif result.state == ItemState.CANCELLED:
            self.cancelled += 1
        else:
            self.errors += 1

    def counters(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "total": self.total,
            "success": self.success,
            "no_match": self.no_match,
            "manual_review": self.manual_review,
            "errors": self.errors,
            "cancelled": self.cancelled,
        }


def clamp_concurrency(
    requested: Optional[int],
    default: Optional[int] = None,
    maximum: Optional[int] = None,
) -> int:
    default = default if default is not None else settings.batch_default_concurrency
    maximum = maximum if maximum is not None else settings.batch_max_concurrency
    value = requested if requested is not None else default
    return max(1, min(value, maximum))


def with_search_retries(
    search_fn: SearchFn,
    retries: Optional[int] = None,
    backoff: Optional[float] = None,
) -> SearchFn:
    """Wrap ``search_fn`` so ``SearchUnavailable`` is retried with linear backoff."""
    retries = settings.search_max_retries if retries is None else retries
    backoff = settings.search_retry_backoff_seconds if backoff is None else backoff

    async def _search(attributes):
        attempt = 0
        while True:
            try:
                return await search_fn(attributes)
            except SearchUnavailable as e:
                if attempt >= retries:
                    raise
                attempt += 1
                logger.warning(f"Catalog search unavailable, retry {attempt}/{retries}: {e.message}")
                await asyncio.sleep(backoff * attempt)

    return _search


def eligible_detections(
    db: Session,
    image_id: Optional[int] = None,
    project_id: Optional[int] = None,
) -> List[DetectionSnapshot]:
    """Detections in scope that have a brand or product name and are not fully analyzed."""
    if image_id is None and project_id is None:
        raise ValueError("Either image_id or project_id is required")

    query = (
        select(Detection)
        .join(ShelfImage, Detection.image_id == ShelfImage.id)
        .options(joinedload(Detection.image))
        .where(Detection.fully_analyzed.is_(False))
        .where(or_(Detection.brand_name.is_not(None), Detection.product_name.is_not(None)))
        .order_by(Detection.image_id, Detection.detection_index)
    )
    if image_id is not None:
        query = query.where(Detection.image_id == image_id)
    if project_id is not None:
        query = query.where(ShelfImage.project_id == project_id)

    snapshots = [DetectionSnapshot.from_detection(d) for d in db.scalars(query).unique()]
    snapshots = [s for s in snapshots if s.attributes.brand or s.attributes.product_name]
    if not snapshots:
        scope = f"image {image_id}" if image_id is not None else f"project {project_id}"
        raise NoEligibleDetections(f"No detections ready for matching in {scope}")
    return snapshots


def _item_result(outcome: WindowOutcome) -> ItemResult:
    snapshot: DetectionSnapshot = outcome.item
    base = dict(
        detection_id=snapshot.detection_id,
        detection_index=snapshot.detection_index,
        label=snapshot.label,
    )
    if outcome.skipped:
        return ItemResult(**base, state=ItemState.CANCELLED, message="Not started: batch cancelled")

    error = outcome.error
    if isinstance(error, (MatchingCancelled, asyncio.CancelledError)):
        return ItemResult(**base, state=ItemState.CANCELLED, message="Cancelled")
    if error is not None:
        logger.error(f"Detection {snapshot.detection_id} failed: {describe_error(error)}")
        return ItemResult(
            **base,
            state=ItemState.FAILED,
            message=f"Failed: {error}",
            error=describe_error(error),
        )

    result: PipelineResult = outcome.result
    decision = result.decision
    return ItemResult(
        **base,
        state=result.state,
        outcome=decision.outcome,
        selected=decision.selected,
        selection_method=decision.selection_method.value if decision.selection_method else None,
        message=decision.reason,
    )


class BatchOrchestrator:
    def __init__(
        self,
        search_fn: SearchFn,
        comparator: VisualComparator,
        store: StageStore,
        config: Optional[PipelineConfig] = None,
        concurrency: Optional[int] = None,
        admission_batch_size: Optional[int] = None,
        admission_pause: Optional[float] = None,
        search_retries: Optional[int] = None,
        search_backoff: Optional[float] = None,
    ):
        self.pipeline = MatchingPipeline(
            with_search_retries(search_fn, search_retries, search_backoff),
            comparator,
            store,
            config or PipelineConfig.from_settings(settings),
        )
        self.concurrency = clamp_concurrency(concurrency)
        self.admission_batch_size = (
            admission_batch_size if admission_batch_size is not None else settings.batch_admission_size
        )
        self.admission_pause = (
            admission_pause if admission_pause is not None else settings.batch_admission_pause_seconds
        )
        self._abort_event = asyncio.Event()
        self._stop_requested = False
        self._window: Optional[BoundedWindow] = None
        self.max_in_flight = 0

    def cancel(self, abort: bool = False) -> None:
        """Stop admitting items; with ``abort`` also cancel the ones in flight."""
        logger.info(f"Batch cancellation requested (abort={abort})")
        self._stop_requested = True
        if abort:
            self._abort_event.set()
        if self._window is not None:
            if abort:
                self._window.abort()
            else:
                self._window.stop()

    async def run(
        self,
        snapshots: Sequence[DetectionSnapshot],
        channel: ProgressChannel,
    ) -> List[ItemResult]:
        snapshots = list(snapshots)
        stats = BatchStats(total=len(snapshots))
        results: List[Optional[ItemResult]] = [None] * len(snapshots)

        logger.info(f"Starting batch matching: {len(snapshots)} detections, concurrency={self.concurrency}")
        channel.publish(ProgressEvent(
            type="start",
            message=f"Matching {len(snapshots)} detections",
            **stats.counters(),
        ))

        async def _process(snapshot: DetectionSnapshot) -> PipelineResult:
            def on_stage(state: ItemState, message: str) -> None:
                channel.publish(ProgressEvent(
                    detection_id=snapshot.detection_id,
                    detection_index=snapshot.detection_index,
                    stage=state.value,
                    message=message,
                    current_product=snapshot.label,
                    **stats.counters(),
                ))

            return await self.pipeline.run(snapshot, on_stage=on_stage, cancel_event=self._abort_event)

        window = BoundedWindow(self.concurrency, self.admission_batch_size, self.admission_pause)
        self._window = window
        if self._stop_requested:
            window.stop()

        try:
            async for outcome in window.run(snapshots, _process):
                result = _item_result(outcome)
                results[outcome.index] = result
                stats.record(result)
                channel.publish(ProgressEvent(
                    detection_id=result.detection_id,
                    detection_index=result.detection_index,
                    stage=result.state.value,
                    message=result.message,
                    current_product=result.label,
                    **stats.counters(),
                ))
        finally:
            self.max_in_flight = window.max_in_flight
            self._window = None
            finished = [r for r in results if r is not None]
            logger.info(
                f"Batch matching finished: {stats.success} matched, {stats.no_match} no match, "
                f"{stats.manual_review} manual review, {stats.errors} failed, {stats.cancelled} cancelled"
            )
            channel.complete(ProgressEvent(
                message=f"Processed {stats.processed}/{stats.total} detections",
                results=[r.payload() for r in finished],
                **stats.counters(),
            ))
        return finished
