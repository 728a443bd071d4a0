"""API router for shelf product matching."""

import asyncio
import logging
from contextlib import AbstractContextManager
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from config import settings
from models import Detection, ProcessingStage, SessionLocal, get_db
from models.schemas import (
    BatchMatchRequest,
    FunnelResponse,
    JobResponse,
    ManualSelectionRequest,
    ManualSelectionResponse,
    MatchResultResponse,
    MatchRunRequest,
    SelectedProductResponse,
    StageRecordResponse,
)
from services.product_matching.catalog_search import CatalogSearchClient
from services.product_matching.errors import (
    CandidateNotFound,
    InvalidRegion,
    MatchingError,
    NoEligibleDetections,
    SearchMisconfigured,
    StorageWriteFailed,
    describe_error,
)
from services.product_matching.models import DetectionSnapshot
from services.product_matching.pipeline import MatchingPipeline, PipelineConfig, SearchFn
from services.product_matching.progress import ProgressChannel, encode_sse
from services.product_matching.stage_store import StageStore
from services.product_matching.visual_match import VisualComparator, VisualComparisonClient
from workers.batch_orchestrator import BatchOrchestrator, eligible_detections, with_search_retries

logger = logging.getLogger(__name__)

router = APIRouter()


@dataclass
class MatchingServices:
    search_fn: SearchFn
    comparator: VisualComparator


@lru_cache(maxsize=1)
def _catalog_client() -> CatalogSearchClient:
    return CatalogSearchClient()


def get_matching_services() -> MatchingServices:
    return MatchingServices(search_fn=_catalog_client().search, comparator=VisualComparisonClient())


def get_session_factory() -> Callable[[], AbstractContextManager]:
    """Session factory for work that outlives the request, such as an event stream."""
    return SessionLocal


def _get_detection(db: Session, detection_id: int) -> Detection:
    detection = db.get(Detection, detection_id)
    if detection is None:
        raise HTTPException(status_code=404, detail=f"Detection {detection_id} not found")
    return detection


def _http_error(exc: MatchingError) -> HTTPException:
    if isinstance(exc, InvalidRegion):
        return HTTPException(status_code=422, detail=describe_error(exc))
    if isinstance(exc, SearchMisconfigured):
        return HTTPException(status_code=502, detail=describe_error(exc))
    if isinstance(exc, StorageWriteFailed):
        return HTTPException(status_code=500, detail=describe_error(exc))
    return HTTPException(status_code=503, detail=describe_error(exc))


@router.post("/detections/{detection_id}/run", response_model=MatchResultResponse)
async def run_detection_match(
    detection_id: int,
    request: Optional[MatchRunRequest] = None,
    db: Session = Depends(get_db),
    services: MatchingServices = Depends(get_matching_services),
) -> MatchResultResponse:
    """
    Run the full matching pipeline for one detection.

    Returns the final outcome together with the number of candidates
    recorded at each stage.
    """
    detection = _get_detection(db, detection_id)
    snapshot = DetectionSnapshot.from_detection(detection)
    if not (snapshot.attributes.brand or snapshot.attributes.product_name):
        raise HTTPException(
            status_code=422,
            detail="Detection has no extracted brand or product name; run extraction first",
        )

    config = PipelineConfig.from_settings(settings)
    if request is not None and request.concurrency:
        config = replace(config, compare_concurrency=request.concurrency)

    store = StageStore(db)
    pipeline = MatchingPipeline(with_search_retries(services.search_fn), services.comparator, store, config)
    try:
        result = await pipeline.run(snapshot)
    except MatchingError as e:
        logger.error(f"Matching failed for detection {detection_id}: {describe_error(e)}")
        raise _http_error(e) from e

    decision = result.decision
    selected = None
    if decision.selected is not None:
        selected = SelectedProductResponse(
            gtin=decision.selected.key,
            product_name=decision.selected.name,
            brand_name=decision.selected.brand,
            category=decision.selected.category,
            image_url=decision.selected.image_url,
        )
    return MatchResultResponse(
        detection_id=result.detection_id,
        detection_index=result.detection_index,
        status=result.state.value,
        outcome=decision.outcome.value,
        reason=decision.reason,
        search_term=result.search_term,
        selection_method=decision.selection_method.value if decision.selection_method else None,
        confidence=decision.confidence,
        selected=selected,
        funnel=store.funnel(detection_id).as_dict(),
    )


@router.post("/batch")
async def run_batch_match(
    body: BatchMatchRequest,
    http_request: Request,
    db: Session = Depends(get_db),
    services: MatchingServices = Depends(get_matching_services),
    session_factory: Callable[[], AbstractContextManager] = Depends(get_session_factory),
) -> StreamingResponse:
    """Match every eligible detection in scope, streaming progress as server-sent events."""
    try:
        snapshots = eligible_detections(db, image_id=body.image_id, project_id=body.project_id)
    except NoEligibleDetections as e:
        raise HTTPException(status_code=404, detail=e.message) from e

    async def event_stream():
        with session_factory() as session:
            orchestrator = BatchOrchestrator(
                services.search_fn,
                services.comparator,
                StageStore(session),
                concurrency=body.concurrency,
            )
            channel = ProgressChannel()
            task = asyncio.create_task(orchestrator.run(snapshots, channel))
            try:
                async for event in channel.events():
                    if await http_request.is_disconnected():
                        logger.info("Client disconnected from batch stream; cancelling")
                        orchestrator.cancel(abort=True)
                    yield encode_sse(event)
            finally:
                if not task.done():
                    orchestrator.cancel(abort=True)
                await asyncio.gather(task, return_exceptions=True)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/jobs", response_model=JobResponse, status_code=202)
async def create_matching_job(
    body: BatchMatchRequest,
    db: Session = Depends(get_db),
) -> JobResponse:
    """Enqueue a batch match as a background Celery task."""
    from workers.tasks import run_scope_matching

    try:
        snapshots = eligible_detections(db, image_id=body.image_id, project_id=body.project_id)
    except NoEligibleDetections as e:
        raise HTTPException(status_code=404, detail=e.message) from e

    task = run_scope_matching.delay(
        image_id=body.image_id,
        project_id=body.project_id,
        concurrency=body.concurrency,
    )
    logger.info(f"Enqueued matching job {task.id} for {len(snapshots)} detections")
    return JobResponse(
        task_id=task.id,
        total=len(snapshots),
        image_id=body.image_id,
        project_id=body.project_id,
    )


@router.post("/detections/{detection_id}/selection", response_model=ManualSelectionResponse)
async def select_detection_candidate(
    detection_id: int,
    body: ManualSelectionRequest,
    db: Session = Depends(get_db),
) -> ManualSelectionResponse:
    """Resolve a detection by hand with one of its stored candidates."""
    _get_detection(db, detection_id)
    try:
        detection = StageStore(db).select_candidate(detection_id, body.candidate_key)
    except CandidateNotFound as e:
        raise HTTPException(status_code=404, detail=e.message) from e
    except MatchingError as e:
        logger.error(f"Manual selection failed for detection {detection_id}: {describe_error(e)}")
        raise _http_error(e) from e

    return ManualSelectionResponse(
        detection_id=detection_id,
        selected=SelectedProductResponse(
            gtin=detection.selected_gtin,
            product_name=detection.selected_product_name,
            brand_name=detection.selected_brand_name,
            category=detection.selected_category,
            image_url=detection.selected_image_url,
        ),
        match_outcome=detection.match_outcome.value if detection.match_outcome else None,
        selection_method=None,
        fully_analyzed=detection.fully_analyzed,
    )


@router.get("/detections/{detection_id}/funnel", response_model=FunnelResponse)
async def get_detection_funnel(
    detection_id: int,
    db: Session = Depends(get_db),
) -> FunnelResponse:
    detection = _get_detection(db, detection_id)
    funnel = StageStore(db).funnel(detection_id)
    return FunnelResponse(
        detection_id=detection_id,
        counts=funnel.as_dict(),
        match_outcome=detection.match_outcome.value if detection.match_outcome else None,
        fully_analyzed=detection.fully_analyzed,
    )


@router.get("/detections/{detection_id}/stage-records", response_model=List[StageRecordResponse])
async def list_stage_records(
    detection_id: int,
    stage: Optional[ProcessingStage] = Query(default=None),
    db: Session = Depends(get_db),
) -> List[StageRecordResponse]:
    _get_detection(db, detection_id)
    return [
        StageRecordResponse(
            candidate_key=r.candidate_key,
            stage=r.stage.value,
            search_term=r.search_term,
            result_rank=r.result_rank,
            product_name=r.product_name,
            brand_name=r.brand_name,
            measures=r.measures,
            category=r.category,
            front_image_url=r.front_image_url,
            prefilter_score=r.prefilter_score,
            prefilter_reasons=r.prefilter_reasons,
            match_status=r.match_status.value if r.match_status else None,
            confidence=r.confidence,
            visual_similarity=r.visual_similarity,
            match_reason=r.match_reason,
            updated_at=r.updated_at,
        )
        for r in StageStore(db).records(detection_id, stage)
    ]
