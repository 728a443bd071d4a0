import asyncio
import logging
from typing import List, Optional

from celery import Task
from sqlalchemy.orm import Session

from models.database import SessionLocal
from services.product_matching.catalog_search import CatalogSearchClient
from services.product_matching.progress import ProgressChannel
from services.product_matching.stage_store import StageStore
from services.product_matching.visual_match import VisualComparisonClient
from workers.batch_orchestrator import BatchOrchestrator, ItemResult, eligible_detections
from workers.celery_app import celery_app

logger = logging.getLogger(__name__)


class DatabaseTask(Task):
    _db: Session | None = None

    @property
    def db(self) -> Session:
        if self._db is None:
            self._db = SessionLocal()
        return self._db

    def after_return(self, *args, **kwargs):
        if self._db is not None:
            self._db.close()
            self._db = None


def summarize_results(results: List[ItemResult]) -> dict:
    summary = {"total": len(results), "by_state": {}, "failed": []}
    for result in results:
        state = result.state.value
        summary["by_state"][state] = summary["by_state"].get(state, 0) + 1
        if result.error:
            summary["failed"].append({"detection_id": result.detection_id, "error": result.error})
    return summary


async def _drain(channel: ProgressChannel) -> None:
    async for event in channel.events():
        logger.debug(f"[{event.type}] {event.processed}/{event.total} {event.message or ''}")


async def _run_batch(orchestrator: BatchOrchestrator, snapshots) -> List[ItemResult]:
    channel = ProgressChannel()
    drain = asyncio.create_task(_drain(channel))
    try:
        return await orchestrator.run(snapshots, channel)
    finally:
        await drain


@celery_app.task(base=DatabaseTask, bind=True)
def run_scope_matching(
    self: DatabaseTask,
    image_id: Optional[int] = None,
    project_id: Optional[int] = None,
    concurrency: Optional[int] = None,
) -> dict:
    logger.info(f"Starting scope matching: image={image_id}, project={project_id}, concurrency={concurrency}")

    snapshots = eligible_detections(self.db, image_id=image_id, project_id=project_id)
    orchestrator = BatchOrchestrator(
        CatalogSearchClient().search,
        VisualComparisonClient(),
        StageStore(self.db),
        concurrency=concurrency,
    )
    results = asyncio.run(_run_batch(orchestrator, snapshots))

    summary = summarize_results(results)
    logger.info(f"Scope matching finished: {summary['by_state']}")
    return summary
