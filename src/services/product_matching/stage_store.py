"""
Idempotent persistence of candidates at each pipeline stage.

Rows are keyed on (detection_id, candidate_key, stage); re-running a stage
updates the existing rows in place and drops rows of that stage whose
candidates were not written again. Each bulk write is one transaction.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from models.domain import STAGE_ORDER, Detection, MatchOutcome, ProcessingStage, StageRecord
from services.product_matching.consolidation import ConsolidationDecision
from services.product_matching.errors import CandidateNotFound, StorageWriteFailed
from services.product_matching.models import StageEntry

logger = logging.getLogger(__name__)

CONFLICT_COLUMNS = ["detection_id", "candidate_key", "stage"]
UPDATE_COLUMNS = [
    "search_term",
    "result_rank",
    "product_name",
    "brand_name",
    "measures",
    "category",
    "front_image_url",
    "raw_payload",
    "prefilter_score",
    "prefilter_reasons",
    "match_status",
    "confidence",
    "visual_similarity",
    "match_reason",
]

_INSERTS = {
    "sqlite": sqlite_insert,
    "postgresql": postgresql_insert,
}


@dataclass
class StageFunnel:
    detection_id: int
    counts: Dict[ProcessingStage, int] = field(default_factory=dict)

    def count(self, stage: ProcessingStage) -> int:
        return self.counts.get(stage, 0)

    def as_dict(self) -> Dict[str, int]:
        return {stage.value: self.count(stage) for stage in STAGE_ORDER}


def _is_locked_error(exc: OperationalError) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return "database is locked" in message or "database is busy" in message


def _row(detection_id: int, stage: ProcessingStage, entry: StageEntry) -> dict:
    candidate = entry.candidate
    return {
        "detection_id": detection_id,
        "candidate_key": candidate.key,
        "stage": stage,
        "search_term": entry.search_term,
        "result_rank": candidate.rank,
        "product_name": candidate.name,
        "brand_name": candidate.brand,
        "measures": candidate.size,
        "category": candidate.category,
        "front_image_url": candidate.image_url,
        "raw_payload": candidate.raw or None,
        "prefilter_score": entry.prefilter_score,
        "prefilter_reasons": list(entry.prefilter_reasons) or None,
        "match_status": entry.match_status,
        "confidence": entry.confidence,
        "visual_similarity": entry.visual_similarity,
        "match_reason": entry.match_reason,
    }


class StageStore:
    def __init__(self, db: Session, retries: int = 3, retry_delay: float = 0.1):
        self.db = db
        self.retries = retries
        self.retry_delay = retry_delay

    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        insert = _INSERTS.get(dialect)
        if insert is None:
            raise StorageWriteFailed(f"Upsert is not supported on dialect {dialect}")
        return insert

    def _execute_in_transaction(self, work, description: str) -> None:
        for attempt in range(self.retries):
            try:
                work()
                self.db.commit()
                return
            except OperationalError as exc:
                self.db.rollback()
                if _is_locked_error(exc) and attempt < self.retries - 1:
                    time.sleep(self.retry_delay * (attempt + 1))
                    continue
                logger.error(f"{description} failed: {exc}")
                raise StorageWriteFailed(f"{description} failed: {exc}") from exc
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.error(f"{description} failed: {exc}")
                raise StorageWriteFailed(f"{description} failed: {exc}") from exc

    def upsert_stage(
        self,
        detection_id: int,
        stage: ProcessingStage,
        entries: Sequence[StageEntry],
        clear_later_stages: bool = False,
    ) -> int:
        """
        Replace the ``stage`` records of a detection in one all-or-nothing write.

        Existing rows are updated in place; rows for candidates not in
        ``entries`` are removed. With ``clear_later_stages`` the rows of every
        stage after ``stage`` are removed as well, which a fresh search uses to
        discard the previous run. Returns rows written.
        """
        rows_by_key = {entry.candidate.key: _row(detection_id, stage, entry) for entry in entries}
        rows = list(rows_by_key.values())
        later = [s for s, order in STAGE_ORDER.items() if order > STAGE_ORDER[stage]]
        insert = self._insert() if rows else None

        def _work():
            stale = delete(StageRecord).where(
                StageRecord.detection_id == detection_id,
                StageRecord.stage == stage,
            )
            if rows_by_key:
                stale = stale.where(StageRecord.candidate_key.not_in(list(rows_by_key)))
            self.db.execute(stale)
            if clear_later_stages and later:
                self.db.execute(
                    delete(StageRecord).where(
                        StageRecord.detection_id == detection_id,
                        StageRecord.stage.in_(later),
                    )
                )
            if not rows:
                return
            stmt = insert(StageRecord).values(rows)
            stmt = stmt.on_conflict_do_update(
                index_elements=CONFLICT_COLUMNS,
                set_={
                    **{column: stmt.excluded[column] for column in UPDATE_COLUMNS},
                    "updated_at": func.now(),
                },
            )
            self.db.execute(stmt)

        self._execute_in_transaction(
            _work, f"Stage upsert ({stage.value}) for detection {detection_id}"
        )
        logger.debug(f"Upserted {len(rows)} {stage.value} records for detection {detection_id}")
        return len(rows)

    def save_outcome(self, detection_id: int, decision: ConsolidationDecision) -> Detection:
        detection = self.db.get(Detection, detection_id)
        if detection is None:
            raise StorageWriteFailed(f"Detection {detection_id} not found")

        def _work():
            selected = decision.selected
            detection.selected_gtin = selected.key if selected else None
            detection.selected_product_name = selected.name if selected else None
            detection.selected_brand_name = selected.brand if selected else None
            detection.selected_category = selected.category if selected else None
            detection.selected_image_url = selected.image_url if selected else None
            detection.selection_method = decision.selection_method if selected else None
            detection.match_outcome = decision.outcome
            detection.match_reason = decision.reason
            detection.fully_analyzed = decision.outcome in (
                MatchOutcome.AUTO_MATCH,
                MatchOutcome.PROMOTED_MATCH,
            )
            detection.analysis_completed_at = datetime.now(timezone.utc)
            self.db.flush()

        self._execute_in_transaction(_work, f"Outcome update for detection {detection_id}")
        return detection

    def select_candidate(self, detection_id: int, candidate_key: str) -> Detection:
        """
        Record a reviewer's choice among the stored candidates of a detection.

        The product fields come from the candidate's furthest stage record. The
        selection method stays empty, marking the choice as manual.
        """
        detection = self.db.get(Detection, detection_id)
        if detection is None:
            raise StorageWriteFailed(f"Detection {detection_id} not found")

        stored = [
            r for r in self.records(detection_id)
            if r.candidate_key == candidate_key
        ]
        if not stored:
            raise CandidateNotFound(
                f"Candidate {candidate_key} was not recorded for detection {detection_id}"
            )
        record = stored[-1]

        def _work():
            detection.selected_gtin = record.candidate_key
            detection.selected_product_name = record.product_name
            detection.selected_brand_name = record.brand_name
            detection.selected_category = record.category
            detection.selected_image_url = record.front_image_url
            detection.selection_method = None
            detection.match_reason = "Selected manually"
            detection.fully_analyzed = True
            detection.analysis_completed_at = datetime.now(timezone.utc)
            self.db.flush()

        self._execute_in_transaction(_work, f"Manual selection for detection {detection_id}")
        logger.info(f"Detection {detection_id}: candidate {candidate_key} selected manually")
        return detection

    def records(
        self,
        detection_id: int,
        stage: Optional[ProcessingStage] = None,
    ) -> List[StageRecord]:
        query = select(StageRecord).where(StageRecord.detection_id == detection_id)
        if stage is not None:
            query = query.where(StageRecord.stage == stage)
        rows = list(self.db.scalars(query))
        rows.sort(key=lambda r: (STAGE_ORDER[r.stage], r.result_rank or 0, r.candidate_key))
        return rows

    def funnel(self, detection_id: int) -> StageFunnel:
        query = (
            select(StageRecord.stage, func.count(StageRecord.id))
            .where(StageRecord.detection_id == detection_id)
            .group_by(StageRecord.stage)
        )
        counts = {stage: count for stage, count in self.db.execute(query)}
        return StageFunnel(detection_id=detection_id, counts=counts)
