"""
Single-detection matching pipeline.

Runs search, pre-filter, visual match and consolidation for one detection,
writing stage records as it goes. External collaborators (search function,
visual comparator, stage store) are injected so each stage can be exercised
in isolation; the batch orchestrator drives many of these concurrently.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from models.domain import MatchOutcome, MatchStatus, ProcessingStage
from services.product_matching.consolidation import (
    ConsolidationDecision,
    consolidate,
    consolidate_selection,
)
from services.product_matching.errors import (
    MatchingCancelled,
    SearchUnavailable,
    VisualMatchUnavailable,
)
from services.product_matching.models import (
    Candidate,
    ClassifiedCandidate,
    DetectionAttributes,
    DetectionSnapshot,
    ReferenceImage,
    ScoredCandidate,
    SearchResult,
    StageEntry,
    VisualSelection,
)
from services.product_matching.prefilter import PreFilterConfig, prefilter_candidates
from services.product_matching.stage_store import StageStore
from services.product_matching.visual_match import (
    NO_IMAGE_REASON,
    VisualComparator,
    classify_candidates,
    select_best_match,
)

logger = logging.getLogger(__name__)

SearchFn = Callable[[DetectionAttributes], Awaitable[SearchResult]]


class ItemState(str, enum.Enum):
    QUEUED = "queued"
    SEARCHING = "searching"
    PREFILTERING = "prefiltering"
    MATCHING = "matching"
    CONSOLIDATING = "consolidating"
    SAVED = "saved"
    MANUAL_REVIEW = "manual_review"
    NO_MATCH = "no_match"
    FAILED = "failed"
    CANCELLED = "cancelled"


OUTCOME_STATES = {
    MatchOutcome.AUTO_MATCH: ItemState.SAVED,
    MatchOutcome.PROMOTED_MATCH: ItemState.SAVED,
    MatchOutcome.MANUAL_REVIEW: ItemState.MANUAL_REVIEW,
    MatchOutcome.NO_MATCH: ItemState.NO_MATCH,
}

StageCallback = Callable[[ItemState, str], None]


@dataclass(frozen=True)
class PipelineConfig:
    prefilter: PreFilterConfig = field(default_factory=PreFilterConfig)
    visual_match_mode: str = "per_candidate"
    selector_threshold: float = 0.6
    resolve_ambiguous_with_selector: bool = False
    compare_concurrency: int = 5
    item_timeout_seconds: float = 180.0

    @classmethod
    def from_settings(cls, settings) -> "PipelineConfig":
        return cls(
            prefilter=PreFilterConfig.from_settings(settings),
            visual_match_mode=settings.visual_match_mode,
            selector_threshold=settings.selector_confidence_threshold,
            resolve_ambiguous_with_selector=settings.resolve_ambiguous_with_selector,
            compare_concurrency=settings.compare_concurrency,
            item_timeout_seconds=settings.item_timeout_seconds,
        )


@dataclass
class PipelineResult:
    detection_id: int
    detection_index: int
    label: str
    state: ItemState
    decision: ConsolidationDecision
    search_term: str = ""
    searched: int = 0
    prefiltered: int = 0
    compared: int = 0
    widened: bool = False

    @property
    def outcome(self) -> MatchOutcome:
        return self.decision.outcome


class _Budget:
    """Wall-clock budget shared by every stage of one detection run."""

    def __init__(self, seconds: float):
        self._loop = asyncio.get_running_loop()
        self.deadline = self._loop.time() + seconds

    def remaining(self) -> float:
        return self.deadline - self._loop.time()

    async def run(self, coro, error_cls, stage: str):
        remaining = self.remaining()
        if remaining <= 0:
            coro.close()
            raise error_cls(f"No time left in budget before {stage}")
        try:
            return await asyncio.wait_for(coro, timeout=remaining)
        except asyncio.TimeoutError as e:
            raise error_cls(f"{stage} exceeded the time budget") from e


def _check_cancelled(cancel_event: Optional[asyncio.Event], stage: ItemState) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise MatchingCancelled(f"Cancelled before {stage.value}")


def _selector_entries(
    candidates: List[Candidate],
    selection: VisualSelection,
    decision: ConsolidationDecision,
) -> List[StageEntry]:
    scores = {s.candidate_key: s for s in selection.candidate_scores}
    entries = []
    for candidate in candidates:
        score = scores.get(candidate.key)
        similarity = score.visual_similarity if score else 0.0
        if not candidate.image_url:
            status, reason, confidence = MatchStatus.NOT_MATCH, NO_IMAGE_REASON, None
        elif candidate.key == selection.selected_key:
            status = (
                MatchStatus.IDENTICAL
                if decision.outcome == MatchOutcome.AUTO_MATCH
                else MatchStatus.ALMOST_SAME
            )
            reason, confidence = selection.reasoning, selection.confidence
            similarity = selection.visual_similarity or similarity
        elif score and score.passed_threshold:
            status, reason, confidence = (
                MatchStatus.ALMOST_SAME,
                f"Passed visual similarity threshold ({similarity * 100:.1f}%)",
                None,
            )
        else:
            status, reason, confidence = MatchStatus.NOT_MATCH, "Not selected", None
        entries.append(
            StageEntry(
                candidate=candidate,
                match_status=status,
                confidence=confidence,
                visual_similarity=similarity,
                match_reason=reason,
            )
        )
    return entries


class MatchingPipeline:
    def __init__(
        self,
        search_fn: SearchFn,
        comparator: VisualComparator,
        store: StageStore,
        config: Optional[PipelineConfig] = None,
    ):
        self.search_fn = search_fn
        self.comparator = comparator
        self.store = store
        self.config = config or PipelineConfig()

    async def run(
        self,
        snapshot: DetectionSnapshot,
        on_stage: Optional[StageCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PipelineResult:
        notify = on_stage or (lambda state, message: None)
        budget = _Budget(self.config.item_timeout_seconds)
        detection_id = snapshot.detection_id
        attributes = snapshot.attributes

        reference = snapshot.reference_image()

        _check_cancelled(cancel_event, ItemState.SEARCHING)
        notify(ItemState.SEARCHING, "Searching catalog...")
        search = await budget.run(self.search_fn(attributes), SearchUnavailable, "Catalog search")
        self.store.upsert_stage(
            detection_id,
            ProcessingStage.SEARCH,
            [StageEntry(candidate=c, search_term=search.search_term) for c in search.candidates],
            clear_later_stages=True,
        )
        result = PipelineResult(
            detection_id=detection_id,
            detection_index=snapshot.detection_index,
            label=snapshot.label,
            state=ItemState.SEARCHING,
            decision=ConsolidationDecision(outcome=MatchOutcome.NO_MATCH),
            search_term=search.search_term,
            searched=len(search.candidates),
        )
        if not search.candidates:
            return self._finish(result, ConsolidationDecision(
                outcome=MatchOutcome.NO_MATCH, reason="No catalog results found"
            ))

        _check_cancelled(cancel_event, ItemState.PREFILTERING)
        notify(ItemState.PREFILTERING, f"Pre-filtering {len(search.candidates)} results...")
        prefiltered = prefilter_candidates(
            search.candidates, attributes, snapshot.store_name, self.config.prefilter
        )
        self.store.upsert_stage(
            detection_id,
            ProcessingStage.PRE_FILTER,
            [
                StageEntry(
                    candidate=s.candidate,
                    search_term=search.search_term,
                    prefilter_score=s.score,
                    prefilter_reasons=s.reasons,
                )
                for s in prefiltered.candidates
            ],
        )
        result.prefiltered = len(prefiltered.candidates)
        result.widened = prefiltered.widened
        if prefiltered.is_empty:
            return self._finish(result, ConsolidationDecision(
                outcome=MatchOutcome.NO_MATCH, reason="No matches after pre-filter"
            ))

        _check_cancelled(cancel_event, ItemState.MATCHING)
        notify(ItemState.MATCHING, f"Comparing {len(prefiltered.candidates)} candidates...")
        result.compared = len(prefiltered.candidates)
        if self.config.visual_match_mode == "selector":
            decision = await self._match_with_selector(
                detection_id, reference, prefiltered.candidates, attributes, budget
            )
            _check_cancelled(cancel_event, ItemState.CONSOLIDATING)
            notify(ItemState.CONSOLIDATING, "Consolidating selection...")
            return self._finish(result, decision)

        classified = await budget.run(
            classify_candidates(
                self.comparator,
                reference,
                prefiltered.candidates,
                concurrency=self.config.compare_concurrency,
            ),
            VisualMatchUnavailable,
            "Visual match",
        )
        self._store_classified(detection_id, classified)

        _check_cancelled(cancel_event, ItemState.CONSOLIDATING)
        notify(ItemState.CONSOLIDATING, "Consolidating matches...")
        decision = consolidate(classified)
        if (
            decision.outcome == MatchOutcome.MANUAL_REVIEW
            and self.config.resolve_ambiguous_with_selector
            and decision.ambiguous
        ):
            decision = await self._resolve_ambiguous(
                detection_id, reference, decision, attributes, budget
            )
        return self._finish(result, decision)

    def _store_classified(self, detection_id: int, classified: List[ClassifiedCandidate]) -> None:
        self.store.upsert_stage(
            detection_id,
            ProcessingStage.AI_FILTER,
            [
                StageEntry(
                    candidate=c.candidate,
                    prefilter_score=c.prefilter_score,
                    match_status=c.status,
                    confidence=c.confidence,
                    visual_similarity=c.visual_similarity,
                    match_reason=c.reason,
                )
                for c in classified
            ],
        )

    async def _select(
        self,
        detection_id: int,
        reference: ReferenceImage,
        candidates: List[Candidate],
        attributes: DetectionAttributes,
        budget: _Budget,
    ) -> ConsolidationDecision:
        selection = await budget.run(
            select_best_match(self.comparator, reference, candidates, attributes),
            VisualMatchUnavailable,
            "Visual selection",
        )
        decision = consolidate_selection(selection, candidates, self.config.selector_threshold)
        self.store.upsert_stage(
            detection_id,
            ProcessingStage.VISUAL_MATCH,
            _selector_entries(candidates, selection, decision),
        )
        return decision

    async def _match_with_selector(
        self,
        detection_id: int,
        reference: ReferenceImage,
        scored: List[ScoredCandidate],
        attributes: DetectionAttributes,
        budget: _Budget,
    ) -> ConsolidationDecision:
        candidates = [s.candidate for s in scored]
        return await self._select(detection_id, reference, candidates, attributes, budget)

    async def _resolve_ambiguous(
        self,
        detection_id: int,
        reference: ReferenceImage,
        decision: ConsolidationDecision,
        attributes: DetectionAttributes,
        budget: _Budget,
    ) -> ConsolidationDecision:
        logger.info(
            f"Detection {detection_id}: asking selector to resolve "
            f"{len(decision.ambiguous)} ambiguous candidates"
        )
        resolved = await self._select(
            detection_id, reference, list(decision.ambiguous), attributes, budget
        )
        if resolved.outcome == MatchOutcome.AUTO_MATCH:
            return resolved
        return decision

    def _finish(self, result: PipelineResult, decision: ConsolidationDecision) -> PipelineResult:
        self.store.save_outcome(result.detection_id, decision)
        result.decision = decision
        result.state = OUTCOME_STATES[decision.outcome]
        logger.info(
            f"Detection {result.detection_id} -> {decision.outcome.value} "
            f"({result.searched} searched, {result.prefiltered} pre-filtered): {decision.reason}"
        )
        return result
