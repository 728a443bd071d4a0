"""
Visual match classification.

Two call shapes are supported against the external comparison service:
one binary comparison per candidate (``classify_candidates``) or a single
selector call over every candidate (``select_best_match``). Failures of an
individual comparison degrade that candidate to ``not_match``; they never
abort the other candidates.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import httpx

from config import settings
from models.domain import MatchStatus
from services.product_matching.errors import VisualMatchUnavailable
from services.product_matching.models import (
    Candidate,
    CandidateScore,
    ClassifiedCandidate,
    ComparisonResult,
    DetectionAttributes,
    ReferenceImage,
    ScoredCandidate,
    VisualSelection,
)

logger = logging.getLogger(__name__)

NO_IMAGE_REASON = "No reference image available"


def parse_match_status(value: Any) -> MatchStatus:
    if isinstance(value, MatchStatus):
        return value
    normalized = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return MatchStatus(normalized)
    except ValueError:
        return MatchStatus.NOT_MATCH


def clamp_unit(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:
        return 0.0
    return min(1.0, max(0.0, number))


def normalize_comparison(payload: Dict[str, Any]) -> ComparisonResult:
    return ComparisonResult(
        status=parse_match_status(payload.get("matchStatus")),
        confidence=clamp_unit(payload.get("confidence")),
        visual_similarity=clamp_unit(payload.get("visualSimilarity")),
        reason=str(payload.get("reason") or ""),
    )


def normalize_selection(payload: Dict[str, Any], candidates: Sequence[Candidate]) -> VisualSelection:
    """Map the selector's 1-based candidate indexes back onto catalog keys."""

    def _key_at(index: Any) -> Optional[str]:
        if isinstance(index, bool) or not isinstance(index, int):
            return None
        if 1 <= index <= len(candidates):
            return candidates[index - 1].key
        return None

    scores: List[CandidateScore] = []
    for entry in payload.get("candidateScores") or []:
        key = _key_at(entry.get("candidateIndex"))
        if key is None:
            continue
        scores.append(
            CandidateScore(
                candidate_key=key,
                visual_similarity=clamp_unit(entry.get("visualSimilarity")),
                passed_threshold=bool(entry.get("passedThreshold")),
            )
        )

    return VisualSelection(
        selected_key=_key_at(payload.get("selectedCandidateIndex")),
        confidence=clamp_unit(payload.get("confidence")),
        reasoning=str(payload.get("reasoning") or ""),
        visual_similarity=clamp_unit(payload.get("visualSimilarityScore")),
        candidate_scores=tuple(scores),
    )


class VisualComparator(ABC):
    """Interface to the image comparison service."""

    @abstractmethod
    async def compare(self, reference: ReferenceImage, candidate: Candidate) -> ComparisonResult:
        pass

    @abstractmethod
    async def select(
        self,
        reference: ReferenceImage,
        candidates: Sequence[Candidate],
        attributes: DetectionAttributes,
    ) -> VisualSelection:
        pass


def _candidate_payload(candidate: Candidate) -> Dict[str, Any]:
    return {
        "key": candidate.key,
        "image_url": candidate.image_url,
        "name": candidate.name,
        "brand": candidate.brand,
        "size": candidate.size,
        "category": candidate.category,
    }


def _reference_payload(reference: ReferenceImage) -> Dict[str, Any]:
    return {"image_url": reference.image_url, "region": reference.region.as_dict()}


class VisualComparisonClient(VisualComparator):
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = (base_url or settings.vision_api_base).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.vision_api_key
        self.timeout = timeout or settings.vision_timeout_seconds

    def _build_headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(
                    f"{self.base_url}{path}", json=payload, headers=self._build_headers()
                )
                response.raise_for_status()
                result = response.json()
            except httpx.HTTPError as e:
                logger.error(f"Vision API error on {path}: {e}")
                raise VisualMatchUnavailable(f"Vision service error: {e}") from e
            except ValueError as e:
                raise VisualMatchUnavailable(f"Vision service returned invalid JSON: {e}") from e
        if not isinstance(result, dict):
            raise VisualMatchUnavailable("Vision service returned an unexpected payload")
        return result

    async def compare(self, reference: ReferenceImage, candidate: Candidate) -> ComparisonResult:
        payload = {
            "reference": _reference_payload(reference),
            "candidate": _candidate_payload(candidate),
        }
        return normalize_comparison(await self._post("/compare", payload))

    async def select(
        self,
        reference: ReferenceImage,
        candidates: Sequence[Candidate],
        attributes: DetectionAttributes,
    ) -> VisualSelection:
        payload = {
            "reference": _reference_payload(reference),
            "extracted": attributes.as_dict(),
            "candidates": [_candidate_payload(c) for c in candidates],
        }
        return normalize_selection(await self._post("/select", payload), candidates)


def _unwrap(item) -> tuple[Candidate, Optional[float]]:
    if isinstance(item, ScoredCandidate):
        return item.candidate, item.score
    return item, None


async def _classify_one(
    comparator: VisualComparator,
    reference: ReferenceImage,
    candidate: Candidate,
    prefilter_score: Optional[float],
    semaphore: asyncio.Semaphore,
) -> ClassifiedCandidate:
    if not candidate.image_url:
        return ClassifiedCandidate(
            candidate=candidate,
            status=MatchStatus.NOT_MATCH,
            reason=NO_IMAGE_REASON,
            prefilter_score=prefilter_score,
        )

    try:
        async with semaphore:
            result = await comparator.compare(reference, candidate)
    except Exception as e:
        logger.warning(f"Comparison failed for candidate {candidate.key}: {e}")
        return ClassifiedCandidate(
            candidate=candidate,
            status=MatchStatus.NOT_MATCH,
            reason=f"Comparison failed: {e}",
            prefilter_score=prefilter_score,
        )

    return ClassifiedCandidate(
        candidate=candidate,
        status=result.status,
        confidence=result.confidence,
        visual_similarity=result.visual_similarity,
        reason=result.reason,
        prefilter_score=prefilter_score,
    )


async def classify_candidates(
    comparator: VisualComparator,
    reference: ReferenceImage,
    candidates: Sequence[Candidate | ScoredCandidate],
    concurrency: int = 5,
) -> List[ClassifiedCandidate]:
    """Classify every candidate, in input order, with at most ``concurrency`` calls in flight."""
    semaphore = asyncio.Semaphore(max(1, concurrency))
    coros = []
    for item in candidates:
        candidate, score = _unwrap(item)
        coros.append(_classify_one(comparator, reference, candidate, score, semaphore))
    classified = await asyncio.gather(*coros)

    counts: Dict[str, int] = {}
    for c in classified:
        counts[c.status.value] = counts.get(c.status.value, 0) + 1
    logger.info(f"Classified {len(classified)} candidates: {counts}")
    return list(classified)


async def select_best_match(
    comparator: VisualComparator,
    reference: ReferenceImage,
    candidates: Sequence[Candidate | ScoredCandidate],
    attributes: DetectionAttributes,
) -> VisualSelection:
    usable = [c for c in (_unwrap(item)[0] for item in candidates) if c.image_url]
    if not usable:
        return VisualSelection(selected_key=None, reasoning="No candidates with reference images")

    try:
        selection = await comparator.select(reference, usable, attributes)
    except Exception as e:
        logger.warning(f"Visual selection failed across {len(usable)} candidates: {e}")
        return VisualSelection(
            selected_key=None,
            reasoning=f"Selection failed: {e}",
            candidate_scores=tuple(CandidateScore(c.key, 0.0, False) for c in usable),
        )

    if selection.selected_key is not None and selection.selected_key not in {c.key for c in usable}:
        logger.warning(f"Selector chose unknown candidate {selection.selected_key}; ignoring")
        return VisualSelection(
            selected_key=None,
            confidence=selection.confidence,
            reasoning=selection.reasoning,
            candidate_scores=selection.candidate_scores,
        )
    return selection
