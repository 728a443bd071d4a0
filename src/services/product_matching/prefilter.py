"""
Deterministic text pre-filter run before any visual comparison.

Each candidate gets a weighted similarity over brand, size and product name,
plus an optional retailer boost. Only candidates at or above the score floor
go on to the (expensive) visual stage.
"""

import logging
import re
import unicodedata
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Iterable, List, Optional, Sequence, Tuple

from constants.retailers import retailer_from_store_name
from services.product_matching.models import (
    Candidate,
    DetectionAttributes,
    PreFilterResult,
    ScoredCandidate,
)
from services.product_matching.size_parsing import remove_size_tokens, size_similarity

logger = logging.getLogger(__name__)

BRAND_WEIGHT = 0.40
SIZE_WEIGHT = 0.35
NAME_WEIGHT = 0.25

FUZZY_RATIO_FLOOR = 0.8

STOPWORDS = {
    "the", "and", "with", "for", "from", "new", "original", "classic",
    "pack", "size", "family", "value", "bottle", "can", "jar", "box", "bag",
}


@dataclass(frozen=True)
class PreFilterConfig:
    min_score: float = 0.70
    size_confidence_threshold: float = 0.5
    safety_cap: int = 25
    retailer_boost: float = 0.10

    @classmethod
    def from_settings(cls, settings) -> "PreFilterConfig":
        return cls(
            min_score=settings.prefilter_min_score,
            size_confidence_threshold=settings.prefilter_size_confidence_threshold,
            safety_cap=settings.prefilter_safety_cap,
            retailer_boost=settings.prefilter_retailer_boost,
        )


def normalize_text(text: Optional[str]) -> str:
    if not text:
        return ""
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = re.sub(r"[^a-z0-9\s]+", " ", text.lower())
    return re.sub(r"\s+", " ", text).strip()


def string_similarity(left: Optional[str], right: Optional[str]) -> float:
    """Similarity in [0, 1]: exact 1.0, containment 0.8, fuzzy ratio, word overlap 0.5-0.8."""
    a = normalize_text(left)
    b = normalize_text(right)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0

    compact_a = a.replace(" ", "")
    compact_b = b.replace(" ", "")
    if compact_a == compact_b:
        return 1.0

    shorter, longer = sorted((a, b), key=len)
    if len(shorter) >= 3 and re.search(rf"\b{re.escape(shorter)}\b", longer):
        return 0.8

    ratio = SequenceMatcher(None, compact_a, compact_b).ratio()
    if ratio >= FUZZY_RATIO_FLOOR:
        return ratio

    words_a = a.split()
    words_b = b.split()
    common = [w for w in words_a if w in words_b and len(w) > 2]
    if common:
        overlap = len(common) / max(len(words_a), len(words_b))
        return 0.5 + overlap * 0.3
    return 0.0


def brand_similarity(brand: str, candidate: Candidate) -> float:
    return max(
        string_similarity(brand, candidate.brand),
        string_similarity(brand, candidate.manufacturer),
        string_similarity(brand, candidate.name),
    )


def significant_tokens(text: Optional[str], exclude: Iterable[str] = ()) -> List[str]:
    if not text:
        return []
    excluded = {t for value in exclude for t in normalize_text(value).split()}
    tokens = normalize_text(remove_size_tokens(text)).split()
    seen: List[str] = []
    for token in tokens:
        if len(token) <= 2 or token.isdigit() or token in STOPWORDS or token in excluded:
            continue
        if token not in seen:
            seen.append(token)
    return seen


def name_similarity(product_name: str, candidate: Candidate, brand: Optional[str] = None) -> float:
    extracted = significant_tokens(product_name, exclude=[brand] if brand else [])
    if not extracted:
        return 0.0
    catalog = set(significant_tokens(candidate.name))
    common = [t for t in extracted if t in catalog]
    return len(common) / len(extracted)


def _weighted(components: Sequence[Tuple[float, float]]) -> float:
    total_weight = sum(weight for weight, _ in components)
    if total_weight <= 0:
        return 0.0
    return sum(weight * value for weight, value in components) / total_weight


def _size_is_low_confidence(attributes: DetectionAttributes, config: PreFilterConfig) -> bool:
    if attributes.size_confidence is None:
        return False
    return attributes.size_confidence < config.size_confidence_threshold


def score_candidate(
    candidate: Candidate,
    attributes: DetectionAttributes,
    retailer: Optional[str] = None,
    config: PreFilterConfig = PreFilterConfig(),
) -> ScoredCandidate:
    reasons: List[str] = []
    components: List[Tuple[float, float]] = []

    if attributes.brand:
        brand_score = brand_similarity(attributes.brand, candidate)
        components.append((BRAND_WEIGHT, brand_score))
        if brand_score > 0.5:
            reasons.append(f"Brand match: {brand_score * 100:.0f}%")

    # names made only of brand, stopwords or size tokens carry no name signal
    name_tokens = significant_tokens(
        attributes.product_name, exclude=[attributes.brand] if attributes.brand else []
    )
    if name_tokens:
        name_score = name_similarity(attributes.product_name, candidate, attributes.brand)
        components.append((NAME_WEIGHT, name_score))
        if name_score > 0:
            reasons.append(f"Name overlap: {name_score * 100:.0f}%")

    score = _weighted(components)

    if attributes.size:
        size_score = size_similarity(attributes.size, candidate.size)
        with_size = _weighted(components + [(SIZE_WEIGHT, size_score)])
        if size_score > 0.5:
            reasons.append(f"Size match: {attributes.size} ~ {candidate.size}")
        if _size_is_low_confidence(attributes, config) and components:
            if with_size < score:
                reasons.append("Size relaxed (low confidence)")
            score = max(score, with_size)
        else:
            score = with_size

    if retailer and retailer in candidate.retailers:
        score = min(1.0, score + config.retailer_boost)
        reasons.append(f"Retailer match: {retailer}")

    return ScoredCandidate(candidate=candidate, score=round(score, 6), reasons=tuple(reasons))


def prefilter_candidates(
    candidates: Sequence[Candidate],
    attributes: DetectionAttributes,
    store_name: Optional[str] = None,
    config: PreFilterConfig = PreFilterConfig(),
) -> PreFilterResult:
    """
    Narrow the candidate list by text similarity.

    Returns candidates scoring at least ``config.min_score``, best first, ties
    broken by catalog key. If nothing passes, the full list (capped at
    ``config.safety_cap``) is returned only when the brand is unknown.
    """
    retailer = retailer_from_store_name(store_name)
    scored = [score_candidate(c, attributes, retailer, config) for c in candidates]

    passed = [s for s in scored if s.score >= config.min_score]
    passed.sort(key=lambda s: (-s.score, s.candidate.key))

    logger.info(
        f"Pre-filter kept {len(passed)}/{len(candidates)} candidates "
        f"(brand={attributes.brand!r}, size={attributes.size!r}, retailer={retailer!r})"
    )

    if passed or not candidates:
        return PreFilterResult(candidates=passed)

    if attributes.brand is None:
        capped = scored[: config.safety_cap]
        logger.warning(
            f"Brand unknown and no candidate passed; widening to {len(capped)} search results"
        )
        return PreFilterResult(candidates=capped, widened=True)

    return PreFilterResult(candidates=[])
