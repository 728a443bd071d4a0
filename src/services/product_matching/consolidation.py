"""
Consolidation of classified candidates into a single match outcome.

A finite decision table rather than a ranking: ties and multiplicity always
route to manual review, never to an arbitrary pick.

    identical == 1                       -> auto_match
    identical  > 1                       -> manual_review
    identical == 0, almost_same == 1     -> promoted_match
    identical == 0, almost_same  > 1     -> manual_review
    otherwise                            -> no_match
"""

from dataclasses import dataclass
from typing import Optional, Sequence

from models.domain import MatchOutcome, MatchStatus, SelectionMethod
from services.product_matching.models import Candidate, ClassifiedCandidate, VisualSelection

DEFAULT_SELECTOR_THRESHOLD = 0.6


@dataclass(frozen=True)
class ConsolidationDecision:
    outcome: MatchOutcome
    selected: Optional[Candidate] = None
    selection_method: Optional[SelectionMethod] = None
    reason: str = ""
    confidence: Optional[float] = None
    ambiguous: tuple[Candidate, ...] = ()

    @property
    def is_match(self) -> bool:
        return self.outcome in (MatchOutcome.AUTO_MATCH, MatchOutcome.PROMOTED_MATCH)


def consolidate(classified: Sequence[ClassifiedCandidate]) -> ConsolidationDecision:
    identical = [c for c in classified if c.status == MatchStatus.IDENTICAL]
    almost_same = [c for c in classified if c.status == MatchStatus.ALMOST_SAME]

    if len(identical) == 1:
        chosen = identical[0]
        return ConsolidationDecision(
            outcome=MatchOutcome.AUTO_MATCH,
            selected=chosen.candidate,
            selection_method=SelectionMethod.AUTO_SELECT,
            reason=f"Single identical match: {chosen.candidate.name}",
            confidence=chosen.confidence,
        )

    if len(identical) > 1:
        return ConsolidationDecision(
            outcome=MatchOutcome.MANUAL_REVIEW,
            reason=f"{len(identical)} identical matches; manual review needed",
            ambiguous=tuple(c.candidate for c in identical),
        )

    if len(almost_same) == 1:
        chosen = almost_same[0]
        return ConsolidationDecision(
            outcome=MatchOutcome.PROMOTED_MATCH,
            selected=chosen.candidate,
            selection_method=SelectionMethod.CONSOLIDATION,
            reason=f"Only near match promoted: {chosen.candidate.name}",
            confidence=chosen.confidence,
        )

    if len(almost_same) > 1:
        return ConsolidationDecision(
            outcome=MatchOutcome.MANUAL_REVIEW,
            reason=f"{len(almost_same)} near matches; manual review needed",
            ambiguous=tuple(c.candidate for c in almost_same),
        )

    return ConsolidationDecision(
        outcome=MatchOutcome.NO_MATCH,
        reason="No matching candidate" if classified else "No candidates to compare",
    )


def consolidate_selection(
    selection: VisualSelection,
    candidates: Sequence[Candidate],
    threshold: float = DEFAULT_SELECTOR_THRESHOLD,
) -> ConsolidationDecision:
    """Decision for the single selector call: accept at or above ``threshold``."""
    by_key = {c.key: c for c in candidates}
    chosen = by_key.get(selection.selected_key) if selection.selected_key else None

    if chosen is None:
        return ConsolidationDecision(
            outcome=MatchOutcome.NO_MATCH,
            reason=selection.reasoning or "Selector found no match",
            confidence=selection.confidence,
        )

    if selection.confidence >= threshold:
        return ConsolidationDecision(
            outcome=MatchOutcome.AUTO_MATCH,
            selected=chosen,
            selection_method=SelectionMethod.VISUAL_MATCHING,
            reason=selection.reasoning or f"Selected {chosen.name}",
            confidence=selection.confidence,
        )

    return ConsolidationDecision(
        outcome=MatchOutcome.MANUAL_REVIEW,
        reason=(
            f"Selector confidence {selection.confidence:.2f} below {threshold:.2f}: "
            f"{selection.reasoning}"
        ).rstrip(": "),
        confidence=selection.confidence,
        ambiguous=(chosen,),
    )
