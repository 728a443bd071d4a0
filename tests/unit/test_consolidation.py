"""Unit tests for the consolidation decision table."""

from itertools import combinations_with_replacement

import pytest

from models.domain import MatchOutcome, MatchStatus, SelectionMethod
from services.product_matching.consolidation import consolidate, consolidate_selection
from services.product_matching.models import (
    Candidate,
    CandidateScore,
    ClassifiedCandidate,
    VisualSelection,
)


def _classified(*statuses: MatchStatus):
    return [
        ClassifiedCandidate(
            candidate=Candidate(key=f"{i:014d}", name=f"Product {i}"),
            status=status,
            confidence=0.9,
        )
        for i, status in enumerate(statuses)
    ]


def test_single_identical_auto_matches():
    classified = _classified(MatchStatus.IDENTICAL, MatchStatus.NOT_MATCH)
    decision = consolidate(classified)

    assert decision.outcome == MatchOutcome.AUTO_MATCH
    assert decision.selected == classified[0].candidate
    assert decision.selection_method == SelectionMethod.AUTO_SELECT
    assert decision.is_match


def test_single_almost_same_is_promoted():
    classified = _classified(MatchStatus.ALMOST_SAME)
    decision = consolidate(classified)

    assert decision.outcome == MatchOutcome.PROMOTED_MATCH
    assert decision.selected == classified[0].candidate
    assert decision.selection_method == SelectionMethod.CONSOLIDATION


def test_two_almost_same_need_manual_review():
    decision = consolidate(_classified(MatchStatus.ALMOST_SAME, MatchStatus.ALMOST_SAME))

    assert decision.outcome == MatchOutcome.MANUAL_REVIEW
    assert decision.selected is None
    assert len(decision.ambiguous) == 2


def test_all_not_match_is_no_match():
    decision = consolidate(_classified(MatchStatus.NOT_MATCH, MatchStatus.NOT_MATCH))

    assert decision.outcome == MatchOutcome.NO_MATCH
    assert decision.selected is None


def test_multiple_identical_are_never_picked_silently():
    decision = consolidate(
        _classified(MatchStatus.IDENTICAL, MatchStatus.IDENTICAL, MatchStatus.ALMOST_SAME)
    )

    assert decision.outcome == MatchOutcome.MANUAL_REVIEW
    assert decision.selected is None
    assert [c.key for c in decision.ambiguous] == ["00000000000000", "00000000000001"]


def test_identical_outranks_almost_same():
    classified = _classified(MatchStatus.ALMOST_SAME, MatchStatus.IDENTICAL)
    decision = consolidate(classified)

    assert decision.outcome == MatchOutcome.AUTO_MATCH
    assert decision.selected == classified[1].candidate


def test_empty_input_is_no_match():
    assert consolidate([]).outcome == MatchOutcome.NO_MATCH


def _expected(statuses) -> MatchOutcome:
    identical = statuses.count(MatchStatus.IDENTICAL)
    almost = statuses.count(MatchStatus.ALMOST_SAME)
    if identical == 1:
        return MatchOutcome.AUTO_MATCH
    if identical > 1:
        return MatchOutcome.MANUAL_REVIEW
    if almost == 1:
        return MatchOutcome.PROMOTED_MATCH
    if almost > 1:
        return MatchOutcome.MANUAL_REVIEW
    return MatchOutcome.NO_MATCH


@pytest.mark.parametrize("size", [0, 1, 2, 3, 4])
def test_decision_table_is_total_and_deterministic(size):
    for statuses in combinations_with_replacement(list(MatchStatus), size):
        first = consolidate(_classified(*statuses))
        again = consolidate(_classified(*reversed(statuses)))

        assert first.outcome == _expected(list(statuses))
        assert again.outcome == first.outcome
        assert (first.selected is not None) == first.is_match


class TestConsolidateSelection:
    candidates = [Candidate(key="A", name="Acme Cola"), Candidate(key="B", name="Acme Zero")]

    def test_confident_selection_auto_matches(self):
        selection = VisualSelection(selected_key="B", confidence=0.85, reasoning="Same label")
        decision = consolidate_selection(selection, self.candidates)

        assert decision.outcome == MatchOutcome.AUTO_MATCH
        assert decision.selected.key == "B"
        assert decision.selection_method == SelectionMethod.VISUAL_MATCHING

    def test_threshold_is_inclusive(self):
        selection = VisualSelection(selected_key="A", confidence=0.6)
        assert consolidate_selection(selection, self.candidates).outcome == MatchOutcome.AUTO_MATCH

    def test_low_confidence_goes_to_review(self):
        selection = VisualSelection(selected_key="A", confidence=0.4, reasoning="Blurry")
        decision = consolidate_selection(selection, self.candidates)

        assert decision.outcome == MatchOutcome.MANUAL_REVIEW
        assert decision.selected is None
        assert "Blurry" in decision.reason

    def test_no_selection_is_no_match(self):
        selection = VisualSelection(
            selected_key=None,
            reasoning="None of these",
            candidate_scores=(CandidateScore("A", 0.2, False),),
        )
        decision = consolidate_selection(selection, self.candidates)

        assert decision.outcome == MatchOutcome.NO_MATCH
        assert decision.reason == "None of these"
