"""Tests for the category scorer (pure functions and database loading)."""
from __future__ import annotations

from datetime import datetime

import pytest

from exitready.config import DEFAULT_CATEGORY_WEIGHTS
from exitready.errors import ConfigurationError
from exitready.models import AssessmentResponse
from exitready.scoring import (
    CATEGORIES, ScoringResponse, calculate_category_scores, deduplicate_responses, load_scoring_responses,
    weakest_categories, weakest_drivers,
)


def resp(qid, category="FINANCIAL", points=10.0, score=1.0, **kw) -> ScoringResponse:
    return ScoringResponse(question_id=qid, category=category, max_impact_points=points, score_value=score, **kw)


# =========================================================================
# Pure scoring
# =========================================================================

class TestCalculateCategoryScores:
    def test_earned_over_possible(self):
        scores = calculate_category_scores(
            [resp(1, points=10, score=1.0), resp(2, points=10, score=0.0)], DEFAULT_CATEGORY_WEIGHTS,
        )
        assert scores.get("FINANCIAL") == pytest.approx(0.5)

    def test_impact_points_weight_responses(self):
        scores = calculate_category_scores(
            [resp(1, points=15, score=1.0), resp(2, points=5, score=0.33)], DEFAULT_CATEGORY_WEIGHTS,
        )
        assert scores.get("FINANCIAL") == pytest.approx((15 + 5 * 0.33) / 20)
        assert scores.earned["FINANCIAL"] == pytest.approx(16.65)
        assert scores.possible["FINANCIAL"] == pytest.approx(20)

    def test_unanswered_categories_have_no_score(self):
        scores = calculate_category_scores([resp(1, category="MARKET", score=0.67)], DEFAULT_CATEGORY_WEIGHTS)
        assert scores.answered == ["MARKET"]
        assert set(scores.unanswered) == set(CATEGORIES) - {"MARKET"}
        assert scores.get("FINANCIAL") is None

    def test_not_applicable_excluded(self):
        scores = calculate_category_scores(
            [resp(1, score=1.0), resp(2, score=0.0, not_applicable=True)], DEFAULT_CATEGORY_WEIGHTS,
        )
        assert scores.get("FINANCIAL") == pytest.approx(1.0)

    def test_retired_question_excluded(self):
        scores = calculate_category_scores([resp(1, score=0.0, is_active=False)], DEFAULT_CATEGORY_WEIGHTS)
        assert "FINANCIAL" in scores.unanswered

    def test_all_not_applicable_leaves_category_unanswered(self):
        scores = calculate_category_scores(
            [resp(1, not_applicable=True), resp(2, not_applicable=True)], DEFAULT_CATEGORY_WEIGHTS,
        )
        assert scores.scores == {}
        assert len(scores.unanswered) == len(CATEGORIES)

    def test_missing_weights_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            calculate_category_scores([resp(1)], None)

    def test_partial_weights_is_configuration_error(self):
        weights = dict(DEFAULT_CATEGORY_WEIGHTS)
        del weights["PERSONAL"]
        with pytest.raises(ConfigurationError, match="PERSONAL"):
            calculate_category_scores([resp(1)], weights)

    def test_scores_stay_in_unit_interval(self):
        responses = [resp(i, category=c, score=s) for i, (c, s) in enumerate(
            [("FINANCIAL", 0.0), ("MARKET", 1.0), ("PERSONAL", 0.33), ("LEGAL_TAX", 0.67)]
        )]
        scores = calculate_category_scores(responses, DEFAULT_CATEGORY_WEIGHTS)
        assert all(0.0 <= s <= 1.0 for s in scores.scores.values())


class TestDeduplicate:
    def test_latest_response_per_question_wins(self):
        old = resp(1, score=0.0, updated_at=datetime(2026, 1, 1), response_id=1)
        new = resp(1, score=1.0, updated_at=datetime(2026, 2, 1), response_id=2)
        assert deduplicate_responses([new, old]) == [new]

    def test_tie_on_timestamp_broken_by_response_id(self):
        ts = datetime(2026, 1, 1)
        a = resp(1, score=0.0, updated_at=ts, response_id=5)
        b = resp(1, score=0.67, updated_at=ts, response_id=9)
        assert deduplicate_responses([b, a]) == [b]

    def test_duplicates_do_not_double_count(self):
        responses = [
            resp(1, score=0.0, updated_at=datetime(2026, 1, 1), response_id=1),
            resp(1, score=1.0, updated_at=datetime(2026, 1, 2), response_id=2),
        ]
        scores = calculate_category_scores(responses, DEFAULT_CATEGORY_WEIGHTS)
        assert scores.possible["FINANCIAL"] == pytest.approx(10)
        assert scores.get("FINANCIAL") == pytest.approx(1.0)


class TestWeakest:
    def test_weakest_categories_lowest_first(self):
        scores = calculate_category_scores(
            [resp(1, "FINANCIAL", score=0.67), resp(2, "MARKET", score=0.0), resp(3, "PERSONAL", score=0.33)],
            DEFAULT_CATEGORY_WEIGHTS,
        )
        assert weakest_categories(scores, DEFAULT_CATEGORY_WEIGHTS, n=2) == ["MARKET", "PERSONAL"]

    def test_weakest_categories_tie_prefers_heavier_weight(self):
        scores = calculate_category_scores(
            [resp(1, "PERSONAL", score=0.33), resp(2, "FINANCIAL", score=0.33)], DEFAULT_CATEGORY_WEIGHTS,
        )
        assert weakest_categories(scores, DEFAULT_CATEGORY_WEIGHTS) == ["FINANCIAL", "PERSONAL"]

    def test_weakest_drivers_skip_not_applicable(self):
        drivers = weakest_drivers([
            resp(1, score=0.0, not_applicable=True),
            resp(2, score=0.33),
            resp(3, score=0.0, points=5),
            resp(4, score=0.0, points=15),
        ], n=2)
        assert [d.question_id for d in drivers] == [4, 3]


# =========================================================================
# Loading from the database
# =========================================================================

class TestLoadScoringResponses:
    def test_no_completed_assessment(self, session, add_company, add_question, add_assessment):
        company = add_company(session)
        q = add_question(session)
        add_assessment(session, company, [(q, 0.33)], completed_at=None)
        assert load_scoring_responses(session, company.id) == []

    def test_uses_latest_completed_assessment_only(self, session, add_company, add_question, add_assessment):
        company = add_company(session)
        q = add_question(session)
        add_assessment(session, company, [(q, 0.0)], completed_at=datetime(2025, 6, 1))
        add_assessment(session, company, [(q, 0.67)], completed_at=datetime(2026, 1, 1))
        add_assessment(session, company, [(q, 1.0)], completed_at=None)
        responses = load_scoring_responses(session, company.id)
        assert [r.score_value for r in responses] == [pytest.approx(0.67)]

    def test_effective_option_preferred(self, session, add_company, add_question, add_assessment, pick_option):
        company = add_company(session)
        q = add_question(session, points=12)
        assessment = add_assessment(session, company, [(q, 1.0)])
        response = session.query(AssessmentResponse).filter_by(assessment_id=assessment.id).one()
        response.effective_option_id = pick_option(q, 0.33).id
        session.flush()
        session.expire_all()

        [r] = load_scoring_responses(session, company.id)
        assert r.score_value == pytest.approx(0.33)
        assert r.max_impact_points == 12
        assert r.category == "FINANCIAL"

    def test_not_applicable_confidence_flagged(self, session, add_company, add_question, add_assessment):
        company = add_company(session)
        q = add_question(session)
        add_assessment(session, company, [(q, 0.0, "NOT_APPLICABLE")])
        [r] = load_scoring_responses(session, company.id)
        assert r.not_applicable is True

    def test_retired_question_flagged_inactive(self, session, add_company, add_question, add_assessment):
        company = add_company(session)
        q = add_question(session, active=False)
        add_assessment(session, company, [(q, 0.0)])
        [r] = load_scoring_responses(session, company.id)
        assert r.is_active is False
