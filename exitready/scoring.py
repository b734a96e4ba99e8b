"""Category scorer: per-category BRI scores from assessment responses.

Each response contributes ``max_impact_points * score_value`` earned points
out of ``max_impact_points`` possible to its question's category. A
category's score is ``earned / total``. Categories with no applicable
responses have *no* score; they are reported in ``unanswered`` and never
defaulted to 0 or 1.

Responses are excluded when the respondent marked them ``NOT_APPLICABLE``
or when their question has been retired (``is_active = False``).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from exitready.errors import ConfigurationError
from exitready.models import Assessment, AssessmentResponse, Category, ConfidenceLevel
from exitready.utils import enum_value

log = logging.getLogger(__name__)

CATEGORIES: tuple[str, ...] = tuple(c.value for c in Category)


@dataclass(frozen=True)
class ScoringResponse:
    """Flattened response used by the pure scoring functions."""
    question_id: int
    category: str
    max_impact_points: float
    score_value: float
    question_text: str = ""
    risk_driver_name: str = ""
    not_applicable: bool = False
    is_active: bool = True
    updated_at: datetime | None = None
    response_id: int = 0


@dataclass
class CategoryScores:
    """Scores for answered categories plus the list of unanswered ones."""
    scores: dict[str, float] = field(default_factory=dict)
    unanswered: list[str] = field(default_factory=list)
    earned: dict[str, float] = field(default_factory=dict)
    possible: dict[str, float] = field(default_factory=dict)

    def get(self, category: str) -> float | None:
        return self.scores.get(category)

    @property
    def answered(self) -> list[str]:
        return [c for c in CATEGORIES if c in self.scores]


def require_weights(weights: dict[str, float] | None) -> dict[str, float]:
    """Scoring cannot proceed without a weight for every category."""
    if not weights:
        raise ConfigurationError("No category weights configured")
    missing = [c for c in CATEGORIES if c not in weights]
    if missing:
        raise ConfigurationError(f"Category weights missing for: {', '.join(missing)}")
    return weights


def is_applicable(response: ScoringResponse) -> bool:
    return response.is_active and not response.not_applicable


def deduplicate_responses(responses: list[ScoringResponse]) -> list[ScoringResponse]:
    """Keep only the most recent response per question."""
    latest: dict[int, ScoringResponse] = {}
    for r in responses:
        current = latest.get(r.question_id)
        if current is None or _recency(r) > _recency(current):
            latest[r.question_id] = r
    return list(latest.values())


def _recency(r: ScoringResponse) -> tuple[datetime, int]:
    return (r.updated_at or datetime.min, r.response_id)


def calculate_category_scores(
    responses: list[ScoringResponse], weights: dict[str, float] | None,
) -> CategoryScores:
    """Accumulate earned/possible impact points per category."""
    require_weights(weights)
    earned = {c: 0.0 for c in CATEGORIES}
    possible = {c: 0.0 for c in CATEGORIES}
    excluded = 0

    for r in deduplicate_responses(responses):
        if not is_applicable(r):
            excluded += 1
            continue
        if r.category not in possible:
            log.warning("Response to question %s has unknown category %r", r.question_id, r.category)
            continue
        earned[r.category] += r.max_impact_points * r.score_value
        possible[r.category] += r.max_impact_points

    result = CategoryScores(earned=earned, possible=possible)
    for c in CATEGORIES:
        if possible[c] > 0:
            result.scores[c] = earned[c] / possible[c]
        else:
            result.unanswered.append(c)
    if excluded:
        log.debug("Excluded %d not-applicable or retired responses", excluded)
    return result


def weakest_categories(
    scores: CategoryScores, weights: dict[str, float], n: int = 3,
) -> list[str]:
    """Answered categories, lowest score first; heavier weight breaks ties."""
    ranked = sorted(
        scores.scores.items(),
        key=lambda item: (item[1], -weights.get(item[0], 0.0), CATEGORIES.index(item[0])),
    )
    return [c for c, _ in ranked[:n]]


def weakest_drivers(responses: list[ScoringResponse], n: int = 5) -> list[ScoringResponse]:
    """Lowest-scoring applicable responses, most impactful first on ties."""
    applicable = [r for r in deduplicate_responses(responses) if is_applicable(r)]
    applicable.sort(key=lambda r: (r.score_value, -r.max_impact_points, r.question_id))
    return applicable[:n]


# ---------------------------------------------------------------------------
# Loading from the database
# ---------------------------------------------------------------------------


def latest_completed_assessment(session: Session, company_id: int) -> Assessment | None:
    return session.execute(
        select(Assessment)
        .where(Assessment.company_id == company_id, Assessment.completed_at.is_not(None))
        .order_by(Assessment.completed_at.desc(), Assessment.id.desc())
        .limit(1)
    ).scalars().first()


def to_scoring_response(resp: AssessmentResponse) -> ScoringResponse:
    option = resp.effective_option or resp.selected_option
    question = resp.question
    return ScoringResponse(
        question_id=question.id,
        category=enum_value(question.category),
        max_impact_points=float(question.max_impact_points),
        score_value=float(option.score_value),
        question_text=question.question_text,
        risk_driver_name=question.risk_driver_name or "",
        not_applicable=resp.confidence_level == ConfidenceLevel.NOT_APPLICABLE,
        is_active=bool(question.is_active),
        updated_at=resp.updated_at,
        response_id=resp.id,
    )


def load_scoring_responses(session: Session, company_id: int) -> list[ScoringResponse]:
    """Responses of the company's latest completed assessment, flattened for scoring."""
    assessment = latest_completed_assessment(session, company_id)
    if assessment is None:
        return []
    rows = session.execute(
        select(AssessmentResponse)
        .where(AssessmentResponse.assessment_id == assessment.id)
        .options(
            selectinload(AssessmentResponse.question),
            selectinload(AssessmentResponse.selected_option),
            selectinload(AssessmentResponse.effective_option),
        )
    ).scalars().all()
    return [to_scoring_response(r) for r in rows]
