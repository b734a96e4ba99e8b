"""Valuation calculator: category scores + EBITDA + benchmark range -> value gap.

The overall BRI score is the weighted mean of the *answered* categories, with
the weights renormalized over those categories. The score positions the
company inside its industry multiple range::

    final_multiple  = low + (high - low) * bri_score
    current_value   = ebitda * final_multiple
    potential_value = ebitda * high
    value_gap       = max(0, potential_value - current_value)

``calculate_valuation`` is a pure function of its arguments. It returns
``None`` when the valuation is undefined (EBITDA <= 0, or no category
answered); callers must branch on that instead of showing a $0 company.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from exitready.config import DEFAULT_CONFIG, DEFAULT_MULTIPLE_SOURCE, ScoringConfig, validate_weights
from exitready.models import Company, EbitdaAdjustment, IndustryMultiple, ValuationSnapshot
from exitready.scoring import CATEGORIES, CategoryScores, calculate_category_scores, load_scoring_responses
from exitready.utils import json_dump, json_parse

log = logging.getLogger(__name__)

# Market CEO salary by revenue size, used to normalize owner compensation.
MARKET_SALARY_BY_REVENUE: dict[str, float] = {
    "UNDER_500K": 80_000,
    "FROM_500K_TO_1M": 120_000,
    "FROM_1M_TO_3M": 150_000,
    "FROM_3M_TO_10M": 200_000,
    "FROM_10M_TO_25M": 300_000,
    "OVER_25M": 400_000,
}
DEFAULT_MARKET_SALARY = 150_000.0

_SNAPSHOT_COLUMNS = {
    "FINANCIAL": "bri_financial",
    "TRANSFERABILITY": "bri_transferability",
    "OPERATIONAL": "bri_operational",
    "MARKET": "bri_market",
    "LEGAL_TAX": "bri_legal_tax",
    "PERSONAL": "bri_personal",
}


@dataclass(frozen=True)
class MultipleRange:
    low: float
    high: float
    source: str = ""
    is_estimated: bool = False
    match_level: str = "default"  # subsector | sector | supersector | industry | default


@dataclass(frozen=True)
class ValuationResult:
    bri_score: float
    weights_used: dict[str, float]
    ebitda: float
    multiple_low: float
    multiple_high: float
    final_multiple: float
    current_value: float
    potential_value: float
    value_gap: float
    is_estimated: bool = False


# ---------------------------------------------------------------------------
# Pure calculation
# ---------------------------------------------------------------------------


def renormalize_weights(
    scores: Mapping[str, float | None], weights: Mapping[str, float],
) -> dict[str, float] | None:
    """Rescale the weights of answered categories to sum to 1.0.

    Returns ``None`` when no answered category carries weight.
    """
    answered = {c: weights.get(c, 0.0) for c in CATEGORIES if scores.get(c) is not None}
    total = sum(answered.values())
    if total <= 0:
        return None
    return {c: w / total for c, w in answered.items()}


def calculate_valuation(
    scores: CategoryScores | Mapping[str, float | None],
    weights: Mapping[str, float],
    ebitda: float,
    multiples: MultipleRange,
) -> ValuationResult | None:
    """Turn category scores into current/potential/gap dollar figures."""
    score_map = scores.scores if isinstance(scores, CategoryScores) else scores
    if ebitda is None or ebitda <= 0:
        return None
    used = renormalize_weights(score_map, weights)
    if used is None:
        return None
    bri = sum(score_map[c] * w for c, w in used.items())  # type: ignore[operator]

    final_multiple = multiples.low + (multiples.high - multiples.low) * bri
    current_value = ebitda * final_multiple
    potential_value = ebitda * multiples.high
    value_gap = max(0.0, potential_value - current_value)

    return ValuationResult(
        bri_score=bri,
        weights_used=used,
        ebitda=ebitda,
        multiple_low=multiples.low,
        multiple_high=multiples.high,
        final_multiple=final_multiple,
        current_value=current_value,
        potential_value=potential_value,
        value_gap=value_gap,
        is_estimated=multiples.is_estimated,
    )


# ---------------------------------------------------------------------------
# Inputs resolved from company state
# ---------------------------------------------------------------------------


def market_salary(revenue_size_category: str | None) -> float:
    if not revenue_size_category:
        return DEFAULT_MARKET_SALARY
    return MARKET_SALARY_BY_REVENUE.get(revenue_size_category, DEFAULT_MARKET_SALARY)


def adjusted_ebitda(company: Company, adjustments: list[EbitdaAdjustment] | None = None) -> float:
    """Reported EBITDA plus add-backs and excess owner pay, minus deductions.

    Non-positive reported EBITDA is returned unchanged: there is nothing
    meaningful to adjust and the valuation stays undefined.
    """
    base = float(company.annual_ebitda or 0.0)
    if base <= 0:
        return base
    adjustments = company.adjustments if adjustments is None else adjustments
    add_backs = sum(a.amount for a in adjustments if a.kind == "ADD_BACK")
    deductions = sum(a.amount for a in adjustments if a.kind == "DEDUCTION")
    owner_comp = float(company.owner_compensation or 0.0)
    excess_comp = max(0.0, owner_comp - market_salary(company.revenue_size_category))
    return base + add_backs + excess_comp - deductions


def resolve_multiples(
    session: Session, company: Company, config: ScoringConfig = DEFAULT_CONFIG,
) -> MultipleRange:
    """Most specific benchmark for the company's ICB hierarchy, else the documented default."""
    levels = (
        ("subsector", IndustryMultiple.icb_sub_sector, company.icb_sub_sector),
        ("sector", IndustryMultiple.icb_sector, company.icb_sector),
        ("supersector", IndustryMultiple.icb_super_sector, company.icb_super_sector),
        ("industry", IndustryMultiple.icb_industry, company.icb_industry),
    )
    for level, column, value in levels:
        if not value:
            continue
        row = session.execute(
            select(IndustryMultiple)
            .where(column == value)
            .order_by(IndustryMultiple.effective_date.desc(), IndustryMultiple.id.desc())
            .limit(1)
        ).scalars().first()
        if row is None:
            continue
        if not 0 < row.ebitda_multiple_low <= row.ebitda_multiple_high:
            log.warning("Ignoring malformed multiple range %s-%s for %s=%s",
                        row.ebitda_multiple_low, row.ebitda_multiple_high, level, value)
            continue
        return MultipleRange(
            low=row.ebitda_multiple_low,
            high=row.ebitda_multiple_high,
            source=row.source or "",
            is_estimated=False,
            match_level=level,
        )
    return MultipleRange(
        low=config.default_multiple_low,
        high=config.default_multiple_high,
        source=DEFAULT_MULTIPLE_SOURCE,
        is_estimated=True,
        match_level="default",
    )


def company_config(company: Company, base: ScoringConfig = DEFAULT_CONFIG) -> ScoringConfig:
    """Defaults with the company's stored weight override applied, if any."""
    override = json_parse(company.bri_weights_json, None)
    if not override:
        return base
    # Overrides are validated when written; re-check so a corrupt row fails loudly.
    weights = validate_weights(override)
    return base.model_copy(update={"category_weights": weights})


# ---------------------------------------------------------------------------
# Snapshot creation
# ---------------------------------------------------------------------------


@dataclass
class RecalculateResult:
    company_id: int
    snapshot: ValuationSnapshot | None = None
    category_scores: CategoryScores | None = None
    valuation: ValuationResult | None = None
    absent_reason: str | None = None  # no_responses | no_answered_categories | non_positive_ebitda
    unanswered: list[str] = field(default_factory=list)

    @property
    def created(self) -> bool:
        return self.snapshot is not None


def recalculate_snapshot(
    session: Session,
    company_id: int,
    reason: str,
    config: ScoringConfig | None = None,
) -> RecalculateResult:
    """Score the latest completed assessment and insert a new ValuationSnapshot.

    Never updates an existing snapshot. When the valuation is undefined, no
    row is written and ``absent_reason`` says why (caller must commit).
    """
    company = session.get(Company, company_id)
    if company is None:
        raise LookupError(f"Company {company_id} not found")
    config = config or company_config(company)
    weights = config.category_weights

    responses = load_scoring_responses(session, company_id)
    result = RecalculateResult(company_id=company_id)
    if not responses:
        result.absent_reason = "no_responses"
        result.unanswered = list(CATEGORIES)
        return result

    scores = calculate_category_scores(responses, weights)
    result.category_scores = scores
    result.unanswered = list(scores.unanswered)
    if not scores.scores:
        result.absent_reason = "no_answered_categories"
        return result

    ebitda = adjusted_ebitda(company)
    multiples = resolve_multiples(session, company, config)
    valuation = calculate_valuation(scores, weights, ebitda, multiples)
    if valuation is None:
        result.absent_reason = "non_positive_ebitda"
        log.info("Valuation undefined for company %s (adjusted EBITDA %.2f)", company_id, ebitda)
        return result

    snapshot = ValuationSnapshot(
        company_id=company_id,
        bri_score=valuation.bri_score,
        adjusted_ebitda=valuation.ebitda,
        industry_multiple_low=valuation.multiple_low,
        industry_multiple_high=valuation.multiple_high,
        final_multiple=valuation.final_multiple,
        current_value=valuation.current_value,
        potential_value=valuation.potential_value,
        value_gap=valuation.value_gap,
        is_estimated=valuation.is_estimated,
        multiple_source=multiples.source,
        weights_json=json_dump(valuation.weights_used),
        snapshot_reason=reason,
        **{col: scores.get(cat) for cat, col in _SNAPSHOT_COLUMNS.items()},
    )
    session.add(snapshot)
    session.flush()
    result.snapshot = snapshot
    result.valuation = valuation
    log.info(
        "Snapshot %s for company %s: BRI %.3f, value %.0f, gap %.0f%s",
        snapshot.id, company_id, valuation.bri_score, valuation.current_value,
        valuation.value_gap, " (estimated multiples)" if valuation.is_estimated else "",
    )
    return result


def latest_snapshot(session: Session, company_id: int) -> ValuationSnapshot | None:
    return session.execute(
        select(ValuationSnapshot)
        .where(ValuationSnapshot.company_id == company_id)
        .order_by(ValuationSnapshot.id.desc())
        .limit(1)
    ).scalars().first()


def snapshot_category_scores(snapshot: ValuationSnapshot) -> dict[str, float | None]:
    return {cat: getattr(snapshot, col) for cat, col in _SNAPSHOT_COLUMNS.items()}
