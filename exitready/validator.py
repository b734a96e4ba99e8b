"""Generation contract validator for AI-authored question and task batches.

A batch is accepted or rejected as a unit. Downstream math (category
scoring, tier allocation) assumes the full declared distribution exists, so
every field that is consumed later is checked here, and the first violation
is reported with the item's 1-based index, the field, what was expected and
what was received.

Question batch contract
-----------------------
- exactly 30 questions
- per-category counts FINANCIAL=7, TRANSFERABILITY=6, OPERATIONAL=6,
  MARKET=5, LEGAL_TAX=3, PERSONAL=3
- exactly 4 options per question, sorted scores exactly [0, 0.33, 0.67, 1.0]
- ``maxImpactPoints`` within the tier's range: CRITICAL 12-15,
  SIGNIFICANT 8-12, OPTIMIZATION 5-8

Task batch contract
-------------------
- at least one task
- ``upgradeFromScore`` / ``upgradeToScore`` are discrete score levels,
  exactly one level apart, upward only
- tier, effort, complexity, action type and category from closed sets

Persistence helpers at the bottom write the accepted batch and the audit
trail; they never touch question state for a rejected batch.
"""
from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from exitready.errors import ContractViolationError
from exitready.models import SCORE_LEVELS, Category, GenerationLog, IssueTier, Question, QuestionOption
from exitready.schemas import QuestionBatch, TaskBatch
from exitready.utils import json_dump, same_score

log = logging.getLogger(__name__)

QUESTION_BATCH_SIZE = 30

QUESTIONS_PER_CATEGORY: dict[str, int] = {
    Category.FINANCIAL.value: 7,
    Category.TRANSFERABILITY.value: 6,
    Category.OPERATIONAL.value: 6,
    Category.MARKET.value: 5,
    Category.LEGAL_TAX.value: 3,
    Category.PERSONAL.value: 3,
}

IMPACT_RANGES: dict[str, tuple[float, float]] = {
    IssueTier.CRITICAL.value: (12, 15),
    IssueTier.SIGNIFICANT.value: (8, 12),
    IssueTier.OPTIMIZATION.value: (5, 8),
}

OPTIONS_PER_QUESTION = len(SCORE_LEVELS)
BUYER_LOGIC_MAX = 200


# ---------------------------------------------------------------------------
# Shape validation
# ---------------------------------------------------------------------------


def _format_loc(loc: tuple[Any, ...]) -> str:
    parts: list[str] = []
    for item in loc:
        if isinstance(item, int):
            parts.append(f"[{item + 1}]")
        else:
            parts.append(f".{item}" if parts else str(item))
    return "".join(parts)


def _shape_violation(exc: ValidationError, collection: str, noun: str) -> ContractViolationError:
    """Translate the first pydantic error into an item/field diagnosis."""
    err = exc.errors()[0]
    loc = tuple(err.get("loc", ()))
    received = err.get("input")
    if len(loc) >= 2 and loc[0] == collection and isinstance(loc[1], int):
        index = loc[1] + 1
        field = _format_loc(loc[2:]) or noun
        return ContractViolationError(
            f"{noun} {index}: field {field}: {err['msg']} (received {received!r})",
            index=index, field=field, expected=err["msg"], received=received,
        )
    field = _format_loc(loc) or collection
    return ContractViolationError(
        f"Batch field {field}: {err['msg']}",
        index=None, field=field, expected=err["msg"], received=received,
    )


def _require_list(raw: Any, collection: str) -> list[Any]:
    if not isinstance(raw, dict):
        raise ContractViolationError(
            f"Expected a JSON object with a '{collection}' list, got {type(raw).__name__}",
            field=collection, expected="object", received=type(raw).__name__,
        )
    items = raw.get(collection)
    if not isinstance(items, list):
        raise ContractViolationError(
            f"Expected '{collection}' to be a list, got {type(items).__name__}",
            field=collection, expected="list", received=type(items).__name__,
        )
    return items


# ---------------------------------------------------------------------------
# Question batches
# ---------------------------------------------------------------------------


def validate_question_batch(raw: Any) -> QuestionBatch:
    """Return the typed batch or raise :class:`ContractViolationError`."""
    items = _require_list(raw, "questions")
    if len(items) != QUESTION_BATCH_SIZE:
        raise ContractViolationError(
            f"Expected {QUESTION_BATCH_SIZE} questions, got {len(items)}",
            field="questions", expected=QUESTION_BATCH_SIZE, received=len(items),
        )

    try:
        batch = QuestionBatch.model_validate(raw)
    except ValidationError as exc:
        raise _shape_violation(exc, "questions", "Question") from exc

    counts = Counter(q.category.value for q in batch.questions)
    for category, expected in QUESTIONS_PER_CATEGORY.items():
        got = counts.get(category, 0)
        if got != expected:
            raise ContractViolationError(
                f"Category {category}: expected {expected} questions, got {got}",
                field="briCategory", expected=expected, received=got,
            )

    for i, q in enumerate(batch.questions, start=1):
        _check_options(i, [o.score_value for o in q.options])
        low, high = IMPACT_RANGES[q.issue_tier.value]
        if not low <= q.max_impact_points <= high:
            raise ContractViolationError(
                f"Question {i}: field maxImpactPoints: {q.max_impact_points:g} out of range "
                f"[{low:g}-{high:g}] for tier {q.issue_tier.value}",
                index=i, field="maxImpactPoints",
                expected=f"{low:g}-{high:g}", received=q.max_impact_points,
            )
    return batch


def _check_options(index: int, scores: list[float]) -> None:
    if len(scores) != OPTIONS_PER_QUESTION:
        raise ContractViolationError(
            f"Question {index}: field options: expected {OPTIONS_PER_QUESTION} options, got {len(scores)}",
            index=index, field="options", expected=OPTIONS_PER_QUESTION, received=len(scores),
        )
    ordered = sorted(scores)
    if not all(same_score(a, b) for a, b in zip(ordered, SCORE_LEVELS)):
        raise ContractViolationError(
            f"Question {index}: field options.scoreValue: expected {list(SCORE_LEVELS)}, got {ordered}",
            index=index, field="options.scoreValue", expected=list(SCORE_LEVELS), received=ordered,
        )


# ---------------------------------------------------------------------------
# Task batches
# ---------------------------------------------------------------------------


def score_level(value: float) -> int | None:
    """Index of *value* in the discrete score levels, ``None`` if it is not one."""
    for i, level in enumerate(SCORE_LEVELS):
        if same_score(value, level):
            return i
    return None


def validate_task_batch(raw: Any) -> TaskBatch:
    """Return the typed batch or raise :class:`ContractViolationError`."""
    items = _require_list(raw, "tasks")
    if not items:
        raise ContractViolationError(
            "Expected at least one task, got 0", field="tasks", expected=">= 1", received=0,
        )

    try:
        batch = TaskBatch.model_validate(raw)
    except ValidationError as exc:
        raise _shape_violation(exc, "tasks", "Task") from exc

    for i, t in enumerate(batch.tasks, start=1):
        from_level = score_level(t.upgrade_from_score)
        if from_level is None:
            raise ContractViolationError(
                f"Task {i}: field upgradeFromScore: expected one of {list(SCORE_LEVELS)}, "
                f"got {t.upgrade_from_score}",
                index=i, field="upgradeFromScore", expected=list(SCORE_LEVELS), received=t.upgrade_from_score,
            )
        to_level = score_level(t.upgrade_to_score)
        if to_level is None:
            raise ContractViolationError(
                f"Task {i}: field upgradeToScore: expected one of {list(SCORE_LEVELS)}, "
                f"got {t.upgrade_to_score}",
                index=i, field="upgradeToScore", expected=list(SCORE_LEVELS), received=t.upgrade_to_score,
            )
        if to_level != from_level + 1:
            direction = "downgrade" if to_level <= from_level else "skips a level"
            expected = SCORE_LEVELS[from_level + 1] if from_level + 1 < len(SCORE_LEVELS) else None
            raise ContractViolationError(
                f"Task {i}: field upgradeToScore: {t.upgrade_from_score} -> {t.upgrade_to_score} "
                f"{direction}; expected {expected}",
                index=i, field="upgradeToScore", expected=expected, received=t.upgrade_to_score,
            )
        if t.estimated_hours is not None and t.estimated_hours <= 0:
            raise ContractViolationError(
                f"Task {i}: field estimatedHours: expected a positive number or null, got {t.estimated_hours}",
                index=i, field="estimatedHours", expected="> 0 or null", received=t.estimated_hours,
            )
    return batch


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def record_generation(
    session: Session,
    company_id: int,
    generation_type: str,
    *,
    inputs: dict[str, Any],
    output: Any,
    model_used: str = "",
    input_tokens: int = 0,
    output_tokens: int = 0,
    latency_ms: int = 0,
    error: str | None = None,
) -> GenerationLog:
    """Add an audit record for one generation attempt (caller must commit)."""
    entry = GenerationLog(
        company_id=company_id,
        generation_type=generation_type,
        input_json=json_dump(inputs),
        output_json=json_dump(output),
        model_used=model_used,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        latency_ms=latency_ms,
        accepted=error is None,
        error_message=error or "",
    )
    session.add(entry)
    return entry


def active_questions(session: Session, company_id: int) -> list[Question]:
    """The company's active generated set, or the active template set if it has none."""
    options = selectinload(Question.options)
    own = session.execute(
        select(Question)
        .where(Question.company_id == company_id, Question.is_active.is_(True))
        .options(options)
        .order_by(Question.display_order, Question.id)
    ).scalars().all()
    if own:
        return list(own)
    return list(session.execute(
        select(Question)
        .where(Question.company_id.is_(None), Question.is_active.is_(True))
        .options(options)
        .order_by(Question.display_order, Question.id)
    ).scalars().all())


def apply_question_batch(session: Session, company_id: int, batch: QuestionBatch) -> list[Question]:
    """Retire the company's active questions and insert the accepted batch.

    Both steps happen in the caller's transaction, so readers never see two
    active sets or none (caller must commit).
    """
    retired = session.execute(
        update(Question)
        .where(Question.company_id == company_id, Question.is_active.is_(True))
        .values(is_active=False)
    ).rowcount

    created: list[Question] = []
    for order, q in enumerate(batch.questions, start=1):
        ordered = sorted(q.options, key=lambda o: o.score_value)
        question = Question(
            company_id=company_id,
            category=q.category.value,
            issue_tier=q.issue_tier.value,
            question_text=q.question_text,
            help_text=q.help_text,
            buyer_logic=q.buyer_logic[:BUYER_LOGIC_MAX],
            risk_driver_name=q.risk_driver_name,
            display_order=q.display_order or order,
            max_impact_points=q.max_impact_points,
            is_active=True,
            source="generated",
            options=[
                QuestionOption(option_text=o.option_text, score_value=level, display_order=i)
                for i, (o, level) in enumerate(zip(ordered, SCORE_LEVELS), start=1)
            ],
        )
        session.add(question)
        created.append(question)
    session.flush()
    log.info("Company %s: retired %s questions, inserted %d", company_id, retired, len(created))
    return created
