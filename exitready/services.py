"""Pipeline orchestration: assessment -> snapshot -> dossier -> generation -> tasks.

Functions here own their transactions: each commits what it writes, so
callers get either the whole step or, on an exception, nothing beyond the
generation audit row.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from exitready.allocator import delete_pending_tasks, refresh_action_plan, regenerate_tasks, transition_task
from exitready.config import validate_weights
from exitready.db import get_session_factory
from exitready.dossier import build_dossier, dossier_content
from exitready.generation import Generator, LLMClient, generate_questions_for_company, generate_task_batch, improvable
from exitready.models import ActivityEvent, Assessment, Company, Task, TaskStatus, ValuationSnapshot
from exitready.schemas import AllocationResult, SnapshotOut, TaskOut
from exitready.scoring import load_scoring_responses
from exitready.utils import enum_value, json_dump, utcnow
from exitready.valuation import (
    RecalculateResult, company_config, latest_snapshot, recalculate_snapshot, snapshot_category_scores,
)

log = logging.getLogger(__name__)


def _get_company(session: Session, company_id: int) -> Company:
    company = session.get(Company, company_id)
    if company is None:
        raise LookupError(f"Company {company_id} not found")
    return company


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def snapshot_summary(snapshot: ValuationSnapshot) -> dict[str, Any]:
    return SnapshotOut(
        id=snapshot.id,
        company_id=snapshot.company_id,
        bri_score=snapshot.bri_score,
        category_scores=snapshot_category_scores(snapshot),
        current_value=snapshot.current_value,
        potential_value=snapshot.potential_value,
        value_gap=snapshot.value_gap,
        final_multiple=snapshot.final_multiple,
        multiple_low=snapshot.industry_multiple_low,
        multiple_high=snapshot.industry_multiple_high,
        is_estimated=bool(snapshot.is_estimated),
        snapshot_reason=snapshot.snapshot_reason or "",
        created_at=snapshot.created_at.isoformat() if snapshot.created_at else None,
    ).model_dump()


def task_summary(task: Task) -> dict[str, Any]:
    return TaskOut(
        id=task.id,
        title=task.title,
        category=enum_value(task.category),
        issue_tier=enum_value(task.issue_tier),
        effort_level=enum_value(task.effort_level),
        status=enum_value(task.status),
        raw_impact=task.raw_impact,
        normalized_value=task.normalized_value,
        completed_value=task.completed_value,
        impact_level=enum_value(task.impact_level),
        difficulty_level=enum_value(task.difficulty_level),
        priority_rank=task.priority_rank,
        in_action_plan=bool(task.in_action_plan),
    ).model_dump()


def snapshot_history(session: Session, company_id: int, limit: int | None = None) -> list[dict[str, Any]]:
    """Snapshots newest first."""
    query = (
        select(ValuationSnapshot)
        .where(ValuationSnapshot.company_id == company_id)
        .order_by(ValuationSnapshot.id.desc())
    )
    if limit:
        query = query.limit(limit)
    return [snapshot_summary(s) for s in session.execute(query).scalars().all()]


# ---------------------------------------------------------------------------
# Scoring and valuation
# ---------------------------------------------------------------------------


def run_scoring_pass(session: Session, company_id: int, reason: str = "manual_recalculation") -> RecalculateResult:
    """Recompute scores and valuation, inserting a snapshot when the valuation is defined."""
    result = recalculate_snapshot(session, company_id, reason)
    session.commit()
    if not result.created:
        log.info("No snapshot for company %s: %s", company_id, result.absent_reason)
    return result


def complete_assessment(session: Session, assessment_id: int, now: datetime | None = None) -> RecalculateResult:
    """Mark an assessment complete, commit its responses, then run a scoring pass."""
    assessment = session.get(Assessment, assessment_id)
    if assessment is None:
        raise LookupError(f"Assessment {assessment_id} not found")
    now = now or utcnow()
    if assessment.completed_at is None:
        assessment.completed_at = now
    session.add(ActivityEvent(company_id=assessment.company_id, kind="assessment", occurred_at=now))
    session.commit()
    return run_scoring_pass(session, assessment.company_id, reason="assessment_completed")


def set_company_weights(session: Session, company_id: int, weights: dict[str, float] | None) -> dict[str, float]:
    """Store (or clear, with ``None``) a company's category weight override.

    Weights are validated here, at write time; an invalid override raises
    :class:`~exitready.errors.ConfigurationError` and nothing is stored.
    """
    company = _get_company(session, company_id)
    if weights is None:
        company.bri_weights_json = None
        session.commit()
        return company_config(company).category_weights
    cleaned = validate_weights(weights)
    company.bri_weights_json = json_dump(cleaned)
    session.commit()
    log.info("Updated category weights for company %s", company_id)
    return cleaned


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


async def run_question_generation(
    session_factory: sessionmaker | None,
    company_id: int,
    generator: Generator | None = None,
    timeout: float | None = None,
) -> list[int]:
    """Rebuild the dossier and install a tailored question set. Returns the new question ids."""
    if session_factory is None:
        session_factory = get_session_factory()
    if generator is None:
        generator = LLMClient()
    row = await build_dossier(session_factory, company_id, "question_generation")
    with session_factory() as session:
        created = await generate_questions_for_company(
            session, company_id, generator, dossier_content(row),
            dossier_version=row.version, timeout=timeout,
        )
        return [q.id for q in created]


async def run_task_generation(
    session_factory: sessionmaker | None,
    company_id: int,
    generator: Generator | None = None,
    timeout: float | None = None,
) -> AllocationResult:
    """Generate tasks against the latest value gap and replace the PENDING ones."""
    if session_factory is None:
        session_factory = get_session_factory()
    with session_factory() as session:
        company = _get_company(session, company_id)
        config = company_config(company)
        snapshot = latest_snapshot(session, company_id)
        responses = load_scoring_responses(session, company_id)
    if snapshot is None:
        log.warning("Company %s has no valuation snapshot; skipping task generation", company_id)
        return AllocationResult()
    if not improvable(responses):
        with session_factory() as session:
            removed = delete_pending_tasks(session, company_id)
            refresh_action_plan(session, company_id, config.max_action_plan_tasks)
            session.commit()
        log.info("Company %s has no improvable answers; cleared %d pending tasks", company_id, removed)
        return AllocationResult()

    if generator is None:
        generator = LLMClient()
    row = await build_dossier(session_factory, company_id, "task_generation")
    with session_factory() as session:
        batch = await generate_task_batch(
            session, company_id, generator, dossier_content(row), responses, snapshot.value_gap,
            dossier_version=row.version, timeout=timeout,
        )
        result = regenerate_tasks(session, company_id, batch, snapshot.value_gap, config)
        session.commit()
    log.info("Task generation for company %s: %d created, %d skipped", company_id, result.created, result.skipped)
    return result


# ---------------------------------------------------------------------------
# Task lifecycle
# ---------------------------------------------------------------------------


def update_task_status(
    session: Session,
    task_id: int,
    status: TaskStatus | str,
    reason: str = "",
    until: datetime | None = None,
    now: datetime | None = None,
) -> Task:
    """Apply a lifecycle transition; refill the action plan when a task leaves it."""
    task = session.get(Task, task_id)
    if task is None:
        raise LookupError(f"Task {task_id} not found")
    was_planned = bool(task.in_action_plan)
    now = now or utcnow()
    transition_task(task, status, reason=reason, until=until, now=now)
    if was_planned and not task.in_action_plan:
        session.flush()
        refresh_action_plan(session, task.company_id, company_config(task.company).max_action_plan_tasks)
    session.add(ActivityEvent(company_id=task.company_id, kind="task_update", occurred_at=now))
    session.commit()
    return task
