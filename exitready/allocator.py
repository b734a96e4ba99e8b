"""Task value allocator: split the value gap across an accepted task batch.

Allocation is tier-first. Each issue tier owns a fixed share of the value
gap (60/30/10 by default), divided evenly across the batch's tasks in that
tier and scaled by how far each task moves its answer::

    tier_budget      = value_gap * tier_pct
    raw_impact       = tier_budget / n_tier * (to_score - from_score)
    normalized_value = raw_impact / effort_divisor

``n_tier`` counts every task of the validated batch in that tier, including
ones later skipped for an unresolvable option, so a skip never inflates its
siblings. A tier with no tasks leaves its budget unspent.

Priority is a 5x5 impact/difficulty matrix: impact from the current answer
score (a worse answer is a bigger opportunity), difficulty from effort or
estimated hours. ``priority_rank`` 1 is the best task.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, selectinload

from exitready.config import DEFAULT_CONFIG, ScoringConfig
from exitready.errors import InvalidTransitionError
from exitready.models import (
    DifficultyLevel, EffortLevel, ImpactLevel, Question, QuestionOption, Task, TaskStatus,
)
from exitready.schemas import AllocationResult, GeneratedTask, TaskBatch
from exitready.utils import enum_value, same_score, utcnow

log = logging.getLogger(__name__)

BUYER_CONSEQUENCE_MAX = 200

_IMPACT_ORDER = [ImpactLevel.CRITICAL, ImpactLevel.HIGH, ImpactLevel.MEDIUM, ImpactLevel.LOW, ImpactLevel.MINIMAL]
_DIFFICULTY_ORDER = [
    DifficultyLevel.TRIVIAL, DifficultyLevel.EASY, DifficultyLevel.MODERATE,
    DifficultyLevel.HARD, DifficultyLevel.VERY_HARD,
]

_EFFORT_DIFFICULTY = {
    EffortLevel.MINIMAL.value: DifficultyLevel.TRIVIAL,
    EffortLevel.LOW.value: DifficultyLevel.EASY,
    EffortLevel.MODERATE.value: DifficultyLevel.MODERATE,
    EffortLevel.HIGH.value: DifficultyLevel.HARD,
    EffortLevel.MAJOR.value: DifficultyLevel.VERY_HARD,
}

# (upper bound in hours, difficulty)
_HOURS_DIFFICULTY = [
    (2, DifficultyLevel.TRIVIAL),
    (8, DifficultyLevel.EASY),
    (24, DifficultyLevel.MODERATE),
    (80, DifficultyLevel.HARD),
]


# ---------------------------------------------------------------------------
# Priority matrix
# ---------------------------------------------------------------------------


def score_to_impact_level(score: float) -> ImpactLevel:
    if score < 0.2:
        return ImpactLevel.CRITICAL
    if score < 0.5:
        return ImpactLevel.HIGH
    if score < 0.8:
        return ImpactLevel.MEDIUM
    if score < 1.0:
        return ImpactLevel.LOW
    return ImpactLevel.MINIMAL


def effort_to_difficulty_level(effort: EffortLevel | str, estimated_hours: float | None = None) -> DifficultyLevel:
    """Hours win over the effort label when the generator supplied them."""
    if estimated_hours is not None:
        for bound, level in _HOURS_DIFFICULTY:
            if estimated_hours <= bound:
                return level
        return DifficultyLevel.VERY_HARD
    return _EFFORT_DIFFICULTY.get(enum_value(effort), DifficultyLevel.MODERATE)


def calculate_priority_rank(impact: ImpactLevel, difficulty: DifficultyLevel) -> int:
    """1 (critical and trivial) .. 25 (minimal and very hard)."""
    return _IMPACT_ORDER.index(impact) * 5 + _DIFFICULTY_ORDER.index(difficulty) + 1


# ---------------------------------------------------------------------------
# Pure allocation
# ---------------------------------------------------------------------------


@dataclass
class TierLedger:
    tier: str
    budget: float
    task_count: int = 0
    allocated: float = 0.0
    normalized: float = 0.0


@dataclass
class AllocatedTask:
    task: GeneratedTask
    order: int
    raw_impact: float
    normalized_value: float
    impact_level: ImpactLevel
    difficulty_level: DifficultyLevel
    priority_rank: int

    @property
    def sort_key(self) -> tuple[int, float, int]:
        return (self.priority_rank, -self.raw_impact, self.order)


@dataclass
class Allocation:
    tasks: list[AllocatedTask] = field(default_factory=list)
    ledgers: dict[str, TierLedger] = field(default_factory=dict)


def allocate_task_values(
    tasks: list[GeneratedTask], value_gap: float, config: ScoringConfig = DEFAULT_CONFIG,
) -> Allocation:
    """Dollar value and priority for each task, sorted best first."""
    if value_gap < 0:
        raise ValueError(f"value_gap must be non-negative, got {value_gap}")

    ledgers = {
        tier: TierLedger(tier=tier, budget=value_gap * pct)
        for tier, pct in config.tier_allocation.items()
    }
    for t in tasks:
        ledgers[t.issue_tier.value].task_count += 1

    allocation = Allocation(ledgers=ledgers)
    for order, t in enumerate(tasks):
        ledger = ledgers[t.issue_tier.value]
        raw = ledger.budget / ledger.task_count * t.score_improvement
        normalized = raw / config.effort_divisors[t.effort_level.value]
        impact = score_to_impact_level(t.upgrade_from_score)
        difficulty = effort_to_difficulty_level(t.effort_level, t.estimated_hours)
        ledger.allocated += raw
        ledger.normalized += normalized
        allocation.tasks.append(AllocatedTask(
            task=t,
            order=order,
            raw_impact=raw,
            normalized_value=normalized,
            impact_level=impact,
            difficulty_level=difficulty,
            priority_rank=calculate_priority_rank(impact, difficulty),
        ))

    for ledger in ledgers.values():
        if ledger.normalized > ledger.budget > 0:
            # Only reachable with effort divisors far below 1.0
            scale = ledger.budget / ledger.normalized
            log.warning("Tier %s normalized values exceed budget; scaling by %.3f", ledger.tier, scale)
            for a in allocation.tasks:
                if a.task.issue_tier.value == ledger.tier:
                    a.normalized_value *= scale
            ledger.normalized = ledger.budget

    allocation.tasks.sort(key=lambda a: a.sort_key)
    return allocation


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def _find_option(options: list[QuestionOption], score: float) -> QuestionOption | None:
    for o in options:
        if same_score(o.score_value, score):
            return o
    return None


def regenerate_tasks(
    session: Session,
    company_id: int,
    batch: TaskBatch,
    value_gap: float,
    config: ScoringConfig = DEFAULT_CONFIG,
) -> AllocationResult:
    """Replace the company's PENDING tasks with the allocated batch.

    Tasks in any other status are kept. Tasks whose options cannot be
    resolved exactly on their linked question are skipped and counted.
    Runs in the caller's transaction (caller must commit).
    """
    allocation = allocate_task_values(batch.tasks, value_gap, config)

    question_ids = {a.task.linked_question_id for a in allocation.tasks}
    questions = {
        q.id: q
        for q in session.execute(
            select(Question).where(Question.id.in_(question_ids)).options(selectinload(Question.options))
        ).scalars()
    }

    removed = delete_pending_tasks(session, company_id)

    result = AllocationResult()
    for a in allocation.tasks:
        t = a.task
        question = questions.get(t.linked_question_id)
        if question is None or question.company_id not in (None, company_id) or not question.is_active:
            log.warning("Skipping task %r: question %s not active for company %s",
                        t.title, t.linked_question_id, company_id)
            result.skipped += 1
            continue
        from_option = _find_option(question.options, t.upgrade_from_score)
        to_option = _find_option(question.options, t.upgrade_to_score)
        if from_option is None or to_option is None:
            log.warning("Skipping task %r: no option at %s -> %s on question %s",
                        t.title, t.upgrade_from_score, t.upgrade_to_score, question.id)
            result.skipped += 1
            continue

        session.add(Task(
            company_id=company_id,
            title=t.title,
            description=t.description,
            action_type=t.action_type.value,
            category=t.category.value,
            linked_question_id=question.id,
            upgrades_from_option_id=from_option.id,
            upgrades_to_option_id=to_option.id,
            issue_tier=t.issue_tier.value,
            effort_level=t.effort_level.value,
            complexity=t.complexity.value,
            estimated_hours=t.estimated_hours,
            raw_impact=a.raw_impact,
            normalized_value=a.normalized_value,
            impact_level=a.impact_level.value,
            difficulty_level=a.difficulty_level.value,
            priority_rank=a.priority_rank,
            buyer_consequence=t.buyer_consequence[:BUYER_CONSEQUENCE_MAX],
            status=TaskStatus.PENDING.value,
            created_order=a.order,
        ))
        result.created += 1

    session.flush()
    planned = refresh_action_plan(session, company_id, config.max_action_plan_tasks)
    log.info(
        "Company %s: removed %d pending tasks, created %d, skipped %d, %d in action plan",
        company_id, removed, result.created, result.skipped, planned,
    )
    return result


def delete_pending_tasks(session: Session, company_id: int) -> int:
    """Remove the company's PENDING tasks; other statuses are kept (caller must commit)."""
    return session.execute(
        delete(Task).where(Task.company_id == company_id, Task.status == TaskStatus.PENDING.value)
    ).rowcount


# Statuses eligible for the action plan
_PLANNABLE = (TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value, TaskStatus.BLOCKED.value)


def refresh_action_plan(session: Session, company_id: int, limit: int) -> int:
    """Flag the top *limit* open tasks by priority as the action plan."""
    tasks = session.execute(select(Task).where(Task.company_id == company_id)).scalars().all()
    open_tasks = sorted(
        (t for t in tasks if t.status in _PLANNABLE),
        key=lambda t: (t.priority_rank, -t.raw_impact, t.created_order, t.id),
    )
    chosen = {t.id for t in open_tasks[:limit]}
    for t in tasks:
        t.in_action_plan = t.id in chosen
    return len(chosen)


# ---------------------------------------------------------------------------
# Task lifecycle
# ---------------------------------------------------------------------------

TASK_TRANSITIONS: dict[str, set[str]] = {
    TaskStatus.PENDING.value: {
        TaskStatus.IN_PROGRESS.value, TaskStatus.DEFERRED.value,
        TaskStatus.BLOCKED.value, TaskStatus.CANCELLED.value,
    },
    TaskStatus.IN_PROGRESS.value: {
        TaskStatus.COMPLETED.value, TaskStatus.DEFERRED.value,
        TaskStatus.BLOCKED.value, TaskStatus.CANCELLED.value,
    },
    TaskStatus.DEFERRED.value: {TaskStatus.PENDING.value},
    TaskStatus.BLOCKED.value: {TaskStatus.PENDING.value},
    TaskStatus.COMPLETED.value: set(),
    TaskStatus.CANCELLED.value: set(),
}

_LEAVES_PLAN = {TaskStatus.COMPLETED.value, TaskStatus.CANCELLED.value, TaskStatus.DEFERRED.value}


def can_transition(current: TaskStatus | str, target: TaskStatus | str) -> bool:
    return enum_value(target) in TASK_TRANSITIONS.get(enum_value(current), set())


def transition_task(
    task: Task,
    target: TaskStatus | str,
    *,
    reason: str = "",
    until: datetime | None = None,
    now: datetime | None = None,
) -> Task:
    """Move *task* to *target*, raising :class:`InvalidTransitionError` if not allowed.

    Completion freezes the value credited to the task; later reallocation
    never rewrites ``completed_value``.
    """
    current = enum_value(task.status)
    target = enum_value(target)
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)

    now = now or utcnow()
    task.status = target
    if target == TaskStatus.COMPLETED.value:
        task.completed_at = now
        task.completed_value = task.normalized_value
    elif target == TaskStatus.DEFERRED.value:
        task.deferred_until = until
        task.deferral_reason = reason
    elif target == TaskStatus.PENDING.value:
        task.deferred_until = None
        task.deferral_reason = ""
    if target in _LEAVES_PLAN:
        task.in_action_plan = False
    log.debug("Task %s: %s -> %s", task.id, current, target)
    return task
