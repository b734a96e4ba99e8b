"""End-to-end tests for the pipeline services."""
from __future__ import annotations

from datetime import datetime

import pytest
from sqlalchemy import select

from exitready.allocator import regenerate_tasks
from exitready.config import DEFAULT_CATEGORY_WEIGHTS
from exitready.errors import ConfigurationError, ContractViolationError, InvalidTransitionError
from exitready.generation import GenerationOutput
from exitready.models import ActivityEvent, Company, CompanyDossier, GenerationLog, Question, Task, TaskStatus
from exitready.services import (
    complete_assessment, run_question_generation, run_scoring_pass, run_task_generation, set_company_weights,
    snapshot_history, task_summary, update_task_status,
)
from exitready.validator import active_questions, validate_task_batch
from exitready.valuation import latest_snapshot


class FakeGenerator:
    def __init__(self, data):
        self.data = data

    async def generate(self, system: str, user: str) -> GenerationOutput:
        return GenerationOutput(data=self.data, model="fake-model")


def _assessed_company(session, add_company, add_question, add_assessment, n=4, score=0.33):
    """Company with *n* CRITICAL questions answered at *score*, assessment still open."""
    company = add_company(session)
    questions = [add_question(session, company_id=company.id, tier="CRITICAL", points=12) for _ in range(n)]
    assessment = add_assessment(session, company, [(q, score) for q in questions], completed_at=None)
    session.commit()
    return company, questions, assessment


# =========================================================================
# Scoring pass
# =========================================================================

class TestScoringServices:
    def test_complete_assessment_creates_snapshot(self, session, add_company, add_question, add_assessment):
        company, _, assessment = _assessed_company(session, add_company, add_question, add_assessment)
        result = complete_assessment(session, assessment.id, now=datetime(2026, 3, 1))

        assert result.created
        assert result.snapshot.snapshot_reason == "assessment_completed"
        assert assessment.completed_at == datetime(2026, 3, 1)
        events = session.execute(select(ActivityEvent.kind)).scalars().all()
        assert events == ["assessment"]

    def test_complete_missing_assessment(self, session):
        with pytest.raises(LookupError):
            complete_assessment(session, 404)

    def test_snapshot_history_newest_first(self, session, add_company, add_question, add_assessment):
        company, _, assessment = _assessed_company(session, add_company, add_question, add_assessment)
        complete_assessment(session, assessment.id)
        run_scoring_pass(session, company.id, reason="weights_changed")

        history = snapshot_history(session, company.id)
        assert [h["snapshot_reason"] for h in history] == ["weights_changed", "assessment_completed"]
        assert history[0]["category_scores"]["FINANCIAL"] == pytest.approx(0.33)
        assert history[0]["category_scores"]["MARKET"] is None
        assert len(snapshot_history(session, company.id, limit=1)) == 1

    def test_scoring_pass_without_responses(self, session, add_company):
        company = add_company(session)
        result = run_scoring_pass(session, company.id)
        assert not result.created
        assert snapshot_history(session, company.id) == []


class TestCompanyWeights:
    def test_valid_override_stored(self, session, add_company):
        company = add_company(session)
        weights = {c: 1 / 6 for c in DEFAULT_CATEGORY_WEIGHTS}
        assert set_company_weights(session, company.id, weights) == pytest.approx(weights)
        assert company.bri_weights_json is not None

    def test_invalid_override_rejected_at_write(self, session, add_company):
        company = add_company(session)
        bad = dict(DEFAULT_CATEGORY_WEIGHTS, FINANCIAL=0.9)
        with pytest.raises(ConfigurationError):
            set_company_weights(session, company.id, bad)
        assert company.bri_weights_json is None

    def test_clear_override(self, session, add_company):
        company = add_company(session)
        set_company_weights(session, company.id, {c: 1 / 6 for c in DEFAULT_CATEGORY_WEIGHTS})
        assert set_company_weights(session, company.id, None) == DEFAULT_CATEGORY_WEIGHTS
        assert company.bri_weights_json is None

    def test_unknown_company(self, session):
        with pytest.raises(LookupError):
            set_company_weights(session, 404, None)


# =========================================================================
# Generation pipeline
# =========================================================================

class TestQuestionGenerationPipeline:
    @pytest.mark.asyncio
    async def test_installs_question_set(self, file_factory, add_company, add_question, question_batch):
        with file_factory() as session:
            company_id = add_company(session).id
            add_question(session)
            session.commit()

        ids = await run_question_generation(file_factory, company_id, FakeGenerator(question_batch), timeout=5)

        assert len(ids) == 30
        with file_factory() as session:
            assert sorted(q.id for q in active_questions(session, company_id)) == sorted(ids)
            dossier = session.execute(select(CompanyDossier)).scalars().one()
            assert dossier.trigger_event == "question_generation"

    @pytest.mark.asyncio
    async def test_rejection_leaves_templates_active(self, file_factory, add_company, add_question, question_batch):
        with file_factory() as session:
            company_id = add_company(session).id
            template_id = add_question(session).id
            session.commit()
        question_batch["questions"].pop()

        with pytest.raises(ContractViolationError):
            await run_question_generation(file_factory, company_id, FakeGenerator(question_batch), timeout=5)

        with file_factory() as session:
            assert [q.id for q in active_questions(session, company_id)] == [template_id]
            entry = session.execute(select(GenerationLog)).scalars().one()
            assert entry.accepted is False


class TestTaskGenerationPipeline:
    @pytest.mark.asyncio
    async def test_assessment_to_tasks(self, file_factory, add_company, add_question, add_assessment, task_payload):
        with file_factory() as session:
            company, questions, assessment = _assessed_company(session, add_company, add_question, add_assessment)
            company_id, question_ids = company.id, [q.id for q in questions]
            complete_assessment(session, assessment.id)
            gap = latest_snapshot(session, company_id).value_gap

        payload = {"tasks": [task_payload(qid) for qid in question_ids]}
        result = await run_task_generation(file_factory, company_id, FakeGenerator(payload), timeout=5)

        assert (result.created, result.skipped) == (4, 0)
        with file_factory() as session:
            tasks = session.execute(select(Task).where(Task.company_id == company_id)).scalars().all()
            assert len(tasks) == 4
            expected = gap * 0.60 / 4 * (0.67 - 0.33)
            assert all(t.raw_impact == pytest.approx(expected) for t in tasks)
            assert all(t.in_action_plan for t in tasks)
            entry = session.execute(select(GenerationLog)).scalars().one()
            assert entry.accepted is True

    @pytest.mark.asyncio
    async def test_skips_without_snapshot(self, file_factory, add_company):
        with file_factory() as session:
            company_id = add_company(session).id
            session.commit()
        result = await run_task_generation(file_factory, company_id, FakeGenerator({"tasks": []}), timeout=5)
        assert (result.created, result.skipped) == (0, 0)

    @pytest.mark.asyncio
    async def test_skips_when_every_answer_is_best(self, file_factory, add_company, add_question, add_assessment):
        with file_factory() as session:
            _, _, assessment = _assessed_company(session, add_company, add_question, add_assessment, score=1.0)
            company_id = assessment.company_id
            complete_assessment(session, assessment.id)
        result = await run_task_generation(file_factory, company_id, FakeGenerator({"tasks": []}), timeout=5)
        assert result.created == 0
        with file_factory() as session:
            assert session.execute(select(GenerationLog)).scalars().all() == []

    @pytest.mark.asyncio
    async def test_best_answers_clear_stale_pending_tasks(
        self, file_factory, add_company, add_question, add_assessment, task_payload,
    ):
        with file_factory() as session:
            company, questions, first = _assessed_company(session, add_company, add_question, add_assessment, n=2)
            company_id, question_ids = company.id, [q.id for q in questions]
            complete_assessment(session, first.id, now=datetime(2026, 3, 1))

        payload = {"tasks": [task_payload(qid) for qid in question_ids]}
        await run_task_generation(file_factory, company_id, FakeGenerator(payload), timeout=5)
        with file_factory() as session:
            started = session.execute(select(Task).order_by(Task.id)).scalars().first()
            update_task_status(session, started.id, "IN_PROGRESS")
            best = [(session.get(Question, qid), 1.0) for qid in question_ids]
            second = add_assessment(session, session.get(Company, company_id), best, completed_at=None)
            session.commit()
            complete_assessment(session, second.id, now=datetime(2026, 4, 1))

        result = await run_task_generation(file_factory, company_id, FakeGenerator({"tasks": []}), timeout=5)

        assert (result.created, result.skipped) == (0, 0)
        with file_factory() as session:
            tasks = session.execute(select(Task).where(Task.company_id == company_id)).scalars().all()
            assert [t.id for t in tasks] == [started.id]
            assert tasks[0].status == TaskStatus.IN_PROGRESS.value
            assert tasks[0].in_action_plan is True
            assert len(session.execute(select(GenerationLog)).scalars().all()) == 1

    @pytest.mark.asyncio
    async def test_rejected_batch_keeps_pending_tasks(
        self, file_factory, add_company, add_question, add_assessment, task_payload,
    ):
        with file_factory() as session:
            company, questions, assessment = _assessed_company(session, add_company, add_question, add_assessment)
            company_id, first_id = company.id, questions[0].id
            complete_assessment(session, assessment.id)

        await run_task_generation(file_factory, company_id, FakeGenerator({"tasks": [task_payload(first_id)]}))
        with pytest.raises(ContractViolationError):
            await run_task_generation(file_factory, company_id, FakeGenerator({"tasks": []}))

        with file_factory() as session:
            tasks = session.execute(select(Task)).scalars().all()
            assert [t.linked_question_id for t in tasks] == [first_id]
            accepted = session.execute(select(GenerationLog.accepted).order_by(GenerationLog.id)).scalars().all()
            assert accepted == [True, False]


# =========================================================================
# Task lifecycle
# =========================================================================

class TestUpdateTaskStatus:
    def _planned_tasks(self, session, add_company, add_question, task_payload, n=16):
        company = add_company(session)
        questions = [add_question(session, company_id=company.id, tier="CRITICAL", points=12) for _ in range(n)]
        batch = validate_task_batch({"tasks": [task_payload(q.id) for q in questions]})
        regenerate_tasks(session, company.id, batch, 1_000_000)
        session.commit()
        return company, session.execute(select(Task).order_by(Task.priority_rank, Task.id)).scalars().all()

    def test_cancel_refills_action_plan(self, session, add_company, add_question, task_payload):
        _, tasks = self._planned_tasks(session, add_company, add_question, task_payload)
        assert sum(t.in_action_plan for t in tasks) == 15
        waiting = next(t for t in tasks if not t.in_action_plan)
        planned = next(t for t in tasks if t.in_action_plan)

        update_task_status(session, planned.id, TaskStatus.CANCELLED)

        assert planned.in_action_plan is False
        assert waiting.in_action_plan is True
        assert sum(t.in_action_plan for t in tasks) == 15

    def test_complete_freezes_value_and_logs_activity(self, session, add_company, add_question, task_payload):
        _, tasks = self._planned_tasks(session, add_company, add_question, task_payload, n=1)
        task = tasks[0]
        update_task_status(session, task.id, "IN_PROGRESS")
        update_task_status(session, task.id, "COMPLETED", now=datetime(2026, 4, 1))

        summary = task_summary(task)
        assert summary["status"] == "COMPLETED"
        assert summary["completed_value"] == pytest.approx(task.normalized_value)
        kinds = session.execute(select(ActivityEvent.kind)).scalars().all()
        assert kinds == ["task_update", "task_update"]

    def test_invalid_transition_changes_nothing(self, session, add_company, add_question, task_payload):
        _, tasks = self._planned_tasks(session, add_company, add_question, task_payload, n=1)
        with pytest.raises(InvalidTransitionError):
            update_task_status(session, tasks[0].id, "COMPLETED")
        assert tasks[0].status == TaskStatus.PENDING.value
        assert session.execute(select(ActivityEvent)).scalars().all() == []

    def test_missing_task(self, session):
        with pytest.raises(LookupError):
            update_task_status(session, 404, "IN_PROGRESS")
