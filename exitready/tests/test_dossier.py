"""Tests for the versioned company dossier."""
from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from exitready.dossier import (
    build_dossier, check_in_streak, dossier_content, get_current_dossier, read_financials, read_signals,
)
from exitready.models import ActivityEvent, EbitdaAdjustment, EvidenceDocument, RiskSignal, Task
from exitready.valuation import recalculate_snapshot

NOW = datetime(2026, 3, 12, 10, 0)  # a Thursday


def _task(company_id, status, completed_value=None) -> Task:
    return Task(
        company_id=company_id, title=f"{status} task", action_type="TYPE_I_EVIDENCE", category="FINANCIAL",
        issue_tier="CRITICAL", effort_level="LOW", complexity="SIMPLE", status=status,
        completed_value=completed_value,
    )


# =========================================================================
# Check-in streak
# =========================================================================

class TestCheckInStreak:
    def test_no_check_ins(self):
        assert check_in_streak([], NOW) == 0

    def test_consecutive_weeks_including_current(self):
        dates = [NOW - timedelta(weeks=w) for w in range(3)]
        assert check_in_streak(dates, NOW) == 3

    def test_current_week_not_yet_logged(self):
        dates = [NOW - timedelta(weeks=1), NOW - timedelta(weeks=2)]
        assert check_in_streak(dates, NOW) == 2

    def test_gap_breaks_streak(self):
        dates = [NOW, NOW - timedelta(weeks=1), NOW - timedelta(weeks=3)]
        assert check_in_streak(dates, NOW) == 2

    def test_multiple_check_ins_same_week_count_once(self):
        dates = [NOW, NOW - timedelta(days=1), NOW - timedelta(days=2)]
        assert check_in_streak(dates, NOW) == 1


# =========================================================================
# Section readers
# =========================================================================

class TestSectionReaders:
    def test_financials_complete(self, session, add_company):
        company = add_company(session)
        section = read_financials(session, company.id, NOW)
        assert section.data_completeness == "complete"
        assert section.ebitda_margin_pct == pytest.approx(25.0)

    def test_financials_partial_and_missing(self, session, add_company):
        partial = add_company(session, annual_ebitda=0.0)
        missing = add_company(session, annual_revenue=0.0, annual_ebitda=0.0)
        assert read_financials(session, partial.id, NOW).data_completeness == "partial"
        empty = read_financials(session, missing.id, NOW)
        assert empty.data_completeness == "missing"
        assert empty.ebitda_margin_pct is None

    def test_signals_sorted_by_severity_open_only(self, session, add_company):
        company = add_company(session)
        session.add_all([
            RiskSignal(company_id=company.id, title="Late filings", severity="MEDIUM"),
            RiskSignal(company_id=company.id, title="Key customer leaving", severity="CRITICAL"),
            RiskSignal(company_id=company.id, title="Old lawsuit", severity="HIGH", status="RESOLVED"),
        ])
        session.flush()
        section = read_signals(session, company.id, NOW)
        assert section.open_signals_count == 2
        assert section.top_risks == ["Key customer leaving", "Late filings"]
        assert section.severity_summary == {"MEDIUM": 1, "CRITICAL": 1}

    def test_missing_company(self, session):
        with pytest.raises(LookupError):
            read_financials(session, 404, NOW)


# =========================================================================
# Build and store
# =========================================================================

class TestBuildDossier:
    @pytest.mark.asyncio
    async def test_versions_increment(self, file_factory, add_company):
        with file_factory() as session:
            company_id = add_company(session).id
            session.commit()

        first = await build_dossier(file_factory, company_id, "manual", now=NOW)
        second = await build_dossier(file_factory, company_id, "task_generation", now=NOW)
        assert (first.version, second.version) == (1, 2)
        assert second.trigger_event == "task_generation"

        with file_factory() as session:
            current = get_current_dossier(session, company_id)
            assert current.id == second.id
            # earlier versions are kept untouched
            assert dossier_content(first).company_id == company_id

    @pytest.mark.asyncio
    async def test_sections_populated(self, file_factory, add_company, add_question, add_assessment):
        with file_factory() as session:
            company = add_company(session)
            cid = company.id
            add_assessment(session, company, [
                (add_question(session, category="FINANCIAL"), 0.0),
                (add_question(session, category="MARKET"), 0.67),
            ])
            recalculate_snapshot(session, cid, "assessment_completed")
            session.add_all([
                EbitdaAdjustment(company_id=cid, kind="ADD_BACK", amount=10_000),
                EvidenceDocument(company_id=cid, category="FINANCIAL", filename="pnl-2025.pdf"),
                EvidenceDocument(company_id=cid, category="FINANCIAL", filename="bs-2025.pdf"),
                RiskSignal(company_id=cid, title="Customer concentration", severity="HIGH"),
                RiskSignal(company_id=cid, title="Slow collections", severity="LOW"),
                ActivityEvent(company_id=cid, kind="check_in", occurred_at=NOW - timedelta(days=1)),
                ActivityEvent(company_id=cid, kind="check_in", occurred_at=NOW - timedelta(weeks=1)),
                _task(cid, "PENDING"),
                _task(cid, "PENDING"),
                _task(cid, "COMPLETED", completed_value=5_000.0),
            ])
            session.commit()

        row = await build_dossier(file_factory, cid, "manual", now=NOW)
        content = dossier_content(row)

        assert content.identity.name == "Acme Plumbing"
        assert content.financials.adjustment_count == 1
        assert content.assessment.has_completed_assessment
        assert content.assessment.response_count == 2
        assert content.assessment.category_scores == {
            "FINANCIAL": pytest.approx(0.0), "MARKET": pytest.approx(0.67),
        }
        assert content.assessment.weakest_categories[0] == "FINANCIAL"
        assert content.assessment.weakest_drivers[0].category == "FINANCIAL"
        assert content.valuation.snapshot_count == 1
        assert content.valuation.is_estimated is True
        assert (content.tasks.pending_count, content.tasks.completed_count) == (2, 1)
        assert content.tasks.completed_value_total == pytest.approx(5_000.0)
        assert content.evidence.total_documents == 2
        assert "FINANCIAL" not in content.evidence.category_gaps
        assert "LEGAL_TAX" in content.evidence.category_gaps
        assert content.signals.top_risks[0] == "Customer concentration"
        assert content.engagement.check_in_streak == 2
        assert content.engagement.days_since_last_activity == 1
        assert content.ai_context.identified_risks == ["Customer concentration"]
        assert content.ai_context.focus_areas[0] == "FINANCIAL"

    @pytest.mark.asyncio
    async def test_empty_company(self, file_factory, add_company):
        with file_factory() as session:
            cid = add_company(session).id
            session.commit()
        content = dossier_content(await build_dossier(file_factory, cid, "manual", now=NOW))
        assert content.assessment.has_completed_assessment is False
        assert content.valuation.snapshot_id is None
        assert content.engagement.last_activity_at is None
        assert content.ai_context.focus_areas == []

    @pytest.mark.asyncio
    async def test_missing_company(self, file_factory):
        with pytest.raises(LookupError):
            await build_dossier(file_factory, 404, "manual")

    def test_no_dossier_yet(self, session, add_company):
        assert get_current_dossier(session, add_company(session).id) is None
