"""Snapshot aggregator: versioned company dossier built from independent section reads.

Each of the eight sections reads its own slice of company state in its own
session on a worker thread. The reads are read-only and share nothing, so
they run under ``asyncio.gather`` without locks. The assembled document is
stored as a new ``CompanyDossier`` row; earlier versions are never touched.

The dossier only sorts and counts. Category scores come from the latest
valuation snapshot, not from re-scoring responses here.
"""
from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from exitready.models import (
    ActivityEvent, Company, CompanyDossier, EvidenceDocument, RiskSignal, Task, TaskStatus,
    ValuationSnapshot,
)
from exitready.schemas import (
    AIContext, AssessmentSection, DossierContent, DriverOut, EngagementSection, EvidenceSection,
    FinancialsSection, IdentitySection, SignalsSection, TasksSection, ValuationSection,
)
from exitready.scoring import (
    CATEGORIES, CategoryScores, latest_completed_assessment, load_scoring_responses, weakest_categories,
    weakest_drivers,
)
from exitready.utils import utcnow
from exitready.valuation import company_config, latest_snapshot, snapshot_category_scores

log = logging.getLogger(__name__)

SEVERITY_ORDER = ("CRITICAL", "HIGH", "MEDIUM", "LOW")
CHECK_IN = "check_in"


def _company(session: Session, company_id: int) -> Company:
    company = session.get(Company, company_id)
    if company is None:
        raise LookupError(f"Company {company_id} not found")
    return company


# ---------------------------------------------------------------------------
# Section readers
# ---------------------------------------------------------------------------


def read_identity(session: Session, company_id: int, now: datetime) -> IdentitySection:
    c = _company(session, company_id)
    return IdentitySection(
        name=c.name,
        industry=c.icb_industry or "",
        super_sector=c.icb_super_sector or "",
        sector=c.icb_sector or "",
        sub_sector=c.icb_sub_sector or "",
        business_description=c.business_description or "",
    )


def read_financials(session: Session, company_id: int, now: datetime) -> FinancialsSection:
    c = _company(session, company_id)
    revenue = float(c.annual_revenue or 0.0)
    ebitda = float(c.annual_ebitda or 0.0)
    present = sum(1 for v in (revenue, ebitda) if v)
    return FinancialsSection(
        annual_revenue=revenue,
        annual_ebitda=ebitda,
        ebitda_margin_pct=ebitda / revenue * 100 if revenue > 0 else None,
        owner_compensation=float(c.owner_compensation or 0.0),
        adjustment_count=len(c.adjustments),
        data_completeness=("missing", "partial", "complete")[present],
    )


def read_assessment(session: Session, company_id: int, now: datetime) -> AssessmentSection:
    assessment = latest_completed_assessment(session, company_id)
    if assessment is None:
        return AssessmentSection()

    weights = company_config(_company(session, company_id)).category_weights
    responses = load_scoring_responses(session, company_id)
    section = AssessmentSection(
        has_completed_assessment=True,
        completed_at=assessment.completed_at,
        response_count=len(responses),
        weakest_drivers=[
            DriverOut(
                question_id=r.question_id,
                question_text=r.question_text,
                risk_driver_name=r.risk_driver_name,
                category=r.category,
                score_value=r.score_value,
            )
            for r in weakest_drivers(responses)
        ],
    )
    snapshot = latest_snapshot(session, company_id)
    if snapshot is not None:
        scores = {c: s for c, s in snapshot_category_scores(snapshot).items() if s is not None}
        section.category_scores = scores
        section.unanswered_categories = [c for c in CATEGORIES if c not in scores]
        section.weakest_categories = weakest_categories(CategoryScores(scores=scores), weights)
    return section


def read_valuation(session: Session, company_id: int, now: datetime) -> ValuationSection:
    snapshot = latest_snapshot(session, company_id)
    count = session.execute(
        select(func.count(ValuationSnapshot.id)).where(ValuationSnapshot.company_id == company_id)
    ).scalar_one()
    if snapshot is None:
        return ValuationSection(snapshot_count=count)
    return ValuationSection(
        snapshot_id=snapshot.id,
        bri_score=snapshot.bri_score,
        current_value=snapshot.current_value,
        potential_value=snapshot.potential_value,
        value_gap=snapshot.value_gap,
        final_multiple=snapshot.final_multiple,
        is_estimated=bool(snapshot.is_estimated),
        snapshot_count=count,
    )


def read_tasks(session: Session, company_id: int, now: datetime) -> TasksSection:
    tasks = session.execute(select(Task).where(Task.company_id == company_id)).scalars().all()
    counts = Counter(t.status for t in tasks)
    return TasksSection(
        pending_count=counts[TaskStatus.PENDING.value],
        in_progress_count=counts[TaskStatus.IN_PROGRESS.value],
        completed_count=counts[TaskStatus.COMPLETED.value],
        deferred_count=counts[TaskStatus.DEFERRED.value],
        blocked_count=counts[TaskStatus.BLOCKED.value],
        cancelled_count=counts[TaskStatus.CANCELLED.value],
        completed_value_total=sum(t.completed_value or 0.0 for t in tasks if t.status == TaskStatus.COMPLETED.value),
    )


def read_evidence(session: Session, company_id: int, now: datetime) -> EvidenceSection:
    docs = session.execute(
        select(EvidenceDocument.category).where(EvidenceDocument.company_id == company_id)
    ).scalars().all()
    by_category = Counter(docs)
    return EvidenceSection(
        total_documents=len(docs),
        by_category=dict(by_category),
        category_gaps=[c for c in CATEGORIES if not by_category.get(c)],
    )


def read_signals(session: Session, company_id: int, now: datetime) -> SignalsSection:
    signals = session.execute(
        select(RiskSignal).where(RiskSignal.company_id == company_id, RiskSignal.status == "OPEN")
    ).scalars().all()

    def rank(s: RiskSignal) -> tuple[int, float]:
        severity = SEVERITY_ORDER.index(s.severity) if s.severity in SEVERITY_ORDER else len(SEVERITY_ORDER)
        return (severity, -(s.created_at.timestamp() if s.created_at else 0.0))

    return SignalsSection(
        open_signals_count=len(signals),
        severity_summary=dict(Counter(s.severity for s in signals)),
        top_risks=[s.title for s in sorted(signals, key=rank)[:5]],
    )


def check_in_streak(check_ins: list[datetime], now: datetime) -> int:
    """Consecutive ISO weeks with at least one check-in.

    Counting starts at the current week, or at last week when nothing has
    been logged yet this week.
    """
    weeks = {d.isocalendar()[:2] for d in check_ins}
    cursor = now
    if cursor.isocalendar()[:2] not in weeks:
        cursor -= timedelta(weeks=1)
    streak = 0
    while cursor.isocalendar()[:2] in weeks:
        streak += 1
        cursor -= timedelta(weeks=1)
    return streak


def read_engagement(session: Session, company_id: int, now: datetime) -> EngagementSection:
    events = session.execute(
        select(ActivityEvent).where(ActivityEvent.company_id == company_id)
    ).scalars().all()
    if not events:
        return EngagementSection()
    last = max(e.occurred_at for e in events)
    return EngagementSection(
        last_activity_at=last,
        days_since_last_activity=max(0, (now - last).days),
        check_in_streak=check_in_streak([e.occurred_at for e in events if e.kind == CHECK_IN], now),
    )


SECTION_READERS: dict[str, Callable[[Session, int, datetime], object]] = {
    "identity": read_identity,
    "financials": read_financials,
    "assessment": read_assessment,
    "valuation": read_valuation,
    "tasks": read_tasks,
    "evidence": read_evidence,
    "signals": read_signals,
    "engagement": read_engagement,
}


def derive_ai_context(assessment: AssessmentSection, open_high: list[str]) -> AIContext:
    """Focus on the weakest categories; carry open high and critical signals as risks."""
    return AIContext(focus_areas=list(assessment.weakest_categories), identified_risks=open_high)


def _high_severity_titles(session: Session, company_id: int) -> list[str]:
    return list(session.execute(
        select(RiskSignal.title)
        .where(
            RiskSignal.company_id == company_id,
            RiskSignal.status == "OPEN",
            RiskSignal.severity.in_(("CRITICAL", "HIGH")),
        )
        .order_by(RiskSignal.id)
    ).scalars().all())


# ---------------------------------------------------------------------------
# Build and store
# ---------------------------------------------------------------------------


def _read_section(
    factory: sessionmaker, reader: Callable[[Session, int, datetime], object], company_id: int, now: datetime,
) -> object:
    with factory() as session:
        return reader(session, company_id, now)


async def build_dossier(
    session_factory: sessionmaker,
    company_id: int,
    trigger_event: str,
    now: datetime | None = None,
) -> CompanyDossier:
    """Read all sections in parallel and store them as the next dossier version."""
    now = now or utcnow()
    with session_factory() as session:
        _company(session, company_id)

    names = list(SECTION_READERS)
    results = await asyncio.gather(*(
        asyncio.to_thread(_read_section, session_factory, SECTION_READERS[name], company_id, now)
        for name in names
    ))
    sections = dict(zip(names, results))

    with session_factory() as session:
        high = _high_severity_titles(session, company_id)
        content = DossierContent(
            company_id=company_id,
            built_at=now,
            ai_context=derive_ai_context(sections["assessment"], high),
            **sections,
        )
        previous = session.execute(
            select(func.max(CompanyDossier.version)).where(CompanyDossier.company_id == company_id)
        ).scalar()
        row = CompanyDossier(
            company_id=company_id,
            version=(previous or 0) + 1,
            trigger_event=trigger_event,
            content_json=content.model_dump_json(),
        )
        session.add(row)
        session.commit()
        session.refresh(row)
    log.info("Built dossier v%d for company %s (%s)", row.version, company_id, trigger_event)
    return row


def get_current_dossier(session: Session, company_id: int) -> CompanyDossier | None:
    return session.execute(
        select(CompanyDossier)
        .where(CompanyDossier.company_id == company_id)
        .order_by(CompanyDossier.version.desc())
        .limit(1)
    ).scalars().first()


def dossier_content(row: CompanyDossier) -> DossierContent:
    return DossierContent.model_validate_json(row.content_json)
