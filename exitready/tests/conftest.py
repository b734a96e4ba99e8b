"""Shared fixtures: in-memory and file-backed SQLite databases plus small builders."""
from __future__ import annotations

from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from exitready.models import (
    SCORE_LEVELS, Assessment, AssessmentResponse, Base, Company, ConfidenceLevel, Question, QuestionOption,
)
from exitready.utils import same_score

# ---------------------------------------------------------------------------
# Fixtures: databases
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def file_factory(tmp_path):
    """File-backed database for code that opens sessions on worker threads."""
    eng = create_engine(f"sqlite:///{tmp_path / 'exitready.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    factory = sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)
    yield factory
    eng.dispose()


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def _add_company(session: Session, **overrides) -> Company:
    fields = {
        "name": "Acme Plumbing",
        "icb_industry": "Industrials",
        "icb_super_sector": "Construction and Materials",
        "icb_sector": "Construction and Materials",
        "icb_sub_sector": "Building Materials",
        "annual_revenue": 8_000_000.0,
        "annual_ebitda": 2_000_000.0,
        "revenue_size_category": "FROM_3M_TO_10M",
    }
    fields.update(overrides)
    company = Company(**fields)
    session.add(company)
    session.flush()
    return company


def _add_question(
    session: Session,
    category: str = "FINANCIAL",
    points: float = 10.0,
    tier: str = "SIGNIFICANT",
    company_id: int | None = None,
    active: bool = True,
    scores: tuple[float, ...] = SCORE_LEVELS,
) -> Question:
    q = Question(
        company_id=company_id,
        category=category,
        issue_tier=tier,
        question_text=f"How strong is the {category.lower()} position?",
        risk_driver_name=f"{category.title()} driver",
        max_impact_points=points,
        is_active=active,
        options=[
            QuestionOption(option_text=f"Level {i}", score_value=s, display_order=i)
            for i, s in enumerate(scores, start=1)
        ],
    )
    session.add(q)
    session.flush()
    return q


def option_at(question: Question, score: float) -> QuestionOption:
    return next(o for o in question.options if same_score(o.score_value, score))


def _add_assessment(
    session: Session,
    company: Company,
    answers: list[tuple],
    completed_at: datetime | None = datetime(2026, 1, 15, 12, 0),
) -> Assessment:
    """*answers* holds ``(question, score)`` or ``(question, score, confidence)`` tuples."""
    assessment = Assessment(company_id=company.id, completed_at=completed_at)
    session.add(assessment)
    session.flush()
    for answer in answers:
        question, score = answer[0], answer[1]
        confidence = answer[2] if len(answer) > 2 else ConfidenceLevel.CONFIDENT.value
        session.add(AssessmentResponse(
            assessment_id=assessment.id,
            question_id=question.id,
            selected_option_id=option_at(question, score).id,
            confidence_level=confidence,
        ))
    session.flush()
    return assessment


@pytest.fixture()
def add_company():
    return _add_company


@pytest.fixture()
def add_question():
    return _add_question


@pytest.fixture()
def add_assessment():
    return _add_assessment


# ---------------------------------------------------------------------------
# Generated batch payloads
# ---------------------------------------------------------------------------

_DISTRIBUTION = [
    ("FINANCIAL", 7), ("TRANSFERABILITY", 6), ("OPERATIONAL", 6),
    ("MARKET", 5), ("LEGAL_TAX", 3), ("PERSONAL", 3),
]


def _question_payload(category: str, n: int) -> dict:
    return {
        "questionText": f"{category} question {n}?",
        "helpText": "Why this matters.",
        "buyerLogic": "Buyers discount businesses with this gap.",
        "briCategory": category,
        "issueTier": "SIGNIFICANT",
        "maxImpactPoints": 10,
        "riskDriverName": f"{category} risk {n}",
        "displayOrder": n,
        "options": [
            {"optionText": "Worst", "scoreValue": 0.0, "displayOrder": 1},
            {"optionText": "Weak", "scoreValue": 0.33, "displayOrder": 2},
            {"optionText": "Good", "scoreValue": 0.67, "displayOrder": 3},
            {"optionText": "Best", "scoreValue": 1.0, "displayOrder": 4},
        ],
    }


@pytest.fixture()
def question_batch() -> dict:
    """A valid 30-question batch; tests mutate their own copy."""
    questions = []
    for category, count in _DISTRIBUTION:
        for _ in range(count):
            questions.append(_question_payload(category, len(questions) + 1))
    return {"questions": questions, "reasoning": "Start with the weakest areas."}


def _task_payload(
    question_id: int,
    from_score: float = 0.33,
    to_score: float = 0.67,
    tier: str = "CRITICAL",
    effort: str = "MODERATE",
    category: str = "FINANCIAL",
    hours: float | None = None,
    title: str | None = None,
) -> dict:
    return {
        "title": title or f"Improve answer to question {question_id}",
        "description": "Gather the documents and formalize the process.",
        "actionType": "TYPE_II_DOCUMENTATION",
        "briCategory": category,
        "linkedQuestionId": question_id,
        "upgradeFromScore": from_score,
        "upgradeToScore": to_score,
        "effortLevel": effort,
        "complexity": "MODERATE",
        "estimatedHours": hours,
        "issueTier": tier,
        "buyerConsequence": "Buyer applies a discount for undocumented risk.",
    }


@pytest.fixture()
def task_payload():
    return _task_payload


@pytest.fixture()
def pick_option():
    return option_at
