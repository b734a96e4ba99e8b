from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text, event, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from exitready.errors import ImmutableRecordError


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Closed enumerations
# ---------------------------------------------------------------------------


class Category(str, enum.Enum):
    FINANCIAL = "FINANCIAL"
    TRANSFERABILITY = "TRANSFERABILITY"
    OPERATIONAL = "OPERATIONAL"
    MARKET = "MARKET"
    LEGAL_TAX = "LEGAL_TAX"
    PERSONAL = "PERSONAL"


class IssueTier(str, enum.Enum):
    CRITICAL = "CRITICAL"
    SIGNIFICANT = "SIGNIFICANT"
    OPTIMIZATION = "OPTIMIZATION"


class EffortLevel(str, enum.Enum):
    MINIMAL = "MINIMAL"
    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"
    MAJOR = "MAJOR"


class Complexity(str, enum.Enum):
    SIMPLE = "SIMPLE"
    MODERATE = "MODERATE"
    COMPLEX = "COMPLEX"
    STRATEGIC = "STRATEGIC"


class ActionType(str, enum.Enum):
    TYPE_I_EVIDENCE = "TYPE_I_EVIDENCE"
    TYPE_II_DOCUMENTATION = "TYPE_II_DOCUMENTATION"
    TYPE_III_OPERATIONAL = "TYPE_III_OPERATIONAL"
    TYPE_IV_INSTITUTIONALIZE = "TYPE_IV_INSTITUTIONALIZE"
    TYPE_V_RISK_REDUCTION = "TYPE_V_RISK_REDUCTION"
    TYPE_VI_ALIGNMENT = "TYPE_VI_ALIGNMENT"
    TYPE_VII_READINESS = "TYPE_VII_READINESS"
    TYPE_VIII_SIGNALING = "TYPE_VIII_SIGNALING"
    TYPE_IX_OPTIONS = "TYPE_IX_OPTIONS"
    TYPE_X_DEFER = "TYPE_X_DEFER"


class ConfidenceLevel(str, enum.Enum):
    UNCERTAIN = "UNCERTAIN"
    SOMEWHAT_CONFIDENT = "SOMEWHAT_CONFIDENT"
    CONFIDENT = "CONFIDENT"
    VERIFIED = "VERIFIED"
    NOT_APPLICABLE = "NOT_APPLICABLE"


class TaskStatus(str, enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    DEFERRED = "DEFERRED"
    BLOCKED = "BLOCKED"
    CANCELLED = "CANCELLED"


class ImpactLevel(str, enum.Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    MINIMAL = "MINIMAL"


class DifficultyLevel(str, enum.Enum):
    TRIVIAL = "TRIVIAL"
    EASY = "EASY"
    MODERATE = "MODERATE"
    HARD = "HARD"
    VERY_HARD = "VERY_HARD"


# Discrete option score levels, worst to best
SCORE_LEVELS: tuple[float, ...] = (0.0, 0.33, 0.67, 1.0)


# ---------------------------------------------------------------------------
# Company state
# ---------------------------------------------------------------------------


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    icb_industry: Mapped[str] = mapped_column(String(200), default="")
    icb_super_sector: Mapped[str] = mapped_column(String(200), default="")
    icb_sector: Mapped[str] = mapped_column(String(200), default="")
    icb_sub_sector: Mapped[str] = mapped_column(String(200), default="")
    business_description: Mapped[str] = mapped_column(Text, default="")
    annual_revenue: Mapped[float] = mapped_column(Float, default=0.0)
    annual_ebitda: Mapped[float] = mapped_column(Float, default=0.0)
    owner_compensation: Mapped[float] = mapped_column(Float, default=0.0)
    revenue_size_category: Mapped[str] = mapped_column(String(50), default="")
    bri_weights_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    adjustments: Mapped[list[EbitdaAdjustment]] = relationship(
        "EbitdaAdjustment", back_populates="company", cascade="all, delete-orphan",
    )
    assessments: Mapped[list[Assessment]] = relationship(
        "Assessment", back_populates="company", cascade="all, delete-orphan",
    )
    tasks: Mapped[list[Task]] = relationship("Task", back_populates="company", cascade="all, delete-orphan")


class EbitdaAdjustment(Base):
    __tablename__ = "ebitda_adjustments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id"), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)  # ADD_BACK | DEDUCTION
    description: Mapped[str] = mapped_column(Text, default="")
    amount: Mapped[float] = mapped_column(Float, default=0.0)

    company: Mapped[Company] = relationship("Company", back_populates="adjustments")


class IndustryMultiple(Base):
    __tablename__ = "industry_multiples"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    icb_industry: Mapped[str] = mapped_column(String(200), default="")
    icb_super_sector: Mapped[str] = mapped_column(String(200), default="")
    icb_sector: Mapped[str] = mapped_column(String(200), default="")
    icb_sub_sector: Mapped[str] = mapped_column(String(200), default="")
    ebitda_multiple_low: Mapped[float] = mapped_column(Float, nullable=False)
    ebitda_multiple_high: Mapped[float] = mapped_column(Float, nullable=False)
    effective_date: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    source: Mapped[str] = mapped_column(String(300), default="")


# ---------------------------------------------------------------------------
# Questions and assessments
# ---------------------------------------------------------------------------


class Question(Base):
    __tablename__ = "questions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("companies.id"), nullable=True)  # NULL = template
    category: Mapped[Category] = mapped_column(String(30), nullable=False)
    issue_tier: Mapped[IssueTier] = mapped_column(String(30), nullable=False)
    question_text: Mapped[str] = mapped_column(Text, nullable=False)
    help_text: Mapped[str] = mapped_column(Text, default="")
    buyer_logic: Mapped[str] = mapped_column(String(200), default="")
    risk_driver_name: Mapped[str] = mapped_column(String(200), default="")
    display_order: Mapped[int] = mapped_column(Integer, default=0)
    max_impact_points: Mapped[float] = mapped_column(Float, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    source: Mapped[str] = mapped_column(String(20), default="template")  # template | generated
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    options: Mapped[list[QuestionOption]] = relationship(
        "QuestionOption", back_populates="question", cascade="all, delete-orphan",
        order_by="QuestionOption.score_value",
    )


class QuestionOption(Base):
    __tablename__ = "question_options"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    question_id: Mapped[int] = mapped_column(Integer, ForeignKey("questions.id"), nullable=False)
    option_text: Mapped[str] = mapped_column(Text, nullable=False)
    score_value: Mapped[float] = mapped_column(Float, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0)

    question: Mapped[Question] = relationship("Question", back_populates="options")


class Assessment(Base):
    __tablename__ = "assessments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id"), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    company: Mapped[Company] = relationship("Company", back_populates="assessments")
    responses: Mapped[list[AssessmentResponse]] = relationship(
        "AssessmentResponse", back_populates="assessment", cascade="all, delete-orphan",
    )


class AssessmentResponse(Base):
    __tablename__ = "assessment_responses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assessment_id: Mapped[int] = mapped_column(Integer, ForeignKey("assessments.id"), nullable=False)
    question_id: Mapped[int] = mapped_column(Integer, ForeignKey("questions.id"), nullable=False)
    selected_option_id: Mapped[int] = mapped_column(Integer, ForeignKey("question_options.id"), nullable=False)
    effective_option_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("question_options.id"), nullable=True,
    )
    confidence_level: Mapped[ConfidenceLevel] = mapped_column(String(30), default=ConfidenceLevel.CONFIDENT)
    notes: Mapped[str] = mapped_column(Text, default="")
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    assessment: Mapped[Assessment] = relationship("Assessment", back_populates="responses")
    question: Mapped[Question] = relationship("Question")
    selected_option: Mapped[QuestionOption] = relationship("QuestionOption", foreign_keys=[selected_option_id])
    effective_option: Mapped[QuestionOption | None] = relationship(
        "QuestionOption", foreign_keys=[effective_option_id],
    )


# ---------------------------------------------------------------------------
# Append-only history
# ---------------------------------------------------------------------------


class ValuationSnapshot(Base):
    __tablename__ = "valuation_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id"), nullable=False)
    bri_financial: Mapped[float | None] = mapped_column(Float, nullable=True)
    bri_transferability: Mapped[float | None] = mapped_column(Float, nullable=True)
    bri_operational: Mapped[float | None] = mapped_column(Float, nullable=True)
    bri_market: Mapped[float | None] = mapped_column(Float, nullable=True)
    bri_legal_tax: Mapped[float | None] = mapped_column(Float, nullable=True)
    bri_personal: Mapped[float | None] = mapped_column(Float, nullable=True)
    bri_score: Mapped[float] = mapped_column(Float, nullable=False)
    adjusted_ebitda: Mapped[float] = mapped_column(Float, nullable=False)
    industry_multiple_low: Mapped[float] = mapped_column(Float, nullable=False)
    industry_multiple_high: Mapped[float] = mapped_column(Float, nullable=False)
    final_multiple: Mapped[float] = mapped_column(Float, nullable=False)
    current_value: Mapped[float] = mapped_column(Float, nullable=False)
    potential_value: Mapped[float] = mapped_column(Float, nullable=False)
    value_gap: Mapped[float] = mapped_column(Float, nullable=False)
    is_estimated: Mapped[bool] = mapped_column(Boolean, default=False)
    multiple_source: Mapped[str] = mapped_column(String(300), default="")
    weights_json: Mapped[str] = mapped_column(Text, default="{}")
    snapshot_reason: Mapped[str] = mapped_column(String(300), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class CompanyDossier(Base):
    __tablename__ = "company_dossiers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id"), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    trigger_event: Mapped[str] = mapped_column(String(100), default="")
    content_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class GenerationLog(Base):
    __tablename__ = "generation_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id"), nullable=False)
    generation_type: Mapped[str] = mapped_column(String(50), nullable=False)  # bri_questions | tasks
    input_json: Mapped[str] = mapped_column(Text, default="{}")
    output_json: Mapped[str] = mapped_column(Text, default="{}")
    model_used: Mapped[str] = mapped_column(String(100), default="")
    input_tokens: Mapped[int] = mapped_column(Integer, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, default=0)
    latency_ms: Mapped[int] = mapped_column(Integer, default=0)
    accepted: Mapped[bool] = mapped_column(Boolean, default=False)
    error_message: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


# Snapshots and generation logs are history: rows are written once and never
# rewritten. Bulk update()/delete() statements bypass these hooks.


def _reject_change(mapper, connection, target) -> None:
    raise ImmutableRecordError(
        f"{type(target).__name__} rows are insert-only", details=f"id={target.id}",
    )


for _model in (ValuationSnapshot, GenerationLog):
    event.listen(_model, "before_update", _reject_change)
    event.listen(_model, "before_delete", _reject_change)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class Task(Base):
    __tablename__ = "tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    action_type: Mapped[ActionType] = mapped_column(String(40), nullable=False)
    category: Mapped[Category] = mapped_column(String(30), nullable=False)
    linked_question_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("questions.id"), nullable=True)
    upgrades_from_option_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("question_options.id"), nullable=True,
    )
    upgrades_to_option_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("question_options.id"), nullable=True,
    )
    issue_tier: Mapped[IssueTier] = mapped_column(String(30), nullable=False)
    effort_level: Mapped[EffortLevel] = mapped_column(String(30), nullable=False)
    complexity: Mapped[Complexity] = mapped_column(String(30), nullable=False)
    estimated_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    raw_impact: Mapped[float] = mapped_column(Float, default=0.0)
    normalized_value: Mapped[float] = mapped_column(Float, default=0.0)
    impact_level: Mapped[ImpactLevel] = mapped_column(String(30), default=ImpactLevel.MEDIUM)
    difficulty_level: Mapped[DifficultyLevel] = mapped_column(String(30), default=DifficultyLevel.MODERATE)
    priority_rank: Mapped[int] = mapped_column(Integer, default=13)
    in_action_plan: Mapped[bool] = mapped_column(Boolean, default=False)
    buyer_consequence: Mapped[str] = mapped_column(String(200), default="")
    status: Mapped[TaskStatus] = mapped_column(String(30), default=TaskStatus.PENDING)
    deferred_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    deferral_reason: Mapped[str] = mapped_column(Text, default="")
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    company: Mapped[Company] = relationship("Company", back_populates="tasks")
    upgrades_from: Mapped[QuestionOption | None] = relationship(
        "QuestionOption", foreign_keys=[upgrades_from_option_id],
    )
    upgrades_to: Mapped[QuestionOption | None] = relationship(
        "QuestionOption", foreign_keys=[upgrades_to_option_id],
    )


# ---------------------------------------------------------------------------
# Read-side sources for the dossier
# ---------------------------------------------------------------------------


class EvidenceDocument(Base):
    __tablename__ = "evidence_documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id"), nullable=False)
    category: Mapped[Category] = mapped_column(String(30), nullable=False)
    filename: Mapped[str] = mapped_column(String(500), default="")
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class RiskSignal(Base):
    __tablename__ = "risk_signals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), default="MEDIUM")  # LOW | MEDIUM | HIGH | CRITICAL
    status: Mapped[str] = mapped_column(String(20), default="OPEN")  # OPEN | RESOLVED | DISMISSED
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class ActivityEvent(Base):
    __tablename__ = "activity_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id"), nullable=False)
    kind: Mapped[str] = mapped_column(String(50), default="")  # check_in | task_update | assessment
    occurred_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
