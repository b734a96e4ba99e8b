"""Pydantic shapes for generated batches, dossier content and read-side results."""
from __future__ import annotations

import math
from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from exitready.models import ActionType, Category, Complexity, EffortLevel, IssueTier


def _reject_non_numeric(v: Any) -> Any:
    # bool is an int subclass and numeric strings would be silently coerced
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise ValueError(f"must be a JSON number, got {type(v).__name__}")
    if not math.isfinite(v):
        raise ValueError(f"must be a finite number, got {v}")
    return v


Number = Annotated[float, BeforeValidator(_reject_non_numeric)]


class _Generated(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Generated question batch
# ---------------------------------------------------------------------------


class GeneratedOption(_Generated):
    option_text: str = Field(alias="optionText", min_length=1)
    score_value: Number = Field(alias="scoreValue")
    display_order: int = Field(default=0, alias="displayOrder")


class GeneratedQuestion(_Generated):
    question_text: str = Field(alias="questionText", min_length=1)
    help_text: str = Field(default="", alias="helpText")
    buyer_logic: str = Field(default="", alias="buyerLogic")
    category: Category = Field(alias="briCategory")
    issue_tier: IssueTier = Field(alias="issueTier")
    max_impact_points: Number = Field(alias="maxImpactPoints")
    risk_driver_name: str = Field(default="", alias="riskDriverName")
    display_order: int = Field(default=0, alias="displayOrder")
    options: list[GeneratedOption]


class QuestionBatch(_Generated):
    questions: list[GeneratedQuestion]
    reasoning: str = ""


# ---------------------------------------------------------------------------
# Generated task batch
# ---------------------------------------------------------------------------


class GeneratedTask(_Generated):
    title: str = Field(min_length=1)
    description: str = ""
    action_type: ActionType = Field(alias="actionType")
    category: Category = Field(alias="briCategory")
    linked_question_id: int = Field(alias="linkedQuestionId")
    upgrade_from_score: Number = Field(alias="upgradeFromScore")
    upgrade_to_score: Number = Field(alias="upgradeToScore")
    effort_level: EffortLevel = Field(alias="effortLevel")
    complexity: Complexity
    estimated_hours: Number | None = Field(default=None, alias="estimatedHours")
    issue_tier: IssueTier = Field(alias="issueTier")
    buyer_consequence: str = Field(default="", alias="buyerConsequence")

    @property
    def score_improvement(self) -> float:
        return self.upgrade_to_score - self.upgrade_from_score


class TaskBatch(_Generated):
    tasks: list[GeneratedTask]
    reasoning: str = ""


# ---------------------------------------------------------------------------
# Dossier content
# ---------------------------------------------------------------------------


class IdentitySection(BaseModel):
    name: str
    industry: str = ""
    super_sector: str = ""
    sector: str = ""
    sub_sector: str = ""
    business_description: str = ""


class FinancialsSection(BaseModel):
    annual_revenue: float = 0.0
    annual_ebitda: float = 0.0
    ebitda_margin_pct: float | None = None
    owner_compensation: float = 0.0
    adjustment_count: int = 0
    data_completeness: str = "missing"  # complete | partial | missing


class DriverOut(BaseModel):
    question_id: int
    question_text: str
    risk_driver_name: str = ""
    category: str
    score_value: float


class AssessmentSection(BaseModel):
    has_completed_assessment: bool = False
    completed_at: datetime | None = None
    response_count: int = 0
    category_scores: dict[str, float] = {}
    unanswered_categories: list[str] = []
    weakest_categories: list[str] = []
    weakest_drivers: list[DriverOut] = []


class ValuationSection(BaseModel):
    snapshot_id: int | None = None
    bri_score: float | None = None
    current_value: float | None = None
    potential_value: float | None = None
    value_gap: float | None = None
    final_multiple: float | None = None
    is_estimated: bool = False
    snapshot_count: int = 0


class TasksSection(BaseModel):
    pending_count: int = 0
    in_progress_count: int = 0
    completed_count: int = 0
    deferred_count: int = 0
    blocked_count: int = 0
    cancelled_count: int = 0
    completed_value_total: float = 0.0


class EvidenceSection(BaseModel):
    total_documents: int = 0
    by_category: dict[str, int] = {}
    category_gaps: list[str] = []


class SignalsSection(BaseModel):
    open_signals_count: int = 0
    severity_summary: dict[str, int] = {}
    top_risks: list[str] = []


class EngagementSection(BaseModel):
    last_activity_at: datetime | None = None
    days_since_last_activity: int | None = None
    check_in_streak: int = 0


class AIContext(BaseModel):
    focus_areas: list[str] = []
    identified_risks: list[str] = []


class DossierContent(BaseModel):
    company_id: int
    built_at: datetime
    identity: IdentitySection
    financials: FinancialsSection
    assessment: AssessmentSection
    valuation: ValuationSection
    tasks: TasksSection
    evidence: EvidenceSection
    signals: SignalsSection
    engagement: EngagementSection
    ai_context: AIContext = AIContext()


# ---------------------------------------------------------------------------
# Read-side results
# ---------------------------------------------------------------------------


class AllocationResult(BaseModel):
    created: int = 0
    skipped: int = 0


class SnapshotOut(BaseModel):
    id: int
    company_id: int
    bri_score: float
    category_scores: dict[str, float | None]
    current_value: float
    potential_value: float
    value_gap: float
    final_multiple: float
    multiple_low: float
    multiple_high: float
    is_estimated: bool
    snapshot_reason: str
    created_at: str | None = None


class TaskOut(BaseModel):
    id: int
    title: str
    category: str
    issue_tier: str
    effort_level: str
    status: str
    raw_impact: float
    normalized_value: float
    completed_value: float | None = None
    impact_level: str
    difficulty_level: str
    priority_rank: int
    in_action_plan: bool
