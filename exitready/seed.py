"""Template BRI question set used before a company has generated questions."""
from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from exitready.models import SCORE_LEVELS, Category, IssueTier, Question, QuestionOption

log = logging.getLogger(__name__)

# (category, max_impact_points, question_text, help_text, options worst -> best)
TEMPLATE_QUESTIONS: list[tuple[Category, float, str, str, tuple[str, str, str, str]]] = [
    (
        Category.FINANCIAL, 10,
        "How consistent has your revenue been over the past 3 years?",
        "Buyers value predictable, stable revenue streams over volatile swings.",
        (
            "Highly volatile (>30% swings year over year)",
            "Somewhat volatile (15-30% swings)",
            "Relatively stable (5-15% variance)",
            "Very stable or consistent growth (<5% variance)",
        ),
    ),
    (
        Category.FINANCIAL, 12,
        "What percentage of your revenue comes from recurring sources?",
        "Recurring revenue (subscriptions, contracts, retainers) provides predictability.",
        ("Less than 20% recurring", "20-40% recurring", "40-70% recurring", "More than 70% recurring"),
    ),
    (
        Category.TRANSFERABILITY, 15,
        "How dependent is the business on you (the owner) for day-to-day operations?",
        "Owner dependence is the most common reason buyers discount or walk away.",
        (
            "Business cannot function without me",
            "I handle most key decisions and client relationships",
            "Team handles operations, I focus on strategy",
            "Business runs independently; I could step away for months",
        ),
    ),
    (
        Category.TRANSFERABILITY, 10,
        "How well documented are your business processes?",
        "Documented processes let a new owner run the business without you.",
        (
            "Most knowledge is in people's heads",
            "Some informal documentation exists",
            "Key processes are documented",
            "Comprehensive SOPs for all critical functions",
        ),
    ),
    (
        Category.OPERATIONAL, 12,
        "How scalable is your current business model?",
        "Operating leverage means revenue can grow faster than costs.",
        (
            "Every new customer requires proportional new hires/costs",
            "Growth requires significant incremental investment",
            "Some operational leverage exists",
            "Highly scalable; revenue can grow faster than costs",
        ),
    ),
    (
        Category.OPERATIONAL, 8,
        "How would you rate your employee retention?",
        "Stable teams reduce integration risk for a buyer.",
        (
            "High turnover (>30% annually)",
            "Moderate turnover (15-30% annually)",
            "Low turnover (5-15% annually)",
            "Very low turnover (<5% annually)",
        ),
    ),
    (
        Category.MARKET, 10,
        "What is the growth trajectory of your market?",
        "Buyers pay more for businesses in growing markets.",
        (
            "Declining market",
            "Flat or mature market",
            "Moderately growing (5-10% annually)",
            "High growth market (>10% annually)",
        ),
    ),
    (
        Category.MARKET, 10,
        "How strong is your competitive position?",
        "Differentiation protects margins after the transaction.",
        (
            "Highly commoditized, easily replaceable",
            "Some differentiation but many competitors",
            "Clear competitive advantages in our niche",
            "Market leader or strong differentiation",
        ),
    ),
    (
        Category.LEGAL_TAX, 8,
        "How clean is your corporate structure?",
        "Complex structures slow diligence and add closing risk.",
        (
            "Complex structure with multiple entities or unclear ownership",
            "Some complexity that would need cleanup",
            "Relatively clean with minor issues",
            "Clean, simple structure ready for transaction",
        ),
    ),
    (
        Category.LEGAL_TAX, 10,
        "Any pending litigation, disputes, or regulatory issues?",
        "Open legal exposure is priced in as escrow, holdbacks or a lower multiple.",
        (
            "Active litigation or significant regulatory issues",
            "Minor disputes or potential issues",
            "Past issues fully resolved",
            "No litigation history or regulatory concerns",
        ),
    ),
    (
        Category.PERSONAL, 6,
        "How clear are you on your exit timeline?",
        "A defined timeline lets preparation work be sequenced.",
        (
            "No timeline in mind",
            "Vague idea (sometime in the next 5+ years)",
            "General timeframe (2-5 years)",
            "Specific target date within 2 years",
        ),
    ),
    (
        Category.PERSONAL, 8,
        "Have you separated personal and business assets/expenses?",
        "Commingled expenses make earnings hard to verify.",
        (
            "Significant commingling of personal/business",
            "Some personal expenses run through business",
            "Mostly separated with minor exceptions",
            "Completely separated",
        ),
    ),
]


def tier_for_impact(points: float) -> IssueTier:
    """Template questions carry no tier; derive it from the impact weight."""
    if points >= 12:
        return IssueTier.CRITICAL
    if points >= 8:
        return IssueTier.SIGNIFICANT
    return IssueTier.OPTIMIZATION


def seed_template_questions(session: Session) -> list[Question]:
    """Insert the template question set (caller must commit)."""
    created: list[Question] = []
    for order, (category, points, text, help_text, option_texts) in enumerate(TEMPLATE_QUESTIONS, start=1):
        question = Question(
            company_id=None,
            category=category.value,
            issue_tier=tier_for_impact(points).value,
            question_text=text,
            help_text=help_text,
            display_order=order,
            max_impact_points=float(points),
            is_active=True,
            source="template",
            options=[
                QuestionOption(option_text=opt, score_value=score, display_order=i)
                for i, (opt, score) in enumerate(zip(option_texts, SCORE_LEVELS), start=1)
            ],
        )
        session.add(question)
        created.append(question)
    session.flush()
    log.info("Seeded %d template questions", len(created))
    return created
