"""Generator boundary: LLM client, prompts and the generate -> validate -> persist flow.

The generative model is an external collaborator. Anything with an async
``generate(system, user)`` method returning a :class:`GenerationOutput` can
stand in for it (tests use canned generators). Each call is bounded by a
timeout; a timeout, transport failure or unparseable response rejects the
whole batch exactly like a contract violation does. There are no retries
and no partial saves.

Every attempt, accepted or rejected, leaves a ``GenerationLog`` row.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy.orm import Session

from exitready.config import generation_timeout
from exitready.errors import BatchRejectedError, LLMCallError
from exitready.models import Question
from exitready.schemas import DossierContent, TaskBatch
from exitready.scoring import ScoringResponse
from exitready.validator import (
    QUESTION_BATCH_SIZE, apply_question_batch, record_generation, validate_question_batch, validate_task_batch,
)

log = logging.getLogger(__name__)

QUESTION_GENERATION = "bri_questions"
TASK_GENERATION = "tasks"


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

QUESTION_SYSTEM_PROMPT = """\
You are a Buyer Readiness Index (BRI) question generator for a platform that \
helps business owners prepare their company for an exit or sale.

Generate exactly 30 assessment questions tailored to the company described in \
the dossier. The answers are used to score 6 categories: FINANCIAL, \
TRANSFERABILITY, OPERATIONAL, MARKET, LEGAL_TAX, PERSONAL.

RULES:
1. Distribution: FINANCIAL=7, TRANSFERABILITY=6, OPERATIONAL=6, MARKET=5, \
LEGAL_TAX=3, PERSONAL=3 (total=30)
2. Each question has exactly 4 answer options
3. Option scoreValues are exactly 0.00, 0.33, 0.67, 1.00 (worst to best)
4. Options are mutually exclusive and collectively exhaustive
5. Questions are SPECIFIC to the company's industry, size and situation
6. Do not ask what the dossier already answers; dig into weaknesses and gaps
7. Ask the harder questions in the weakest categories
8. issueTier: CRITICAL (deal-killers), SIGNIFICANT (major value drivers) or \
OPTIMIZATION (nice-to-have)
9. maxImpactPoints: CRITICAL=12-15, SIGNIFICANT=8-12, OPTIMIZATION=5-8
10. buyerLogic (max 200 chars): why a buyer cares
11. riskDriverName: short label for the risk being assessed
12. helpText: what the question is really asking and why it matters

Respond with ONLY valid JSON:
{
  "questions": [
    {
      "questionText": "string",
      "helpText": "string",
      "buyerLogic": "string",
      "briCategory": "FINANCIAL|TRANSFERABILITY|OPERATIONAL|MARKET|LEGAL_TAX|PERSONAL",
      "issueTier": "CRITICAL|SIGNIFICANT|OPTIMIZATION",
      "maxImpactPoints": <number>,
      "riskDriverName": "string",
      "displayOrder": <number>,
      "options": [
        {"optionText": "string", "scoreValue": 0.00, "displayOrder": 1},
        {"optionText": "string", "scoreValue": 0.33, "displayOrder": 2},
        {"optionText": "string", "scoreValue": 0.67, "displayOrder": 3},
        {"optionText": "string", "scoreValue": 1.00, "displayOrder": 4}
      ]
    }
  ],
  "reasoning": "<brief explanation of the question strategy>"
}
"""

TASK_SYSTEM_PROMPT = """\
You are a task generation engine for a platform that helps business owners \
prepare their company for an exit or sale.

Given the company dossier and its assessment answers, generate specific, \
actionable improvement tasks. Each task moves one answer from its current \
option to the next better one.

RULES:
1. Only generate tasks for answers with scoreValue < 1.0
2. upgradeFromScore and upgradeToScore are exact values from {0.00, 0.33, 0.67, 1.00}
3. upgradeToScore is exactly one step above upgradeFromScore \
(0.00->0.33, 0.33->0.67, 0.67->1.00)
4. Tasks are SPECIFIC to the company: industry, size and situation
5. One task per answer that needs improvement
6. Each task needs:
   - actionType: TYPE_I_EVIDENCE, TYPE_II_DOCUMENTATION, TYPE_III_OPERATIONAL, \
TYPE_IV_INSTITUTIONALIZE, TYPE_V_RISK_REDUCTION, TYPE_VI_ALIGNMENT, \
TYPE_VII_READINESS, TYPE_VIII_SIGNALING, TYPE_IX_OPTIONS, TYPE_X_DEFER
   - effortLevel: MINIMAL, LOW, MODERATE, HIGH, MAJOR
   - complexity: SIMPLE, MODERATE, COMPLEX, STRATEGIC
   - issueTier: CRITICAL, SIGNIFICANT, OPTIMIZATION
   - buyerConsequence: what happens if this is NOT fixed (max 200 chars)

Respond with ONLY valid JSON:
{
  "tasks": [
    {
      "title": "<imperative, concise>",
      "description": "<2-3 sentences with specific steps>",
      "actionType": "string",
      "briCategory": "FINANCIAL|TRANSFERABILITY|OPERATIONAL|MARKET|LEGAL_TAX|PERSONAL",
      "linkedQuestionId": <question id>,
      "upgradeFromScore": 0.00,
      "upgradeToScore": 0.33,
      "effortLevel": "string",
      "complexity": "string",
      "estimatedHours": <number or null>,
      "issueTier": "string",
      "buyerConsequence": "string"
    }
  ],
  "reasoning": "<brief explanation of the prioritization>"
}
"""


def _money(value: float | None) -> str:
    return f"${value:,.0f}" if value is not None else "n/a"


def _pct(value: float) -> str:
    return f"{value * 100:.0f}"


def build_question_prompt(dossier: DossierContent) -> str:
    """User prompt for question generation, rendered from the dossier."""
    ident, fin, assess, val = dossier.identity, dossier.financials, dossier.assessment, dossier.valuation
    lines = ["COMPANY DOSSIER:", f"Company: {ident.name}"]
    lines.append(f"Industry: {ident.industry or 'unknown'} > {ident.sub_sector or 'unknown'}")
    if ident.business_description:
        lines.append(f"Description: {ident.business_description}")

    lines.append("\nFINANCIALS:")
    lines.append(f"Revenue: {_money(fin.annual_revenue)}")
    lines.append(f"EBITDA: {_money(fin.annual_ebitda)}")
    if fin.ebitda_margin_pct is not None:
        lines.append(f"EBITDA Margin: {fin.ebitda_margin_pct:.1f}%")
    lines.append(f"Financial Data Completeness: {fin.data_completeness}")

    if assess.has_completed_assessment:
        lines.append("\nASSESSMENT (previous):")
        for cat, score in assess.category_scores.items():
            lines.append(f"  {cat}: {_pct(score)}/100")
        if assess.unanswered_categories:
            lines.append(f"Unanswered categories: {', '.join(assess.unanswered_categories)}")
        if assess.weakest_categories:
            lines.append(f"Weakest categories: {', '.join(assess.weakest_categories)}")
        if assess.weakest_drivers:
            lines.append("Weakest risk drivers:")
            for d in assess.weakest_drivers[:5]:
                lines.append(f"  - {d.risk_driver_name or d.question_text} ({d.category}: {_pct(d.score_value)}%)")

    if val.current_value is not None:
        lines.append("\nVALUATION:")
        lines.append(f"Current: {_money(val.current_value)}")
        lines.append(f"Potential: {_money(val.potential_value)}")
        lines.append(f"Gap: {_money(val.value_gap)}")
        lines.append(f"BRI Score: {_pct(val.bri_score or 0.0)}/100")

    t, ev, sig, eng = dossier.tasks, dossier.evidence, dossier.signals, dossier.engagement
    lines.append(f"\nTASKS: {t.completed_count} completed, {t.pending_count} pending")
    lines.append(f"EVIDENCE: {ev.total_documents} documents, gaps in: {', '.join(ev.category_gaps) or 'none'}")
    severity = ", ".join(f"{k}:{v}" for k, v in sig.severity_summary.items()) or "none"
    lines.append(f"SIGNALS: {sig.open_signals_count} open ({severity})")
    days = "n/a" if eng.days_since_last_activity is None else eng.days_since_last_activity
    lines.append(f"ENGAGEMENT: {days} days since last activity, {eng.check_in_streak} week check-in streak")

    ctx = dossier.ai_context
    if ctx.focus_areas:
        lines.append(f"\nFOCUS AREAS (weakest BRI categories): {', '.join(ctx.focus_areas)}")
    if ctx.identified_risks:
        lines.append(f"IDENTIFIED RISKS: {'; '.join(ctx.identified_risks[:5])}")

    lines.append(
        f"\nGenerate {QUESTION_BATCH_SIZE} BRI assessment questions tailored to this company. "
        "Focus on probing weaknesses and gaps."
    )
    return "\n".join(lines)


def build_task_prompt(dossier: DossierContent, responses: list[ScoringResponse], value_gap: float) -> str:
    """User prompt for task generation: company summary plus every improvable answer."""
    ident, fin = dossier.identity, dossier.financials
    lines = [
        f"COMPANY: {ident.name} ({ident.industry or 'unknown'} > {ident.sub_sector or 'unknown'})",
        f"Revenue: {_money(fin.annual_revenue)}, EBITDA: {_money(fin.annual_ebitda)}",
    ]
    if fin.ebitda_margin_pct is not None:
        lines.append(f"EBITDA Margin: {fin.ebitda_margin_pct:.1f}%")
    lines.append(f"Value Gap: {_money(value_gap)}")
    if ident.business_description:
        lines.append(f"\nBusiness: {ident.business_description[:300]}")

    lines.append("\nASSESSMENT RESPONSES (questions needing improvement):")
    for r in improvable(responses):
        lines.append(
            f'- [{r.category}] Q: "{r.question_text}" -> Current score: {r.score_value:.2f} '
            f"(ID: {r.question_id})"
        )
    lines.append("\nGenerate one task per question listed above. Each task upgrades the answer by one step.")
    return "\n".join(lines)


def improvable(responses: list[ScoringResponse]) -> list[ScoringResponse]:
    """Applicable answers that are not already at the top score."""
    return [r for r in responses if r.is_active and not r.not_applicable and r.score_value < 1.0]


# ---------------------------------------------------------------------------
# Generator protocol and LLM client
# ---------------------------------------------------------------------------


@dataclass
class GenerationOutput:
    data: Any
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0


class Generator(Protocol):
    async def generate(self, system: str, user: str) -> GenerationOutput: ...


def _extract_json(text: str) -> str:
    m = re.search(r"```(?:json)?\s*(\{.*\})\s*```", text, re.DOTALL)
    return m.group(1) if m else text


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int = 16384,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self.max_tokens = max_tokens
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-sonnet-4-5"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o"
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def generate(self, system: str, user: str) -> GenerationOutput:
        """Send system+user message to the LLM, return parsed JSON and token usage."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                text = _extract_json(response.content[0].text.strip())
                input_tokens = response.usage.input_tokens
                output_tokens = response.usage.output_tokens
            else:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    response_format={"type": "json_object"},
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                )
                text = response.choices[0].message.content or "{}"
                usage = response.usage
                input_tokens = usage.prompt_tokens if usage else 0
                output_tokens = usage.completion_tokens if usage else 0
        except LLMCallError:
            raise
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}", retryable=False) from exc
        return GenerationOutput(data=data, model=self.model, input_tokens=input_tokens, output_tokens=output_tokens)


async def call_generator(
    generator: Generator, system: str, user: str, timeout: float | None = None,
) -> tuple[GenerationOutput, int]:
    """Run one bounded generator call; return the output and its latency in ms."""
    timeout = generation_timeout() if timeout is None else timeout
    start = time.monotonic()
    try:
        output = await asyncio.wait_for(generator.generate(system, user), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise LLMCallError(f"Generator timed out after {timeout:g}s", retryable=True) from exc
    return output, int((time.monotonic() - start) * 1000)


# ---------------------------------------------------------------------------
# Generate -> validate -> persist
# ---------------------------------------------------------------------------


@dataclass
class _Attempt:
    output: GenerationOutput | None = None
    latency_ms: int = 0
    inputs: dict[str, Any] = field(default_factory=dict)


def _reject(session: Session, company_id: int, kind: str, attempt: _Attempt, exc: BatchRejectedError) -> None:
    """Log a rejected attempt durably; the caller re-raises."""
    session.rollback()
    out = attempt.output
    record_generation(
        session, company_id, kind,
        inputs=attempt.inputs,
        output=out.data if out else None,
        model_used=out.model if out else "",
        input_tokens=out.input_tokens if out else 0,
        output_tokens=out.output_tokens if out else 0,
        latency_ms=attempt.latency_ms,
        error=str(exc),
    )
    session.commit()
    log.warning("Rejected %s batch for company %s: %s", kind, company_id, exc)


async def generate_questions_for_company(
    session: Session,
    company_id: int,
    generator: Generator,
    dossier: DossierContent,
    dossier_version: int = 0,
    timeout: float | None = None,
) -> list[Question]:
    """Generate, validate and install a tailored question set for one company.

    On any rejection the attempt is logged and committed, the existing active
    question set is left untouched and the error propagates.
    """
    attempt = _Attempt(inputs={"dossier_version": dossier_version})
    try:
        attempt.output, attempt.latency_ms = await call_generator(
            generator, QUESTION_SYSTEM_PROMPT, build_question_prompt(dossier), timeout,
        )
        batch = validate_question_batch(attempt.output.data)
    except BatchRejectedError as exc:
        _reject(session, company_id, QUESTION_GENERATION, attempt, exc)
        raise

    created = apply_question_batch(session, company_id, batch)
    out = attempt.output
    record_generation(
        session, company_id, QUESTION_GENERATION,
        inputs=attempt.inputs,
        output={"question_count": len(created), "reasoning": batch.reasoning},
        model_used=out.model, input_tokens=out.input_tokens, output_tokens=out.output_tokens,
        latency_ms=attempt.latency_ms,
    )
    session.commit()
    log.info("Installed %d generated questions for company %s", len(created), company_id)
    return created


async def generate_task_batch(
    session: Session,
    company_id: int,
    generator: Generator,
    dossier: DossierContent,
    responses: list[ScoringResponse],
    value_gap: float,
    dossier_version: int = 0,
    timeout: float | None = None,
) -> TaskBatch:
    """Generate and validate a task batch.

    A rejected batch is logged and committed before the error propagates. An
    accepted batch's log row is added to the session but not committed, so it
    lands in the same transaction as the allocator's task rewrite.
    """
    attempt = _Attempt(inputs={
        "dossier_version": dossier_version,
        "response_count": len(improvable(responses)),
        "value_gap": value_gap,
    })
    try:
        attempt.output, attempt.latency_ms = await call_generator(
            generator, TASK_SYSTEM_PROMPT, build_task_prompt(dossier, responses, value_gap), timeout,
        )
        batch = validate_task_batch(attempt.output.data)
    except BatchRejectedError as exc:
        _reject(session, company_id, TASK_GENERATION, attempt, exc)
        raise

    out = attempt.output
    record_generation(
        session, company_id, TASK_GENERATION,
        inputs=attempt.inputs,
        output={"task_count": len(batch.tasks), "reasoning": batch.reasoning},
        model_used=out.model, input_tokens=out.input_tokens, output_tokens=out.output_tokens,
        latency_ms=attempt.latency_ms,
    )
    return batch
