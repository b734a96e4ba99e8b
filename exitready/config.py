"""Scoring configuration passed explicitly into the pure scoring functions.

Nothing here is read from global state at scoring time: callers resolve the
company's configuration once (defaults plus any stored weight override) and
hand the resulting :class:`ScoringConfig` to the scorer, the valuation
calculator and the allocator.
"""
from __future__ import annotations

import math
import os
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from exitready.errors import ConfigurationError
from exitready.models import Category, EffortLevel, IssueTier

WEIGHT_TOLERANCE = 1e-9

DEFAULT_CATEGORY_WEIGHTS: dict[str, float] = {
    Category.FINANCIAL.value: 0.25,
    Category.TRANSFERABILITY.value: 0.20,
    Category.OPERATIONAL.value: 0.20,
    Category.MARKET.value: 0.15,
    Category.LEGAL_TAX.value: 0.10,
    Category.PERSONAL.value: 0.10,
}

DEFAULT_TIER_ALLOCATION: dict[str, float] = {
    IssueTier.CRITICAL.value: 0.60,
    IssueTier.SIGNIFICANT.value: 0.30,
    IssueTier.OPTIMIZATION.value: 0.10,
}

DEFAULT_EFFORT_DIVISORS: dict[str, float] = {
    EffortLevel.MINIMAL.value: 0.5,
    EffortLevel.LOW.value: 1.0,
    EffortLevel.MODERATE.value: 2.0,
    EffortLevel.HIGH.value: 4.0,
    EffortLevel.MAJOR.value: 8.0,
}

# Used when no benchmark exists for any level of the company's ICB hierarchy.
DEFAULT_MULTIPLE_LOW = 3.0
DEFAULT_MULTIPLE_HIGH = 6.0
DEFAULT_MULTIPLE_SOURCE = "Default SMB multiple range"

MAX_ACTION_PLAN_TASKS = 15

DEFAULT_GENERATION_TIMEOUT = 120.0


def generation_timeout() -> float:
    """Seconds to wait for one generator call (``EXITREADY_GENERATION_TIMEOUT``)."""
    raw = os.environ.get("EXITREADY_GENERATION_TIMEOUT", "")
    try:
        return float(raw) if raw else DEFAULT_GENERATION_TIMEOUT
    except ValueError as exc:
        raise ConfigurationError(f"EXITREADY_GENERATION_TIMEOUT is not a number: {raw!r}") from exc


def _require_keys(values: dict[str, float], enum_cls, label: str) -> None:
    expected = {m.value for m in enum_cls}
    missing = expected - set(values)
    unknown = set(values) - expected
    if missing:
        raise ValueError(f"{label} missing: {', '.join(sorted(missing))}")
    if unknown:
        raise ValueError(f"{label} has unknown keys: {', '.join(sorted(unknown))}")


class ScoringConfig(BaseModel):
    """Weights, tier split and effort divisors for one company."""

    model_config = ConfigDict(frozen=True)

    category_weights: dict[str, float] = DEFAULT_CATEGORY_WEIGHTS
    tier_allocation: dict[str, float] = DEFAULT_TIER_ALLOCATION
    effort_divisors: dict[str, float] = DEFAULT_EFFORT_DIVISORS
    default_multiple_low: float = DEFAULT_MULTIPLE_LOW
    default_multiple_high: float = DEFAULT_MULTIPLE_HIGH
    max_action_plan_tasks: int = MAX_ACTION_PLAN_TASKS

    @field_validator("category_weights")
    @classmethod
    def weights_sum_to_one(cls, v: dict[str, float]) -> dict[str, float]:
        _require_keys(v, Category, "category_weights")
        if any(w < 0 for w in v.values()):
            raise ValueError("category_weights must be non-negative")
        total = sum(v.values())
        if not math.isclose(total, 1.0, abs_tol=WEIGHT_TOLERANCE):
            raise ValueError(f"category_weights must sum to 1.0, got {total:.6f}")
        return v

    @field_validator("tier_allocation")
    @classmethod
    def tiers_sum_to_one(cls, v: dict[str, float]) -> dict[str, float]:
        _require_keys(v, IssueTier, "tier_allocation")
        if any(p < 0 for p in v.values()):
            raise ValueError("tier_allocation must be non-negative")
        total = sum(v.values())
        if not math.isclose(total, 1.0, abs_tol=WEIGHT_TOLERANCE):
            raise ValueError(f"tier_allocation must sum to 1.0, got {total:.6f}")
        return v

    @field_validator("effort_divisors")
    @classmethod
    def divisors_positive(cls, v: dict[str, float]) -> dict[str, float]:
        _require_keys(v, EffortLevel, "effort_divisors")
        if any(d <= 0 for d in v.values()):
            raise ValueError("effort_divisors must be positive")
        return v

    @model_validator(mode="after")
    def multiple_range_ordered(self) -> ScoringConfig:
        if not 0 < self.default_multiple_low <= self.default_multiple_high:
            raise ValueError("default multiple range must satisfy 0 < low <= high")
        return self

    @classmethod
    def build(cls, **overrides: Any) -> ScoringConfig:
        """Construct a config, raising :class:`ConfigurationError` on any inconsistency."""
        try:
            return cls(**overrides)
        except ValidationError as exc:
            first = exc.errors()[0]
            raise ConfigurationError(
                f"Invalid scoring configuration: {first['msg']}",
                details=str(exc),
            ) from exc


DEFAULT_CONFIG = ScoringConfig()


def validate_weights(weights: dict[str, float]) -> dict[str, float]:
    """Validate a weight override at write time and return it normalized to plain floats."""
    try:
        cleaned = {str(k).upper(): float(v) for k, v in weights.items()}
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Category weights must be numeric: {weights!r}") from exc
    ScoringConfig.build(category_weights=cleaned)
    return cleaned
