"""Error taxonomy for the scoring and allocation pipeline.

Four kinds of outcome must stay distinguishable for callers:

- configuration errors (:class:`ConfigurationError`) are fatal and stop
  scoring before it starts;
- data incompleteness is *not* an exception: it surfaces as ``None``
  valuations, ``unanswered`` categories and ``is_estimated`` flags;
- rejected generation batches raise a :class:`BatchRejectedError`
  subclass after the attempt has been written to the generation log;
- referential skips are counted in ``AllocationResult.skipped``.

Example::

    try:
        await services.run_question_generation(session, company_id, generator)
    except ContractViolationError as e:
        log.warning("Batch rejected at item %s field %s", e.index, e.field)
"""
from __future__ import annotations

from typing import Any


class ExitReadyError(Exception):
    """Base class for all pipeline errors.

    Attributes:
        message: Human-readable description of the error.
        details: Optional additional context for debugging.
    """

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(ExitReadyError):
    """Weights, tier percentages or effort divisors are missing or inconsistent."""


class BatchRejectedError(ExitReadyError):
    """A generated batch was rejected as a whole; nothing was persisted."""


class ContractViolationError(BatchRejectedError):
    """A generated batch broke the question/task contract.

    Attributes:
        index: 1-based position of the offending item, ``None`` for batch-level checks.
        field: Name of the offending field (or ``"batch"``).
        expected: What the contract requires.
        received: What the generator produced.
    """

    def __init__(
        self,
        message: str,
        index: int | None = None,
        field: str = "batch",
        expected: Any = None,
        received: Any = None,
    ) -> None:
        self.index = index
        self.field = field
        self.expected = expected
        self.received = received
        super().__init__(message)


class LLMCallError(BatchRejectedError):
    """LLM call failed, timed out or returned unparseable output."""

    def __init__(self, message: str, retryable: bool = False, details: str | None = None) -> None:
        self.retryable = retryable
        super().__init__(message, details)


class InvalidTransitionError(ExitReadyError):
    """A task status change not allowed by the task lifecycle."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot move task from {current} to {target}")


class ImmutableRecordError(ExitReadyError):
    """An update or delete was attempted on an insert-only table."""
