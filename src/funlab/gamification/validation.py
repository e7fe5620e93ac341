"""Pre-award validation steps.

A step is any callable taking a ``ValidationContext``. Returning ``None``
(or a valid outcome) lets the award through; returning an invalid
``ValidationOutcome`` halts the pipeline and the award fails with that
outcome's message and errors. Steps run before builder-driven awards and
grants only, never before automatic level cascade grants.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from funlab.gamification.awardable import AwardableRef


@dataclass(frozen=True)
class ValidationContext:
    awardable: AwardableRef
    award_type: str
    amount: int = 0
    reason: str | None = None
    source: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    slug: str | None = None


@dataclass(frozen=True)
class ValidationOutcome:
    valid: bool
    message: str | None = None
    errors: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def reject(cls, message: str, errors: dict[str, list[str]] | None = None) -> ValidationOutcome:
        return cls(valid=False, message=message, errors=errors or {})


ValidationStep = Callable[[ValidationContext], "ValidationOutcome | None"]

PASSED = ValidationOutcome(valid=True)


class ValidationPipeline:
    """Ordered validation steps; the first rejection wins."""

    def __init__(self, steps: Iterable[ValidationStep] = ()) -> None:
        self._steps: list[ValidationStep] = list(steps)

    def add_step(self, step: ValidationStep) -> None:
        self._steps.append(step)

    @property
    def steps(self) -> list[ValidationStep]:
        return list(self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    def validate(self, context: ValidationContext) -> ValidationOutcome:
        for step in self._steps:
            outcome = step(context)
            if outcome is None or outcome.valid:
                continue
            return ValidationOutcome(
                valid=False,
                message=outcome.message or "Award validation failed",
                errors=outcome.errors,
            )
        return PASSED


def max_amount_step(limit: int) -> ValidationStep:
    """Reject XP awards above ``limit``. A limit of 0 disables the check."""

    def step(context: ValidationContext) -> ValidationOutcome | None:
        if limit <= 0 or context.award_type != "xp":
            return None
        if context.amount > limit:
            return ValidationOutcome.reject(
                f"Amount exceeds the per-award maximum of {limit}",
                {"amount": [f"Must be at most {limit}"]},
            )
        return None

    return step
