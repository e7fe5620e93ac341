"""Uniform result values returned by the award and grant builders."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from funlab.gamification.awardable import AwardableRef
from funlab.gamification.errors import FailureReason, FunLabError


@dataclass(frozen=True)
class AwardResult:
    """Success flag, message and either the award row or field-level errors."""

    success: bool
    message: str | None = None
    award: Any = None
    recipient: AwardableRef | None = None
    type: str | None = None
    reason: FailureReason | None = None
    errors: dict[str, list[str]] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(
        cls,
        award: Any,
        message: str | None = None,
        recipient: AwardableRef | None = None,
        type: str | None = None,  # noqa: A002
        meta: dict[str, Any] | None = None,
    ) -> AwardResult:
        return cls(
            success=True,
            message=message or "Award granted successfully",
            award=award,
            recipient=recipient,
            type=type,
            meta=meta or {},
        )

    @classmethod
    def failure(
        cls,
        message: str,
        reason: FailureReason = FailureReason.REJECTED,
        errors: dict[str, list[str]] | None = None,
        recipient: AwardableRef | None = None,
        type: str | None = None,  # noqa: A002
        meta: dict[str, Any] | None = None,
    ) -> AwardResult:
        return cls(
            success=False,
            message=message,
            recipient=recipient,
            type=type,
            reason=reason,
            errors=errors or {},
            meta=meta or {},
        )

    @classmethod
    def from_error(
        cls,
        exc: FunLabError,
        recipient: AwardableRef | None = None,
        type: str | None = None,  # noqa: A002
    ) -> AwardResult:
        return cls.failure(exc.message, reason=exc.reason, errors=exc.errors, recipient=recipient, type=type)

    @property
    def failed(self) -> bool:
        return not self.success

    def first_error(self) -> str | None:
        """First field error message, falling back to the overall message."""
        for messages in self.errors.values():
            if messages:
                return messages[0]
        return self.message

    def has_error(self, key: str) -> bool:
        return key in self.errors


@dataclass(frozen=True)
class ProgressionResult:
    """What one progression check changed."""

    level_reached: bool
    new_level: int | None = None
    levels_unlocked: list[Any] = field(default_factory=list)
    grants: list[AwardResult] = field(default_factory=list)
