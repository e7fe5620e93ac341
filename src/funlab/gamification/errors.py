"""Award engine error taxonomy.

Business failures (not found, inactive, already granted, opted out) are
expected in normal operation; the builders turn them into failed
``AwardResult`` values. ``InvalidArgumentError`` signals a caller bug and is
always raised.
"""

from __future__ import annotations

from enum import Enum


class FailureReason(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    INVALID_ARGUMENT = "invalid_argument"
    ALREADY_GRANTED = "already_granted"
    OPTED_OUT = "opted_out"
    REJECTED = "rejected"


class FunLabError(Exception):
    """Base class for award engine errors."""

    reason: FailureReason = FailureReason.INVALID_STATE

    def __init__(self, message: str, errors: dict[str, list[str]] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.errors = errors or {}


class NotFoundError(FunLabError):
    """A referenced metric, group, achievement or prize slug does not exist."""

    reason = FailureReason.NOT_FOUND


class InvalidStateError(FunLabError):
    """The entity exists but cannot be awarded (inactive, out of stock, wrong type)."""

    reason = FailureReason.INVALID_STATE


class AlreadyGrantedError(FunLabError):
    """The awardable already holds this achievement."""

    reason = FailureReason.ALREADY_GRANTED


class OptedOutError(FunLabError):
    """The awardable has disabled gamification."""

    reason = FailureReason.OPTED_OUT


class InvalidArgumentError(FunLabError, ValueError):
    """Malformed input from the caller: missing recipient, bad amount, bad options."""

    reason = FailureReason.INVALID_ARGUMENT
