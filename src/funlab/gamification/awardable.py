"""Polymorphic reference to anything that can receive XP and achievements."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from funlab.gamification.errors import InvalidArgumentError


@dataclass(frozen=True)
class AwardableRef:
    """A (type tag, id) pair identifying an awardable entity."""

    type: str
    id: int

    @classmethod
    def of(cls, obj: Any) -> AwardableRef:
        """Build a reference from a domain object exposing ``id``.

        The type tag is the object's ``awardable_type`` attribute when set,
        else its class name.
        """
        if isinstance(obj, AwardableRef):
            return obj
        obj_id = getattr(obj, "id", None)
        if obj_id is None:
            msg = f"{type(obj).__name__} has no id and cannot be awarded"
            raise InvalidArgumentError(msg)
        type_tag = getattr(obj, "awardable_type", None) or type(obj).__name__
        return cls(type=str(type_tag), id=int(obj_id))

    def __str__(self) -> str:
        return f"{self.type}:{self.id}"
