"""Declarative base shared by all ORM models."""

from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, BigInteger, Integer
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

# BIGSERIAL on PostgreSQL, INTEGER PRIMARY KEY (rowid alias) on SQLite.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")

# JSONB on PostgreSQL, plain JSON elsewhere.
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for funlab ORM models.

    Server-generated defaults are fetched at flush time so that no attribute
    is left expired; an expired attribute would trigger implicit IO under
    AsyncSession.
    """

    __mapper_args__: dict[str, Any] = {"eager_defaults": True}  # noqa: RUF012
