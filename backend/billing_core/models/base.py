"""
Base model class for all SQLAlchemy models.

WHY: Centralizing common model functionality (timestamps, ID, enum storage)
in a base module ensures consistency across all models.
"""

import calendar
import enum
import uuid
from datetime import datetime, timezone
from typing import Tuple, Type

from sqlalchemy import Column, DateTime, Enum, Index, Uuid
from sqlalchemy.orm import DeclarativeBase


def utcnow() -> datetime:
    """
    Current UTC time as a naive datetime.

    WHY: Columns are timezone-naive and always hold UTC.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_months(value: datetime, months: int) -> datetime:
    """
    Same day-of-month `months` later, clamped to the target month's length.

    Example: Jan 31 + 1 month -> Feb 28 (or 29).
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def month_bounds(value: datetime) -> Tuple[datetime, datetime]:
    """Calendar month containing `value` as (start, next month start)."""
    start = value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return start, add_months(start, 1)


def str_enum(enum_cls: Type[enum.Enum], length: int = 32) -> Enum:
    """
    Column type storing a str Enum by its value.

    WHY: Values ("past_due") are what the gateway sends and what the API
    returns; storing them as VARCHAR keeps migrations free of native
    enum types.
    """
    return Enum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


def unique_when_present(name: str, column: Column) -> Index:
    """
    Unique index that ignores NULLs (`UNIQUE ... WHERE col IS NOT NULL`).

    WHY: Free plans and unlinked rows carry no upstream identifier. Any
    number of NULLs must coexist while two equal non-null values must not.
    """
    return Index(
        name,
        column,
        unique=True,
        postgresql_where=column.isnot(None),
        sqlite_where=column.isnot(None),
    )


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    WHY: DeclarativeBase provides the foundation for SQLAlchemy 2.0 models
    with improved type hints and async support.
    """

    pass


class TimestampMixin:
    """
    Mixin to add created_at and updated_at timestamps to models.
    """

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class PrimaryKeyMixin:
    """
    Mixin to add a UUID primary key to models.

    WHY: Identifiers are exposed in URLs and gateway metadata; random UUIDs
    are not guessable and can be generated before the row is flushed.
    """

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
