"""
Feature definition model.

WHAT: Authoritative registry of feature keys that plans may reference.

WHY: Plans store feature keys as plain strings. Validating them against
the catalog before any plan write prevents typos from silently granting
nothing (or everything).
"""

import enum

from sqlalchemy import Boolean, Column, String, Text

from billing_core.models.base import Base, PrimaryKeyMixin, TimestampMixin, str_enum


class FeatureCategory(str, enum.Enum):
    CAPABILITIES = "capabilities"
    MACHINE_SIZES = "machine_sizes"
    TERMINAL_LIMITS = "terminal_limits"
    COURSE_LIMITS = "course_limits"


class FeatureValueType(str, enum.Enum):
    BOOLEAN = "boolean"
    NUMBER = "number"
    STRING = "string"


class FeatureDefinition(Base, PrimaryKeyMixin, TimestampMixin):
    """Catalog entry for one feature key."""

    __tablename__ = "feature_definitions"

    key = Column(String(100), nullable=False, unique=True)
    display_name_en = Column(String(255), nullable=False)
    display_name_fr = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(str_enum(FeatureCategory), nullable=False, index=True)
    value_type = Column(
        str_enum(FeatureValueType), nullable=False, default=FeatureValueType.BOOLEAN
    )
    unit = Column(String(50), nullable=True)
    default_value = Column(String(100), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<FeatureDefinition(key={self.key}, category={self.category.value})>"
