"""
Feature catalog service.

WHAT: Seeds, lists and validates the feature keys plans may reference.

WHY: Plans carry feature keys as strings. Every plan write goes through
validate_feature_keys() so a typo or a retired key is rejected instead
of silently granting nothing.
"""

import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.core.exceptions import UnknownFeatureError
from billing_core.dao.feature_definition import FeatureDefinitionDAO
from billing_core.models.feature_definition import (
    FeatureCategory,
    FeatureDefinition,
    FeatureValueType,
)

logger = logging.getLogger(__name__)


def _feature(
    key: str,
    name_en: str,
    name_fr: str,
    category: FeatureCategory,
    value_type: FeatureValueType = FeatureValueType.BOOLEAN,
    unit: Optional[str] = None,
    default_value: str = "false",
) -> Dict[str, object]:
    return {
        "key": key,
        "display_name_en": name_en,
        "display_name_fr": name_fr,
        "category": category,
        "value_type": value_type,
        "unit": unit,
        "default_value": default_value,
        "is_active": True,
    }


_CAP = FeatureCategory.CAPABILITIES
_SIZE = FeatureCategory.MACHINE_SIZES
_TERM = FeatureCategory.TERMINAL_LIMITS
_COURSE = FeatureCategory.COURSE_LIMITS
_NUM = FeatureValueType.NUMBER

DEFAULT_FEATURES: List[Dict[str, object]] = [
    # Capabilities
    _feature("unlimited_courses", "Unlimited Courses", "Cours illimités", _CAP),
    _feature("advanced_labs", "Advanced Labs", "Laboratoires avancés", _CAP),
    _feature("export", "Course Export", "Export de cours", _CAP),
    _feature("custom_themes", "Custom Themes", "Thèmes personnalisés", _CAP),
    _feature("bulk_purchase", "Bulk License Purchase", "Achat de licences en gros", _CAP),
    _feature("group_management", "Group Management", "Gestion des groupes", _CAP),
    _feature("api_access", "API Access", "Accès API", _CAP),
    _feature("analytics", "Analytics Dashboard", "Tableau de bord analytique", _CAP),
    _feature("priority_support", "Priority Support", "Support prioritaire", _CAP),
    # Machine sizes
    _feature("machine_size_xs", "XS Machine (0.5 CPU, 256MB)", "Machine XS (0.5 CPU, 256Mo)", _SIZE),
    _feature("machine_size_s", "S Machine (1 CPU, 512MB)", "Machine S (1 CPU, 512Mo)", _SIZE),
    _feature("machine_size_m", "M Machine (2 CPU, 1GB)", "Machine M (2 CPU, 1Go)", _SIZE),
    _feature("machine_size_l", "L Machine (4 CPU, 4GB)", "Machine L (4 CPU, 4Go)", _SIZE),
    _feature("machine_size_xl", "XL Machine (8 CPU, 8GB)", "Machine XL (8 CPU, 8Go)", _SIZE),
    # Terminal limits
    _feature("network_access", "External Network Access", "Accès réseau externe", _TERM),
    _feature("data_persistence", "Persistent Storage", "Stockage persistant", _TERM),
    _feature("data_persistence_gb", "Storage Quota", "Quota de stockage", _TERM, _NUM, "GB", "0"),
    _feature("command_history", "Command History Recording", "Enregistrement historique", _TERM),
    _feature(
        "command_history_retention_days",
        "History Retention",
        "Rétention de l'historique",
        _TERM,
        _NUM,
        "days",
        "0",
    ),
    _feature(
        "max_session_duration_minutes",
        "Max Session Duration",
        "Durée max de session",
        _TERM,
        _NUM,
        "minutes",
        "60",
    ),
    _feature(
        "max_concurrent_terminals",
        "Max Concurrent Terminals",
        "Terminaux simultanés max",
        _TERM,
        _NUM,
        "count",
        "1",
    ),
    # Course limits
    _feature("max_courses", "Max Courses (-1 = unlimited)", "Cours max (-1 = illimité)", _COURSE, _NUM, "count", "-1"),
    _feature("max_concurrent_users", "Max Concurrent Users", "Utilisateurs simultanés max", _COURSE, _NUM, "count", "1"),
]


class FeatureCatalogService:
    """Service for the feature catalog."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.dao = FeatureDefinitionDAO(session)

    async def seed_default_features(self) -> int:
        """
        Insert default features whose key is not in the catalog yet.

        WHY: Runs at every startup; existing rows (possibly edited by an
        admin) are never duplicated or overwritten.

        Returns:
            Number of features inserted
        """
        existing = await self.dao.existing_keys()
        inserted = 0

        for definition in DEFAULT_FEATURES:
            if definition["key"] in existing:
                continue
            self.session.add(FeatureDefinition(**definition))
            inserted += 1

        if inserted:
            await self.dao.flush()
            logger.info(f"Seeded {inserted} feature definitions", extra={"inserted": inserted})

        return inserted

    async def validate_feature_keys(self, keys: Iterable[str]) -> None:
        """
        Ensure every key exists in the catalog and is active.

        Raises:
            UnknownFeatureError: Listing every unknown or inactive key
        """
        requested = sorted(set(keys or []))
        if not requested:
            return

        known = {
            definition.key
            for definition in await self.dao.get_by_keys(requested)
            if definition.is_active
        }
        unknown = [key for key in requested if key not in known]

        if unknown:
            raise UnknownFeatureError(
                message=f"Unknown or inactive feature keys: {', '.join(unknown)}",
                unknown_keys=unknown,
            )

    async def list_features(
        self,
        category: Optional[FeatureCategory] = None,
        active_only: bool = True,
    ) -> List[FeatureDefinition]:
        return await self.dao.list_features(category=category, active_only=active_only)
