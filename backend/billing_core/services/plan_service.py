"""
Plan management service.

WHAT: Create, update, read and gateway-sync subscription plans.

WHY: Plans are referenced by every subscription, so writes are guarded:
1. Feature keys must exist in the catalog (features and planned_features)
2. Pricing tiers must cover [1, inf) without gaps
3. An update may not take away a feature that active subscribers use

HOW: Validation runs before any write. Paid plans without a gateway
price can be synced to the gateway, which creates a product and a
recurring price and stores their identifiers on the plan.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.core.exceptions import InvalidPlanError, PlanNotFoundError
from billing_core.dao.organization import OrganizationSubscriptionDAO
from billing_core.dao.plan import PlanDAO
from billing_core.dao.subscription import SubscriptionDAO
from billing_core.models.audit_log import AuditEventType
from billing_core.models.plan import Plan
from billing_core.services.audit import AuditService
from billing_core.services.feature_catalog import FeatureCatalogService
from billing_core.services.gateway import StripeGateway
from billing_core.services.pricing_service import validate_pricing_tiers

logger = logging.getLogger(__name__)


DEMO_PLANS: List[Dict[str, Any]] = [
    {
        "name": "Free",
        "description": "Try the platform",
        "priority": 0,
        "features": ["machine_size_xs", "command_history"],
        "max_courses": 3,
        "max_lab_sessions": 10,
    },
    {
        "name": "Pro",
        "description": "Individual learners",
        "priority": 10,
        "unit_price": 1200,
        "features": ["unlimited_courses", "advanced_labs", "export", "machine_size_xs", "machine_size_s", "machine_size_m", "command_history"],
        "max_concurrent_terminals": 2,
        "max_session_duration_minutes": 240,
        "storage_gb": 5,
        "data_persistence_enabled": True,
    },
    {
        "name": "Team",
        "description": "Classrooms and teams, priced per seat",
        "priority": 20,
        "unit_price": 1000,
        "uses_tiered_pricing": True,
        "pricing_tiers": [
            {"min_quantity": 1, "max_quantity": 9, "unit_price": 1000},
            {"min_quantity": 10, "max_quantity": 49, "unit_price": 800},
            {"min_quantity": 50, "max_quantity": 0, "unit_price": 600},
        ],
        "features": ["unlimited_courses", "advanced_labs", "export", "bulk_purchase", "group_management", "analytics", "machine_size_xs", "machine_size_s", "machine_size_m", "machine_size_l"],
        "max_concurrent_terminals": 5,
        "max_session_duration_minutes": 480,
        "max_concurrent_users": 50,
        "storage_gb": 50,
        "network_access_enabled": True,
        "data_persistence_enabled": True,
    },
]


class PlanService:
    """
    Service for plan management.

    Example:
        service = PlanService(db, gateway)
        plan = await service.create_plan({"name": "Pro", "unit_price": 1200}, actor_id="admin-1")
    """

    def __init__(self, session: AsyncSession, gateway: Optional[StripeGateway] = None):
        self.session = session
        self.gateway = gateway
        self.plan_dao = PlanDAO(session)
        self.subscription_dao = SubscriptionDAO(session)
        self.org_subscription_dao = OrganizationSubscriptionDAO(session)
        self.catalog = FeatureCatalogService(session)
        self.audit = AuditService(session)

    async def get_plan(self, plan_id: uuid.UUID) -> Plan:
        """
        Raises:
            PlanNotFoundError: If no plan has this id
        """
        plan = await self.plan_dao.get_by_id(plan_id)
        if not plan:
            raise PlanNotFoundError(plan_id=str(plan_id))
        return plan

    async def list_plans(self, active_only: bool = True) -> List[Plan]:
        return await self.plan_dao.list_plans(active_only=active_only)

    async def _validate(self, data: Dict[str, Any]) -> None:
        keys = list(data.get("features") or []) + list(data.get("planned_features") or [])
        await self.catalog.validate_feature_keys(keys)

        if data.get("uses_tiered_pricing"):
            data["pricing_tiers"] = validate_pricing_tiers(data.get("pricing_tiers") or [])

    async def create_plan(
        self,
        data: Dict[str, Any],
        actor_id: Optional[str] = None,
        sync_to_gateway: bool = False,
    ) -> Plan:
        """
        Create a plan after catalog and tier validation.

        Args:
            data: Plan column values
            actor_id: Admin performing the change (audited)
            sync_to_gateway: Create product / price upstream for paid plans

        Raises:
            UnknownFeatureError: Unknown or inactive feature keys
            InvalidPricingTiersError: Tiers overlap or leave gaps
        """
        data = dict(data)
        await self._validate(data)

        plan = await self.plan_dao.create(**data)

        if sync_to_gateway:
            await self.sync_to_gateway(plan)

        await self.audit.log(
            AuditEventType.PLAN_CREATED,
            action=f"Created plan {plan.name}",
            actor_id=actor_id,
            target_id=plan.id,
            target_type="plan",
            target_name=plan.name,
        )
        logger.info(f"Created plan {plan.id} ({plan.name})", extra={"plan_id": str(plan.id)})
        return plan

    async def update_plan(
        self,
        plan_id: uuid.UUID,
        changes: Dict[str, Any],
        actor_id: Optional[str] = None,
    ) -> Plan:
        """
        Update a plan.

        Raises:
            PlanNotFoundError: If the plan does not exist
            InvalidPlanError: If the update removes a feature in active use
        """
        plan = await self.get_plan(plan_id)

        merged = {
            "features": changes.get("features", plan.features),
            "planned_features": changes.get("planned_features", plan.planned_features),
            "uses_tiered_pricing": changes.get("uses_tiered_pricing", plan.uses_tiered_pricing),
            "pricing_tiers": changes.get("pricing_tiers", plan.pricing_tiers),
        }
        await self._validate(merged)

        if "features" in changes:
            removed = sorted(plan.feature_set - set(changes["features"] or []))
            if removed and await self._has_active_subscribers(plan.id):
                raise InvalidPlanError(
                    message=f"Cannot remove features used by active subscriptions: {', '.join(removed)}",
                    plan_id=str(plan.id),
                    removed_features=removed,
                )

        if "pricing_tiers" in changes and merged["uses_tiered_pricing"]:
            changes = dict(changes, pricing_tiers=merged["pricing_tiers"])

        await self.plan_dao.update(plan, **changes)

        await self.audit.log(
            AuditEventType.PLAN_UPDATED,
            action=f"Updated plan {plan.name}",
            actor_id=actor_id,
            target_id=plan.id,
            target_type="plan",
            target_name=plan.name,
            metadata={"fields": sorted(changes.keys())},
        )
        return plan

    async def _has_active_subscribers(self, plan_id: uuid.UUID) -> bool:
        if await self.subscription_dao.count_entitled_for_plan(plan_id):
            return True
        return await self.org_subscription_dao.count_entitled_for_plan(plan_id) > 0

    async def sync_to_gateway(self, plan: Plan) -> Plan:
        """
        Create the upstream product and price for a paid plan.

        No-op for free plans and plans that already have a price.
        """
        if plan.is_free or plan.upstream_price_id:
            return plan
        if self.gateway is None:
            raise InvalidPlanError(message="Payment gateway is not configured", plan_id=str(plan.id))

        product_id, price_id = await self.gateway.create_plan_price(
            name=plan.name,
            description=plan.description,
            unit_price=plan.unit_price,
            currency=plan.currency,
            interval=plan.billing_interval.value,
            tiers=plan.sorted_tiers() if plan.uses_tiered_pricing else None,
            plan_id=str(plan.id),
        )
        await self.plan_dao.update(plan, upstream_product_id=product_id, upstream_price_id=price_id)
        logger.info(
            f"Synced plan {plan.id} to gateway price {price_id}",
            extra={"plan_id": str(plan.id), "price_id": price_id},
        )
        return plan

    async def seed_demo_plans(self) -> int:
        """
        Insert the demo plans whose name is not taken yet.

        Development only: demo plans carry no gateway price.

        Returns:
            Number of plans inserted
        """
        inserted = 0
        for definition in DEMO_PLANS:
            if await self.plan_dao.get_by_field("name", definition["name"]):
                continue
            await self.create_plan(definition)
            inserted += 1
        if inserted:
            logger.info(f"Seeded {inserted} demo plans")
        return inserted
