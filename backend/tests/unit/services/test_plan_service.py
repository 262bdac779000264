"""
Plan Service Tests.

WHAT: Tests for plan management and the feature catalog.

WHY: Plans are referenced by every subscription. A plan naming a feature
the catalog does not know, or dropping a feature paying customers use,
breaks entitlement checks for everyone on it.
"""

import uuid

import pytest

from billing_core.core.exceptions import (
    InvalidPlanError,
    InvalidPricingTiersError,
    PlanNotFoundError,
    UnknownFeatureError,
)
from billing_core.dao.feature_definition import FeatureDefinitionDAO
from billing_core.models.audit_log import AuditEventType
from billing_core.models.feature_definition import FeatureCategory
from billing_core.models.subscription import SubscriptionStatus
from billing_core.services.audit import AuditService
from billing_core.services.feature_catalog import DEFAULT_FEATURES, FeatureCatalogService
from billing_core.services.plan_service import DEMO_PLANS, PlanService
from tests.factories import PlanFactory, SubscriptionFactory


TIERS = [
    {"min_quantity": 1, "max_quantity": 9, "unit_price": 1000},
    {"min_quantity": 10, "max_quantity": 0, "unit_price": 800},
]


@pytest.fixture
async def catalog(db_session) -> FeatureCatalogService:
    catalog = FeatureCatalogService(db_session)
    await catalog.seed_default_features()
    return catalog


@pytest.fixture
def service(db_session, gateway, catalog) -> PlanService:
    return PlanService(db_session, gateway)


@pytest.mark.asyncio
class TestFeatureCatalog:
    """Tests for catalog seeding and key validation."""

    async def test_seed_is_idempotent(self, db_session, catalog):
        """
        Test that a second seed inserts nothing.

        WHY: Seeding runs at every startup.
        """
        assert await catalog.seed_default_features() == 0
        keys = await FeatureDefinitionDAO(db_session).existing_keys()
        assert len(keys) == len(DEFAULT_FEATURES)

    async def test_unknown_keys_are_listed(self, catalog):
        with pytest.raises(UnknownFeatureError) as exc_info:
            await catalog.validate_feature_keys(["export", "teleport", "flying"])

        assert exc_info.value.context["unknown_keys"] == ["flying", "teleport"]

    async def test_inactive_key_is_unknown(self, db_session, catalog):
        definition = (await FeatureDefinitionDAO(db_session).get_by_keys(["export"]))[0]
        definition.is_active = False
        await db_session.flush()

        with pytest.raises(UnknownFeatureError):
            await catalog.validate_feature_keys(["export"])

    async def test_empty_keys_pass(self, catalog):
        await catalog.validate_feature_keys([])

    async def test_list_by_category(self, catalog):
        features = await catalog.list_features(category=FeatureCategory.MACHINE_SIZES)

        assert features
        assert all(f.category == FeatureCategory.MACHINE_SIZES for f in features)


@pytest.mark.asyncio
class TestCreatePlan:
    """Tests for plan creation."""

    async def test_create_validated_plan(self, service, db_session):
        plan = await service.create_plan(
            {"name": "Pro", "unit_price": 1200, "features": ["export"], "planned_features": ["custom_themes"]},
            actor_id="admin-1",
        )

        assert plan.id is not None
        assert plan.features == ["export"]
        logs, total = await AuditService(db_session).query(event_type=AuditEventType.PLAN_CREATED.value)
        assert total == 1
        assert logs[0].actor_id == "admin-1"

    async def test_unknown_feature_rejected(self, service):
        with pytest.raises(UnknownFeatureError):
            await service.create_plan({"name": "Bad", "features": ["teleport"]})

    async def test_unknown_planned_feature_rejected(self, service):
        with pytest.raises(UnknownFeatureError):
            await service.create_plan({"name": "Bad", "planned_features": ["teleport"]})

    async def test_tiers_are_validated_and_sorted(self, service):
        plan = await service.create_plan(
            {"name": "Team", "unit_price": 1000, "uses_tiered_pricing": True, "pricing_tiers": list(reversed(TIERS))}
        )

        assert [t["min_quantity"] for t in plan.pricing_tiers] == [1, 10]

    async def test_tier_gap_rejected(self, service):
        tiers = [
            {"min_quantity": 1, "max_quantity": 9, "unit_price": 1000},
            {"min_quantity": 12, "max_quantity": 0, "unit_price": 800},
        ]
        with pytest.raises(InvalidPricingTiersError):
            await service.create_plan({"name": "Team", "uses_tiered_pricing": True, "pricing_tiers": tiers})

    async def test_sync_to_gateway_on_create(self, service, gateway):
        gateway.create_plan_price.return_value = ("prod_1", "price_1")

        plan = await service.create_plan({"name": "Pro", "unit_price": 1200}, sync_to_gateway=True)

        assert plan.upstream_product_id == "prod_1"
        assert plan.upstream_price_id == "price_1"
        kwargs = gateway.create_plan_price.call_args.kwargs
        assert kwargs["unit_price"] == 1200
        assert kwargs["interval"] == "month"
        assert kwargs["tiers"] is None


@pytest.mark.asyncio
class TestUpdatePlan:
    """Tests for plan updates."""

    async def test_update_fields(self, service, db_session):
        plan = await PlanFactory.create(db_session, features=["export"])

        updated = await service.update_plan(plan.id, {"description": "New", "features": ["export", "advanced_labs"]})

        assert updated.description == "New"
        assert updated.feature_set == {"export", "advanced_labs"}

    async def test_remove_feature_in_use_rejected(self, service, db_session):
        """
        Test removing a feature while subscribers depend on it.

        WHY: Customers would lose access mid-period without any billing
        change on their side.
        """
        plan = await PlanFactory.create(db_session, features=["export", "advanced_labs"])
        await SubscriptionFactory.create(db_session, "user-1", plan, status=SubscriptionStatus.ACTIVE)

        with pytest.raises(InvalidPlanError) as exc_info:
            await service.update_plan(plan.id, {"features": ["export"]})

        assert exc_info.value.context["removed_features"] == ["advanced_labs"]

    async def test_remove_feature_without_subscribers(self, service, db_session):
        plan = await PlanFactory.create(db_session, features=["export", "advanced_labs"])
        await SubscriptionFactory.create(db_session, "user-1", plan, status=SubscriptionStatus.CANCELLED)

        updated = await service.update_plan(plan.id, {"features": ["export"]})

        assert updated.features == ["export"]

    async def test_unknown_plan(self, service):
        with pytest.raises(PlanNotFoundError):
            await service.update_plan(uuid.uuid4(), {"description": "x"})


@pytest.mark.asyncio
class TestSyncToGateway:
    """Tests for sync_to_gateway()."""

    async def test_free_plan_is_noop(self, service, db_session, gateway):
        plan = await PlanFactory.create(db_session)

        await service.sync_to_gateway(plan)

        gateway.create_plan_price.assert_not_called()

    async def test_already_synced_is_noop(self, service, db_session, gateway):
        plan = await PlanFactory.create_paid(db_session)

        await service.sync_to_gateway(plan)

        gateway.create_plan_price.assert_not_called()

    async def test_tiered_plan_sends_tiers(self, service, db_session, gateway):
        gateway.create_plan_price.return_value = ("prod_t", "price_t")
        plan = await PlanFactory.create(db_session, name="Team", unit_price=1000, pricing_tiers=TIERS)

        await service.sync_to_gateway(plan)

        assert gateway.create_plan_price.call_args.kwargs["tiers"] == TIERS

    async def test_no_gateway_configured(self, db_session, catalog):
        plan = await PlanFactory.create(db_session, unit_price=500)

        with pytest.raises(InvalidPlanError):
            await PlanService(db_session).sync_to_gateway(plan)


@pytest.mark.asyncio
class TestSeedDemoPlans:
    """Tests for demo plan seeding."""

    async def test_seed_once(self, service):
        assert await service.seed_demo_plans() == len(DEMO_PLANS)
        assert await service.seed_demo_plans() == 0

        plans = await service.list_plans()
        assert {p.name for p in plans} == {d["name"] for d in DEMO_PLANS}
