"""
Reconciliation Service Tests.

WHAT: Tests for the admin-triggered backfill sweeps.

WHY: Sweeps repair what webhooks missed. Their counters are the only
report an operator gets, so they must add up, and one bad item must never
stop the rest.
"""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from billing_core.core.exceptions import GatewayError, ValidationError
from billing_core.dao.subscription import SubscriptionDAO
from billing_core.models.audit_log import AuditEventType, AuditLog
from billing_core.models.subscription import Subscription, SubscriptionStatus
from billing_core.services.gateway import GatewayCheckoutSession, GatewaySubscription
from billing_core.services.reconciliation_service import (
    ReconcileMode,
    ReconciliationResult,
    ReconciliationService,
    has_owner_metadata,
)
from billing_core.services.webhook_reconciler import CREATED, UPDATED
from tests.factories import PlanFactory, SubscriptionFactory


@pytest.fixture
def service(db_session, gateway, directory) -> ReconciliationService:
    return ReconciliationService(db_session, gateway, directory)


def upstream(subscription_id: str, **metadata) -> GatewaySubscription:
    return GatewaySubscription(id=subscription_id, status="active", customer_id="cus_test", metadata=metadata)


class TestResultCounters:
    """Tests for ReconciliationResult."""

    def test_counters_add_up(self):
        result = ReconciliationResult()
        result.count(CREATED)
        result.count(UPDATED)
        result.skip("sub_a", "missing metadata")
        result.fail("sub_b", "boom")

        assert result.to_dict() == {
            "processed": 4,
            "created": 1,
            "updated": 1,
            "skipped": 1,
            "failed": [{"id": "sub_b", "reason": "boom"}],
        }

    @pytest.mark.parametrize(
        "metadata,expected",
        [
            ({"user_id": "user-1"}, True),
            ({"organization_id": "org"}, True),
            ({"bulk_purchase": "true"}, True),
            ({"plan_id": "plan"}, False),
            ({}, False),
        ],
    )
    def test_owner_metadata(self, metadata, expected):
        assert has_owner_metadata(metadata) is expected


@pytest.mark.asyncio
class TestSyncExisting:
    """Tests for mode=all and mode=user."""

    async def test_creates_missing_rows_and_skips_unowned(self, service, db_session, gateway):
        plan = await PlanFactory.create_paid(db_session)
        gateway.list_subscriptions.return_value = [
            upstream("sub_owned", user_id="user-1", plan_id=str(plan.id)),
            upstream("sub_orphan"),
        ]

        result = await service.run(ReconcileMode.ALL, actor_id="admin-1")

        assert result.to_dict() == {"processed": 2, "created": 1, "updated": 0, "skipped": 1, "failed": []}
        row = await SubscriptionDAO(db_session).get_by_upstream_subscription_id("sub_owned")
        assert row.user_id == "user-1"
        assert row.status == SubscriptionStatus.ACTIVE
        assert await SubscriptionDAO(db_session).get_by_upstream_subscription_id("sub_orphan") is None

    async def test_existing_row_is_updated(self, service, db_session, gateway):
        plan = await PlanFactory.create_paid(db_session)
        await SubscriptionFactory.create(
            db_session, "user-1", plan, status=SubscriptionStatus.INCOMPLETE, upstream_subscription_id="sub_owned"
        )
        gateway.list_subscriptions.return_value = [upstream("sub_owned", user_id="user-1")]

        result = await service.run(ReconcileMode.ALL)

        assert result.updated == 1
        row = await SubscriptionDAO(db_session).get_by_upstream_subscription_id("sub_owned")
        assert row.status == SubscriptionStatus.ACTIVE

    async def test_failed_item_does_not_stop_sweep(self, service, gateway):
        """
        Test one failing item in the middle of a sweep.

        WHY: The failure is reported with its reason and the remaining
        items are still processed.
        """
        gateway.list_subscriptions.return_value = [
            upstream("sub_a", user_id="u"),
            upstream("sub_b", user_id="u"),
            upstream("sub_c", user_id="u"),
        ]
        service.reconciler.apply_subscription = AsyncMock(
            side_effect=[CREATED, ValidationError(message="bad plan"), UPDATED]
        )

        result = await service.run(ReconcileMode.ALL)

        assert result.processed == 3
        assert result.created == 1
        assert result.updated == 1
        assert result.failed == [{"id": "sub_b", "reason": "bad plan"}]

    async def test_user_mode_filters_by_user(self, service, gateway):
        gateway.list_subscriptions.return_value = [
            upstream("sub_mine", user_id="user-1"),
            upstream("sub_theirs", user_id="user-2"),
        ]
        service.reconciler.apply_subscription = AsyncMock(return_value=UPDATED)

        result = await service.run(ReconcileMode.USER, user_id="user-1")

        assert result.processed == 1
        assert service.reconciler.apply_subscription.call_args.args[0].id == "sub_mine"

    async def test_user_mode_requires_user_id(self, service):
        with pytest.raises(ValidationError):
            await service.run(ReconcileMode.USER)

    async def test_list_failure_propagates(self, service, gateway):
        gateway.list_subscriptions.side_effect = GatewayError(message="down", retryable=True)

        with pytest.raises(GatewayError):
            await service.run(ReconcileMode.ALL)

    async def test_run_is_audited(self, service, db_session, gateway):
        gateway.list_subscriptions.return_value = [upstream("sub_orphan")]

        await service.run(ReconcileMode.ALL, actor_id="admin-1")

        result = await db_session.execute(
            select(AuditLog).where(AuditLog.event_type == AuditEventType.RECONCILIATION_RUN.value)
        )
        log = result.scalar_one()
        assert log.actor_id == "admin-1"
        assert log.event_metadata["mode"] == "all"
        assert log.event_metadata["skipped"] == 1


@pytest.mark.asyncio
class TestMissingMetadata:
    """Tests for recovering parked rows from checkout sessions."""

    async def _parked(self, db_session, plan, **overrides) -> Subscription:
        return await SubscriptionFactory.create(
            db_session,
            None,
            plan,
            status=SubscriptionStatus.ACTIVE,
            upstream_subscription_id="sub_parked",
            plan_id=None,
            **overrides,
        )

    async def test_recovers_owner_and_plan(self, service, db_session, gateway):
        plan = await PlanFactory.create_paid(db_session)
        parked = await self._parked(db_session, plan)
        parked_id = parked.id
        gateway.find_checkout_session_for_subscription = AsyncMock(
            return_value=GatewayCheckoutSession(
                id="cs_1",
                subscription_id="sub_parked",
                client_reference_id="user-1",
                metadata={"plan_id": str(plan.id)},
            )
        )

        result = await service.run(ReconcileMode.MISSING_METADATA)

        assert result.updated == 1
        row = await SubscriptionDAO(db_session).get_by_id(parked_id)
        assert row.user_id == "user-1"
        assert row.plan_id == plan.id
        gateway.update_subscription_metadata.assert_awaited_once_with(
            "sub_parked",
            {"plan_id": str(plan.id), "subscription_id": str(parked_id), "user_id": "user-1"},
        )

    async def test_stored_checkout_session_is_fetched(self, service, db_session, gateway):
        plan = await PlanFactory.create_paid(db_session)
        await self._parked(db_session, plan, checkout_session_id="cs_stored")
        gateway.fetch_checkout_session = AsyncMock(
            return_value=GatewayCheckoutSession(id="cs_stored", metadata={"user_id": "user-1", "plan_id": str(plan.id)})
        )

        result = await service.run(ReconcileMode.MISSING_METADATA)

        gateway.fetch_checkout_session.assert_awaited_once_with("cs_stored")
        assert result.updated == 1

    async def test_no_checkout_session_is_a_failure(self, service, db_session, gateway):
        plan = await PlanFactory.create_paid(db_session)
        await self._parked(db_session, plan)
        gateway.find_checkout_session_for_subscription = AsyncMock(return_value=None)

        result = await service.run(ReconcileMode.MISSING_METADATA)

        assert result.failed == [{"id": "sub_parked", "reason": "no checkout session found"}]
        gateway.update_subscription_metadata.assert_not_called()
