"""
Webhook Reconciler Tests.

WHAT: Tests for applying verified gateway events to local state.

WHY: Gateway events arrive at least once, out of order, and sometimes
before the request that created the upstream object has committed. These
tests pin the rules that keep local state correct anyway:
- An event id is applied once
- An older update never overwrites a newer one
- Cancelled and replaced rows stay terminal
- Unknown owners are parked, not dropped
- A locally issued id that is not committed yet is skipped, not duplicated

HOW: Events are built directly as GatewayEvent objects (signature checks
are covered by the gateway and API tests).
"""

import uuid
from datetime import timedelta
from typing import Any, Dict, Optional
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from billing_core.core.exceptions import ValidationError
from billing_core.dao.license_batch import LicenseBatchDAO
from billing_core.dao.subscription import SubscriptionDAO
from billing_core.models.audit_log import AuditEventType, AuditLog, AuditSeverity
from billing_core.models.base import utcnow
from billing_core.models.invoice import Invoice, InvoiceStatus
from billing_core.models.license_batch import LicenseBatchStatus
from billing_core.models.organization import OrganizationSubscription
from billing_core.models.subscription import Subscription, SubscriptionKind, SubscriptionStatus
from billing_core.models.webhook_event import WebhookEventRecord
from billing_core.services.gateway import GatewayEvent, GatewaySubscription
from billing_core.services.license_service import LicenseService
from billing_core.services.webhook_reconciler import CREATED, SKIPPED, UPDATED, WebhookReconciler
from tests.factories import (
    BatchFactory,
    OrganizationFactory,
    PlanFactory,
    SubscriptionFactory,
    WebhookEventFactory,
)


@pytest.fixture
def reconciler(db_session, gateway, directory) -> WebhookReconciler:
    return WebhookReconciler(db_session, gateway, directory)


def make_event(
    event_type: str,
    data: Dict[str, Any],
    event_id: Optional[str] = None,
    created=None,
) -> GatewayEvent:
    envelope = WebhookEventFactory.event(event_type, data, event_id=event_id)
    return GatewayEvent(
        id=envelope["id"],
        type=event_type,
        data=data,
        created=created or utcnow(),
        raw=envelope,
    )


async def rows(db_session, model):
    result = await db_session.execute(select(model))
    return list(result.scalars().all())


@pytest.mark.asyncio
class TestIntake:
    """Tests for deduplication."""

    async def test_event_is_applied_once(self, reconciler, db_session):
        """
        Test redelivery of the same event id.

        WHY: The gateway delivers at least once; the second delivery must
        be answered without running the handler again.
        """
        plan = await PlanFactory.create_paid(db_session)
        await SubscriptionFactory.create(
            db_session, "user-1", plan, status=SubscriptionStatus.INCOMPLETE, upstream_subscription_id="sub_test"
        )
        event = make_event(
            "invoice.payment_succeeded", WebhookEventFactory.invoice(), event_id="evt_once"
        )

        first = await reconciler.process_event(event)
        second = await reconciler.process_event(event)

        assert first == {
            "received": True,
            "duplicate": False,
            "event_type": "invoice.payment_succeeded",
            "handled": True,
        }
        assert second["duplicate"] is True
        assert second["handled"] is False
        assert len(await rows(db_session, Invoice)) == 1
        assert len(await rows(db_session, WebhookEventRecord)) == 1

    async def test_unhandled_event_type_is_recorded(self, reconciler, db_session):
        result = await reconciler.process_event(make_event("customer.created", {"id": "cus_1"}))

        assert result["handled"] is False
        assert result["duplicate"] is False
        records = await rows(db_session, WebhookEventRecord)
        assert [r.event_type for r in records] == ["customer.created"]


class TestEventAge:
    """Tests for the replay window."""

    @pytest.fixture
    def reconciler(self, gateway, directory) -> WebhookReconciler:
        return WebhookReconciler(MagicMock(), gateway, directory)

    def test_old_event_rejected(self, reconciler):
        event = make_event("invoice.payment_succeeded", {}, created=utcnow() - timedelta(minutes=10))

        with pytest.raises(ValidationError):
            reconciler.check_event_age(event)

    def test_recent_event_accepted(self, reconciler):
        event = make_event("invoice.payment_succeeded", {}, created=utcnow() - timedelta(seconds=30))

        reconciler.check_event_age(event)


@pytest.mark.asyncio
class TestPersonalSubscriptionSync:
    """Tests for mirroring personal subscriptions."""

    async def test_update_activates_subscription(self, reconciler, db_session, directory):
        plan = await PlanFactory.create_paid(db_session, required_role="pro")
        row = await SubscriptionFactory.create(
            db_session, "user-1", plan, status=SubscriptionStatus.INCOMPLETE, upstream_subscription_id="sub_test"
        )
        event = make_event(
            "customer.subscription.updated",
            WebhookEventFactory.subscription(status="active", metadata={"user_id": "user-1"}),
        )

        await reconciler.process_event(event)

        await db_session.refresh(row)
        assert row.status == SubscriptionStatus.ACTIVE
        assert row.last_event_at == event.created
        directory.assign_role.assert_awaited_once_with("user-1", "pro")

    async def test_stale_update_is_ignored(self, reconciler, db_session):
        """
        Test out-of-order delivery.

        WHY: A past_due event created before the last applied event must
        not undo a later recovery.
        """
        plan = await PlanFactory.create_paid(db_session)
        now = utcnow()
        row = await SubscriptionFactory.create(
            db_session, "user-1", plan, upstream_subscription_id="sub_test", last_event_at=now
        )
        gs = GatewaySubscription.from_payload(WebhookEventFactory.subscription(status="past_due"))

        outcome = await reconciler.apply_subscription(gs, now - timedelta(seconds=60))

        assert outcome == SKIPPED
        assert row.status == SubscriptionStatus.ACTIVE

    async def test_terminal_subscription_stays_terminal(self, reconciler, db_session):
        plan = await PlanFactory.create_paid(db_session)
        row = await SubscriptionFactory.create(
            db_session, "user-1", plan, status=SubscriptionStatus.CANCELLED, upstream_subscription_id="sub_test"
        )
        gs = GatewaySubscription.from_payload(WebhookEventFactory.subscription(status="active"))

        outcome = await reconciler.apply_subscription(gs, utcnow())

        assert outcome == SKIPPED
        assert row.status == SubscriptionStatus.CANCELLED

    async def test_uncommitted_local_id_is_skipped(self, reconciler, db_session):
        """
        Test the event that beats its creating request.

        WHY: The creating request will commit the row with this id; a
        second row here would break the one-row-per-upstream rule.
        """
        plan = await PlanFactory.create_paid(db_session)
        gs = GatewaySubscription.from_payload(
            WebhookEventFactory.subscription(
                metadata={"user_id": "user-1", "plan_id": str(plan.id), "subscription_id": str(uuid.uuid4())}
            )
        )

        outcome = await reconciler.apply_subscription(gs, utcnow())

        assert outcome == SKIPPED
        assert await rows(db_session, Subscription) == []

    async def test_uncommitted_local_id_created_when_pending_allowed(self, reconciler, db_session):
        plan = await PlanFactory.create_paid(db_session)
        local_id = uuid.uuid4()
        gs = GatewaySubscription.from_payload(
            WebhookEventFactory.subscription(
                metadata={"user_id": "user-1", "plan_id": str(plan.id), "subscription_id": str(local_id)}
            )
        )

        outcome = await reconciler.apply_subscription(gs, utcnow(), create_pending=True)

        assert outcome == CREATED
        row = await SubscriptionDAO(db_session).get_by_id(local_id)
        assert row.upstream_subscription_id == "sub_test"
        assert row.status == SubscriptionStatus.ACTIVE

    async def test_plan_resolved_from_price(self, reconciler, db_session):
        plan = await PlanFactory.create_paid(db_session, upstream_price_id="price_known")
        gs = GatewaySubscription.from_payload(
            WebhookEventFactory.subscription(price_id="price_known", metadata={"user_id": "user-1"})
        )

        outcome = await reconciler.apply_subscription(gs, utcnow())

        assert outcome == CREATED
        row = await SubscriptionDAO(db_session).get_by_upstream_subscription_id("sub_test")
        assert row.plan_id == plan.id
        assert row.user_id == "user-1"

    async def test_unknown_plan_is_parked(self, reconciler, db_session):
        """
        Test an upstream subscription nobody can place.

        WHY: Dropping it would lose a paying customer; the parked row is
        picked up by the missing-metadata reconciliation.
        """
        gs = GatewaySubscription.from_payload(
            WebhookEventFactory.subscription(price_id="price_unknown", metadata={"user_id": "user-1"})
        )

        outcome = await reconciler.apply_subscription(gs, utcnow())

        assert outcome == CREATED
        row = await SubscriptionDAO(db_session).get_by_upstream_subscription_id("sub_test")
        assert row.plan_id is None
        assert row.kind == SubscriptionKind.PARKED

    async def test_deleted_cancels_and_revokes(self, reconciler, db_session, directory):
        plan = await PlanFactory.create_paid(db_session, required_role="pro")
        row = await SubscriptionFactory.create(db_session, "user-1", plan, upstream_subscription_id="sub_test")
        event = make_event("customer.subscription.deleted", WebhookEventFactory.subscription(status="canceled"))

        await reconciler.process_event(event)

        await db_session.refresh(row)
        assert row.status == SubscriptionStatus.CANCELLED
        assert row.cancelled_at is not None
        directory.revoke_role.assert_awaited_once_with("user-1", "pro")


@pytest.mark.asyncio
class TestBatchSync:
    """Tests for mirroring bulk purchases."""

    async def test_quantity_growth_adds_seats(self, reconciler, db_session):
        plan = await PlanFactory.create_paid(db_session)
        batch = await BatchFactory.create(
            db_session, "buyer-1", plan, quantity=3, upstream_subscription_id="sub_batch"
        )
        gs = GatewaySubscription.from_payload(
            WebhookEventFactory.subscription(
                subscription_id="sub_batch", quantity=5, metadata={"bulk_purchase": "true"}
            )
        )

        outcome = await reconciler.apply_subscription(gs, utcnow())

        assert outcome == UPDATED
        assert batch.total_quantity == 5
        assert await SubscriptionDAO(db_session).count_licenses(batch.id) == 5

    async def test_shrink_keeps_assigned_seats(self, reconciler, db_session, gateway, directory, principal):
        plan = await PlanFactory.create_paid(db_session)
        batch = await BatchFactory.create(
            db_session, principal.user_id, plan, quantity=3, upstream_subscription_id="sub_batch"
        )
        licenses = LicenseService(db_session, gateway, directory)
        await licenses.assign_license(batch.id, principal, "student-1")
        await licenses.assign_license(batch.id, principal, "student-2")
        gs = GatewaySubscription.from_payload(
            WebhookEventFactory.subscription(
                subscription_id="sub_batch", quantity=1, metadata={"bulk_purchase": "true"}
            )
        )

        await reconciler.apply_subscription(gs, utcnow())

        assert batch.total_quantity == 2
        assert batch.assigned_quantity == 2
        assert await SubscriptionDAO(db_session).count_licenses(batch.id) == 2

    async def test_batch_created_from_metadata(self, reconciler, db_session):
        plan = await PlanFactory.create_paid(db_session)
        gs = GatewaySubscription.from_payload(
            WebhookEventFactory.subscription(
                subscription_id="sub_elsewhere",
                quantity=4,
                metadata={"bulk_purchase": "true", "user_id": "buyer-1", "plan_id": str(plan.id)},
            )
        )

        outcome = await reconciler.apply_subscription(gs, utcnow())

        assert outcome == CREATED
        batch = await LicenseBatchDAO(db_session).get_by_upstream_subscription_id("sub_elsewhere")
        assert batch.purchaser_user_id == "buyer-1"
        assert batch.total_quantity == 4
        assert await SubscriptionDAO(db_session).count_licenses(batch.id) == 4

    async def test_deleted_cancels_batch_and_seats(self, reconciler, db_session, gateway, directory, principal):
        plan = await PlanFactory.create_paid(db_session, required_role="student")
        batch = await BatchFactory.create(
            db_session, principal.user_id, plan, quantity=2, upstream_subscription_id="sub_batch"
        )
        await LicenseService(db_session, gateway, directory).assign_license(batch.id, principal, "student-1")
        event = make_event(
            "customer.subscription.deleted",
            WebhookEventFactory.subscription(subscription_id="sub_batch", status="canceled"),
        )

        await reconciler.process_event(event)

        assert batch.status == LicenseBatchStatus.CANCELLED
        assert batch.assigned_quantity == 0
        seats = await SubscriptionDAO(db_session).list_licenses(batch.id)
        assert {seat.status for seat in seats} == {SubscriptionStatus.CANCELLED}
        directory.revoke_role.assert_awaited_once_with("student-1", "student")


@pytest.mark.asyncio
class TestOrganizationSync:
    """Tests for mirroring organization subscriptions."""

    async def test_pending_org_subscription_activated(self, reconciler, db_session):
        plan = await PlanFactory.create_paid(db_session)
        org = await OrganizationFactory.create(db_session)
        org_row = await OrganizationFactory.subscribe(
            db_session, org, plan, status=SubscriptionStatus.INCOMPLETE, upstream_subscription_id="sub_org"
        )
        gs = GatewaySubscription.from_payload(
            WebhookEventFactory.subscription(
                subscription_id="sub_org",
                quantity=30,
                metadata={"organization_id": str(org.id), "plan_id": str(plan.id)},
            )
        )

        outcome = await reconciler.apply_subscription(gs, utcnow())

        assert outcome == UPDATED
        assert org_row.status == SubscriptionStatus.ACTIVE
        assert org_row.quantity == 30

    async def test_org_subscription_created_from_metadata(self, reconciler, db_session):
        plan = await PlanFactory.create_paid(db_session)
        org = await OrganizationFactory.create(db_session)
        gs = GatewaySubscription.from_payload(
            WebhookEventFactory.subscription(
                subscription_id="sub_org",
                metadata={"organization_id": str(org.id), "plan_id": str(plan.id)},
            )
        )

        outcome = await reconciler.apply_subscription(gs, utcnow())

        assert outcome == CREATED
        created = await rows(db_session, OrganizationSubscription)
        assert [row.organization_id for row in created] == [org.id]


@pytest.mark.asyncio
class TestInvoiceEvents:
    """Tests for payment events."""

    async def test_payment_succeeded_activates_and_records_invoice(self, reconciler, db_session):
        plan = await PlanFactory.create_paid(db_session)
        row = await SubscriptionFactory.create(
            db_session, "user-1", plan, status=SubscriptionStatus.INCOMPLETE, upstream_subscription_id="sub_test"
        )

        await reconciler.process_event(make_event("invoice.payment_succeeded", WebhookEventFactory.invoice()))

        assert row.status == SubscriptionStatus.ACTIVE
        assert row.last_invoice_id == "in_test"
        invoices = await rows(db_session, Invoice)
        assert len(invoices) == 1
        assert invoices[0].status == InvoiceStatus.PAID
        assert invoices[0].amount_paid == 1200
        assert invoices[0].user_id == "user-1"
        assert invoices[0].subscription_id == row.id

    async def test_payment_failed_moves_to_past_due(self, reconciler, db_session):
        """
        Test a failed renewal.

        WHY: past_due keeps access during the retry window; the audit
        entry is a warning so support sees it.
        """
        plan = await PlanFactory.create_paid(db_session)
        row = await SubscriptionFactory.create(db_session, "user-1", plan, upstream_subscription_id="sub_test")

        await reconciler.process_event(
            make_event("invoice.payment_failed", WebhookEventFactory.invoice(status="open"))
        )

        assert row.status == SubscriptionStatus.PAST_DUE
        assert row.is_entitled
        result = await db_session.execute(
            select(AuditLog).where(AuditLog.event_type == AuditEventType.PAYMENT_FAILED.value)
        )
        log = result.scalar_one()
        assert log.severity == AuditSeverity.WARNING
        assert log.amount == 1200

    async def test_stale_payment_failure_does_not_undo_activation(self, reconciler, db_session):
        """
        Test a failed-payment event delivered after a newer success.

        WHY: Delivery order is not event order. The older failure is
        still recorded as an invoice but must not move the row back to
        past_due.
        """
        plan = await PlanFactory.create_paid(db_session)
        row = await SubscriptionFactory.create(
            db_session, "user-1", plan, status=SubscriptionStatus.INCOMPLETE, upstream_subscription_id="sub_test"
        )
        now = utcnow()

        await reconciler.process_event(
            make_event("invoice.payment_succeeded", WebhookEventFactory.invoice(), created=now)
        )
        await reconciler.process_event(
            make_event(
                "invoice.payment_failed",
                WebhookEventFactory.invoice(invoice_id="in_old", status="open"),
                created=now - timedelta(seconds=60),
            )
        )

        assert row.status == SubscriptionStatus.ACTIVE
        assert row.last_event_at == now
        assert row.last_invoice_id == "in_test"
        assert len(await rows(db_session, Invoice)) == 2

    async def test_newer_payment_failure_applies(self, reconciler, db_session):
        plan = await PlanFactory.create_paid(db_session)
        row = await SubscriptionFactory.create(db_session, "user-1", plan, upstream_subscription_id="sub_test")
        now = utcnow()
        await reconciler.process_event(
            make_event("invoice.payment_succeeded", WebhookEventFactory.invoice(), created=now - timedelta(seconds=60))
        )

        await reconciler.process_event(
            make_event(
                "invoice.payment_failed",
                WebhookEventFactory.invoice(invoice_id="in_new", status="open"),
                created=now,
            )
        )

        assert row.status == SubscriptionStatus.PAST_DUE
        assert row.last_event_at == now

    async def test_stale_payment_failure_keeps_org_subscription_active(self, reconciler, db_session):
        plan = await PlanFactory.create_paid(db_session)
        org = await OrganizationFactory.create(db_session)
        org_row = await OrganizationFactory.subscribe(
            db_session, org, plan, status=SubscriptionStatus.ACTIVE, upstream_subscription_id="sub_org"
        )
        now = utcnow()
        await reconciler.process_event(
            make_event(
                "invoice.payment_succeeded", WebhookEventFactory.invoice(subscription_id="sub_org"), created=now
            )
        )

        await reconciler.process_event(
            make_event(
                "invoice.payment_failed",
                WebhookEventFactory.invoice(invoice_id="in_old", subscription_id="sub_org", status="open"),
                created=now - timedelta(seconds=60),
            )
        )

        assert org_row.status == SubscriptionStatus.ACTIVE
        assert org_row.last_event_at == now

    async def test_payment_success_stamps_batch(self, reconciler, db_session, principal):
        plan = await PlanFactory.create_paid(db_session)
        batch = await BatchFactory.create(db_session, principal.user_id, plan, upstream_subscription_id="sub_batch")
        now = utcnow()

        await reconciler.process_event(
            make_event(
                "invoice.payment_succeeded", WebhookEventFactory.invoice(subscription_id="sub_batch"), created=now
            )
        )

        assert batch.last_event_at == now

    async def test_payment_for_unknown_subscription_still_recorded(self, reconciler, db_session):
        await reconciler.process_event(
            make_event("invoice.payment_succeeded", WebhookEventFactory.invoice(subscription_id="sub_nobody"))
        )

        invoices = await rows(db_session, Invoice)
        assert invoices[0].upstream_subscription_id == "sub_nobody"
        assert invoices[0].subscription_id is None


@pytest.mark.asyncio
class TestCheckoutLinking:
    """Tests for checkout.session.completed."""

    async def test_checkout_completes_parked_row(self, reconciler, db_session, directory):
        plan = await PlanFactory.create_paid(db_session, required_role="pro")
        gs = GatewaySubscription.from_payload(WebhookEventFactory.subscription(price_id="price_unknown"))
        await reconciler.apply_subscription(gs, utcnow())
        checkout = {
            "id": "cs_1",
            "subscription": "sub_test",
            "customer": "cus_test",
            "client_reference_id": "user-1",
            "metadata": {"plan_id": str(plan.id)},
        }

        await reconciler.process_event(make_event("checkout.session.completed", checkout))

        row = await SubscriptionDAO(db_session).get_by_upstream_subscription_id("sub_test")
        assert row.user_id == "user-1"
        assert row.plan_id == plan.id
        assert row.checkout_session_id == "cs_1"
        directory.assign_role.assert_awaited_once_with("user-1", "pro")

    async def test_bulk_checkout_is_left_to_subscription_events(self, reconciler, db_session):
        checkout = {"id": "cs_2", "subscription": "sub_batch", "metadata": {"bulk_purchase": "true"}}

        await reconciler.process_event(make_event("checkout.session.completed", checkout))

        assert await rows(db_session, Subscription) == []
