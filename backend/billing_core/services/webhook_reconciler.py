"""
Webhook reconciler.

WHAT: Applies verified gateway events to local subscriptions, license
batches, organization subscriptions and invoices.

WHY: The gateway is the source of truth for payment state. Its events
arrive at least once, possibly out of order, and sometimes before the
request that created the upstream object has committed. This service:
1. Deduplicates on the event id (the record insert shares the handler's
   transaction, so a failed handler leaves no record and the gateway
   redelivers)
2. Ignores subscription updates older than the last applied event
3. Routes each upstream subscription to the local record that owns it:
   bulk purchase -> LicenseBatch, organization -> OrganizationSubscription,
   otherwise a personal Subscription (parked when owner or plan is unknown)

HOW: apply_subscription() is the shared merge step; the reconciliation
jobs call it with objects listed from the gateway instead of events.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.core.config import settings
from billing_core.core.exceptions import ValidationError
from billing_core.dao.group import GroupDAO
from billing_core.dao.invoice import InvoiceDAO
from billing_core.dao.license_batch import LicenseBatchDAO
from billing_core.dao.organization import OrganizationDAO, OrganizationSubscriptionDAO
from billing_core.dao.plan import PlanDAO
from billing_core.dao.subscription import SubscriptionDAO
from billing_core.dao.webhook_event import DuplicateEventError, WebhookEventDAO
from billing_core.models.audit_log import AuditEventType
from billing_core.models.base import utcnow
from billing_core.models.invoice import Invoice, InvoiceStatus
from billing_core.models.license_batch import LicenseBatch, LicenseBatchStatus
from billing_core.models.organization import OrganizationSubscription
from billing_core.models.plan import Plan
from billing_core.models.subscription import (
    ASSIGNED_LICENSE_STATUSES,
    TERMINAL_STATUSES,
    Subscription,
    SubscriptionStatus,
    SubscriptionType,
    can_transition,
)
from billing_core.services.audit import AuditService
from billing_core.services.directory import DirectoryClient
from billing_core.services.gateway import (
    GatewayCheckoutSession,
    GatewayEvent,
    GatewaySubscription,
    StripeGateway,
    from_unix,
    to_local_status,
)
from billing_core.services.license_service import new_license_seats
from billing_core.services.role_sync import RoleSync
from billing_core.services.usage_service import UsageService

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"
SKIPPED = "skipped"

MirrorRow = Union[Subscription, OrganizationSubscription]

# Statuses a successful payment moves back to active
PAYABLE_STATUSES = frozenset(
    {
        SubscriptionStatus.INCOMPLETE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.UNPAID,
    }
)


def parse_uuid(value: Optional[str]) -> Optional[uuid.UUID]:
    """Parse a metadata UUID; malformed values read as absent."""
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def is_bulk_purchase(metadata: Dict[str, Any]) -> bool:
    return str(metadata.get("bulk_purchase", "")).lower() == "true"


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    """
    Upstream subscription of an invoice.

    WHY: Newer API versions moved the field under
    parent.subscription_details.
    """
    subscription = invoice.get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    if subscription:
        return subscription
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


def invoice_period(invoice: Dict[str, Any]):
    lines = (invoice.get("lines") or {}).get("data") or []
    period = (lines[0].get("period") or {}) if lines else {}
    start = period.get("start") or invoice.get("period_start")
    end = period.get("end") or invoice.get("period_end")
    return from_unix(start), from_unix(end)


class WebhookReconciler:
    """
    Gateway event processor.

    Example:
        reconciler = WebhookReconciler(db, gateway, directory)
        event = gateway.verify_webhook_signature(body, signature)
        reconciler.check_event_age(event)
        result = await reconciler.process_event(event)
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: StripeGateway,
        directory: DirectoryClient,
    ):
        self.session = session
        self.gateway = gateway
        self.webhook_dao = WebhookEventDAO(session)
        self.subscription_dao = SubscriptionDAO(session)
        self.org_subscription_dao = OrganizationSubscriptionDAO(session)
        self.org_dao = OrganizationDAO(session)
        self.batch_dao = LicenseBatchDAO(session)
        self.group_dao = GroupDAO(session)
        self.plan_dao = PlanDAO(session)
        self.invoice_dao = InvoiceDAO(session)
        self.usage = UsageService(session)
        self.roles = RoleSync(directory)
        self.audit = AuditService(session)

        self._handlers: Dict[str, Callable[[GatewayEvent], Awaitable[None]]] = {
            "customer.subscription.created": self.handle_subscription_created,
            "customer.subscription.updated": self.handle_subscription_updated,
            "customer.subscription.deleted": self.handle_subscription_deleted,
            "invoice.payment_succeeded": self.handle_payment_succeeded,
            "invoice.payment_failed": self.handle_payment_failed,
            "checkout.session.completed": self.handle_checkout_completed,
        }

    # =========================================================================
    # Intake
    # =========================================================================

    def check_event_age(self, event: GatewayEvent, now: Optional[datetime] = None) -> None:
        """
        Reject replayed events.

        Raises:
            ValidationError: Event is older than WEBHOOK_MAX_EVENT_AGE_SECONDS
        """
        now = now or utcnow()
        age = (now - event.created).total_seconds()
        if age > settings.WEBHOOK_MAX_EVENT_AGE_SECONDS:
            logger.warning(
                f"Rejected webhook event {event.id}: {int(age)}s old",
                extra={"event_id": event.id, "event_type": event.type},
            )
            raise ValidationError(
                message="Webhook event is too old",
                event_id=event.id,
                age_seconds=int(age),
            )

    async def process_event(self, event: GatewayEvent) -> Dict[str, Any]:
        """
        Deduplicate and dispatch one verified event.

        Returns:
            {"received", "duplicate", "event_type", "handled"}

        Note:
            When the dedup insert loses a race the session must be rolled
            back by the caller before answering.

        Raises:
            DuplicateEventError: A concurrent delivery recorded the event first
            AppException: A handler failed (nothing may be committed)
        """
        result = {"received": True, "duplicate": False, "event_type": event.type, "handled": False}

        if await self.webhook_dao.get_by_event_id(event.id):
            logger.info(f"Duplicate webhook event {event.id} ignored", extra={"event_id": event.id})
            result["duplicate"] = True
            return result

        await self.webhook_dao.record(
            event_id=event.id,
            event_type=event.type,
            expires_at=utcnow() + timedelta(days=settings.WEBHOOK_RECORD_RETENTION_DAYS),
            payload=event.raw,
        )

        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info(f"Unhandled webhook event type: {event.type}", extra={"event_id": event.id})
            return result

        logger.info(
            f"Processing webhook event {event.id}: {event.type}",
            extra={"event_id": event.id, "event_type": event.type},
        )
        await handler(event)
        result["handled"] = True
        return result

    # =========================================================================
    # Subscription events
    # =========================================================================

    async def handle_subscription_created(self, event: GatewayEvent) -> None:
        await self.apply_subscription(GatewaySubscription.from_payload(event.data), event.created)

    async def handle_subscription_updated(self, event: GatewayEvent) -> None:
        # An update for an unknown subscription creates the local mirror
        await self.apply_subscription(GatewaySubscription.from_payload(event.data), event.created)

    async def handle_subscription_deleted(self, event: GatewayEvent) -> None:
        """
        Final state: cancel every local record linked to the subscription.

        NOTE: Applied regardless of last_event_at; nothing follows a delete.
        """
        gs = GatewaySubscription.from_payload(event.data)
        now = utcnow()
        found = False

        batch = await self.batch_dao.get_by_upstream_subscription_id(gs.id, for_update=True)
        if batch is not None:
            found = True
            await self._cancel_batch(batch, event.created)

        row = await self.subscription_dao.get_by_upstream_subscription_id(gs.id)
        if row is not None:
            found = True
            if not row.is_terminal:
                was_entitled = self._entitled_owner(row)
                row.status = SubscriptionStatus.CANCELLED
                row.cancelled_at = gs.canceled_at or now
                row.last_event_at = event.created
                await self.subscription_dao.flush()
                if was_entitled:
                    plan = await self.plan_dao.get_by_id(row.plan_id)
                    await self.roles.revoke(row.user_id, plan)
                await self.audit.log(
                    AuditEventType.SUBSCRIPTION_CANCELED,
                    action="Subscription ended upstream",
                    target_id=row.id,
                    target_type="subscription",
                    metadata={"upstream_subscription_id": gs.id, "user_id": row.user_id},
                )

        org_row = await self.org_subscription_dao.get_by_upstream_subscription_id(gs.id)
        if org_row is not None:
            found = True
            if org_row.status not in TERMINAL_STATUSES:
                org_row.status = SubscriptionStatus.CANCELLED
                org_row.cancelled_at = gs.canceled_at or now
                org_row.last_event_at = event.created
                await self.org_subscription_dao.flush()
                await self.audit.log(
                    AuditEventType.ORGANIZATION_SUBSCRIPTION_CANCELED,
                    action="Organization subscription ended upstream",
                    target_id=org_row.id,
                    target_type="organization_subscription",
                    organization_id=org_row.organization_id,
                    metadata={"upstream_subscription_id": gs.id},
                )

        if not found:
            logger.info(f"Deleted upstream subscription {gs.id} has no local record")

    async def apply_subscription(
        self,
        gs: GatewaySubscription,
        event_at: Optional[datetime],
        create_pending: bool = False,
    ) -> str:
        """
        Merge an upstream subscription into its local record.

        Args:
            gs: Upstream subscription
            event_at: Time of the change (event created, or now for sweeps)
            create_pending: Create rows for locally issued ids that have no
                row yet. Webhooks pass False because the creating request may
                still be in flight; reconciliation passes True.

        Returns:
            "created", "updated" or "skipped"
        """
        if is_bulk_purchase(gs.metadata):
            return await self._sync_batch(gs, event_at, create_pending)
        if gs.metadata.get("organization_id"):
            return await self._sync_org(gs, event_at, create_pending)
        return await self._sync_personal(gs, event_at, create_pending)

    # =========================================================================
    # Merge helpers
    # =========================================================================

    async def _resolve_plan(self, metadata: Dict[str, Any], price_id: Optional[str] = None) -> Optional[Plan]:
        """Plan from metadata plan_id, then subscription_plan_id, then the price."""
        for key in ("plan_id", "subscription_plan_id"):
            plan_id = parse_uuid(metadata.get(key))
            if plan_id:
                plan = await self.plan_dao.get_by_id(plan_id)
                if plan:
                    return plan
        if price_id:
            return await self.plan_dao.get_by_upstream_price_id(price_id)
        return None

    def _is_stale(self, row: Union[MirrorRow, LicenseBatch], event_at: Optional[datetime]) -> bool:
        return bool(event_at and row.last_event_at and event_at < row.last_event_at)

    def _apply_state(self, row: MirrorRow, gs: GatewaySubscription, event_at: Optional[datetime]) -> bool:
        """
        Copy status, period, trial and cancel flag onto a mirror row.

        Returns:
            False when the row is terminal or the event is stale
        """
        if row.status in TERMINAL_STATUSES:
            return False
        if self._is_stale(row, event_at):
            logger.info(
                f"Stale update for upstream subscription {gs.id} ignored",
                extra={"upstream_subscription_id": gs.id, "row_id": str(row.id)},
            )
            return False

        target = to_local_status(gs.status)
        if row.status != target:
            if can_transition(row.status, target):
                row.status = target
            else:
                logger.warning(
                    f"Ignoring transition {row.status.value} -> {target.value} "
                    f"for upstream subscription {gs.id}"
                )

        if gs.current_period_start:
            row.current_period_start = gs.current_period_start
        if gs.current_period_end:
            row.current_period_end = gs.current_period_end
        row.trial_end = gs.trial_end
        row.cancel_at_period_end = gs.cancel_at_period_end
        if row.status == SubscriptionStatus.CANCELLED and row.cancelled_at is None:
            row.cancelled_at = gs.canceled_at or utcnow()
        if gs.customer_id and not row.upstream_customer_id:
            row.upstream_customer_id = gs.customer_id
        if event_at:
            row.last_event_at = event_at
        return True

    def _entitled_owner(self, row: Subscription) -> bool:
        return row.is_entitled and row.user_id is not None and row.plan_id is not None

    async def _sync_entitlement(self, row: Subscription, was_entitled: bool) -> None:
        """Usage metrics and role follow a change in entitlement."""
        now_entitled = self._entitled_owner(row)
        if now_entitled == was_entitled:
            return
        plan = await self.plan_dao.get_by_id(row.plan_id) if row.plan_id else None
        if now_entitled:
            await self.usage.initialize_metrics(row.user_id, row.id, plan)
            await self.roles.grant(row.user_id, plan)
        else:
            await self.roles.revoke(row.user_id, plan)

    async def _park(self, gs: GatewaySubscription, event_at: Optional[datetime]) -> str:
        """Mirror an upstream subscription whose owner or plan is unknown."""
        row = await self.subscription_dao.get_by_upstream_subscription_id(gs.id)
        if row is not None:
            return UPDATED if self._apply_state(row, gs, event_at) else SKIPPED
        row = Subscription(
            user_id=gs.metadata.get("user_id"),
            plan_id=None,
            subscription_type=SubscriptionType.PERSONAL,
            status=SubscriptionStatus.INCOMPLETE,
            upstream_subscription_id=gs.id,
            upstream_customer_id=gs.customer_id,
        )
        self.session.add(row)
        self._apply_state(row, gs, event_at)
        await self.subscription_dao.flush()
        logger.warning(
            f"Parked upstream subscription {gs.id}: owner or plan unknown",
            extra={"upstream_subscription_id": gs.id, "subscription_id": str(row.id)},
        )
        return CREATED

    # -------------------------------------------------------------------------
    # Personal
    # -------------------------------------------------------------------------

    async def _sync_personal(
        self, gs: GatewaySubscription, event_at: Optional[datetime], create_pending: bool
    ) -> str:
        row = await self.subscription_dao.get_by_upstream_subscription_id(gs.id)
        plan = await self._resolve_plan(gs.metadata, gs.price_id)
        user_id = gs.metadata.get("user_id")
        outcome = UPDATED

        if row is None:
            local_id = parse_uuid(gs.metadata.get("subscription_id"))
            if local_id:
                row = await self.subscription_dao.get_by_id(local_id)
                if row is None and not create_pending:
                    logger.info(
                        f"Upstream subscription {gs.id} not committed locally yet; skipped",
                        extra={"upstream_subscription_id": gs.id, "subscription_id": str(local_id)},
                    )
                    return SKIPPED
                if row is not None and row.upstream_subscription_id is None:
                    row.upstream_subscription_id = gs.id

            if row is None:
                if plan is None or not user_id:
                    return await self._park(gs, event_at)
                row = Subscription(
                    id=local_id or uuid.uuid4(),
                    user_id=user_id,
                    plan_id=plan.id,
                    subscription_type=SubscriptionType.PERSONAL,
                    status=SubscriptionStatus.INCOMPLETE,
                    upstream_subscription_id=gs.id,
                    upstream_customer_id=gs.customer_id,
                )
                self.session.add(row)
                outcome = CREATED

        was_entitled = outcome == UPDATED and self._entitled_owner(row)
        if row.plan_id is None and plan is not None:
            row.plan_id = plan.id
        if row.user_id is None and user_id:
            row.user_id = user_id

        applied = self._apply_state(row, gs, event_at)
        await self.subscription_dao.flush()
        await self._sync_entitlement(row, was_entitled)

        if outcome == CREATED:
            await self.audit.log(
                AuditEventType.SUBSCRIPTION_CREATED,
                action="Subscription mirrored from gateway",
                actor_id=row.user_id,
                target_id=row.id,
                target_type="subscription",
                metadata={"upstream_subscription_id": gs.id, "status": row.status.value},
            )
            return CREATED
        return UPDATED if applied else SKIPPED

    # -------------------------------------------------------------------------
    # Organization
    # -------------------------------------------------------------------------

    async def _sync_org(
        self, gs: GatewaySubscription, event_at: Optional[datetime], create_pending: bool
    ) -> str:
        row = await self.org_subscription_dao.get_by_upstream_subscription_id(gs.id)
        created = False

        if row is None:
            local_id = parse_uuid(gs.metadata.get("organization_subscription_id"))
            if local_id:
                row = await self.org_subscription_dao.get_by_id(local_id)
                if row is None and not create_pending:
                    logger.info(f"Organization subscription for {gs.id} not committed locally yet; skipped")
                    return SKIPPED
                if row is not None and row.upstream_subscription_id is None:
                    row.upstream_subscription_id = gs.id

            if row is None:
                org_id = parse_uuid(gs.metadata.get("organization_id"))
                org = await self.org_dao.get_by_id(org_id) if org_id else None
                plan = await self._resolve_plan(gs.metadata, gs.price_id)
                if org is None or plan is None:
                    logger.warning(
                        f"Upstream subscription {gs.id} names unknown organization or plan",
                        extra={"upstream_subscription_id": gs.id, "metadata": gs.metadata},
                    )
                    return await self._park(gs, event_at)
                row = OrganizationSubscription(
                    id=local_id or uuid.uuid4(),
                    organization_id=org.id,
                    plan_id=plan.id,
                    created_by_user_id=gs.metadata.get("user_id"),
                    quantity=gs.quantity,
                    status=SubscriptionStatus.INCOMPLETE,
                    upstream_subscription_id=gs.id,
                    upstream_customer_id=gs.customer_id,
                )
                self.session.add(row)
                created = True

        applied = self._apply_state(row, gs, event_at)
        if applied:
            row.quantity = max(gs.quantity, 1)
        await self.org_subscription_dao.flush()

        if created:
            await self.audit.log(
                AuditEventType.ORGANIZATION_SUBSCRIPTION_CREATED,
                action="Organization subscription mirrored from gateway",
                target_id=row.id,
                target_type="organization_subscription",
                organization_id=row.organization_id,
                metadata={"upstream_subscription_id": gs.id, "status": row.status.value},
            )
            return CREATED
        return UPDATED if applied else SKIPPED

    # -------------------------------------------------------------------------
    # License batches
    # -------------------------------------------------------------------------

    async def _sync_batch(
        self, gs: GatewaySubscription, event_at: Optional[datetime], create_pending: bool
    ) -> str:
        batch = await self.batch_dao.get_by_upstream_subscription_id(gs.id, for_update=True)
        created = False

        if batch is None:
            local_id = parse_uuid(gs.metadata.get("batch_id"))
            if local_id:
                batch = await self.batch_dao.lock(local_id)
                if batch is None and not create_pending:
                    logger.info(f"License batch for {gs.id} not committed locally yet; skipped")
                    return SKIPPED
                if batch is not None and batch.upstream_subscription_id is None:
                    batch.upstream_subscription_id = gs.id
                    batch.upstream_subscription_item_id = gs.item_id
                    batch.upstream_customer_id = gs.customer_id

            if batch is None:
                batch = await self._create_batch(gs, local_id)
                if batch is None:
                    return await self._park(gs, event_at)
                created = True

        if not batch.is_active:
            return CREATED if created else SKIPPED
        if not created and self._is_stale(batch, event_at):
            logger.info(f"Stale update for license batch {batch.id} ignored")
            return SKIPPED

        if to_local_status(gs.status) == SubscriptionStatus.CANCELLED:
            await self._cancel_batch(batch, event_at)
            return UPDATED

        if gs.current_period_start:
            batch.current_period_start = gs.current_period_start
        if gs.current_period_end:
            batch.current_period_end = gs.current_period_end
        if gs.item_id and not batch.upstream_subscription_item_id:
            batch.upstream_subscription_item_id = gs.item_id
        if not created:
            await self._mirror_quantity(batch, gs.quantity)
        if event_at:
            batch.last_event_at = event_at
        await self.batch_dao.flush()
        return CREATED if created else UPDATED

    async def _create_batch(self, gs: GatewaySubscription, local_id: Optional[uuid.UUID]) -> Optional[LicenseBatch]:
        """Create a batch and its seats for a bulk purchase made elsewhere."""
        plan = await self._resolve_plan(gs.metadata, gs.price_id)
        purchaser = gs.metadata.get("user_id")
        if plan is None or not purchaser:
            return None

        group_id = parse_uuid(gs.metadata.get("group_id"))
        if group_id and await self.group_dao.get_by_id(group_id) is None:
            group_id = None

        quantity = max(gs.quantity, 1)
        now = utcnow()
        batch = LicenseBatch(
            id=local_id or uuid.uuid4(),
            purchaser_user_id=purchaser,
            plan_id=plan.id,
            group_id=group_id,
            total_quantity=quantity,
            assigned_quantity=0,
            status=LicenseBatchStatus.ACTIVE,
            current_period_start=gs.current_period_start or now,
            current_period_end=gs.current_period_end,
            upstream_subscription_id=gs.id,
            upstream_subscription_item_id=gs.item_id,
            upstream_customer_id=gs.customer_id,
        )
        self.session.add(batch)
        await self.batch_dao.flush()
        self.session.add_all(new_license_seats(batch, quantity))
        await self.batch_dao.flush()

        await self.audit.log(
            AuditEventType.BULK_PURCHASE,
            action=f"License batch mirrored from gateway ({quantity} x {plan.name})",
            actor_id=purchaser,
            target_id=batch.id,
            target_type="license_batch",
            metadata={"upstream_subscription_id": gs.id, "quantity": quantity},
        )
        logger.info(f"Created license batch {batch.id} from upstream subscription {gs.id}")
        return batch

    async def _mirror_quantity(self, batch: LicenseBatch, quantity: int) -> None:
        """
        Follow an upstream quantity change.

        NOTE: Only free seats are removed. If the upstream quantity drops
        below the assigned count the batch keeps its assigned seats and the
        mismatch is logged for manual follow-up.
        """
        current = batch.total_quantity
        if quantity < 1 or quantity == current:
            return

        if quantity > current:
            self.session.add_all(new_license_seats(batch, quantity - current))
            batch.total_quantity = quantity
        else:
            surplus = await self.subscription_dao.lock_unassigned_licenses(batch.id, current - quantity)
            await self.subscription_dao.delete_by_ids([seat.id for seat in surplus])
            batch.total_quantity = current - len(surplus)
            if batch.total_quantity != quantity:
                logger.warning(
                    f"Batch {batch.id} cannot shrink to {quantity}: "
                    f"{batch.assigned_quantity} seats are assigned",
                    extra={"batch_id": str(batch.id), "requested": quantity},
                )
        logger.info(f"Batch {batch.id} quantity {current} -> {batch.total_quantity} from gateway")

    async def _cancel_batch(self, batch: LicenseBatch, event_at: Optional[datetime]) -> None:
        """Cancel a locked batch, every seat in it, and the holders' roles."""
        if batch.status == LicenseBatchStatus.CANCELLED:
            return

        seats = await self.subscription_dao.list_licenses(batch.id)
        holders = [seat.user_id for seat in seats if seat.user_id and seat.status in ASSIGNED_LICENSE_STATUSES]
        now = utcnow()
        for seat in seats:
            seat.status = SubscriptionStatus.CANCELLED
            seat.cancelled_at = now

        batch.status = LicenseBatchStatus.CANCELLED
        batch.cancelled_at = now
        batch.assigned_quantity = 0
        if event_at:
            batch.last_event_at = event_at
        await self.batch_dao.flush()

        plan = await self.plan_dao.get_by_id(batch.plan_id)
        for user_id in holders:
            await self.roles.revoke(user_id, plan)

        await self.audit.log(
            AuditEventType.SUBSCRIPTION_CANCELED,
            action=f"License batch cancelled upstream ({len(holders)} holders)",
            actor_id=batch.purchaser_user_id,
            target_id=batch.id,
            target_type="license_batch",
            metadata={"revoked_users": holders},
        )
        logger.info(f"Cancelled license batch {batch.id}", extra={"batch_id": str(batch.id)})

    # =========================================================================
    # Invoice events
    # =========================================================================

    async def _upsert_invoice(
        self,
        invoice: Dict[str, Any],
        status: InvoiceStatus,
        row: Optional[Subscription],
        org_row: Optional[OrganizationSubscription],
        batch: Optional[LicenseBatch],
    ) -> Invoice:
        record = await self.invoice_dao.get_by_upstream_invoice_id(invoice["id"])
        if record is None:
            record = Invoice(upstream_invoice_id=invoice["id"])
            self.session.add(record)

        period_start, period_end = invoice_period(invoice)
        paid_at = (invoice.get("status_transitions") or {}).get("paid_at")

        record.upstream_subscription_id = invoice_subscription_id(invoice)
        record.subscription_id = row.id if row else None
        record.organization_id = org_row.organization_id if org_row else None
        if row and row.user_id:
            record.user_id = row.user_id
        elif batch:
            record.user_id = batch.purchaser_user_id
        record.amount_paid = int(invoice.get("amount_paid") or 0)
        record.amount_due = int(invoice.get("amount_due") or 0)
        record.currency = (invoice.get("currency") or "eur").lower()
        record.status = status
        record.period_start = period_start
        record.period_end = period_end
        record.paid_at = from_unix(paid_at) if paid_at else (utcnow() if status == InvoiceStatus.PAID else None)
        record.hosted_invoice_url = invoice.get("hosted_invoice_url")
        await self.invoice_dao.flush()
        return record

    async def _invoice_targets(self, invoice: Dict[str, Any]):
        upstream_id = invoice_subscription_id(invoice)
        if not upstream_id:
            return None, None, None
        row = await self.subscription_dao.get_by_upstream_subscription_id(upstream_id)
        org_row = await self.org_subscription_dao.get_by_upstream_subscription_id(upstream_id)
        batch = await self.batch_dao.get_by_upstream_subscription_id(upstream_id, for_update=True)
        return row, org_row, batch

    def _accepts_invoice_event(self, row: Union[MirrorRow, LicenseBatch], event: GatewayEvent) -> bool:
        """
        Invoice events carry no subscription state of their own, so an
        older one must not undo a newer status. The invoice itself is
        still recorded.
        """
        if self._is_stale(row, event.created):
            logger.info(
                f"Stale {event.type} for row {row.id} ignored",
                extra={"event_id": event.id, "row_id": str(row.id)},
            )
            return False
        return True

    async def handle_payment_succeeded(self, event: GatewayEvent) -> None:
        """Record the invoice and move payable subscriptions back to active."""
        invoice = event.data
        row, org_row, batch = await self._invoice_targets(invoice)
        record = await self._upsert_invoice(invoice, InvoiceStatus.PAID, row, org_row, batch)
        period_start, period_end = invoice_period(invoice)

        if row is not None and not row.is_terminal and self._accepts_invoice_event(row, event):
            was_entitled = self._entitled_owner(row)
            if row.status in PAYABLE_STATUSES:
                row.status = SubscriptionStatus.ACTIVE
            if period_start and period_end:
                row.current_period_start = period_start
                row.current_period_end = period_end
            row.last_invoice_id = invoice["id"]
            row.last_event_at = event.created
            await self.subscription_dao.flush()
            await self._sync_entitlement(row, was_entitled)

        if (
            org_row is not None
            and org_row.status not in TERMINAL_STATUSES
            and self._accepts_invoice_event(org_row, event)
        ):
            if org_row.status in PAYABLE_STATUSES:
                org_row.status = SubscriptionStatus.ACTIVE
            if period_start and period_end:
                org_row.current_period_start = period_start
                org_row.current_period_end = period_end
            org_row.last_event_at = event.created
            await self.org_subscription_dao.flush()

        if (
            batch is not None
            and batch.is_active
            and period_start
            and period_end
            and self._accepts_invoice_event(batch, event)
        ):
            batch.current_period_start = period_start
            batch.current_period_end = period_end
            batch.last_event_at = event.created
            await self.batch_dao.flush()

        await self.audit.log(
            AuditEventType.PAYMENT_SUCCEEDED,
            action="Payment succeeded",
            actor_id=record.user_id,
            target_id=record.id,
            target_type="invoice",
            organization_id=record.organization_id,
            amount=record.amount_paid,
            currency=record.currency,
            metadata={
                "upstream_invoice_id": invoice["id"],
                "upstream_subscription_id": record.upstream_subscription_id,
            },
        )

    async def handle_payment_failed(self, event: GatewayEvent) -> None:
        """Record the invoice and move active subscriptions to past_due."""
        invoice = event.data
        row, org_row, batch = await self._invoice_targets(invoice)
        try:
            status = InvoiceStatus(invoice.get("status") or InvoiceStatus.OPEN.value)
        except ValueError:
            status = InvoiceStatus.OPEN
        record = await self._upsert_invoice(invoice, status, row, org_row, batch)

        if (
            row is not None
            and row.status == SubscriptionStatus.ACTIVE
            and self._accepts_invoice_event(row, event)
        ):
            row.status = SubscriptionStatus.PAST_DUE
            row.last_invoice_id = invoice["id"]
            row.last_event_at = event.created
            await self.subscription_dao.flush()
        if (
            org_row is not None
            and org_row.status == SubscriptionStatus.ACTIVE
            and self._accepts_invoice_event(org_row, event)
        ):
            org_row.status = SubscriptionStatus.PAST_DUE
            org_row.last_event_at = event.created
            await self.org_subscription_dao.flush()

        await self.audit.log(
            AuditEventType.PAYMENT_FAILED,
            action="Payment failed",
            actor_id=record.user_id,
            target_id=record.id,
            target_type="invoice",
            organization_id=record.organization_id,
            amount=record.amount_due,
            currency=record.currency,
            metadata={
                "upstream_invoice_id": invoice["id"],
                "upstream_subscription_id": record.upstream_subscription_id,
                "attempt_count": invoice.get("attempt_count"),
            },
        )

    # =========================================================================
    # Checkout
    # =========================================================================

    async def handle_checkout_completed(self, event: GatewayEvent) -> None:
        """
        Link a completed checkout session to its subscription row.

        WHY: Checkout carries the owner and plan in session metadata; the
        subscription events may not. Bulk and organization checkouts are
        linked through their subscription events instead.
        """
        checkout = GatewayCheckoutSession.from_payload(event.data)
        if not checkout.subscription_id:
            logger.info(f"Checkout session {checkout.id} has no subscription; ignored")
            return
        if is_bulk_purchase(checkout.metadata) or checkout.metadata.get("organization_id"):
            return
        await self.link_checkout_session(checkout)

    async def link_checkout_session(self, checkout: GatewayCheckoutSession) -> Subscription:
        """
        Apply session metadata (user_id, plan_id) to the personal row.

        Returns:
            The linked row (a new parked/incomplete row when none existed)
        """
        user_id = checkout.metadata.get("user_id") or checkout.client_reference_id
        plan = await self._resolve_plan(checkout.metadata)

        row = await self.subscription_dao.get_by_upstream_subscription_id(checkout.subscription_id)
        if row is None:
            row = Subscription(
                user_id=user_id,
                plan_id=plan.id if plan else None,
                subscription_type=SubscriptionType.PERSONAL,
                status=SubscriptionStatus.INCOMPLETE,
                upstream_subscription_id=checkout.subscription_id,
                upstream_customer_id=checkout.customer_id,
                checkout_session_id=checkout.id,
            )
            self.session.add(row)
            await self.subscription_dao.flush()
            logger.info(
                f"Remembered checkout session {checkout.id} for upstream subscription "
                f"{checkout.subscription_id}"
            )
            return row

        was_entitled = self._entitled_owner(row)
        if row.checkout_session_id is None:
            holder = await self.subscription_dao.get_by_checkout_session_id(checkout.id)
            if holder is None:
                row.checkout_session_id = checkout.id
            elif holder.id != row.id:
                logger.warning(f"Checkout session {checkout.id} already linked to {holder.id}")
        if row.user_id is None and user_id:
            row.user_id = user_id
        if row.plan_id is None and plan is not None:
            row.plan_id = plan.id
        await self.subscription_dao.flush()
        await self._sync_entitlement(row, was_entitled)
        return row
