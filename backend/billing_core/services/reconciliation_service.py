"""
Subscription reconciliation (backfill) jobs.

WHAT: Admin-triggered sweeps that repair local mirrors from the gateway.

WHY: Webhooks can be missed (endpoint down longer than the retry window,
events that arrived before their creating request committed, subscriptions
created by hand in the gateway dashboard). These jobs re-read the gateway
and run the same merge step the webhook reconciler uses.

HOW: Each item runs in its own transaction (committed, or rolled back on
failure); a failing item is recorded in `failed` with its reason and never
halts the sweep. Counters always add up:
processed = created + updated + skipped + len(failed).
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.core.exceptions import AppException, ValidationError
from billing_core.dao.subscription import SubscriptionDAO
from billing_core.models.audit_log import AuditEventType
from billing_core.models.base import utcnow
from billing_core.models.subscription import Subscription
from billing_core.services.audit import AuditService
from billing_core.services.directory import DirectoryClient
from billing_core.services.gateway import GatewayCheckoutSession, GatewaySubscription, StripeGateway
from billing_core.services.webhook_reconciler import (
    CREATED,
    SKIPPED,
    UPDATED,
    WebhookReconciler,
    is_bulk_purchase,
)

logger = logging.getLogger(__name__)


def has_owner_metadata(metadata: Dict[str, Any]) -> bool:
    """Whether an upstream subscription names a local owner."""
    return bool(metadata.get("user_id") or metadata.get("organization_id") or is_bulk_purchase(metadata))


class ReconcileMode(str, enum.Enum):
    ALL = "all"
    USER = "user"
    MISSING_METADATA = "missing_metadata"


@dataclass
class ReconciliationResult:
    """Outcome counters of one sweep."""

    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: List[Dict[str, Any]] = field(default_factory=list)

    def count(self, outcome: str) -> None:
        self.processed += 1
        if outcome == CREATED:
            self.created += 1
        elif outcome == UPDATED:
            self.updated += 1
        else:
            self.skipped += 1

    def skip(self, item_id: str, reason: str) -> None:
        self.processed += 1
        self.skipped += 1
        logger.info(f"Reconciliation skipped {item_id}: {reason}")

    def fail(self, item_id: str, reason: str) -> None:
        self.processed += 1
        self.failed.append({"id": item_id, "reason": reason})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": list(self.failed),
        }


class ReconciliationService:
    """
    Backfill sweeps over upstream subscriptions.

    Example:
        service = ReconciliationService(db, gateway, directory)
        result = await service.run(ReconcileMode.ALL, actor=admin)
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: StripeGateway,
        directory: DirectoryClient,
    ):
        self.session = session
        self.gateway = gateway
        self.reconciler = WebhookReconciler(session, gateway, directory)
        self.subscription_dao = SubscriptionDAO(session)
        self.audit = AuditService(session)

    async def run(
        self,
        mode: ReconcileMode,
        actor_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Run one sweep and audit its counters.

        Raises:
            ValidationError: mode=user without a user id
            GatewayError: The upstream list call failed (nothing processed)
        """
        if mode == ReconcileMode.USER and not user_id:
            raise ValidationError(message="user_id is required for mode=user")

        if mode == ReconcileMode.ALL:
            result = await self.sync_existing_subscriptions()
        elif mode == ReconcileMode.USER:
            result = await self.sync_user_subscriptions(user_id)
        else:
            result = await self.sync_subscriptions_with_missing_metadata()

        await self.audit.log(
            AuditEventType.RECONCILIATION_RUN,
            action=f"Reconciliation ({mode.value})",
            actor_id=actor_id,
            target_id=user_id,
            target_type="user" if user_id else None,
            metadata={"mode": mode.value, **result.to_dict()},
        )
        logger.info(
            f"Reconciliation {mode.value}: processed={result.processed} created={result.created} "
            f"updated={result.updated} skipped={result.skipped} failed={len(result.failed)}"
        )
        return result

    # =========================================================================
    # Sweeps
    # =========================================================================

    async def _settle(
        self,
        item_id: str,
        outcome: Optional[str],
        error: Optional[AppException],
        result: ReconciliationResult,
    ) -> None:
        """
        End one item's transaction.

        WHY: Each item commits on its own, so a failure (including a broken
        flush) rolls back only that item.
        """
        if error is not None:
            await self.session.rollback()
            logger.error(
                f"Reconciliation failed for {item_id}: {error.message}",
                extra={"item_id": item_id},
            )
            result.fail(item_id, error.message)
            return
        await self.session.commit()
        result.count(outcome)

    async def _sync_listed(self, subscriptions: List[GatewaySubscription]) -> ReconciliationResult:
        result = ReconciliationResult()
        for gs in subscriptions:
            if not has_owner_metadata(gs.metadata):
                result.skip(gs.id, "missing metadata")
                continue
            outcome, error = None, None
            try:
                outcome = await self.reconciler.apply_subscription(gs, utcnow(), create_pending=True)
            except AppException as e:
                error = e
            await self._settle(gs.id, outcome, error, result)
        return result

    async def sync_existing_subscriptions(self) -> ReconciliationResult:
        """Every upstream subscription; missing metadata is skipped."""
        return await self._sync_listed(await self.gateway.list_subscriptions())

    async def sync_user_subscriptions(self, user_id: str) -> ReconciliationResult:
        """Upstream subscriptions whose metadata user_id matches."""
        subscriptions = await self.gateway.list_subscriptions()
        return await self._sync_listed([gs for gs in subscriptions if gs.metadata.get("user_id") == user_id])

    async def sync_subscriptions_with_missing_metadata(self) -> ReconciliationResult:
        """
        Recover owner and plan for parked rows from their checkout session.

        HOW:
        1. Use the stored checkout_session_id, else look the session up by
           upstream subscription id
        2. Apply the session metadata locally
        3. Write user_id / plan_id back to the upstream subscription so
           later events carry them
        """
        result = ReconciliationResult()
        # WHY: A rollback expires loaded rows; each item is reloaded by id
        pending = [(row.id, row.upstream_subscription_id) for row in await self.subscription_dao.list_missing_plan()]

        for row_id, upstream_id in pending:
            outcome, error = None, None
            try:
                row = await self.subscription_dao.get_by_id(row_id)
                outcome = await self._recover(row) if row is not None else SKIPPED
            except AppException as e:
                error = e
            if error is None and outcome is None:
                await self.session.rollback()
                result.fail(upstream_id, "no checkout session found")
                continue
            await self._settle(upstream_id, outcome, error, result)
        return result

    async def _recover(self, row: Subscription) -> Optional[str]:
        checkout: Optional[GatewayCheckoutSession] = None
        if row.checkout_session_id:
            checkout = await self.gateway.fetch_checkout_session(row.checkout_session_id)
        else:
            checkout = await self.gateway.find_checkout_session_for_subscription(
                row.upstream_subscription_id
            )
        if checkout is None:
            return None
        if checkout.subscription_id is None:
            checkout.subscription_id = row.upstream_subscription_id

        linked = await self.reconciler.link_checkout_session(checkout)
        if linked.plan_id is None:
            return SKIPPED

        metadata = {"plan_id": str(linked.plan_id), "subscription_id": str(linked.id)}
        if linked.user_id:
            metadata["user_id"] = linked.user_id
        await self.gateway.update_subscription_metadata(row.upstream_subscription_id, metadata)
        return UPDATED
