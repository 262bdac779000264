"""
Gateway webhook and reconciliation endpoints.

WHAT: Intake for payment gateway events and the admin backfill job.

WHY: Webhooks are the source of truth for upstream subscription state.
Every delivery is screened before the body is trusted:
1. Size limit (413)
2. JSON content type (400)
3. Gateway user agent (403)
4. Signature (401)
5. Event age (400)

Duplicates are acknowledged with 200 so the gateway stops redelivering.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.core.auth import Principal
from billing_core.core.config import settings
from billing_core.core.deps import require_admin
from billing_core.core.exceptions import (
    PayloadTooLargeError,
    ValidationError,
    WebhookSourceRejectedError,
)
from billing_core.dao.webhook_event import DuplicateEventError
from billing_core.db.session import get_db
from billing_core.schemas.webhook import ReconcileRequest, ReconcileResponse, WebhookResponse
from billing_core.services.directory import DirectoryClient, get_directory_client
from billing_core.services.gateway import StripeGateway, get_gateway
from billing_core.services.reconciliation_service import ReconciliationService
from billing_core.services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

webhooks_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
reconcile_router = APIRouter(prefix="/reconcile", tags=["webhooks"])


@webhooks_router.post(
    "/gateway",
    response_model=WebhookResponse,
    summary="Payment gateway webhook",
)
async def gateway_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    directory: DirectoryClient = Depends(get_directory_client),
    content_type: Optional[str] = Header(None),
    user_agent: Optional[str] = Header(None),
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
) -> WebhookResponse:
    """
    Handle one gateway event.

    Raises:
        PayloadTooLargeError (413): Body exceeds WEBHOOK_MAX_PAYLOAD_BYTES
        ValidationError (400): Not JSON, missing signature or stale event
        WebhookSourceRejectedError (403): User agent is not the gateway's
        InvalidSignatureError (401): Signature verification failed
    """
    payload = await request.body()

    if len(payload) > settings.WEBHOOK_MAX_PAYLOAD_BYTES:
        logger.warning(f"Webhook rejected: payload of {len(payload)} bytes")
        raise PayloadTooLargeError(size=len(payload), limit=settings.WEBHOOK_MAX_PAYLOAD_BYTES)

    if not content_type or "application/json" not in content_type.lower():
        logger.warning(f"Webhook rejected: content type {content_type!r}")
        raise ValidationError(message="Webhook content type must be application/json")

    if not user_agent or settings.GATEWAY_USER_AGENT_MARKER not in user_agent:
        logger.warning(f"Webhook rejected: user agent {user_agent!r}")
        raise WebhookSourceRejectedError()

    if not stripe_signature:
        logger.warning("Webhook received without Stripe-Signature header")
        raise ValidationError(message="Missing Stripe-Signature header")

    event = gateway.verify_webhook_signature(payload, stripe_signature)

    reconciler = WebhookReconciler(db, gateway, directory)
    reconciler.check_event_age(event)

    try:
        result = await reconciler.process_event(event)
    except DuplicateEventError:
        # Lost the dedup race to a concurrent delivery
        await db.rollback()
        logger.info(
            f"Duplicate webhook event {event.id} (concurrent delivery)",
            extra={"event_id": event.id, "event_type": event.type},
        )
        return WebhookResponse(received=True, duplicate=True, event_type=event.type)

    return WebhookResponse(**result)


@reconcile_router.post(
    "/subscriptions",
    response_model=ReconcileResponse,
    summary="Reconcile subscriptions with the gateway",
    description="Admin backfill; mode is all, user or missing_metadata.",
)
async def reconcile_subscriptions(
    data: ReconcileRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    directory: DirectoryClient = Depends(get_directory_client),
) -> ReconcileResponse:
    result = await ReconciliationService(db, gateway, directory).run(
        data.mode,
        actor_id=admin.user_id,
        user_id=data.user_id,
    )
    return ReconcileResponse(**result.to_dict())
