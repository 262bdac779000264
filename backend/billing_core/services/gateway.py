"""
Payment gateway adapter (Stripe).

WHAT: The only module that talks to the Stripe SDK. Engines see plain
dataclasses (GatewaySubscription, GatewayEvent, GatewayCheckoutSession)
and typed errors.

WHY: Keeping the SDK behind one adapter gives us:
1. A single place for timeouts and error classification
2. Engines that can be tested with an AsyncMock gateway
3. Webhook payloads parsed the same way as API responses

HOW:
- Every SDK call runs in a worker thread under asyncio.wait_for, so a
  request deadline aborts the wait instead of blocking the event loop.
- Transport errors, rate limits, timeouts and 5xx responses raise
  GatewayError(retryable=True); other Stripe errors are fatal.
- The adapter never retries; callers (or the gateway's own webhook
  redelivery) decide.
- Calls that create objects accept an idempotency key so a retried
  request does not create a second customer or subscription.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import stripe

from billing_core.core.config import settings
from billing_core.core.exceptions import GatewayError, InvalidSignatureError
from billing_core.models.subscription import SubscriptionStatus

logger = logging.getLogger(__name__)


# ============================================================================
# Stripe Configuration
# ============================================================================


def configure_stripe() -> None:
    """
    Configure Stripe SDK with API key from settings.

    WHY: Must be called before any Stripe API operations.
    """
    stripe.api_key = settings.STRIPE_SECRET_KEY
    stripe.api_version = settings.STRIPE_API_VERSION


configure_stripe()


def from_unix(value: Optional[int]) -> Optional[datetime]:
    """Convert a gateway UNIX timestamp to a naive UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


# Gateway subscription status -> local status
GATEWAY_STATUS_MAP = {
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "paused": SubscriptionStatus.UNPAID,
    "canceled": SubscriptionStatus.CANCELLED,
}


def to_local_status(gateway_status: Optional[str]) -> SubscriptionStatus:
    """Map a gateway status string; unknown values read as incomplete."""
    return GATEWAY_STATUS_MAP.get(gateway_status or "", SubscriptionStatus.INCOMPLETE)


# ============================================================================
# Data Classes
# ============================================================================


@dataclass
class GatewaySubscription:
    """
    Upstream subscription as seen by the engines.

    WHY: API responses (StripeObject) and webhook payloads (plain dicts)
    are normalized through from_payload so handlers share one shape.
    """

    id: str
    status: str
    customer_id: Optional[str] = None
    quantity: int = 1
    item_id: Optional[str] = None
    price_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    created: Optional[datetime] = None

    @classmethod
    def from_payload(cls, obj: Dict[str, Any]) -> "GatewaySubscription":
        items = (obj.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price = first_item.get("price") or {}

        # WHY: Newer API versions moved the period onto subscription items
        period_start = obj.get("current_period_start") or first_item.get("current_period_start")
        period_end = obj.get("current_period_end") or first_item.get("current_period_end")

        customer = obj.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")

        return cls(
            id=obj["id"],
            status=obj.get("status") or "incomplete",
            customer_id=customer,
            quantity=int(first_item.get("quantity") or obj.get("quantity") or 1),
            item_id=first_item.get("id"),
            price_id=price.get("id") if isinstance(price, dict) else price,
            current_period_start=from_unix(period_start),
            current_period_end=from_unix(period_end),
            trial_end=from_unix(obj.get("trial_end")),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            canceled_at=from_unix(obj.get("canceled_at")),
            metadata=dict(obj.get("metadata") or {}),
            created=from_unix(obj.get("created")),
        )


@dataclass
class GatewayCheckoutSession:
    """Checkout session fields used for metadata recovery."""

    id: str
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    client_reference_id: Optional[str] = None
    status: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, obj: Dict[str, Any]) -> "GatewayCheckoutSession":
        subscription = obj.get("subscription")
        if isinstance(subscription, dict):
            subscription = subscription.get("id")
        customer = obj.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")
        return cls(
            id=obj["id"],
            subscription_id=subscription,
            customer_id=customer,
            client_reference_id=obj.get("client_reference_id"),
            status=obj.get("status"),
            metadata=dict(obj.get("metadata") or {}),
        )


@dataclass
class GatewayEvent:
    """Verified webhook event."""

    id: str
    type: str
    data: Dict[str, Any]
    created: datetime
    raw: Dict[str, Any] = field(default_factory=dict)


# ============================================================================
# Gateway
# ============================================================================


class StripeGateway:
    """
    Stripe implementation of the payment gateway.

    Example:
        gateway = get_gateway()
        customer_id = await gateway.create_customer(user_id, email, name)
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout or settings.GATEWAY_TIMEOUT_SECONDS

    async def _call(self, operation: str, fn: Callable, *args: Any, **kwargs: Any) -> Any:
        """
        Run one blocking SDK call with a deadline and classify failures.

        Raises:
            GatewayError: retryable for timeouts, transport, rate limit, 5xx
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Stripe {operation} timed out after {self.timeout}s")
            raise GatewayError(
                message="Payment gateway timed out",
                retryable=True,
                operation=operation,
            )
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.error(f"Stripe {operation} transient failure: {e}")
            raise GatewayError(
                message="Payment gateway temporarily unavailable",
                retryable=True,
                operation=operation,
                stripe_error=str(e),
            )
        except stripe.StripeError as e:
            http_status = getattr(e, "http_status", None)
            retryable = http_status is not None and http_status >= 500
            logger.error(
                f"Stripe {operation} failed: {e}",
                extra={"http_status": http_status, "retryable": retryable},
            )
            raise GatewayError(
                message=f"Payment gateway rejected {operation}",
                retryable=retryable,
                operation=operation,
                http_status=http_status,
                stripe_error=str(e),
            )

    # ========================================================================
    # Customers
    # ========================================================================

    async def create_customer(
        self,
        user_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> str:
        """
        Get or create the gateway customer for a user.

        WHY: Idempotent by user_id. An existing customer tagged with the
        user id is reused; creation carries an idempotency key so a retried
        request cannot create a duplicate.

        Returns:
            Gateway customer id (cus_xxx)
        """
        existing = await self._call(
            "customer_search",
            stripe.Customer.search,
            query=f"metadata['user_id']:'{user_id}'",
            limit=1,
        )
        if existing and existing.get("data"):
            return existing["data"][0]["id"]

        params: Dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            params["email"] = email
        if name:
            params["name"] = name

        customer = await self._call(
            "customer_create",
            stripe.Customer.create,
            idempotency_key=f"customer-{user_id}",
            **params,
        )
        logger.info(
            f"Created Stripe customer {customer['id']} for user {user_id}",
            extra={"customer_id": customer["id"], "user_id": user_id},
        )
        return customer["id"]

    # ========================================================================
    # Subscriptions
    # ========================================================================

    async def create_subscription(
        self,
        price_id: str,
        customer_id: str,
        quantity: int,
        metadata: Dict[str, str],
        trial_days: int = 0,
        idempotency_key: Optional[str] = None,
    ) -> GatewaySubscription:
        """
        Create an upstream subscription in the incomplete state.

        HOW: payment_behavior=default_incomplete leaves the first invoice
        open; invoice.payment_succeeded later activates it.
        """
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id, "quantity": quantity}],
            "metadata": {k: str(v) for k, v in metadata.items() if v is not None},
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
        }
        if trial_days:
            params["trial_period_days"] = trial_days
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        subscription = await self._call("subscription_create", stripe.Subscription.create, **params)
        logger.info(
            f"Created Stripe subscription {subscription['id']} (quantity={quantity})",
            extra={"subscription_id": subscription["id"], "customer_id": customer_id},
        )
        return GatewaySubscription.from_payload(subscription)

    async def get_subscription(self, subscription_id: str) -> GatewaySubscription:
        subscription = await self._call(
            "subscription_retrieve", stripe.Subscription.retrieve, subscription_id
        )
        return GatewaySubscription.from_payload(subscription)

    async def _first_item_id(self, subscription_id: str) -> str:
        subscription = await self.get_subscription(subscription_id)
        if not subscription.item_id:
            raise GatewayError(
                message="Upstream subscription has no items",
                subscription_id=subscription_id,
            )
        return subscription.item_id

    async def update_subscription_quantity(
        self,
        subscription_id: str,
        new_quantity: int,
        item_id: Optional[str] = None,
    ) -> GatewaySubscription:
        """Change the seat count of an upstream subscription."""
        item_id = item_id or await self._first_item_id(subscription_id)
        subscription = await self._call(
            "subscription_update_quantity",
            stripe.Subscription.modify,
            subscription_id,
            items=[{"id": item_id, "quantity": new_quantity}],
            proration_behavior="create_prorations",
        )
        return GatewaySubscription.from_payload(subscription)

    async def update_subscription_price(
        self,
        subscription_id: str,
        new_price_id: str,
        proration_behavior: str = "create_prorations",
        item_id: Optional[str] = None,
    ) -> GatewaySubscription:
        """Switch an upstream subscription to another price (plan upgrade)."""
        item_id = item_id or await self._first_item_id(subscription_id)
        subscription = await self._call(
            "subscription_update_price",
            stripe.Subscription.modify,
            subscription_id,
            items=[{"id": item_id, "price": new_price_id}],
            proration_behavior=proration_behavior,
        )
        return GatewaySubscription.from_payload(subscription)

    async def update_subscription_metadata(
        self, subscription_id: str, metadata: Dict[str, str]
    ) -> None:
        """Write recovered metadata back to the upstream subscription."""
        await self._call(
            "subscription_update_metadata",
            stripe.Subscription.modify,
            subscription_id,
            metadata={k: str(v) for k, v in metadata.items() if v is not None},
        )

    async def cancel_subscription(
        self, subscription_id: str, cancel_at_period_end: bool
    ) -> GatewaySubscription:
        """
        Cancel an upstream subscription.

        Args:
            cancel_at_period_end: Keep access until the period ends instead
                of cancelling now
        """
        if cancel_at_period_end:
            subscription = await self._call(
                "subscription_cancel_at_period_end",
                stripe.Subscription.modify,
                subscription_id,
                cancel_at_period_end=True,
            )
        else:
            subscription = await self._call(
                "subscription_cancel", stripe.Subscription.cancel, subscription_id
            )
        logger.info(
            f"Cancelled Stripe subscription {subscription_id} "
            f"({'at period end' if cancel_at_period_end else 'immediately'})"
        )
        return GatewaySubscription.from_payload(subscription)

    async def list_subscriptions(
        self, customer_id: Optional[str] = None
    ) -> List[GatewaySubscription]:
        """
        Every upstream subscription (all statuses), following pagination.
        """
        params: Dict[str, Any] = {"status": "all", "limit": 100}
        if customer_id:
            params["customer"] = customer_id

        def _collect() -> List[Dict[str, Any]]:
            return list(stripe.Subscription.list(**params).auto_paging_iter())

        raw = await self._call("subscription_list", _collect)
        return [GatewaySubscription.from_payload(item) for item in raw]

    # ========================================================================
    # Checkout sessions
    # ========================================================================

    async def fetch_checkout_session(self, session_id: str) -> GatewayCheckoutSession:
        session = await self._call(
            "checkout_session_retrieve", stripe.checkout.Session.retrieve, session_id
        )
        return GatewayCheckoutSession.from_payload(session)

    async def find_checkout_session_for_subscription(
        self, subscription_id: str
    ) -> Optional[GatewayCheckoutSession]:
        """
        Find the checkout session that created an upstream subscription.

        Returns:
            The session, or None if the subscription was not created
            through checkout
        """
        sessions = await self._call(
            "checkout_session_list",
            stripe.checkout.Session.list,
            subscription=subscription_id,
            limit=1,
        )
        data = sessions.get("data") if sessions else None
        if not data:
            return None
        return GatewayCheckoutSession.from_payload(data[0])

    # ========================================================================
    # Plans
    # ========================================================================

    async def create_plan_price(
        self,
        name: str,
        description: Optional[str],
        unit_price: int,
        currency: str,
        interval: str,
        tiers: Optional[List[Dict[str, int]]] = None,
        plan_id: Optional[str] = None,
    ) -> Tuple[str, str]:
        """
        Create a product and recurring price for a plan.

        HOW: Tiered plans map to a graduated price, which charges each
        tier's units at that tier's rate (same walk as PricingService).

        Returns:
            (product_id, price_id)
        """
        product_params: Dict[str, Any] = {"name": name, "metadata": {"plan_id": plan_id or ""}}
        if description:
            product_params["description"] = description
        product = await self._call("product_create", stripe.Product.create, **product_params)

        price_params: Dict[str, Any] = {
            "product": product["id"],
            "currency": currency,
            "recurring": {"interval": interval},
            "metadata": {"plan_id": plan_id or ""},
        }
        if tiers:
            price_params["billing_scheme"] = "tiered"
            price_params["tiers_mode"] = "graduated"
            price_params["tiers"] = [
                {
                    "up_to": tier["max_quantity"] if tier["max_quantity"] else "inf",
                    "unit_amount": tier["unit_price"],
                }
                for tier in tiers
            ]
        else:
            price_params["unit_amount"] = unit_price

        price = await self._call("price_create", stripe.Price.create, **price_params)
        logger.info(f"Created Stripe product {product['id']} / price {price['id']} for {name}")
        return product["id"], price["id"]

    # ========================================================================
    # Webhook Handling
    # ========================================================================

    def verify_webhook_signature(
        self,
        payload: bytes,
        signature: str,
        webhook_secret: Optional[str] = None,
    ) -> GatewayEvent:
        """
        Verify a webhook signature and parse the event.

        HOW: HMAC-SHA256 verification of the Stripe-Signature header over
        the raw body; the body is then parsed as plain JSON so handlers
        receive dicts.

        Raises:
            InvalidSignatureError: If the signature or payload is invalid
        """
        secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(text, signature, secret)
            body = json.loads(text)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise InvalidSignatureError()
        except (UnicodeDecodeError, ValueError) as e:
            logger.warning(f"Webhook payload is not valid JSON: {e}")
            raise InvalidSignatureError(message="Invalid webhook payload")

        try:
            event = GatewayEvent(
                id=body["id"],
                type=body["type"],
                data=body["data"]["object"],
                created=from_unix(body["created"]),
                raw=body,
            )
        except (KeyError, TypeError) as e:
            logger.warning(f"Webhook envelope missing field: {e}")
            raise InvalidSignatureError(message="Invalid webhook payload")

        logger.info(
            f"Verified webhook event {event.id} type {event.type}",
            extra={"event_id": event.id, "event_type": event.type},
        )
        return event


# ============================================================================
# Module-level convenience functions
# ============================================================================


_gateway: Optional[StripeGateway] = None


def get_gateway() -> StripeGateway:
    """
    Get or create the global gateway instance.

    WHY: Also used as a FastAPI dependency so tests can override it.
    """
    global _gateway

    if _gateway is None:
        _gateway = StripeGateway()

    return _gateway
