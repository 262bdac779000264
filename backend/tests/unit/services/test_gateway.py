"""
Payment Gateway Adapter Tests.

WHAT: Unit tests for the Stripe adapter's parsing, status mapping,
webhook verification and error classification.

WHY: Engines only ever see what this adapter returns. If a payload shape
or an error class is misread here, every engine downstream acts on it.

HOW: Payloads are plain dicts; SDK calls are patched so nothing leaves
the process.
"""

import json
import time
from unittest.mock import MagicMock, patch

import pytest
import stripe

from billing_core.core.exceptions import GatewayError, InvalidSignatureError
from billing_core.models.subscription import SubscriptionStatus
from billing_core.services.gateway import (
    GatewayCheckoutSession,
    GatewaySubscription,
    StripeGateway,
    from_unix,
    to_local_status,
)
from tests.factories import WebhookEventFactory


class TestStatusMapping:
    """Tests for gateway -> local status mapping."""

    @pytest.mark.parametrize(
        "gateway_status,expected",
        [
            ("active", SubscriptionStatus.ACTIVE),
            ("trialing", SubscriptionStatus.TRIALING),
            ("past_due", SubscriptionStatus.PAST_DUE),
            ("unpaid", SubscriptionStatus.UNPAID),
            ("incomplete", SubscriptionStatus.INCOMPLETE),
            ("canceled", SubscriptionStatus.CANCELLED),
            ("incomplete_expired", SubscriptionStatus.CANCELLED),
        ],
    )
    def test_known_statuses(self, gateway_status, expected):
        assert to_local_status(gateway_status) == expected

    def test_unknown_status_reads_as_incomplete(self):
        """
        Test that an unrecognised status never grants access.

        WHY: Incomplete is not entitled, so a new upstream status cannot
        silently unlock features.
        """
        assert to_local_status("some_future_status") == SubscriptionStatus.INCOMPLETE
        assert to_local_status(None) == SubscriptionStatus.INCOMPLETE


class TestGatewaySubscriptionFromPayload:
    """Tests for normalizing subscription payloads."""

    def test_reads_item_quantity_price_and_metadata(self):
        payload = WebhookEventFactory.subscription(
            subscription_id="sub_1",
            status="active",
            metadata={"user_id": "user-1"},
            quantity=7,
            price_id="price_abc",
            period_start=1700000000,
            period_end=1702592000,
        )

        gs = GatewaySubscription.from_payload(payload)

        assert gs.id == "sub_1"
        assert gs.quantity == 7
        assert gs.item_id == "si_test"
        assert gs.price_id == "price_abc"
        assert gs.customer_id == "cus_test"
        assert gs.metadata == {"user_id": "user-1"}
        assert gs.current_period_start == from_unix(1700000000)
        assert gs.current_period_end == from_unix(1702592000)

    def test_period_falls_back_to_item(self):
        """
        Test item-level periods.

        WHY: Newer API versions only report the period on subscription items.
        """
        payload = {
            "id": "sub_2",
            "status": "active",
            "items": {
                "data": [
                    {
                        "id": "si_2",
                        "quantity": 1,
                        "price": "price_2",
                        "current_period_start": 1700000000,
                        "current_period_end": 1702592000,
                    }
                ]
            },
        }

        gs = GatewaySubscription.from_payload(payload)

        assert gs.current_period_end == from_unix(1702592000)
        assert gs.price_id == "price_2"

    def test_expanded_customer_object(self):
        payload = {"id": "sub_3", "status": "trialing", "customer": {"id": "cus_9", "object": "customer"}}

        gs = GatewaySubscription.from_payload(payload)

        assert gs.customer_id == "cus_9"
        assert gs.quantity == 1
        assert gs.metadata == {}

    def test_checkout_session_from_payload(self):
        checkout = GatewayCheckoutSession.from_payload(
            {
                "id": "cs_1",
                "subscription": {"id": "sub_1"},
                "customer": "cus_1",
                "client_reference_id": "user-1",
                "metadata": {"plan_id": "abc"},
            }
        )

        assert checkout.subscription_id == "sub_1"
        assert checkout.client_reference_id == "user-1"
        assert checkout.metadata["plan_id"] == "abc"


class TestVerifyWebhookSignature:
    """Tests for webhook signature verification."""

    def test_valid_signature_parses_event(self):
        event = WebhookEventFactory.event("invoice.payment_succeeded", {"id": "in_1"}, event_id="evt_1")
        body, headers = WebhookEventFactory.delivery(event)

        parsed = StripeGateway().verify_webhook_signature(body.encode(), headers["Stripe-Signature"])

        assert parsed.id == "evt_1"
        assert parsed.type == "invoice.payment_succeeded"
        assert parsed.data == {"id": "in_1"}
        assert parsed.raw["id"] == "evt_1"

    def test_wrong_secret_rejected(self):
        event = WebhookEventFactory.event("invoice.payment_succeeded", {"id": "in_1"})
        body, headers = WebhookEventFactory.delivery(event, secret="whsec_other")

        with pytest.raises(InvalidSignatureError):
            StripeGateway().verify_webhook_signature(body.encode(), headers["Stripe-Signature"])

    def test_tampered_body_rejected(self):
        event = WebhookEventFactory.event("invoice.payment_succeeded", {"id": "in_1"})
        body, headers = WebhookEventFactory.delivery(event)
        tampered = body.replace("in_1", "in_2")

        with pytest.raises(InvalidSignatureError):
            StripeGateway().verify_webhook_signature(tampered.encode(), headers["Stripe-Signature"])

    def test_envelope_without_data_rejected(self):
        body = json.dumps({"id": "evt_1", "type": "x", "created": int(time.time())})
        signature = WebhookEventFactory.sign(body)

        with pytest.raises(InvalidSignatureError):
            StripeGateway().verify_webhook_signature(body.encode(), signature)


@pytest.mark.asyncio
class TestErrorClassification:
    """Tests for SDK error -> GatewayError mapping."""

    async def test_connection_error_is_retryable(self):
        gateway = StripeGateway(timeout=5)
        failing = MagicMock(side_effect=stripe.APIConnectionError("connection reset"))

        with pytest.raises(GatewayError) as exc_info:
            await gateway._call("subscription_create", failing)

        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 502

    async def test_server_error_is_retryable(self):
        gateway = StripeGateway(timeout=5)
        failing = MagicMock(side_effect=stripe.APIError("upstream down", http_status=503))

        with pytest.raises(GatewayError) as exc_info:
            await gateway._call("subscription_create", failing)

        assert exc_info.value.retryable is True

    async def test_client_error_is_fatal(self):
        """
        Test that a 4xx is not retried.

        WHY: Repeating a rejected request cannot succeed.
        """
        gateway = StripeGateway(timeout=5)
        failing = MagicMock(
            side_effect=stripe.InvalidRequestError("No such price", "price", http_status=400)
        )

        with pytest.raises(GatewayError) as exc_info:
            await gateway._call("subscription_create", failing)

        assert exc_info.value.retryable is False

    async def test_timeout_is_retryable(self):
        gateway = StripeGateway(timeout=0.05)

        with pytest.raises(GatewayError) as exc_info:
            await gateway._call("customer_create", time.sleep, 0.5)

        assert exc_info.value.retryable is True

    async def test_create_customer_reuses_existing(self):
        """
        Test that customer creation is idempotent per user.

        WHY: A retried purchase must not create a second customer.
        """
        gateway = StripeGateway(timeout=5)

        with patch.object(stripe.Customer, "search", return_value={"data": [{"id": "cus_existing"}]}), patch.object(
            stripe.Customer, "create"
        ) as create:
            customer_id = await gateway.create_customer("user-1", "user-1@example.com")

        assert customer_id == "cus_existing"
        create.assert_not_called()

    async def test_create_subscription_sends_incomplete_behavior(self):
        gateway = StripeGateway(timeout=5)
        response = WebhookEventFactory.subscription(subscription_id="sub_new", status="incomplete")

        with patch.object(stripe.Subscription, "create", return_value=response) as create:
            gs = await gateway.create_subscription(
                price_id="price_1",
                customer_id="cus_1",
                quantity=3,
                metadata={"user_id": "user-1", "group_id": None},
                idempotency_key="batch-1",
            )

        kwargs = create.call_args.kwargs
        assert kwargs["payment_behavior"] == "default_incomplete"
        assert kwargs["items"] == [{"price": "price_1", "quantity": 3}]
        assert kwargs["metadata"] == {"user_id": "user-1"}
        assert kwargs["idempotency_key"] == "batch-1"
        assert gs.id == "sub_new"
