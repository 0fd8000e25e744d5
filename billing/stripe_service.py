import json
import logging
from typing import Optional

import stripe

from billing.errors import GatewayError, SignatureError

logger = logging.getLogger(__name__)


class StripeGateway:
    """
    Thin wrapper over the Stripe SDK.

    Each gateway owns its StripeClient; every call runs with a bounded network
    timeout and no automatic retries.
    Any Stripe failure, timeouts included, comes back as GatewayError: the
    caller must not assume the remote state changed.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str = "",
        timeout: float = 10.0,
        webhook_tolerance: int = 300,
        client: Optional[stripe.StripeClient] = None,
    ):
        self.webhook_secret = webhook_secret
        self.webhook_tolerance = webhook_tolerance
        if client is None:
            client = stripe.StripeClient(
                api_key,
                http_client=stripe.RequestsClient(timeout=timeout),
                max_network_retries=0,
            )
        self.client = client

    def _call(self, operation: str, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except stripe.StripeError as e:
            logger.error(
                "[STRIPE] %s failed: type=%s code=%s status=%s message=%s",
                operation, type(e).__name__, e.code, e.http_status, str(e),
            )
            raise GatewayError(provider_message=str(e), operation=operation) from e

    # Customers

    def create_customer(self, email: str, name: str):
        return self._call(
            "create_customer",
            self.client.v1.customers.create,
            params={"email": email, "name": name, "metadata": {"platform": "behavioral-learning"}},
        )

    def set_default_payment_method(self, customer_id: str, payment_method_id: str):
        return self._call(
            "set_default_payment_method",
            self.client.v1.customers.update,
            customer_id,
            params={"invoice_settings": {"default_payment_method": payment_method_id}},
        )

    # Payment intents

    def create_payment_intent(self, amount: int, currency: str, customer_id: str, description: str):
        return self._call(
            "create_payment_intent",
            self.client.v1.payment_intents.create,
            params={
                "amount": amount,
                "currency": currency.lower(),
                "customer": customer_id,
                "description": description,
                "automatic_payment_methods": {"enabled": True},
            },
        )

    def retrieve_payment_intent(self, payment_intent_id: str):
        return self._call("retrieve_payment_intent", self.client.v1.payment_intents.retrieve, payment_intent_id)

    # Subscriptions

    def create_subscription(self, customer_id: str, price_id: str, trial_days: Optional[int] = None):
        params = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "payment_behavior": "default_incomplete",
            "expand": ["latest_invoice.confirmation_secret"],
        }
        if trial_days:
            params["trial_period_days"] = trial_days
        return self._call("create_subscription", self.client.v1.subscriptions.create, params=params)

    def update_subscription_price(self, subscription_id: str, price_id: str):
        subscription = self._call("retrieve_subscription", self.client.v1.subscriptions.retrieve, subscription_id)
        items = subscription["items"]["data"]
        if not items:
            raise GatewayError(
                provider_message=f"subscription {subscription_id} has no items",
                operation="update_subscription_price",
            )
        return self._call(
            "update_subscription_price",
            self.client.v1.subscriptions.update,
            subscription_id,
            params={"items": [{"id": items[0]["id"], "price": price_id}]},
        )

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool = True):
        return self._call(
            "set_cancel_at_period_end",
            self.client.v1.subscriptions.update,
            subscription_id,
            params={"cancel_at_period_end": cancel},
        )

    def cancel_subscription(self, subscription_id: str):
        return self._call("cancel_subscription", self.client.v1.subscriptions.cancel, subscription_id)

    # Payment methods

    def attach_payment_method(self, payment_method_id: str, customer_id: str):
        return self._call(
            "attach_payment_method",
            self.client.v1.payment_methods.attach,
            payment_method_id,
            params={"customer": customer_id},
        )

    def detach_payment_method(self, payment_method_id: str):
        return self._call("detach_payment_method", self.client.v1.payment_methods.detach, payment_method_id)

    # Refunds

    def create_refund(self, payment_intent_id: str, amount: Optional[int] = None, idempotency_key: Optional[str] = None):
        params = {"payment_intent": payment_intent_id}
        if amount:
            params["amount"] = amount
        options = {"idempotency_key": idempotency_key} if idempotency_key else None
        return self._call("create_refund", self.client.v1.refunds.create, params=params, options=options)

    # Webhooks

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict:
        """
        Verify a webhook delivery against the raw request body and return the
        decoded event as plain dicts.
        """
        if not signature:
            raise SignatureError("Missing stripe signature")
        if not self.webhook_secret:
            logger.error("[WEBHOOK] STRIPE_WEBHOOK_SECRET not configured")
            raise SignatureError("Webhook secret not configured")

        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
            stripe.WebhookSignature.verify_header(
                body, signature, self.webhook_secret, self.webhook_tolerance
            )
        except stripe.SignatureVerificationError:
            raise SignatureError("Invalid signature")
        except UnicodeDecodeError:
            raise SignatureError("Invalid payload")

        try:
            return json.loads(body)
        except ValueError:
            raise SignatureError("Invalid payload")
