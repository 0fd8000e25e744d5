"""
Stripe webhook processing.

Deliveries are at-least-once and unordered, so every handler is a
find-or-ignore transition keyed by the gateway id in the event: when no local
record matches, the event is acknowledged and nothing changes; when one does,
the mapped update is applied.
"""

import logging
from datetime import datetime, timezone

from billing.errors import SignatureError, WebhookHandlerError
from billing.models import (
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    as_utc,
    utcnow,
)
from billing.services.subscriptions import find_live_subscription

logger = logging.getLogger(__name__)

# Gateway subscription status -> local status. Statuses missing here leave the
# local value untouched.
SUBSCRIPTION_STATUS_MAP = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
}


def from_timestamp(value):
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def period_bounds(subscription):
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start and end:
        return from_timestamp(start), from_timestamp(end)
    # Newer API versions moved the period onto the subscription items
    items = (subscription.get("items") or {}).get("data") or []
    if items:
        return from_timestamp(items[0].get("current_period_start")), from_timestamp(items[0].get("current_period_end"))
    return None, None


def invoice_subscription_id(invoice):
    if invoice.get("subscription"):
        return invoice["subscription"]
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


def invoice_payment_intent_id(invoice):
    if invoice.get("payment_intent"):
        return invoice["payment_intent"]
    # Newer API versions list payments on the invoice instead
    payments = (invoice.get("payments") or {}).get("data") or []
    if payments:
        return (payments[0].get("payment") or {}).get("payment_intent")
    return None


class WebhookEventProcessor:
    # event type -> handler method; a new event kind is one more entry here
    HANDLERS = {
        "payment_intent.succeeded": "handle_payment_intent_succeeded",
        "payment_intent.payment_failed": "handle_payment_intent_failed",
        "customer.subscription.created": "handle_subscription_updated",
        "customer.subscription.updated": "handle_subscription_updated",
        "customer.subscription.deleted": "handle_subscription_deleted",
        "invoice.payment_succeeded": "handle_invoice_payment_succeeded",
        "invoice.payment_failed": "handle_invoice_payment_failed",
        "charge.refunded": "handle_charge_refunded",
    }

    def __init__(self, session_factory, gateway, users, enforce_ordering=False):
        self.session_factory = session_factory
        self.gateway = gateway
        self.users = users
        self.enforce_ordering = enforce_ordering
        self.handlers = {
            event_type: getattr(self, name) for event_type, name in self.HANDLERS.items()
        }

    def handle_event(self, raw_body, signature_header):
        try:
            event = self.gateway.construct_event(raw_body, signature_header)
        except SignatureError as e:
            logger.warning("[WEBHOOK] Rejected delivery: %s", e.message)
            raise

        event_id = event.get("id")
        event_type = event.get("type")
        handler = self.handlers.get(event_type)
        if handler is None:
            logger.info("[WEBHOOK] Unhandled event type: %s (ID: %s)", event_type, event_id)
            return {"received": True}

        logger.info("[WEBHOOK] Processing event type: %s (ID: %s)", event_type, event_id)
        try:
            handler(event["data"]["object"], event)
        except Exception as e:
            logger.error("[WEBHOOK] Error handling %s (ID: %s): %s", event_type, event_id, e, exc_info=True)
            raise WebhookHandlerError(
                f"Webhook handler failed: {type(e).__name__}",
                event_id=event_id,
                event_type=event_type,
            ) from e

        return {"received": True}

    # Payment intents

    def _set_payment_status(self, payment_intent_id, status):
        if not payment_intent_id:
            return
        with self.session_factory() as db:
            payment = db.query(Payment).filter_by(external_payment_intent_id=payment_intent_id).first()
            if not payment:
                logger.info("[WEBHOOK] No payment for intent %s, ignoring", payment_intent_id)
                return
            payment.status = status
            db.commit()
            logger.info("[WEBHOOK] Payment %s marked as %s", payment.id, status)

    def handle_payment_intent_succeeded(self, intent, event):
        self._set_payment_status(intent.get("id"), PaymentStatus.COMPLETED)

    def handle_payment_intent_failed(self, intent, event):
        self._set_payment_status(intent.get("id"), PaymentStatus.FAILED)

    def handle_charge_refunded(self, charge, event):
        self._set_payment_status(charge.get("payment_intent"), PaymentStatus.REFUNDED)

    # Subscriptions

    def _is_stale(self, subscription, event):
        created = from_timestamp(event.get("created"))
        if not created:
            return False
        last = as_utc(subscription.last_event_at)
        if last is None or created >= last:
            subscription.last_event_at = created
            return False
        return self.enforce_ordering

    def handle_subscription_updated(self, external, event):
        with self.session_factory() as db:
            subscription = db.query(Subscription).filter_by(external_subscription_id=external.get("id")).first()
            if not subscription:
                logger.info("[WEBHOOK] No subscription for %s, ignoring", external.get("id"))
                return
            if self._is_stale(subscription, event):
                logger.info("[WEBHOOK] Ignoring out-of-order event %s for subscription %s",
                            event.get("id"), subscription.id)
                return

            status = SUBSCRIPTION_STATUS_MAP.get(external.get("status"))
            if status:
                subscription.status = status
            start, end = period_bounds(external)
            if start and end:
                subscription.current_period_start = start
                subscription.current_period_end = end
            subscription.cancel_at_period_end = bool(external.get("cancel_at_period_end"))
            if external.get("trial_start") and external.get("trial_end"):
                subscription.trial_start = from_timestamp(external["trial_start"])
                subscription.trial_end = from_timestamp(external["trial_end"])
            db.commit()
            logger.info("[WEBHOOK] Subscription %s updated (%s)", subscription.id, subscription.status)

        if external.get("status") == "active":
            self.users.update(subscription.user_id, subscription_tier=SubscriptionTier.for_plan(subscription.plan_type))

    def handle_subscription_deleted(self, external, event):
        with self.session_factory() as db:
            subscription = db.query(Subscription).filter_by(external_subscription_id=external.get("id")).first()
            if not subscription:
                logger.info("[WEBHOOK] No subscription for %s, ignoring", external.get("id"))
                return
            if self._is_stale(subscription, event):
                return
            subscription.status = SubscriptionStatus.CANCELLED
            subscription.cancelled_at = subscription.cancelled_at or utcnow()
            db.commit()
            logger.info("[WEBHOOK] Subscription %s cancelled", subscription.id)
            replacement = find_live_subscription(db, subscription.user_id)

        if replacement:
            logger.info("[WEBHOOK] User %s still has live subscription %s, keeping tier",
                        subscription.user_id, replacement.id)
            return
        self.users.update(subscription.user_id, subscription_tier=SubscriptionTier.BASE)

    # Invoices

    def handle_invoice_payment_succeeded(self, invoice, event):
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            return

        with self.session_factory() as db:
            subscription = db.query(Subscription).filter_by(external_subscription_id=subscription_id).first()
            if not subscription:
                logger.info("[WEBHOOK] No subscription for invoice %s, ignoring", invoice.get("id"))
                return

            invoice_id = invoice.get("id")
            payment_intent_id = invoice_payment_intent_id(invoice)
            if invoice_id and db.query(Payment).filter_by(external_invoice_id=invoice_id).first():
                return
            if payment_intent_id and db.query(Payment).filter_by(external_payment_intent_id=payment_intent_id).first():
                return

            payment = Payment(
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                amount=invoice.get("amount_paid") or 0,
                currency=(invoice.get("currency") or "GBP").upper(),
                status=PaymentStatus.COMPLETED,
                external_payment_intent_id=payment_intent_id,
                external_invoice_id=invoice_id,
                description=f"Subscription payment: {subscription.plan_type}",
            )
            db.add(payment)
            db.commit()
            logger.info("[WEBHOOK] Recorded payment %s for subscription %s", payment.id, subscription.id)

    def handle_invoice_payment_failed(self, invoice, event):
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            return

        with self.session_factory() as db:
            subscription = db.query(Subscription).filter_by(external_subscription_id=subscription_id).first()
            if not subscription:
                logger.info("[WEBHOOK] No subscription for invoice %s, ignoring", invoice.get("id"))
                return
            subscription.status = SubscriptionStatus.PAST_DUE
            db.commit()
            logger.info("[WEBHOOK] Subscription %s marked as past_due", subscription.id)
