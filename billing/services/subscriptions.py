import logging
from datetime import timedelta

from dateutil.relativedelta import relativedelta

from billing.config import BILLING_CYCLES, PLAN_TYPES, PlanCatalog
from billing.errors import ConflictError, NotFoundError, PlanNotConfiguredError, ValidationError
from billing.models import Subscription, SubscriptionStatus, SubscriptionTier, utcnow
from billing.users import get_or_create_customer

logger = logging.getLogger(__name__)

PERIOD_LENGTH = {
    "monthly": relativedelta(months=1),
    "yearly": relativedelta(years=1),
}


def validate_plan(plan_type, billing_cycle):
    if plan_type not in PLAN_TYPES:
        raise ValidationError("Invalid plan type", field="plan_type")
    if billing_cycle not in BILLING_CYCLES:
        raise ValidationError("Invalid billing cycle", field="billing_cycle")


def find_live_subscription(db, user_id):
    return (
        db.query(Subscription)
        .filter(Subscription.user_id == user_id, Subscription.status.in_(SubscriptionStatus.LIVE))
        .order_by(Subscription.created_at.desc())
        .first()
    )


class SubscriptionManager:
    """
    Creates, changes and cancels recurring subscriptions.

    Local period bounds written here are an approximation; the gateway's
    subscription webhooks carry the authoritative values and overwrite them.
    """

    def __init__(self, session_factory, gateway, users, plans: PlanCatalog):
        self.session_factory = session_factory
        self.gateway = gateway
        self.users = users
        self.plans = plans

    def _price_for(self, plan_type, billing_cycle):
        price = self.plans.get(plan_type, billing_cycle)
        if price is None or not price.price_id:
            raise PlanNotConfiguredError(plan_type, billing_cycle)
        return price

    def get_subscription(self, user_id):
        with self.session_factory() as db:
            return find_live_subscription(db, user_id)

    def create_subscription(self, user_id, plan_type, billing_cycle, payment_method_id=None, trial_days=None):
        validate_plan(plan_type, billing_cycle)
        if trial_days is not None and (isinstance(trial_days, bool) or not isinstance(trial_days, int) or trial_days <= 0):
            raise ValidationError("Trial days must be a positive integer", field="trial_days")

        user = self.users.get(user_id)

        with self.session_factory() as db:
            if find_live_subscription(db, user_id):
                raise ConflictError("User already has an active subscription")

        price = self._price_for(plan_type, billing_cycle)
        customer_id = get_or_create_customer(self.users, self.gateway, user)

        if payment_method_id:
            self.gateway.attach_payment_method(payment_method_id, customer_id)
            self.gateway.set_default_payment_method(customer_id, payment_method_id)

        external = self.gateway.create_subscription(customer_id, price.price_id, trial_days)

        now = utcnow()
        subscription = Subscription(
            user_id=user_id,
            plan_type=plan_type,
            status=SubscriptionStatus.TRIALING if trial_days else SubscriptionStatus.ACTIVE,
            billing_cycle=billing_cycle,
            amount=price.amount,
            currency=price.currency,
            current_period_start=now,
            current_period_end=now + PERIOD_LENGTH[billing_cycle],
            external_subscription_id=external.id,
            external_customer_id=customer_id,
            trial_start=now if trial_days else None,
            trial_end=now + timedelta(days=trial_days) if trial_days else None,
        )
        with self.session_factory() as db:
            db.add(subscription)
            db.commit()

        self.users.update(user_id, subscription_tier=SubscriptionTier.for_plan(plan_type))
        logger.info("[SUBSCRIPTION] Created %s %s subscription %s for user %s",
                    plan_type, billing_cycle, external.id, user_id)
        return subscription

    def update_subscription(self, user_id, plan_type=None, billing_cycle=None):
        if not plan_type and not billing_cycle:
            raise ValidationError("Provide a plan type or billing cycle to change")

        with self.session_factory() as db:
            subscription = find_live_subscription(db, user_id)
            if not subscription:
                raise NotFoundError("No active subscription found", resource="subscription")

        new_plan = plan_type or subscription.plan_type
        new_cycle = billing_cycle or subscription.billing_cycle
        validate_plan(new_plan, new_cycle)
        price = self._price_for(new_plan, new_cycle)

        if subscription.external_subscription_id:
            self.gateway.update_subscription_price(subscription.external_subscription_id, price.price_id)

        with self.session_factory() as db:
            subscription = db.get(Subscription, subscription.id)
            subscription.plan_type = new_plan
            subscription.billing_cycle = new_cycle
            subscription.amount = price.amount
            db.commit()

        self.users.update(user_id, subscription_tier=SubscriptionTier.for_plan(new_plan))
        logger.info("[SUBSCRIPTION] Subscription %s moved to %s/%s", subscription.id, new_plan, new_cycle)
        return subscription

    def cancel_subscription(self, user_id, immediate=False):
        with self.session_factory() as db:
            subscription = find_live_subscription(db, user_id)
            if not subscription:
                raise NotFoundError("No active subscription found", resource="subscription")

        external_id = subscription.external_subscription_id
        if immediate:
            if external_id:
                self.gateway.cancel_subscription(external_id)
        elif external_id:
            self.gateway.set_cancel_at_period_end(external_id, True)

        with self.session_factory() as db:
            subscription = db.get(Subscription, subscription.id)
            if immediate:
                subscription.status = SubscriptionStatus.CANCELLED
                subscription.cancelled_at = utcnow()
            else:
                subscription.cancel_at_period_end = True
            db.commit()

        if immediate:
            self.users.update(user_id, subscription_tier=SubscriptionTier.BASE)

        logger.info("[SUBSCRIPTION] Subscription %s cancelled (%s)",
                    subscription.id, "immediately" if immediate else "at period end")
        return subscription
