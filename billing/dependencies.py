from functools import lru_cache

from fastapi import Depends

from billing.config import get_settings, load_plan_catalog
from billing.database import SessionLocal
from billing.services import (
    PaymentIntentManager,
    PaymentMethodStore,
    RefundWorkflow,
    SubscriptionManager,
    WebhookEventProcessor,
)
from billing.stripe_service import StripeGateway
from billing.users import UserDirectory


def get_session_factory():
    return SessionLocal


@lru_cache()
def get_gateway() -> StripeGateway:
    settings = get_settings()
    return StripeGateway(
        api_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        timeout=settings.stripe_timeout_seconds,
        webhook_tolerance=settings.stripe_webhook_tolerance,
    )


def get_plan_catalog():
    return load_plan_catalog(get_settings())


def get_user_directory(session_factory=Depends(get_session_factory)):
    return UserDirectory(session_factory)


def get_payment_intents(
    session_factory=Depends(get_session_factory),
    gateway=Depends(get_gateway),
    users=Depends(get_user_directory),
):
    return PaymentIntentManager(session_factory, gateway, users)


def get_subscriptions(
    session_factory=Depends(get_session_factory),
    gateway=Depends(get_gateway),
    users=Depends(get_user_directory),
    plans=Depends(get_plan_catalog),
):
    return SubscriptionManager(session_factory, gateway, users, plans)


def get_payment_methods(
    session_factory=Depends(get_session_factory),
    gateway=Depends(get_gateway),
    users=Depends(get_user_directory),
):
    return PaymentMethodStore(session_factory, gateway, users)


def get_refunds(
    session_factory=Depends(get_session_factory),
    gateway=Depends(get_gateway),
    users=Depends(get_user_directory),
):
    return RefundWorkflow(session_factory, gateway, users)


def get_webhook_processor(
    session_factory=Depends(get_session_factory),
    gateway=Depends(get_gateway),
    users=Depends(get_user_directory),
):
    return WebhookEventProcessor(
        session_factory,
        gateway,
        users,
        enforce_ordering=get_settings().webhook_enforce_ordering,
    )
