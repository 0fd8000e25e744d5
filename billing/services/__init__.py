from billing.services.payment_intents import PaymentIntentManager
from billing.services.payment_methods import PaymentMethodStore
from billing.services.refunds import RefundWorkflow
from billing.services.subscriptions import SubscriptionManager
from billing.services.webhooks import WebhookEventProcessor

__all__ = [
    "PaymentIntentManager",
    "PaymentMethodStore",
    "RefundWorkflow",
    "SubscriptionManager",
    "WebhookEventProcessor",
]
