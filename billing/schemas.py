from typing import Optional

from pydantic import BaseModel


class PaymentIntentRequest(BaseModel):
    amount: int                     # minor units
    currency: str = "GBP"
    description: Optional[str] = None
    session_id: Optional[str] = None


class ConfirmPaymentRequest(BaseModel):
    payment_intent_id: str


class CreateSubscriptionRequest(BaseModel):
    plan_type: str
    billing_cycle: str
    payment_method_id: Optional[str] = None
    trial_days: Optional[int] = None


class UpdateSubscriptionRequest(BaseModel):
    plan_type: Optional[str] = None
    billing_cycle: Optional[str] = None


class CancelSubscriptionRequest(BaseModel):
    immediate: bool = False


class AddPaymentMethodRequest(BaseModel):
    payment_method_id: str
    is_default: bool = False


class RefundRequestCreate(BaseModel):
    payment_id: str
    reason: str


class ProcessRefundRequest(BaseModel):
    status: str                     # approved | rejected
    admin_notes: Optional[str] = None


def to_major(amount):
    return amount / 100 if amount is not None else None


def payment_to_dict(payment):
    return {
        "id": payment.id,
        "amount": to_major(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
        "description": payment.description,
        "session_id": payment.session_id,
        "date": payment.created_at,
    }


def subscription_to_dict(subscription):
    return {
        "id": subscription.id,
        "plan_type": subscription.plan_type,
        "status": subscription.status,
        "billing_cycle": subscription.billing_cycle,
        "amount": to_major(subscription.amount),
        "currency": subscription.currency,
        "current_period_start": subscription.current_period_start,
        "current_period_end": subscription.current_period_end,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "cancelled_at": subscription.cancelled_at,
        "is_active": subscription.is_active(),
        "is_in_trial": subscription.is_in_trial(),
        "days_until_renewal": subscription.days_until_renewal(),
    }


def payment_method_to_dict(payment_method):
    return {
        "id": payment_method.id,
        "type": payment_method.type,
        "is_default": payment_method.is_default,
        "masked_number": payment_method.get_masked_number(),
        "card_brand": payment_method.card_brand,
        "card_exp_month": payment_method.card_exp_month,
        "card_exp_year": payment_method.card_exp_year,
        "bank_name": payment_method.bank_name,
        "created_at": payment_method.created_at,
    }


def refund_to_dict(refund):
    return {
        "id": refund.id,
        "payment_id": refund.payment_id,
        "amount": to_major(refund.amount),
        "reason": refund.reason,
        "status": refund.status,
        "admin_notes": refund.admin_notes,
        "created_at": refund.created_at,
        "processed_at": refund.processed_at,
    }
