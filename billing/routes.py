import math
from typing import Optional

from fastapi import APIRouter, Depends

from billing.auth import verify_token
from billing.dependencies import (
    get_payment_intents,
    get_payment_methods,
    get_refunds,
    get_subscriptions,
)
from billing.schemas import (
    AddPaymentMethodRequest,
    CancelSubscriptionRequest,
    ConfirmPaymentRequest,
    CreateSubscriptionRequest,
    PaymentIntentRequest,
    ProcessRefundRequest,
    RefundRequestCreate,
    UpdateSubscriptionRequest,
    payment_method_to_dict,
    payment_to_dict,
    refund_to_dict,
    subscription_to_dict,
    to_major,
)
from billing.services.payment_intents import clamp_paging

router = APIRouter()


# Payments

@router.get("/payments")
def payment_history(
    page: int = 1,
    limit: int = 10,
    status: Optional[str] = None,
    user_id: str = Depends(verify_token),
    payments=Depends(get_payment_intents),
):
    page, limit = clamp_paging(page, limit)
    items, total = payments.get_payment_history(user_id, page=page, limit=limit, status=status)
    return {
        "payments": [payment_to_dict(p) for p in items],
        "pagination": {"total": total, "page": page, "pages": math.ceil(total / limit)},
    }


@router.get("/payments/stats")
def payment_stats(user_id: str = Depends(verify_token), payments=Depends(get_payment_intents)):
    stats = payments.get_payment_stats(user_id)
    stats["total_spent"] = to_major(stats["total_spent"])
    stats["pending_amount"] = to_major(stats["pending_amount"])
    return {"stats": stats}


@router.post("/payments/intent")
def create_payment_intent(
    request: PaymentIntentRequest,
    user_id: str = Depends(verify_token),
    payments=Depends(get_payment_intents),
):
    return payments.create_payment_intent(
        user_id,
        request.amount,
        currency=request.currency,
        description=request.description,
        session_id=request.session_id,
    )


@router.post("/payments/confirm")
def confirm_payment(
    request: ConfirmPaymentRequest,
    user_id: str = Depends(verify_token),
    payments=Depends(get_payment_intents),
):
    payment = payments.confirm_payment(user_id, request.payment_intent_id)
    return {"success": True, "status": payment.status, "payment": payment_to_dict(payment)}


# Subscription

@router.get("/subscription")
def get_subscription(user_id: str = Depends(verify_token), subscriptions=Depends(get_subscriptions)):
    subscription = subscriptions.get_subscription(user_id)
    return {"subscription": subscription_to_dict(subscription) if subscription else None}


@router.post("/subscription", status_code=201)
def create_subscription(
    request: CreateSubscriptionRequest,
    user_id: str = Depends(verify_token),
    subscriptions=Depends(get_subscriptions),
):
    subscription = subscriptions.create_subscription(
        user_id,
        request.plan_type,
        request.billing_cycle,
        payment_method_id=request.payment_method_id,
        trial_days=request.trial_days,
    )
    return {"subscription": subscription_to_dict(subscription)}


@router.put("/subscription")
def update_subscription(
    request: UpdateSubscriptionRequest,
    user_id: str = Depends(verify_token),
    subscriptions=Depends(get_subscriptions),
):
    subscription = subscriptions.update_subscription(
        user_id, plan_type=request.plan_type, billing_cycle=request.billing_cycle
    )
    return {"subscription": subscription_to_dict(subscription)}


@router.delete("/subscription")
def cancel_subscription(
    request: Optional[CancelSubscriptionRequest] = None,
    user_id: str = Depends(verify_token),
    subscriptions=Depends(get_subscriptions),
):
    immediate = request.immediate if request else False
    subscription = subscriptions.cancel_subscription(user_id, immediate=immediate)
    return {
        "success": True,
        "message": "Subscription cancelled immediately" if immediate else "Subscription will cancel at period end",
        "subscription": subscription_to_dict(subscription),
    }


# Payment methods

@router.get("/payment-methods")
def list_payment_methods(user_id: str = Depends(verify_token), methods=Depends(get_payment_methods)):
    return {"payment_methods": [payment_method_to_dict(m) for m in methods.list_payment_methods(user_id)]}


@router.post("/payment-methods", status_code=201)
def add_payment_method(
    request: AddPaymentMethodRequest,
    user_id: str = Depends(verify_token),
    methods=Depends(get_payment_methods),
):
    payment_method = methods.add_payment_method(user_id, request.payment_method_id, request.is_default)
    return {"payment_method": payment_method_to_dict(payment_method)}


@router.delete("/payment-methods/{payment_method_id}")
def delete_payment_method(
    payment_method_id: str,
    user_id: str = Depends(verify_token),
    methods=Depends(get_payment_methods),
):
    methods.delete_payment_method(user_id, payment_method_id)
    return {"success": True, "message": "Payment method deleted successfully"}


@router.patch("/payment-methods/{payment_method_id}/default")
def set_default_payment_method(
    payment_method_id: str,
    user_id: str = Depends(verify_token),
    methods=Depends(get_payment_methods),
):
    methods.set_default_payment_method(user_id, payment_method_id)
    return {"success": True, "message": "Default payment method updated"}


# Refunds

@router.post("/refunds", status_code=201)
def request_refund(
    request: RefundRequestCreate,
    user_id: str = Depends(verify_token),
    refunds=Depends(get_refunds),
):
    refund = refunds.request_refund(user_id, request.payment_id, request.reason)
    return {"refund": refund_to_dict(refund)}


@router.get("/refunds")
def list_refunds(user_id: str = Depends(verify_token), refunds=Depends(get_refunds)):
    return {"refunds": [refund_to_dict(r) for r in refunds.list_refund_requests(user_id)]}


@router.patch("/refunds/{request_id}/process")
def process_refund(
    request_id: str,
    request: ProcessRefundRequest,
    user_id: str = Depends(verify_token),
    refunds=Depends(get_refunds),
):
    refund = refunds.process_refund(user_id, request_id, request.status, request.admin_notes)
    return {"success": True, "refund": refund_to_dict(refund)}
