import logging

from billing.config import CURRENCIES, DEFAULT_CURRENCY
from billing.errors import NotFoundError, ValidationError
from billing.models import Payment, PaymentStatus
from billing.users import get_or_create_customer

logger = logging.getLogger(__name__)

# Gateway intent state -> local payment status
INTENT_STATUS_MAP = {
    "succeeded": PaymentStatus.COMPLETED,
    "canceled": PaymentStatus.CANCELLED,
    "requires_payment_method": PaymentStatus.FAILED,
}


def validate_amount(amount):
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Invalid amount", field="amount")
    return amount


def normalize_currency(currency):
    currency = (currency or DEFAULT_CURRENCY).upper()
    if currency not in CURRENCIES:
        raise ValidationError(f"Currency must be one of {', '.join(CURRENCIES)}", field="currency")
    return currency


def clamp_paging(page, limit):
    return max(int(page), 1), min(max(int(limit), 1), 100)


class PaymentIntentManager:
    def __init__(self, session_factory, gateway, users):
        self.session_factory = session_factory
        self.gateway = gateway
        self.users = users

    def create_payment_intent(self, user_id, amount, currency=DEFAULT_CURRENCY, description=None, session_id=None):
        amount = validate_amount(amount)
        currency = normalize_currency(currency)
        description = description or "Payment"

        user = self.users.get(user_id)
        customer_id = get_or_create_customer(self.users, self.gateway, user)

        intent = self.gateway.create_payment_intent(amount, currency, customer_id, description)

        with self.session_factory() as db:
            payment = Payment(
                user_id=user_id,
                session_id=session_id,
                amount=amount,
                currency=currency,
                status=PaymentStatus.PENDING,
                external_payment_intent_id=intent.id,
                description=description,
            )
            db.add(payment)
            db.commit()

        logger.info("[PAYMENT] Created intent %s for user %s (%s %s)", intent.id, user_id, amount, currency)
        return {
            "payment_intent_id": intent.id,
            "client_secret": intent.client_secret,
            "payment_id": payment.id,
        }

    def confirm_payment(self, user_id, payment_intent_id):
        if not payment_intent_id:
            raise ValidationError("Payment intent ID is required", field="payment_intent_id")

        with self.session_factory() as db:
            payment = (
                db.query(Payment)
                .filter_by(external_payment_intent_id=payment_intent_id, user_id=user_id)
                .first()
            )
            if not payment:
                raise NotFoundError("Payment not found", resource="payment")

            intent = self.gateway.retrieve_payment_intent(payment_intent_id)

            new_status = INTENT_STATUS_MAP.get(intent.status)
            if new_status:
                payment.status = new_status
                db.commit()
            logger.info("[PAYMENT] Intent %s reported %s, payment %s is %s",
                        payment_intent_id, intent.status, payment.id, payment.status)
            return payment

    def get_payment_history(self, user_id, page=1, limit=10, status=None):
        page, limit = clamp_paging(page, limit)

        with self.session_factory() as db:
            query = db.query(Payment).filter(Payment.user_id == user_id)
            if status:
                query = query.filter(Payment.status == status)
            total = query.count()
            payments = (
                query.order_by(Payment.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
                .all()
            )
        return payments, total

    def get_payment_stats(self, user_id):
        with self.session_factory() as db:
            payments = db.query(Payment).filter(Payment.user_id == user_id).all()

        completed = [p for p in payments if p.status == PaymentStatus.COMPLETED]
        pending = [p for p in payments if p.status == PaymentStatus.PENDING]
        return {
            "total_spent": sum(p.amount for p in completed),
            "pending_amount": sum(p.amount for p in pending),
            "total_transactions": len(payments),
            "completed_transactions": len(completed),
            "failed_transactions": len([p for p in payments if p.status == PaymentStatus.FAILED]),
        }
