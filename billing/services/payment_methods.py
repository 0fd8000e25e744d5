import logging

from sqlalchemy import update

from billing.errors import NotFoundError, ValidationError
from billing.models import PaymentMethod
from billing.users import get_or_create_customer

logger = logging.getLogger(__name__)


def masked_details(external_method):
    """Pull the display-safe fields out of a gateway payment method."""
    kind = getattr(external_method, "type", None)

    if kind == "card":
        card = external_method.card
        return {
            "type": "card",
            "card_last4": card.last4,
            "card_brand": card.brand,
            "card_exp_month": card.exp_month,
            "card_exp_year": card.exp_year,
        }

    if kind == "paypal":
        paypal = getattr(external_method, "paypal", None)
        return {"type": "paypal", "paypal_email": getattr(paypal, "payer_email", None)}

    bank = getattr(external_method, kind, None) if kind else None
    return {
        "type": "bank_account",
        "bank_name": getattr(bank, "bank_name", None),
        "account_last4": getattr(bank, "last4", None),
    }


def make_default(db, user_id, payment_method_id):
    # One statement flips every active method of the user, so no interleaving
    # request can observe two defaults or none.
    db.execute(
        update(PaymentMethod)
        .where(PaymentMethod.user_id == user_id, PaymentMethod.is_active.is_(True))
        .values(is_default=(PaymentMethod.id == payment_method_id))
        .execution_options(synchronize_session=False)
    )


class PaymentMethodStore:
    def __init__(self, session_factory, gateway, users):
        self.session_factory = session_factory
        self.gateway = gateway
        self.users = users

    def list_payment_methods(self, user_id):
        with self.session_factory() as db:
            return (
                db.query(PaymentMethod)
                .filter(PaymentMethod.user_id == user_id, PaymentMethod.is_active.is_(True))
                .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc())
                .all()
            )

    def add_payment_method(self, user_id, external_token, is_default=False):
        if not external_token:
            raise ValidationError("Payment method ID is required", field="payment_method_id")

        user = self.users.get(user_id)
        customer_id = get_or_create_customer(self.users, self.gateway, user)

        external_method = self.gateway.attach_payment_method(external_token, customer_id)

        with self.session_factory() as db:
            payment_method = PaymentMethod(
                user_id=user_id,
                external_payment_method_id=external_token,
                external_customer_id=customer_id,
                is_default=False,
                **masked_details(external_method),
            )
            db.add(payment_method)
            db.flush()
            if is_default:
                make_default(db, user_id, payment_method.id)
            db.commit()
            db.refresh(payment_method)

        if is_default:
            self.gateway.set_default_payment_method(customer_id, external_token)

        logger.info("[PAYMENT_METHOD] Added %s %s for user %s (default=%s)",
                    payment_method.type, payment_method.id, user_id, payment_method.is_default)
        return payment_method

    def _owned(self, db, user_id, payment_method_id):
        payment_method = (
            db.query(PaymentMethod)
            .filter_by(id=payment_method_id, user_id=user_id, is_active=True)
            .first()
        )
        if not payment_method:
            raise NotFoundError("Payment method not found", resource="payment_method")
        return payment_method

    def delete_payment_method(self, user_id, payment_method_id):
        with self.session_factory() as db:
            payment_method = self._owned(db, user_id, payment_method_id)

        if payment_method.external_payment_method_id:
            self.gateway.detach_payment_method(payment_method.external_payment_method_id)

        # Soft delete; historical payments still point at this row.
        with self.session_factory() as db:
            payment_method = db.get(PaymentMethod, payment_method_id)
            payment_method.is_active = False
            payment_method.is_default = False
            db.commit()

        logger.info("[PAYMENT_METHOD] Deactivated %s for user %s", payment_method_id, user_id)
        return payment_method

    def set_default_payment_method(self, user_id, payment_method_id):
        with self.session_factory() as db:
            payment_method = self._owned(db, user_id, payment_method_id)
            make_default(db, user_id, payment_method.id)
            db.commit()
            db.refresh(payment_method)

        if payment_method.external_customer_id and payment_method.external_payment_method_id:
            self.gateway.set_default_payment_method(
                payment_method.external_customer_id,
                payment_method.external_payment_method_id,
            )

        logger.info("[PAYMENT_METHOD] %s is now the default for user %s", payment_method_id, user_id)
        return payment_method
