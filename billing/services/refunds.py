import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from billing.errors import ConflictError, ForbiddenError, GatewayError, NotFoundError, ValidationError
from billing.models import Payment, PaymentStatus, RefundRequest, RefundStatus, UserRole, utcnow

logger = logging.getLogger(__name__)

DECISIONS = ("approved", "rejected")


class RefundWorkflow:
    """
    User refund requests and the admin decision on them.

    pending -> processed | rejected. While the gateway refund is in flight the
    request sits in ``approved``; only the caller that moved it there may
    issue the refund.
    """

    def __init__(self, session_factory, gateway, users):
        self.session_factory = session_factory
        self.gateway = gateway
        self.users = users

    def list_refund_requests(self, user_id):
        with self.session_factory() as db:
            return (
                db.query(RefundRequest)
                .filter(RefundRequest.user_id == user_id)
                .order_by(RefundRequest.created_at.desc())
                .all()
            )

    def request_refund(self, user_id, payment_id, reason):
        if not payment_id:
            raise ValidationError("Payment ID is required", field="payment_id")
        if not reason or not reason.strip():
            raise ValidationError("Refund reason is required", field="reason")

        with self.session_factory() as db:
            payment = db.query(Payment).filter_by(id=payment_id, user_id=user_id).first()
            if not payment:
                raise NotFoundError("Payment not found", resource="payment")
            if payment.status != PaymentStatus.COMPLETED:
                raise ConflictError("Only completed payments can be refunded")
            if db.query(RefundRequest).filter_by(payment_id=payment_id).first():
                raise ConflictError("Refund already requested for this payment")

            refund = RefundRequest(
                payment_id=payment_id,
                user_id=user_id,
                amount=payment.amount,
                reason=reason.strip(),
                status=RefundStatus.PENDING,
            )
            db.add(refund)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise ConflictError("Refund already requested for this payment")

        logger.info("[REFUND] User %s requested refund %s for payment %s", user_id, refund.id, payment_id)
        return refund

    def _claim(self, db, request_id, new_status, admin_id, admin_notes):
        """Move a pending request to ``new_status``; False if someone else got there first."""
        result = db.execute(
            update(RefundRequest)
            .where(RefundRequest.id == request_id, RefundRequest.status == RefundStatus.PENDING)
            .values(
                status=new_status,
                admin_notes=admin_notes,
                processed_at=utcnow(),
                processed_by=admin_id,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    def process_refund(self, admin_id, request_id, decision, admin_notes=None):
        admin = self.users.find_by_id(admin_id)
        if not admin or admin.role != UserRole.ADMIN:
            raise ForbiddenError("Unauthorized")
        if decision not in DECISIONS:
            raise ValidationError("Invalid status", field="status")
        if decision == "rejected" and not (admin_notes and admin_notes.strip()):
            raise ValidationError("Admin notes are required when rejecting a refund", field="admin_notes")

        with self.session_factory() as db:
            refund = db.get(RefundRequest, request_id)
            if not refund:
                raise NotFoundError("Refund request not found", resource="refund_request")
            payment = db.get(Payment, refund.payment_id)
            if decision == "approved" and not payment.external_payment_intent_id:
                raise ConflictError("Payment has no gateway charge to refund")

            claimed_status = RefundStatus.APPROVED if decision == "approved" else RefundStatus.REJECTED
            if not self._claim(db, request_id, claimed_status, admin_id, admin_notes):
                raise ConflictError("Refund request already processed")

        if decision == "rejected":
            logger.info("[REFUND] Refund %s rejected by %s", request_id, admin_id)
            return self._reload(request_id)

        try:
            external_refund = self.gateway.create_refund(
                payment.external_payment_intent_id,
                refund.amount,
                idempotency_key=f"refund-{request_id}",
            )
        except GatewayError:
            logger.error("[REFUND] Gateway refund failed for %s, releasing claim", request_id)
            self._release(request_id)
            raise
        external_refund_id = external_refund.id

        with self.session_factory() as db:
            payment = db.get(Payment, refund.payment_id)
            payment.status = PaymentStatus.REFUNDED
            refund = db.get(RefundRequest, request_id)
            refund.status = RefundStatus.PROCESSED
            refund.external_refund_id = external_refund_id
            db.commit()

        logger.info("[REFUND] Refund %s processed by %s (external %s)", request_id, admin_id, external_refund_id)
        return refund

    def _release(self, request_id):
        with self.session_factory() as db:
            db.execute(
                update(RefundRequest)
                .where(RefundRequest.id == request_id, RefundRequest.status == RefundStatus.APPROVED)
                .values(status=RefundStatus.PENDING, processed_at=None, processed_by=None)
                .execution_options(synchronize_session=False)
            )
            db.commit()

    def _reload(self, request_id):
        with self.session_factory() as db:
            return db.get(RefundRequest, request_id)
