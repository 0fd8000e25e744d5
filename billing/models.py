import math
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from billing.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id():
    return uuid.uuid4().hex


class PaymentStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class SubscriptionStatus:
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    LIVE = (ACTIVE, TRIALING)
    ALL = (TRIALING, ACTIVE, PAST_DUE, CANCELLED, EXPIRED)


class RefundStatus:
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSED = "processed"


class SubscriptionTier:
    BASIC = "BASIC"
    PREMIUM = "PREMIUM"

    BASE = BASIC

    @staticmethod
    def for_plan(plan_type: str) -> str:
        return plan_type.upper()


class UserRole:
    STUDENT = "STUDENT"
    TUTOR = "TUTOR"
    PARENT = "PARENT"
    ADMIN = "ADMIN"


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, nullable=False)
    first_name = Column(String, default="")
    last_name = Column(String, default="")
    role = Column(String, default=UserRole.STUDENT, nullable=False)
    subscription_tier = Column(String, default=SubscriptionTier.BASE, nullable=False)
    external_customer_id = Column(String, index=True)

    @property
    def name(self):
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    session_id = Column(String)
    subscription_id = Column(String, ForeignKey("subscriptions.id"))
    amount = Column(Integer, nullable=False)                # minor units
    currency = Column(String(3), nullable=False, default="GBP")
    status = Column(String, nullable=False, default=PaymentStatus.PENDING, index=True)
    external_payment_intent_id = Column(String, unique=True, index=True)
    external_invoice_id = Column(String, unique=True)
    description = Column(String(500), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    plan_type = Column(String, nullable=False)              # basic | premium
    status = Column(String, nullable=False, default=SubscriptionStatus.ACTIVE, index=True)
    billing_cycle = Column(String, nullable=False)          # monthly | yearly
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="GBP")
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    cancelled_at = Column(DateTime(timezone=True))
    trial_start = Column(DateTime(timezone=True))
    trial_end = Column(DateTime(timezone=True))
    external_subscription_id = Column(String, index=True)
    external_customer_id = Column(String)
    last_event_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def is_active(self, now=None):
        now = now or utcnow()
        return self.status == SubscriptionStatus.ACTIVE and now < as_utc(self.current_period_end)

    def is_in_trial(self, now=None):
        if not self.trial_start or not self.trial_end:
            return False
        now = now or utcnow()
        return as_utc(self.trial_start) <= now <= as_utc(self.trial_end)

    def days_until_renewal(self, now=None):
        now = now or utcnow()
        seconds = (as_utc(self.current_period_end) - now).total_seconds()
        return math.ceil(seconds / 86400)


class PaymentMethod(Base):
    __tablename__ = "payment_methods"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String, nullable=False)                   # card | bank_account | paypal
    is_default = Column(Boolean, nullable=False, default=False)
    card_last4 = Column(String(4))
    card_brand = Column(String)
    card_exp_month = Column(Integer)
    card_exp_year = Column(Integer)
    bank_name = Column(String)
    account_last4 = Column(String(4))
    paypal_email = Column(String)
    external_payment_method_id = Column(String, index=True)
    external_customer_id = Column(String)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def get_masked_number(self):
        if self.type == "card" and self.card_last4:
            return f"**** **** **** {self.card_last4}"
        if self.type == "bank_account" and self.account_last4:
            return f"****{self.account_last4}"
        if self.type == "paypal" and self.paypal_email:
            return self.paypal_email
        return "N/A"


class RefundRequest(Base):
    __tablename__ = "refund_requests"

    id = Column(String, primary_key=True, default=new_id)
    payment_id = Column(String, ForeignKey("payments.id"), nullable=False, unique=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(String, nullable=False, default=RefundStatus.PENDING, index=True)
    admin_notes = Column(Text)
    processed_at = Column(DateTime(timezone=True))
    processed_by = Column(String)
    external_refund_id = Column(String)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
