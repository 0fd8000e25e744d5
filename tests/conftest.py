import hashlib
import hmac
import json
import os
import time
from types import SimpleNamespace

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_app.db")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from billing.config import PlanCatalog, PlanPrice
from billing.database import Base
from billing.models import User, UserRole
from billing.stripe_service import StripeGateway
from billing.users import UserDirectory

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def users():
    return UserDirectory(TestingSessionLocal)


@pytest.fixture
def gateway(mocker):
    gateway = mocker.Mock(spec=StripeGateway)
    gateway.create_customer.return_value = SimpleNamespace(id="cus_test")
    return gateway


@pytest.fixture
def plans():
    return PlanCatalog({
        ("basic", "monthly"): PlanPrice(999, "price_basic_monthly"),
        ("basic", "yearly"): PlanPrice(9999, "price_basic_yearly"),
        ("premium", "monthly"): PlanPrice(1999, "price_premium_monthly"),
        ("premium", "yearly"): PlanPrice(19999, "price_premium_yearly"),
    })


@pytest.fixture
def make_user():
    def _make(user_id="user-1", role=UserRole.STUDENT, external_customer_id=None):
        db = TestingSessionLocal()
        user = User(
            id=user_id,
            email=f"{user_id}@example.com",
            first_name="Ada",
            last_name="Lovelace",
            role=role,
            external_customer_id=external_customer_id,
        )
        db.add(user)
        db.commit()
        db.close()
        return user
    return _make


def sign_payload(payload, secret=WEBHOOK_SECRET, timestamp=None):
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type, data_object, event_id="evt_test", created=None):
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created or int(time.time()),
        "data": {"object": data_object},
    })
