from types import SimpleNamespace

import pytest

from conftest import TestingSessionLocal
from billing.errors import GatewayError, NotFoundError, ValidationError
from billing.models import Payment, User
from billing.services import PaymentIntentManager


@pytest.fixture
def manager(gateway, users):
    return PaymentIntentManager(TestingSessionLocal, gateway, users)


def test_create_payment_intent_persists_pending_payment(manager, gateway, make_user):
    make_user()
    gateway.create_payment_intent.return_value = SimpleNamespace(id="pi_123", client_secret="secret_123")

    result = manager.create_payment_intent("user-1", 2500, "GBP", "Session")

    assert result["payment_intent_id"] == "pi_123"
    assert result["client_secret"] == "secret_123"
    gateway.create_payment_intent.assert_called_once_with(2500, "GBP", "cus_test", "Session")

    db = TestingSessionLocal()
    payment = db.query(Payment).filter_by(external_payment_intent_id="pi_123").first()
    assert payment.id == result["payment_id"]
    assert payment.status == "pending"
    assert payment.amount == 2500
    assert payment.currency == "GBP"
    db.close()


def test_customer_id_is_created_once_and_reused(manager, gateway, make_user):
    make_user()
    gateway.create_payment_intent.side_effect = [
        SimpleNamespace(id="pi_1", client_secret="s1"),
        SimpleNamespace(id="pi_2", client_secret="s2"),
    ]

    manager.create_payment_intent("user-1", 1000, "gbp", "First")
    manager.create_payment_intent("user-1", 1000, "gbp", "Second")

    gateway.create_customer.assert_called_once_with("user-1@example.com", "Ada Lovelace")
    db = TestingSessionLocal()
    assert db.get(User, "user-1").external_customer_id == "cus_test"
    assert db.query(Payment).count() == 2
    db.close()


@pytest.mark.parametrize("amount", [0, -100, 25.5, True, None])
def test_invalid_amount_rejected_before_gateway(manager, gateway, make_user, amount):
    make_user()

    with pytest.raises(ValidationError) as exc:
        manager.create_payment_intent("user-1", amount, "GBP", "Session")

    assert exc.value.field == "amount"
    gateway.create_customer.assert_not_called()
    gateway.create_payment_intent.assert_not_called()


def test_unknown_currency_rejected(manager, gateway, make_user):
    make_user()

    with pytest.raises(ValidationError):
        manager.create_payment_intent("user-1", 1000, "JPY", "Session")
    gateway.create_payment_intent.assert_not_called()


def test_unknown_user_is_not_found(manager, gateway):
    with pytest.raises(NotFoundError):
        manager.create_payment_intent("ghost", 1000, "GBP", "Session")
    gateway.create_payment_intent.assert_not_called()


def test_gateway_failure_leaves_no_payment(manager, gateway, make_user):
    make_user(external_customer_id="cus_existing")
    gateway.create_payment_intent.side_effect = GatewayError(provider_message="card_declined")

    with pytest.raises(GatewayError):
        manager.create_payment_intent("user-1", 1000, "GBP", "Session")

    db = TestingSessionLocal()
    assert db.query(Payment).count() == 0
    db.close()


@pytest.mark.parametrize("gateway_status, expected", [
    ("succeeded", "completed"),
    ("canceled", "cancelled"),
    ("requires_payment_method", "failed"),
    ("processing", "pending"),
])
def test_confirm_payment_maps_gateway_status(manager, gateway, make_user, gateway_status, expected):
    make_user()
    gateway.create_payment_intent.return_value = SimpleNamespace(id="pi_123", client_secret="s")
    manager.create_payment_intent("user-1", 2500, "GBP", "Session")
    gateway.retrieve_payment_intent.return_value = SimpleNamespace(id="pi_123", status=gateway_status)

    payment = manager.confirm_payment("user-1", "pi_123")

    assert payment.status == expected
    db = TestingSessionLocal()
    assert db.query(Payment).filter_by(external_payment_intent_id="pi_123").one().status == expected
    db.close()


def test_confirm_payment_unknown_intent(manager, gateway):
    with pytest.raises(NotFoundError):
        manager.confirm_payment("user-1", "pi_missing")
    gateway.retrieve_payment_intent.assert_not_called()


def test_confirm_payment_of_another_users_intent(manager, gateway, make_user):
    make_user("user-1")
    make_user("user-2")
    db = TestingSessionLocal()
    db.add(Payment(id="pay-2", user_id="user-2", amount=2500, currency="GBP", status="pending",
                   external_payment_intent_id="pi_theirs", description="Session"))
    db.commit()
    db.close()

    with pytest.raises(NotFoundError):
        manager.confirm_payment("user-1", "pi_theirs")

    gateway.retrieve_payment_intent.assert_not_called()
    db = TestingSessionLocal()
    assert db.get(Payment, "pay-2").status == "pending"
    db.close()


def test_payment_history_and_stats(manager, make_user):
    make_user()
    db = TestingSessionLocal()
    for i, status in enumerate(["completed", "completed", "pending", "failed"]):
        db.add(Payment(user_id="user-1", amount=1000 * (i + 1), currency="GBP",
                       status=status, description=f"Payment {i}"))
    db.commit()
    db.close()

    payments, total = manager.get_payment_history("user-1", page=1, limit=2)
    assert total == 4
    assert len(payments) == 2

    completed, total = manager.get_payment_history("user-1", status="completed")
    assert total == 2

    stats = manager.get_payment_stats("user-1")
    assert stats == {
        "total_spent": 3000,
        "pending_amount": 3000,
        "total_transactions": 4,
        "completed_transactions": 2,
        "failed_transactions": 1,
    }
