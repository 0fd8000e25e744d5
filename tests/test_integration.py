import pytest
from fastapi.testclient import TestClient

import billing.auth
from conftest import WEBHOOK_SECRET, TestingSessionLocal, make_event, sign_payload
from billing.dependencies import get_gateway, get_plan_catalog, get_session_factory
from billing.main import app as fastapi_app
from billing.models import Payment, RefundRequest, Subscription, User, UserRole
from billing.stripe_service import StripeGateway


@pytest.fixture
def caller():
    return {"id": "user-1"}


@pytest.fixture
def stripe_client(mocker):
    return mocker.Mock()


@pytest.fixture
def client(plans, caller, make_user, stripe_client):
    make_user("user-1")
    make_user("admin-1", role=UserRole.ADMIN)
    gateway = StripeGateway(api_key="sk_test_123", webhook_secret=WEBHOOK_SECRET, client=stripe_client)

    fastapi_app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal
    fastapi_app.dependency_overrides[get_gateway] = lambda: gateway
    fastapi_app.dependency_overrides[get_plan_catalog] = lambda: plans
    # Bypass auth verification for tests
    fastapi_app.dependency_overrides[billing.auth.verify_token] = lambda: caller["id"]

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()


def post_webhook(client, event_type, data_object, event_id="evt_test"):
    payload = make_event(event_type, data_object, event_id=event_id)
    return client.post(
        "/webhook/stripe",
        content=payload,
        headers={"stripe-signature": sign_payload(payload)},
    )


def test_full_payment_lifecycle_integration(client, caller, stripe_client, mocker):
    """
    1. Create payment intent (API -> DB + Stripe mocked)
    2. Webhook success (Stripe -> API -> DB), delivered twice
    3. Refund request and admin approval (API -> DB + Stripe mocked)
    4. charge.refunded webhook arrives afterwards and changes nothing
    """

    # --- 1. CREATE PAYMENT ---
    stripe_client.v1.customers.create.return_value = mocker.Mock(id="cus_int")
    mock_pi = mocker.Mock()
    mock_pi.id = "pi_integration_test_123"
    mock_pi.client_secret = "secret_test_456"
    stripe_client.v1.payment_intents.create.return_value = mock_pi

    response = client.post("/payments/intent", json={"amount": 2500, "currency": "GBP", "description": "Session"})

    assert response.status_code == 200
    assert response.json()["client_secret"] == "secret_test_456"
    payment_id = response.json()["payment_id"]

    db = TestingSessionLocal()
    payment = db.get(Payment, payment_id)
    assert payment.status == "pending"
    assert db.get(User, "user-1").external_customer_id == "cus_int"
    db.close()

    # --- 2. WEBHOOK SUCCESS (at-least-once) ---
    for _ in range(2):
        webhook_response = post_webhook(client, "payment_intent.succeeded", {"id": "pi_integration_test_123"})
        assert webhook_response.status_code == 200
        assert webhook_response.json() == {"received": True}

    db = TestingSessionLocal()
    assert db.query(Payment).count() == 1
    assert db.get(Payment, payment_id).status == "completed"
    db.close()

    # --- 3. REFUND ---
    refund_create = stripe_client.v1.refunds.create
    refund_create.return_value = mocker.Mock(id="re_int")

    refund_id = client.post("/refunds", json={"payment_id": payment_id, "reason": "No-show"}).json()["refund"]["id"]
    caller["id"] = "admin-1"
    refund_response = client.patch(f"/refunds/{refund_id}/process",
                                   json={"status": "approved", "admin_notes": "Tutor confirmed"})

    assert refund_response.status_code == 200
    assert refund_response.json()["refund"]["status"] == "processed"
    assert refund_create.call_args.kwargs["params"]["payment_intent"] == "pi_integration_test_123"
    assert refund_create.call_args.kwargs["options"] == {"idempotency_key": f"refund-{refund_id}"}

    # --- 4. LATE REFUND WEBHOOK ---
    late = post_webhook(client, "charge.refunded", {"id": "ch_1", "payment_intent": "pi_integration_test_123"})
    assert late.status_code == 200

    db = TestingSessionLocal()
    assert db.get(Payment, payment_id).status == "refunded"
    assert db.get(RefundRequest, refund_id).external_refund_id == "re_int"
    db.close()


def test_subscription_then_provider_events(client, stripe_client, mocker):
    stripe_client.v1.customers.create.return_value = mocker.Mock(id="cus_int")
    stripe_client.v1.subscriptions.create.return_value = mocker.Mock(id="sub_int")

    created = client.post("/subscription", json={"plan_type": "premium", "billing_cycle": "monthly", "trial_days": 7})
    assert created.status_code == 201
    assert created.json()["subscription"]["status"] == "trialing"

    post_webhook(client, "customer.subscription.updated", {"id": "sub_int", "status": "active"})
    post_webhook(client, "invoice.payment_succeeded", {
        "id": "in_int", "subscription": "sub_int", "payment_intent": "pi_inv", "amount_paid": 1999, "currency": "gbp",
    })
    post_webhook(client, "customer.subscription.deleted", {"id": "sub_int", "status": "canceled"})

    db = TestingSessionLocal()
    assert db.query(Subscription).filter_by(external_subscription_id="sub_int").one().status == "cancelled"
    assert db.query(Payment).filter_by(external_invoice_id="in_int").one().amount == 1999
    assert db.get(User, "user-1").subscription_tier == "BASIC"
    db.close()


def test_webhook_non_existent_payment(client):
    """Events for records we never created are acknowledged and ignored."""
    response = post_webhook(client, "payment_intent.succeeded", {"id": "pi_unknown"})
    assert response.status_code == 200


def test_create_payment_database_integrity_on_stripe_error(client, stripe_client, mocker):
    """If Stripe fails, the caller gets an error and no payment row is left behind."""
    import stripe

    stripe_client.v1.customers.create.return_value = mocker.Mock(id="cus_int")
    stripe_client.v1.payment_intents.create.side_effect = stripe.APIConnectionError("Stripe Service Unavailable")

    response = client.post("/payments/intent", json={"amount": 2500, "description": "Session"})

    assert response.status_code == 500
    assert response.json()["error"] == "GATEWAY_ERROR"
    db = TestingSessionLocal()
    assert db.query(Payment).count() == 0
    db.close()
