import json
import logging
from datetime import timedelta

import httpx
from jose import jwt
from sqlalchemy.exc import OperationalError

import billing.auth
from billing.main import app as fastapi_app
from billing.models import CoursePurchase, PaymentAttempt, Subscription, utcnow
from billing.payment_store import PaymentStore

from conftest import TestingSessionLocal, cloudpayments_signature


def yookassa_notification(reference="pay-1", event="payment.succeeded", status="succeeded", value="990.00"):
    return {
        "type": "notification",
        "event": event,
        "object": {
            "id": reference,
            "status": status,
            "amount": {"value": value, "currency": "RUB"},
            "metadata": {"user_id": "user-1", "payment_type": "subscription", "tier": "basic"},
        },
    }


def get_attempt(reference="pay-1"):
    db = TestingSessionLocal()
    attempt = db.query(PaymentAttempt).filter_by(provider_reference=reference).first()
    db.close()
    return attempt


def subscriptions(user_id="user-1"):
    db = TestingSessionLocal()
    rows = db.query(Subscription).filter_by(user_id=user_id).all()
    db.close()
    return rows


def test_webhook_grants_subscription(client, create_attempt):
    create_attempt()

    response = client.post("/webhooks/yookassa", json=yookassa_notification())

    assert response.status_code == 200
    assert response.json() == {"message": "Webhook processed successfully"}
    assert get_attempt().status == "succeeded"

    rows = subscriptions()
    assert len(rows) == 1
    assert rows[0].tier == "basic"
    assert rows[0].is_active is True
    assert abs(rows[0].end_date - (utcnow() + timedelta(days=30))) < timedelta(minutes=1)


def test_webhook_retries_are_no_ops(client, create_attempt):
    create_attempt()

    for _ in range(3):
        response = client.post("/webhooks/yookassa", json=yookassa_notification())
        assert response.status_code == 200

    assert len(subscriptions()) == 1


def test_confirm_after_webhook_returns_succeeded(client, create_attempt, mocker):
    create_attempt()
    client.post("/webhooks/yookassa", json=yookassa_notification())
    fetch = mocker.patch("billing.providers.YooKassaAdapter.fetch_event")

    response = client.post("/payments/confirm", json={"providerReference": "pay-1"})

    assert response.status_code == 200
    assert response.json() == {"success": True, "status": "succeeded"}
    fetch.assert_not_called()
    assert len(subscriptions()) == 1


def test_webhook_unknown_payment_is_acknowledged(client):
    response = client.post("/webhooks/yookassa", json=yookassa_notification(reference="missing"))

    assert response.status_code == 200
    assert response.json() == {"message": "Webhook processed successfully"}


def test_webhook_ignored_event_is_acknowledged(client, create_attempt):
    create_attempt()

    response = client.post(
        "/webhooks/yookassa",
        json=yookassa_notification(event="payment.waiting_for_capture", status="waiting_for_capture"),
    )

    assert response.status_code == 200
    assert get_attempt().status == "pending"


def test_webhook_invalid_json_is_rejected(client):
    response = client.post("/webhooks/yookassa", content=b"{not json")

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid payload"


def test_webhook_store_failure_asks_for_retry(client, create_attempt, mocker):
    create_attempt()
    mocker.patch.object(
        PaymentStore,
        "get_by_reference",
        side_effect=OperationalError("SELECT", {}, Exception("database is locked")),
    )

    response = client.post("/webhooks/yookassa", json=yookassa_notification())

    assert response.status_code == 503
    mocker.stopall()
    assert get_attempt().status == "pending"


def test_cloudpayments_bad_signature_does_not_touch_payment(client, create_attempt, caplog):
    create_attempt(provider="cloudpayments", provider_reference="inv-1")
    body = json.dumps({"InvoiceId": "inv-1", "Status": "Completed", "Amount": 990}).encode()

    with caplog.at_level(logging.WARNING, logger="billing.routes"):
        response = client.post(
            "/webhooks/cloudpayments",
            content=body,
            headers={"Content-Type": "application/json", "Content-HMAC": "forged"},
        )

    assert response.status_code == 401
    assert get_attempt("inv-1").status == "pending"
    assert "Dropping unauthenticated notification" in caplog.text


def test_cloudpayments_signed_webhook_acknowledges_with_code(client, create_attempt):
    create_attempt(provider="cloudpayments", provider_reference="inv-1", kind="course", course_id="course-x")
    body = json.dumps(
        {
            "InvoiceId": "inv-1",
            "Status": "Completed",
            "Amount": 990,
            "Currency": "RUB",
            "TransactionId": 77,
            "CardLastFour": "4242",
        }
    ).encode()

    response = client.post(
        "/webhooks/cloudpayments",
        content=body,
        headers={"Content-Type": "application/json", "Content-HMAC": cloudpayments_signature(body)},
    )

    assert response.status_code == 200
    assert response.json() == {"code": 0}
    attempt = get_attempt("inv-1")
    assert attempt.status == "succeeded"
    assert attempt.extra["card_last_four"] == "4242"
    assert attempt.extra["cloudpayments_transaction_id"] == 77


def test_stripe_webhook_invalid_signature(client, mocker):
    import stripe

    mocker.patch(
        "stripe.Webhook.construct_event",
        side_effect=stripe.SignatureVerificationError("Invalid", "sig"),
    )

    response = client.post("/webhooks/stripe", content=b"raw", headers={"stripe-signature": "invalid_sig"})

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid signature"


def test_stripe_webhook_success(client, create_attempt, mocker):
    create_attempt(provider="stripe", provider_reference="pi_mock_123", currency="EUR", amount=50)
    mock_event = {
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_mock_123", "status": "succeeded", "amount": 5000, "currency": "eur"}},
    }
    mocker.patch("stripe.Webhook.construct_event", return_value=mock_event)

    response = client.post("/webhooks/stripe", content="raw_payload", headers={"stripe-signature": "fake_sig"})

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert get_attempt("pi_mock_123").status == "succeeded"


def test_confirm_rederives_outcome_from_provider(client, create_attempt, adapters):
    create_attempt(kind="course", course_id="course-x")
    adapters["yookassa"]._http = httpx.Client(
        transport=httpx.MockTransport(
            lambda request: httpx.Response(
                200,
                json={"id": "pay-1", "status": "succeeded", "amount": {"value": "990.00", "currency": "RUB"}},
            )
        )
    )

    response = client.post("/payments/confirm", json={"provider_reference": "pay-1"})

    assert response.status_code == 200
    assert response.json() == {"success": True, "status": "succeeded"}
    db = TestingSessionLocal()
    assert db.query(CoursePurchase).filter_by(user_id="user-1", course_id="course-x").count() == 1
    db.close()


def test_confirm_while_provider_still_pending(client, create_attempt, mocker):
    create_attempt()
    mocker.patch("billing.providers.YooKassaAdapter.fetch_event", return_value=None)

    response = client.post("/payments/confirm", json={"providerReference": "pay-1"})

    assert response.status_code == 200
    assert response.json() == {"success": False, "status": "pending"}
    assert get_attempt().status == "pending"


def test_confirm_other_users_payment_is_not_found(client, create_attempt):
    create_attempt(user_id="someone-else")

    response = client.post("/payments/confirm", json={"providerReference": "pay-1"})

    assert response.status_code == 404


def test_confirm_provider_outage_returns_generic_error(client, create_attempt, mocker):
    from billing.errors import ProviderUnavailable

    create_attempt()
    mocker.patch(
        "billing.providers.YooKassaAdapter.fetch_event",
        side_effect=ProviderUnavailable("YooKassa responded 502"),
    )

    response = client.post("/payments/confirm", json={"providerReference": "pay-1"})

    assert response.status_code == 503
    assert response.json() == {"detail": "Could not confirm payment, please retry"}


def test_confirm_requires_reference(client):
    response = client.post("/payments/confirm", json={})

    assert response.status_code == 422


def test_entitlements_lists_active_subscription_and_courses(client, create_attempt):
    create_attempt()
    client.post("/webhooks/yookassa", json=yookassa_notification())

    response = client.get("/entitlements")

    assert response.status_code == 200
    body = response.json()
    assert body["subscription"]["tier"] == "basic"
    assert body["course_ids"] == []


def test_auth_uses_token_subject(client, create_attempt, mocker):
    fastapi_app.dependency_overrides.pop(billing.auth.verify_token)
    create_attempt(user_id="user-42")
    mocker.patch("billing.providers.YooKassaAdapter.fetch_event", return_value=None)
    token = jwt.encode({"sub": "user-42"}, "test-jwt-secret", algorithm="HS256")

    ok = client.post(
        "/payments/confirm",
        json={"providerReference": "pay-1"},
        headers={"Authorization": f"Bearer {token}"},
    )
    rejected = client.post(
        "/payments/confirm",
        json={"providerReference": "pay-1"},
        headers={"Authorization": "Bearer not-a-token"},
    )

    assert ok.status_code == 200
    assert rejected.status_code == 401


def test_pending_payments_lists_only_callers_pending_attempts(client, create_attempt):
    create_attempt(provider_reference="pay-1")
    create_attempt(provider_reference="pay-2", kind="course", course_id="course-x")
    create_attempt(provider_reference="pay-3")
    create_attempt(provider_reference="pay-4", user_id="someone-else")
    client.post("/webhooks/yookassa", json=yookassa_notification(reference="pay-3"))

    response = client.get("/payments/pending")

    assert response.status_code == 200
    body = response.json()
    assert sorted(p["provider_reference"] for p in body) == ["pay-1", "pay-2"]
    course = next(p for p in body if p["provider_reference"] == "pay-2")
    assert course["kind"] == "course"
    assert course["course_id"] == "course-x"
    assert course["provider"] == "yookassa"


def test_pending_payments_requires_auth(client):
    fastapi_app.dependency_overrides.pop(billing.auth.verify_token)

    response = client.get("/payments/pending", headers={"Authorization": "Bearer not-a-token"})

    assert response.status_code == 401
