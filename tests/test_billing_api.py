"""HTTP surface of the billing service: access checks, intents, webhooks and ops."""

import pytest
from fastapi.testclient import TestClient

from nunaa.services.billing.main import app, get_billing

API_KEY = "test-admin-key"
BANK_SECRET = "bank-secret-0123456789"
CARD_SECRET = "card-secret-0123456789"


@pytest.fixture
def client(billing):
    app.dependency_overrides[get_billing] = lambda: billing
    yield TestClient(app)
    app.dependency_overrides.clear()


def as_caller(account_id: str, **extra) -> dict:
    return {"x-account-id": account_id, **extra}


def test_access_check(client, make_account):
    account = make_account(role="premium")

    allowed = client.get("/access/check", params={"required": "member"}, headers=as_caller(account))
    denied = client.get("/access/check", params={"required": "vip"}, headers=as_caller(account))
    bogus = client.get("/access/check", params={"required": "gold"}, headers=as_caller(account))

    assert allowed.json()["allowed"] is True
    assert denied.json()["allowed"] is False
    assert bogus.status_code == 400
    assert bogus.json()["error"]["code"] == "INVALID_ARGUMENT"


def test_bank_transfer_intent_and_webhook(client, make_account):
    account = make_account()

    first = client.post("/billing/bank-transfer/intent", json={"pack": "umete"}, headers=as_caller(account)).json()
    second = client.post("/billing/bank-transfer/intent", json={"pack": "teOhi"}, headers=as_caller(account)).json()
    notification = {"reference_id": first["reference_id"], "amount": 20000, "bank_transaction_id": "trx-77"}

    missing_secret = client.post("/billing/bank-transfer/webhook", json=notification)
    wrong_secret = client.post(
        "/billing/bank-transfer/webhook", json=notification, headers={"x-webhook-secret": "not-the-secret"}
    )
    accepted = client.post("/billing/bank-transfer/webhook", json=notification, headers={"x-webhook-secret": BANK_SECRET})

    assert first["reused"] is False
    assert second["reused"] is True
    assert second["payment_id"] == first["payment_id"]
    assert missing_secret.status_code == 401
    assert wrong_secret.status_code == 401
    assert accepted.json()["already_processed"] is False
    assert client.get("/access/me", headers=as_caller(account)).json()["tier"] == "premium"
    assert client.get("/billing/bank-transfer/me", headers=as_caller(account)).json()["status"] == "paid"


def test_legacy_request_endpoint(client, make_account):
    account = make_account()

    bad = client.post("/billing/legacy/request-verification", json={"paid_with": "paypal"}, headers=as_caller(account))
    first = client.post("/billing/legacy/request-verification", json={"paid_with": "naho"}, headers=as_caller(account))
    again = client.post("/billing/legacy/request-verification", json={"paid_with": "naho"}, headers=as_caller(account))

    assert bad.status_code == 400
    assert bad.json()["error"]["code"] == "INVALID_ARGUMENT"
    assert first.json()["already_requested"] is False
    assert again.json()["already_requested"] is True
    assert again.json()["verification_id"] == first.json()["verification_id"]


def test_ops_review_queue(client, make_account):
    admin = make_account(role="admin")
    moderator = make_account(role="moderator")
    account = make_account()
    requested = client.post(
        "/billing/legacy/request-verification", json={"paid_with": "tamiga"}, headers=as_caller(account)
    ).json()
    path = f"/ops/legacy/{requested['verification_id']}/confirm"

    assert client.get("/ops/legacy/pending", headers=as_caller(admin)).status_code == 401
    pending = client.get("/ops/legacy/pending", headers=as_caller(admin, **{"x-api-key": API_KEY})).json()
    forbidden = client.post(path, json={}, headers=as_caller(moderator, **{"x-api-key": API_KEY}))
    confirmed = client.post(path, json={"upgrade_to_premium": True}, headers=as_caller(admin, **{"x-api-key": API_KEY}))
    replay = client.post(path, json={}, headers=as_caller(admin, **{"x-api-key": API_KEY}))

    assert [item["verification_id"] for item in pending] == [requested["verification_id"]]
    assert forbidden.status_code == 403
    assert confirmed.json()["status"] == "confirmed"
    assert confirmed.json()["pack"] == "umete"
    assert replay.status_code == 409
    assert replay.json()["error"]["code"] == "ALREADY_FINALIZED"
    assert client.get("/access/me", headers=as_caller(account)).json()["tier"] == "premium"


def test_superseded_card_checkout_ops_queue(client, make_account):
    admin = make_account(role="admin")
    account = make_account()
    stale = client.post(
        "/billing/card/checkout", json={"pack": "teOhi", "provider_session_id": "cs_a"}, headers=as_caller(account)
    ).json()
    client.post("/billing/card/checkout", json={"pack": "umete", "provider_session_id": "cs_b"}, headers=as_caller(account))
    completed = client.post(
        "/billing/card/webhook",
        json={"event_type": "checkout.session.completed", "provider_session_id": "cs_a", "payment_intent_id": "pi_a"},
        headers={"x-webhook-secret": CARD_SECRET},
    ).json()
    ops = as_caller(admin, **{"x-api-key": API_KEY})

    pending = client.get("/ops/card/pending", headers=ops).json()
    confirmed = client.post(f"/ops/card/{stale['payment_id']}/confirm", headers=ops)

    assert completed["needs_verification"] is True
    assert [(item["payment_id"], item["needs_verification"]) for item in pending] == [(stale["payment_id"], True)]
    assert confirmed.json()["status"] == "paid"
    assert client.get("/ops/card/pending", headers=ops).json() == []
    assert client.get("/access/me", headers=as_caller(account)).json()["tier"] == "member"


def test_role_update(client, make_account):
    admin = make_account(role="admin")
    account = make_account()

    response = client.patch(
        f"/ops/accounts/{account}/role",
        json={"role": "vip"},
        headers=as_caller(admin, **{"x-api-key": API_KEY}),
    )

    assert response.json() == {"account_id": account, "role": "vip"}
    assert client.get("/access/check", params={"required": "vip"}, headers=as_caller(account)).json()["allowed"]
