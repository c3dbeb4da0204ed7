"""HTTP surface of the wallet service, wired to the per-test store."""

import pytest
from fastapi.testclient import TestClient

from nunaa.services.wallet.main import app, get_ledger

API_KEY = {"x-api-key": "test-admin-key"}


@pytest.fixture
def client(ledger):
    app.dependency_overrides[get_ledger] = lambda: ledger
    yield TestClient(app)
    app.dependency_overrides.clear()


def as_caller(account_id: str) -> dict:
    return {"x-account-id": account_id}


def test_health_and_metrics_endpoints(client):
    assert client.get("/health").json() == {"ok": True}
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "http_requests_total" in response.text


def test_identity_header_is_required(client):
    assert client.get("/wallet/balance").status_code == 401


def test_open_account_requires_api_key(client):
    body = {"email": "Moana@Example.com"}
    assert client.post("/accounts", json=body).status_code == 401

    response = client.post("/accounts", json=body, headers=API_KEY)

    assert response.status_code == 200
    assert response.json()["email"] == "moana@example.com"
    assert response.json()["balance"] == 0


def test_transfer_by_email(client, ledger, make_account):
    sender = make_account(balance=1000)
    recipient = make_account()
    email = ledger.get_account(recipient).email

    response = client.post(
        "/wallet/transfer",
        json={"to_email": email, "amount": 300, "description": "gift"},
        headers=as_caller(sender),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["type"] == "debit"
    assert (body["balance_before"], body["balance_after"]) == (1000, 700)
    assert client.get("/wallet/balance", headers=as_caller(recipient)).json()["balance"] == 300


def test_transfer_errors_are_rendered(client, make_account):
    sender = make_account(balance=100)
    recipient = make_account()

    over = client.post(
        "/wallet/transfer",
        json={"to_account_id": recipient, "amount": 101, "description": "too much"},
        headers=as_caller(sender),
    )
    unknown = client.post(
        "/wallet/transfer",
        json={"to_email": "nobody@example.com", "amount": 1, "description": "hello"},
        headers=as_caller(sender),
    )
    no_recipient = client.post(
        "/wallet/transfer",
        json={"amount": 1, "description": "hello"},
        headers=as_caller(sender),
    )

    assert over.status_code == 409
    assert over.json()["error"]["code"] == "INSUFFICIENT_FUNDS"
    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == "ACCOUNT_NOT_FOUND"
    assert no_recipient.status_code == 422


def test_marketplace_flow(client, make_account):
    seller = make_account()
    buyer = make_account(balance=250)

    listing = client.post(
        "/marketplace/listings", json={"title": "Pandanus mat", "price": 250}, headers=as_caller(seller)
    ).json()
    bought = client.post("/wallet/exchange", json={"listing_id": listing["listing_id"]}, headers=as_caller(buyer))
    again = client.post("/wallet/exchange", json={"listing_id": listing["listing_id"]}, headers=as_caller(buyer))

    assert bought.status_code == 200
    assert bought.json()["type"] == "exchange"
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "LISTING_UNAVAILABLE"
    assert client.get("/marketplace/listings").json() == []
    history = client.get("/wallet/transactions", headers=as_caller(seller)).json()
    assert history["total"] == 1
    assert history["items"][0]["listing_id"] == listing["listing_id"]


def test_reconciliation_endpoints(client, ledger, make_account):
    a = make_account(balance=100)
    b = make_account()
    debit = ledger.transfer(a, b, 40, "share")

    assert client.get(f"/reconciliation/{debit.correlation_id}").status_code == 401
    single = client.get(f"/reconciliation/{debit.correlation_id}", headers=API_KEY).json()
    report = client.get("/reconciliation", headers=API_KEY).json()

    assert single["balanced"] is True
    assert report["imbalanced_count"] == 0
