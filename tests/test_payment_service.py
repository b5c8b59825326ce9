"""Tests for the payment service: charges, refunds and the read side."""

import random

import pytest
from fastapi.testclient import TestClient

from conftest import USERS_URL, refuse
from services.payment.app.commands import DECLINE_REASONS
from services.payment.app.main import create_app
from services.payment.app.store import InMemoryPaymentStore


@pytest.fixture
def build(mesh):
    mesh.on("GET", f"{USERS_URL}/users/1", lambda r: {"id": 1, "name": "Alice"})

    def factory(**kwargs):
        return create_app(
            InMemoryPaymentStore(),
            mesh.client(),
            user_service_url=USERS_URL,
            rng=random.Random(7),
            **kwargs,
        )

    return factory


@pytest.fixture
def client(build):
    with TestClient(build()) as client:
        yield client


def pay(client, order_id=1, amount=20.0, user_id=1):
    return client.post("/pay", json={"orderId": order_id, "amount": amount, "userId": user_id})


class TestCharge:
    def test_charge_returns_paid_transaction(self, client):
        response = pay(client)
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "paid"
        assert body["transactionId"].startswith("txn_")
        assert body["orderId"] == 1
        assert body["amount"] == 20.0
        assert body["user"] == {"id": 1, "name": "Alice"}
        assert "duplicate" not in body

    def test_user_service_down_does_not_block_charge(self, client, mesh):
        mesh.on("GET", f"{USERS_URL}/users/1", refuse)
        response = pay(client)
        assert response.status_code == 200
        assert response.json()["user"] is None

    def test_second_charge_for_same_order_is_a_duplicate(self, client):
        first = pay(client).json()
        second = pay(client).json()

        assert second["transactionId"] == first["transactionId"]
        assert second["duplicate"] is True
        assert client.get("/payments", params={"orderId": 1}).json()["total"] == 1

    def test_missing_fields(self, client):
        response = client.post("/pay", json={"amount": 5})
        assert response.status_code == 400
        assert response.json()["error"] == (
            "Missing required fields: orderId and amount are required"
        )

    @pytest.mark.parametrize("amount", [0, -3, "abc"])
    def test_invalid_amount(self, client, amount):
        response = pay(client, amount=amount)
        assert response.status_code == 400
        assert response.json()["error"] == "amount must be a positive number"

    @pytest.mark.parametrize("amount", [1e30, 100000000])
    def test_amount_too_large_to_store_is_rejected(self, client, amount):
        response = pay(client, order_id=6, amount=amount)
        assert response.status_code == 400
        assert response.json()["error"] == "amount must be less than 100000000"
        assert client.get("/analytics/payments").json()["declinedTransactions"] == 0

    def test_refund_amount_too_large_is_rejected(self, client):
        txn_id = pay(client).json()["transactionId"]
        response = client.post("/refund", json={"transactionId": txn_id, "amount": 1e30})
        assert response.status_code == 400

    def test_amount_over_limit_is_declined(self, client):
        response = pay(client, order_id=5, amount=250000)
        assert response.status_code == 402
        assert response.json() == {"error": "Amount exceeds limit of 100000", "orderId": 5}

    def test_random_declines(self, build):
        with TestClient(build(decline_rate=1.0)) as client:
            response = pay(client, order_id=3)
            analytics = client.get("/analytics/payments").json()

        assert response.status_code == 402
        assert response.json()["error"] in DECLINE_REASONS
        assert analytics["declinedTransactions"] == 1
        assert analytics["totalTransactions"] == 0


class TestRefund:
    def test_full_refund_by_default(self, client):
        txn = pay(client).json()

        response = client.post(
            "/refund", json={"transactionId": txn["transactionId"], "reason": "order_cancellation"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["refundId"].startswith("ref_")
        assert body["originalTransactionId"] == txn["transactionId"]
        assert body["amount"] == 20.0
        assert body["reason"] == "order_cancellation"
        assert body["status"] == "processed"

        status = client.get(f"/transactions/{txn['transactionId']}/status").json()
        assert status["status"] == "refunded"
        assert status["netAmount"] == 0.0

    def test_partial_refunds_up_to_the_charged_amount(self, client):
        txn_id = pay(client).json()["transactionId"]

        assert client.post("/refund", json={"transactionId": txn_id, "amount": 5}).status_code == 200
        status = client.get(f"/transactions/{txn_id}/status").json()
        assert status["status"] == "partially_refunded"
        assert status["refundedAmount"] == 5.0
        assert status["netAmount"] == 15.0

        over = client.post("/refund", json={"transactionId": txn_id, "amount": 16})
        assert over.status_code == 400
        assert over.json()["error"] == "Refund amount exceeds remaining refundable amount"
        assert over.json()["remaining"] == 15.0

    def test_fully_refunded_order_can_be_charged_again(self, client):
        first = pay(client).json()
        client.post("/refund", json={"transactionId": first["transactionId"]})

        second = pay(client).json()

        assert second["transactionId"] != first["transactionId"]
        assert "duplicate" not in second

    def test_refund_of_unknown_transaction_is_404(self, client):
        response = client.post("/refund", json={"transactionId": "txn_missing"})
        assert response.status_code == 404
        assert response.json()["error"] == "Transaction not found"

    def test_refund_without_transaction_id_is_400(self, client):
        assert client.post("/refund", json={"amount": 5}).status_code == 400

    def test_refunds_listing_filters_by_transaction(self, client):
        a = pay(client, order_id=1).json()["transactionId"]
        b = pay(client, order_id=2).json()["transactionId"]
        client.post("/refund", json={"transactionId": a, "amount": 1})
        client.post("/refund", json={"transactionId": b, "amount": 2})

        body = client.get("/refunds", params={"transactionId": b}).json()
        assert body["total"] == 1
        assert body["refunds"][0]["amount"] == 2.0


class TestQueries:
    def test_payments_filter_by_user(self, client):
        pay(client, order_id=1, user_id=1)
        pay(client, order_id=2, user_id=2)

        body = client.get("/payments", params={"userId": 2}).json()
        assert body["total"] == 1
        assert body["filtered"] == 1
        assert body["transactions"][0]["orderId"] == 2

    def test_unknown_transaction_status_is_404(self, client):
        assert client.get("/transactions/txn_nope/status").status_code == 404

    def test_analytics(self, client):
        txn_id = pay(client, order_id=1, amount=30).json()["transactionId"]
        pay(client, order_id=2, amount=10)
        pay(client, order_id=3, amount=200000)
        client.post("/refund", json={"transactionId": txn_id, "amount": 5, "reason": "damaged"})

        body = client.get("/analytics/payments").json()

        assert body["totalTransactions"] == 2
        assert body["declinedTransactions"] == 1
        assert body["totalRevenue"] == 40.0
        assert body["totalRefunded"] == 5.0
        assert body["netRevenue"] == 35.0
        assert body["successRate"] == 66.67
        assert body["refundsByReason"] == {"damaged": 1}


class TestOperations:
    def test_health_counts_transactions_and_refunds(self, client, mesh):
        mesh.on("GET", f"{USERS_URL}/ready", lambda r: {"status": "ready"})
        txn_id = pay(client).json()["transactionId"]
        client.post("/refund", json={"transactionId": txn_id, "amount": 1})

        body = client.get("/health").json()

        assert body["status"] == "ok"
        assert body["deps"] == {"userService": "ok"}
        assert body["transactionsCount"] == 1
        assert body["refundsCount"] == 1

    def test_user_activity_webhook(self, client):
        response = client.post(
            "/webhooks/user-activity",
            json={"userId": 1, "activity": "login", "ipAddress": "10.0.0.1"},
        )
        assert response.json() == {"received": True}
