"""
HTTP API Tests

Drives the FastAPI app through TestClient with session cookies.
"""

import logging

import pytest
from fastapi.testclient import TestClient

from wallet.api import create_app
from wallet.config import DEFAULT_SESSION_SECRET
from wallet.errors import StorageError
from wallet.service import WalletService
from wallet.storage import InMemoryStorage

from conftest import make_settings


@pytest.fixture
def app():
    settings = make_settings(ADMIN_USERNAME="admin", ADMIN_PASSWORD="admin-pass")
    return create_app(WalletService(InMemoryStorage(), settings), settings)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        resp = c.post("/api/auth/register", json={"username": "ravi", "password": "ravi-pass"})
        assert resp.status_code == 201
        yield c


@pytest.fixture
def admin_client(app):
    with TestClient(app) as c:
        resp = c.post("/api/auth/login", json={"username": "admin", "password": "admin-pass"})
        assert resp.status_code == 200
        yield c


def submit(client, amount=100, utr="UTR123"):
    resp = client.post("/api/wallet/balance-request", json={"amount": amount, "utrNumber": utr})
    assert resp.status_code == 201
    return resp.json()


class TestAuth:
    def test_health(self, app):
        resp = TestClient(app).get("/health")

        assert resp.status_code == 200
        assert resp.json()["storage"] == "memory"

    def test_health_reports_storage_failure(self, app, monkeypatch):
        service = app.state.wallet_service

        def broken_ping():
            raise StorageError("Storage failure: connection refused")

        monkeypatch.setattr(service.storage, "ping", broken_ping)

        assert TestClient(app).get("/health").status_code == 500

    def test_default_session_secret_logs_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="wallet.api"):
            create_app(settings=make_settings(SESSION_SECRET=DEFAULT_SESSION_SECRET))

        assert any("SESSION_SECRET" in r.getMessage() for r in caplog.records)

    def test_configured_session_secret_is_quiet(self, caplog):
        with caplog.at_level(logging.WARNING, logger="wallet.api"):
            create_app(settings=make_settings())

        assert not any("SESSION_SECRET" in r.getMessage() for r in caplog.records)

    @pytest.mark.parametrize("payload", [
        {"username": "meera"},
        {"password": "pw"},
        {"username": ["meera"], "password": "pw"},
    ])
    def test_malformed_registration(self, app, payload):
        resp = TestClient(app).post("/api/auth/register", json=payload)

        assert resp.status_code == 400

    def test_register_hides_password(self, client):
        resp = client.get("/api/user")

        assert resp.status_code == 200
        body = resp.json()
        assert body["username"] == "ravi"
        assert body["balance"] == 0
        assert body["referralCode"].startswith("RAVI")
        assert body["isAdmin"] is False
        assert "password" not in body
        assert "passwordHash" not in body

    def test_duplicate_username(self, client):
        resp = client.post("/api/auth/register", json={"username": "ravi", "password": "x"})

        assert resp.status_code == 400
        assert resp.json()["detail"] == "Username already exists"

    def test_login_failures(self, app):
        c = TestClient(app)

        assert c.post("/api/auth/login", json={"username": "ravi", "password": "x"}).status_code == 401
        assert c.post("/api/auth/login", json={"username": "", "password": ""}).status_code == 400

    def test_requires_session(self, app):
        c = TestClient(app)

        assert c.get("/api/user").status_code == 401
        assert c.get("/api/wallet/transactions").status_code == 401
        assert c.post("/api/otp/generate", json={}).status_code == 401

    def test_logout(self, client):
        assert client.post("/api/auth/logout").status_code == 200
        assert client.get("/api/user").status_code == 401

    def test_login_sets_session(self, app, client):
        c = TestClient(app)
        resp = c.post("/api/auth/login", json={"username": "ravi", "password": "ravi-pass"})

        assert resp.status_code == 200
        assert c.get("/api/user").json()["username"] == "ravi"


class TestBalanceRequests:
    def test_submit_and_approve(self, client, admin_client):
        request = submit(client)
        assert request["status"] == "pending"
        assert request["utrNumber"] == "UTR123"
        assert request["approvedAt"] is None
        assert client.get("/api/user").json()["balance"] == 0

        resp = admin_client.post(f"/api/admin/balance-requests/{request['id']}/approve")

        assert resp.status_code == 200
        body = resp.json()
        assert body["request"]["status"] == "approved"
        assert body["request"]["approvedAt"] is not None
        assert body["user"]["balance"] == 100

        assert client.get("/api/user").json()["balance"] == 100
        transactions = client.get("/api/wallet/transactions").json()
        assert len(transactions) == 1
        assert transactions[0]["type"] == "add"
        assert transactions[0]["amount"] == 100

    def test_second_approval_rejected(self, client, admin_client):
        request = submit(client)
        admin_client.post(f"/api/admin/balance-requests/{request['id']}/approve")

        resp = admin_client.post(f"/api/admin/balance-requests/{request['id']}/approve")

        assert resp.status_code == 400
        assert client.get("/api/user").json()["balance"] == 100

    def test_reject(self, client, admin_client):
        request = submit(client)

        resp = admin_client.post(f"/api/admin/balance-requests/{request['id']}/reject")

        assert resp.status_code == 200
        assert resp.json()["status"] == "rejected"
        assert resp.json()["approvedAt"] is not None
        assert client.get("/api/user").json()["balance"] == 0
        assert client.get("/api/wallet/transactions").json() == []

    def test_unknown_request(self, admin_client):
        assert admin_client.post("/api/admin/balance-requests/999/approve").status_code == 404
        assert admin_client.post("/api/admin/balance-requests/999/reject").status_code == 404

    @pytest.mark.parametrize("payload", [
        {"amount": 0, "utrNumber": "UTR1"},
        {"amount": -10, "utrNumber": "UTR1"},
        {"utrNumber": "UTR1"},
        {"amount": 10, "utrNumber": "   "},
        {"amount": 10},
    ])
    def test_invalid_submission(self, client, payload):
        resp = client.post("/api/wallet/balance-request", json=payload)

        assert resp.status_code == 400

    @pytest.mark.parametrize("payload", [
        {"amount": "abc", "utrNumber": "UTR1"},
        {"amount": 10, "utrNumber": ["x"]},
        {"amount": {"value": 10}, "utrNumber": "UTR1"},
    ])
    def test_malformed_submission(self, client, payload):
        resp = client.post("/api/wallet/balance-request", json=payload)

        assert resp.status_code == 400
        assert isinstance(resp.json()["detail"], list)
        assert client.get("/api/wallet/balance-requests").json() == []

    def test_sub_cent_submission(self, client):
        resp = client.post("/api/wallet/balance-request", json={"amount": "100.005", "utrNumber": "UTR1"})

        assert resp.status_code == 400

    def test_non_integer_request_id(self, admin_client):
        assert admin_client.post("/api/admin/balance-requests/abc/approve").status_code == 400
        assert admin_client.post("/api/admin/referrals/abc/credit").status_code == 400

    def test_admin_routes_forbidden_for_users(self, client):
        request = submit(client)

        assert client.get("/api/admin/balance-requests").status_code == 403
        assert client.post(f"/api/admin/balance-requests/{request['id']}/approve").status_code == 403

    def test_lists(self, client, admin_client):
        first = submit(client, 10, "A")
        second = submit(client, 20, "B")
        admin_client.post(f"/api/admin/balance-requests/{first['id']}/reject")

        mine = client.get("/api/wallet/balance-requests").json()
        assert [r["id"] for r in mine] == [second["id"], first["id"]]

        everything = admin_client.get("/api/admin/balance-requests").json()
        assert [r["id"] for r in everything] == [second["id"], first["id"]]

        pending = admin_client.get("/api/admin/balance-requests", params={"status": "pending"}).json()
        assert [r["id"] for r in pending] == [second["id"]]


class TestOtp:
    def test_generate_and_history(self, client, admin_client):
        request = submit(client, 5)
        admin_client.post(f"/api/admin/balance-requests/{request['id']}/approve")

        resp = client.post("/api/otp/generate", json={"serviceId": "tg", "serviceName": "Telegram", "price": 1.5})

        assert resp.status_code == 200
        body = resp.json()
        assert len(body["otp"]) == 6
        assert body["cost"] == 1.5
        assert body["service"] == "Telegram"
        assert body["balance"] == 3.5

        history = client.get("/api/otp/history").json()
        assert len(history) == 1
        assert history[0]["otp"] == body["otp"]
        assert history[0]["serviceName"] == "Telegram"

        resp = client.delete("/api/otp/history")
        assert resp.status_code == 200
        assert resp.json()["deleted"] == 1
        assert client.get("/api/otp/history").json() == []

    def test_insufficient_balance(self, client):
        resp = client.post("/api/otp/generate", json={"price": 10})

        assert resp.status_code == 400
        assert resp.json()["detail"] == "Insufficient balance"
        assert client.get("/api/otp/history").json() == []


class TestReferrals:
    def test_referral_flow(self, app, client, admin_client):
        code = client.get("/api/user").json()["referralCode"]
        newcomer = TestClient(app)
        resp = newcomer.post(
            "/api/auth/register", json={"username": "meera", "password": "pw", "referredBy": code}
        )
        assert resp.status_code == 201
        assert resp.json()["referredBy"] == code

        referrals = client.get("/api/referrals").json()
        assert len(referrals) == 1
        assert referrals[0]["credited"] is False

        resp = admin_client.post(f"/api/admin/referrals/{referrals[0]['id']}/credit")
        assert resp.status_code == 200
        assert resp.json()["referral"]["credited"] is True
        assert resp.json()["user"]["balance"] == 10

        assert admin_client.post(f"/api/admin/referrals/{referrals[0]['id']}/credit").status_code == 400
        assert admin_client.post("/api/admin/referrals/999/credit").status_code == 404
        assert client.get("/api/user").json()["balance"] == 10
