"""Tests for Meterline API endpoints."""

import sqlite3

import pytest
from fastapi.testclient import TestClient

import api
import db
import payments
from payments import DummyPaymentProvider, PaymentOutcome, PaymentProvider


@pytest.fixture
def client(coordinator, clock, monkeypatch):
    db.set_coordinator(coordinator)
    monkeypatch.setattr(api, "clock", clock)
    yield TestClient(api.app)
    db.set_coordinator(None)
    payments.set_payment_provider(None)


@pytest.fixture
def user(client):
    r = client.post("/users", json={
        "username": "alice", "email": "alice@example.com", "password_hash": "argon2$x",
    })
    assert r.status_code == 201
    return r.json()["user"]


@pytest.fixture
def instance(client, user):
    r = client.post("/instances", json={
        "user_id": user["id"], "country_code": "US", "phone_number": "+15550001234",
    })
    assert r.status_code == 201
    return r.json()["instance"]


def _error_code(r):
    body = r.json()
    assert body["ok"] is False
    return body["error"]["code"]


class TestHealthEndpoints:
    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert r.json()["name"] == "Meterline"

    def test_healthz(self, client):
        assert client.get("/healthz").json()["status"] == "healthy"

    def test_readyz(self, client):
        r = client.get("/readyz")
        assert r.status_code == 200
        assert r.json()["storage"]["mode"] == "primary-only"

    def test_metrics(self, client):
        r = client.get("/metrics")
        assert r.json()["metrics"]["storage"]["mirror_failed"] == 0


class TestUserEndpoints:
    def test_create_user(self, user):
        assert user["username"] == "alice"
        assert "password_hash" not in user

    def test_duplicate_user(self, client, user):
        r = client.post("/users", json={
            "username": "alice", "email": "new@example.com", "password_hash": "x",
        })
        assert r.status_code == 409
        assert _error_code(r) == "conflict"

    def test_get_user(self, client, user):
        r = client.get(f"/users/{user['id']}")
        assert r.status_code == 200
        assert r.json()["property"]["instance_status"] == "inactive"
        assert r.json()["property"]["api_key_active"] is False

    def test_get_unknown_user(self, client):
        r = client.get("/users/404")
        assert r.status_code == 404
        assert _error_code(r) == "not_found"


class TestInstanceEndpoints:
    def test_create_and_list(self, client, user, instance):
        assert instance["active"] == 0
        r = client.get(f"/instances?user_id={user['id']}")
        assert r.status_code == 200
        assert [i["id"] for i in r.json()["instances"]] == [instance["id"]]

    def test_create_for_unknown_user(self, client):
        r = client.post("/instances", json={
            "user_id": 999, "country_code": "US", "phone_number": "+15550001234",
        })
        assert r.status_code == 404

    def test_invalid_country_is_400(self, client, user):
        r = client.post("/instances", json={
            "user_id": user["id"], "country_code": "1X", "phone_number": "+15550001234",
        })
        assert r.status_code == 400
        assert _error_code(r) == "invalid_request"

    def test_missing_field_is_422(self, client):
        r = client.post("/instances", json={"user_id": 1})
        assert r.status_code == 422
        assert _error_code(r) == "validation_error"

    def test_activate(self, client, instance, clock):
        r = client.patch(f"/instances/{instance['id']}/activate")
        assert r.status_code == 200
        assert r.json()["record"]["started_at"] == clock()
        assert client.get(f"/instances/{instance['id']}").json()["instance"]["status"] == "active"

    def test_activate_twice_is_409(self, client, instance):
        client.patch(f"/instances/{instance['id']}/activate")
        r = client.patch(f"/instances/{instance['id']}/activate")
        assert r.status_code == 409
        assert _error_code(r) == "conflict"

    def test_activate_unknown_is_404(self, client):
        assert client.patch("/instances/999/activate").status_code == 404

    def test_deactivate(self, client, instance, clock):
        client.patch(f"/instances/{instance['id']}/activate")
        clock.advance(3600)
        r = client.patch(f"/instances/{instance['id']}/deactivate")
        assert r.status_code == 200
        assert r.json()["record"]["amount_cents"] == 34
        assert r.json()["status"] == "inactive"

    def test_deactivate_inactive_is_409(self, client, instance):
        assert client.patch(f"/instances/{instance['id']}/deactivate").status_code == 409

    def test_deactivate_unknown_is_404(self, client):
        assert client.patch("/instances/999/deactivate").status_code == 404

    def test_deactivate_without_window_is_500(self, client, instance, coordinator):
        coordinator.write("UPDATE instances SET active = 1 WHERE id = ?", (instance["id"],))
        r = client.patch(f"/instances/{instance['id']}/deactivate")
        assert r.status_code == 500
        assert _error_code(r) == "inconsistent"


class TestBillingEndpoints:
    def test_billing_empty(self, client, user):
        r = client.get(f"/billing?user_id={user['id']}")
        assert r.status_code == 200
        assert r.json() == {
            "user_id": user["id"], "records": [], "total_cents": 0, "open_estimate_cents": 0,
        }

    def test_billing_after_cycle(self, client, user, instance, clock):
        client.patch(f"/instances/{instance['id']}/activate")
        clock.advance(7200)
        client.patch(f"/instances/{instance['id']}/deactivate")
        client.patch(f"/instances/{instance['id']}/activate")
        clock.advance(3600)

        body = client.get(f"/billing?user_id={user['id']}").json()
        assert len(body["records"]) == 2
        assert body["records"][1]["ended_at"] is None
        assert body["total_cents"] == 67
        assert body["open_estimate_cents"] == 34

    def test_billing_unknown_user(self, client):
        assert client.get("/billing?user_id=404").status_code == 404

    def test_account_and_deposit(self, client, user):
        r = client.post("/billing/deposit", json={"user_id": user["id"], "amount": 12.5})
        assert r.status_code == 200
        r = client.get(f"/billing/account?user_id={user['id']}")
        assert r.json()["account"]["amount_in_wallet"] == 12.5

    def test_deposit_must_be_positive(self, client, user):
        r = client.post("/billing/deposit", json={"user_id": user["id"], "amount": 0})
        assert r.status_code == 422


class TestApiKeyEndpoint:
    def test_activate_with_dummy_provider(self, client, user):
        payments.set_payment_provider(DummyPaymentProvider())
        r = client.post(f"/users/{user['id']}/api-key/activate")
        assert r.status_code == 200
        assert r.json()["payment"]["provider"] == "dummy"
        assert client.get(f"/users/{user['id']}").json()["property"]["api_key_active"] is True

        again = client.post(f"/users/{user['id']}/api-key/activate")
        assert again.status_code == 409

    def test_declined_is_402(self, client, user):
        class Declining(PaymentProvider):
            name = "declining"

            def charge(self, details):
                return PaymentOutcome(False, self.name, "insufficient funds")

        payments.set_payment_provider(Declining())
        r = client.post(f"/users/{user['id']}/api-key/activate", json={"payment_method": "pm_x"})
        assert r.status_code == 402
        assert r.json()["error"]["message"] == "insufficient funds"

    def test_no_provider_configured_is_503(self, client, user, monkeypatch):
        payments.set_payment_provider(None)
        monkeypatch.setattr(payments, "DUMMY_PAYMENT_MODE", False)
        monkeypatch.setattr(payments, "STRIPE_SECRET_KEY", "")
        r = client.post(f"/users/{user['id']}/api-key/activate")
        assert r.status_code == 503


class TestLifespan:
    def test_startup_reconciles_and_starts_heartbeat(self, coordinator, instance):
        coordinator.write("UPDATE instances SET active = 1 WHERE id = ?", (instance["id"],))
        with TestClient(api.app) as c:
            assert coordinator._heartbeat_thread is not None
            r = c.get(f"/instances/{instance['id']}")
            assert r.json()["instance"]["active"] == 0
        assert coordinator._heartbeat_thread is None

    def test_shutdown_closes_both_connections(self, dual_coordinator, secondary, clock, monkeypatch):
        db.set_coordinator(dual_coordinator)
        monkeypatch.setattr(api, "clock", clock)
        with TestClient(api.app) as c:
            assert c.get("/readyz").json()["storage"]["mode"] == "dual"

        assert secondary.closed
        assert dual_coordinator.mode == "primary-only"
        with pytest.raises(sqlite3.ProgrammingError):
            dual_coordinator._primary.execute("SELECT 1")
        assert db._coordinator is None
