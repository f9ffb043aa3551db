from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api import routes
from app.audit import RepositoryAuditSink
from app.domain.policy import LockoutPolicy
from app.domain.service import AccountService
from app.security.throttle import SlidingWindowThrottle

from conftest import FAST_PASSWORD_POLICY, PASSWORD, FakeRepository


def _make_client(max_requests: int):
    repository = FakeRepository()
    service = AccountService(
        repository,
        RepositoryAuditSink(repository),
        lockout_policy=LockoutPolicy(),
        password_policy=FAST_PASSWORD_POLICY,
    )

    app = FastAPI()
    app.include_router(routes.router)
    app.state.account_service = service

    original_throttle = routes.throttle
    routes.throttle = SlidingWindowThrottle(max_requests=max_requests, window_seconds=60)
    return app, service, repository, original_throttle


@pytest.fixture
def api_client():
    """Provide a FastAPI test client with isolated state."""
    app, service, repository, original_throttle = _make_client(max_requests=100)
    with TestClient(app) as client:
        yield client, service, repository
    routes.throttle = original_throttle


@pytest.fixture
def strict_client():
    app, service, repository, original_throttle = _make_client(max_requests=2)
    with TestClient(app) as client:
        yield client, service, repository
    routes.throttle = original_throttle


def _register(client: TestClient, **overrides) -> dict:
    payload = {"tenant_id": "T1", "email": "a@x.com", "username": "alice", "password": PASSWORD}
    payload.update(overrides)
    response = client.post("/v1/accounts", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def _activate(client: TestClient, account_id: str, tenant_id: str = "T1") -> None:
    response = client.post(f"/v1/accounts/{account_id}/activate", headers={"X-Tenant-ID": tenant_id})
    assert response.status_code == 200, response.text


def _login(client: TestClient, password: str, identifier: str = "alice", tenant_id: str = "T1"):
    return client.post(
        "/v1/login",
        json={"tenant_id": tenant_id, "identifier": identifier, "password": password},
    )


def test_register_returns_pending_account(api_client):
    client, _, _ = api_client

    body = _register(client, email="Alice@X.com", first_name="Alice")

    assert body["status"] == "pending"
    assert body["email"] == "alice@x.com"
    assert body["login_attempts"] == 0
    assert body["display_name"] == "Alice"
    assert "password" not in body
    assert "password_hash" not in body


def test_register_duplicate_email_conflicts(api_client):
    client, _, _ = api_client
    _register(client)

    response = client.post(
        "/v1/accounts",
        json={"tenant_id": "T1", "email": "A@x.com", "username": "other", "password": PASSWORD},
    )

    assert response.status_code == 409
    assert response.json()["detail"]["error_code"] == "EMAIL_ALREADY_EXISTS"


def test_register_weak_password_is_unprocessable(api_client):
    client, _, _ = api_client

    response = client.post(
        "/v1/accounts",
        json={"tenant_id": "T1", "email": "a@x.com", "username": "alice", "password": "short"},
    )

    assert response.status_code == 422
    assert response.json()["detail"]["error_code"] == "SECRET_TOO_SHORT"


def test_get_account_is_tenant_scoped(api_client):
    client, _, _ = api_client
    account = _register(client)

    own = client.get(f"/v1/accounts/{account['account_id']}", headers={"X-Tenant-ID": "T1"})
    other = client.get(f"/v1/accounts/{account['account_id']}", headers={"X-Tenant-ID": "T2"})

    assert own.status_code == 200
    assert other.status_code == 404


def test_activate_twice_conflicts(api_client):
    client, _, _ = api_client
    account = _register(client)
    _activate(client, account["account_id"])

    response = client.post(
        f"/v1/accounts/{account['account_id']}/activate", headers={"X-Tenant-ID": "T1"}
    )

    assert response.status_code == 409
    assert response.json()["detail"]["error_code"] == "ALREADY_ACTIVE"


def test_illegal_transition_conflicts(api_client):
    client, _, _ = api_client
    account = _register(client)

    response = client.post(
        f"/v1/accounts/{account['account_id']}/suspend",
        json={"reason": "fraud"},
        headers={"X-Tenant-ID": "T1"},
    )

    assert response.status_code == 409
    assert response.json()["detail"]["error_code"] == "ILLEGAL_TRANSITION"


def test_unknown_account_is_not_found(api_client):
    client, _, _ = api_client

    response = client.post("/v1/accounts/missing/activate", headers={"X-Tenant-ID": "T1"})

    assert response.status_code == 404
    assert response.json()["detail"]["error_code"] == "ACCOUNT_NOT_FOUND"


def test_login_success_returns_account(api_client):
    client, _, _ = api_client
    account = _register(client)
    _activate(client, account["account_id"])

    response = _login(client, PASSWORD, identifier="a@x.com")

    assert response.status_code == 200
    assert response.json()["last_login_at"] is not None


def test_login_failures_share_one_response(api_client):
    client, _, _ = api_client
    account = _register(client)
    _activate(client, account["account_id"])
    deleted = _register(client, email="d@x.com", username="dora")
    client.delete(f"/v1/accounts/{deleted['account_id']}", headers={"X-Tenant-ID": "T1"})

    wrong_password = _login(client, "Wrong1!pass")
    unknown = _login(client, PASSWORD, identifier="nobody")
    deleted_login = _login(client, PASSWORD, identifier="dora")

    for response in (wrong_password, unknown, deleted_login):
        assert response.status_code == 401
        assert response.json()["detail"] == {
            "error_code": "INVALID_CREDENTIALS",
            "message": "invalid credentials",
        }


def test_login_lockout_returns_locked_until(api_client):
    client, service, _ = api_client
    account = _register(client)
    _activate(client, account["account_id"])

    for _ in range(5):
        assert _login(client, "Wrong1!pass").status_code == 401
    response = _login(client, PASSWORD)

    assert response.status_code == 423
    detail = response.json()["detail"]
    assert detail["error_code"] == "ACCOUNT_LOCKED"
    locked_until = datetime.fromisoformat(detail["locked_until"])
    expected = datetime.now(timezone.utc) + timedelta(minutes=30)
    assert abs(locked_until - expected) < timedelta(seconds=10)
    assert service.require_account(account["account_id"], "T1").login_attempts == 5


@pytest.mark.parametrize("transition", [None, "deactivate", "suspend"])
def test_login_refuses_accounts_that_are_not_active(api_client, transition):
    client, _, _ = api_client
    account = _register(client)
    headers = {"X-Tenant-ID": "T1"}
    if transition is not None:
        _activate(client, account["account_id"])
        response = client.post(
            f"/v1/accounts/{account['account_id']}/{transition}", json={}, headers=headers
        )
        assert response.status_code == 200

    response = _login(client, PASSWORD)

    assert response.status_code == 401
    assert response.json()["detail"]["error_code"] == "INVALID_CREDENTIALS"


def test_lock_with_deadline_without_timezone(api_client):
    client, _, _ = api_client
    account = _register(client)
    _activate(client, account["account_id"])

    locked = client.post(
        f"/v1/accounts/{account['account_id']}/lock",
        json={"reason": "manual review", "until": "2099-01-01T00:00:00"},
        headers={"X-Tenant-ID": "T1"},
    )
    response = _login(client, PASSWORD)

    assert locked.status_code == 200
    assert locked.json()["locked_until"].startswith("2099-01-01T00:00:00")
    assert response.status_code == 423
    assert response.json()["detail"]["locked_until"] == "2099-01-01T00:00:00+00:00"


def test_login_is_rate_limited(strict_client):
    client, _, _ = strict_client
    _register(client)

    first = _login(client, "Wrong1!pass")
    second = _login(client, "Wrong1!pass")
    third = _login(client, "Wrong1!pass")

    assert first.status_code == 401
    assert second.status_code == 401
    assert third.status_code == 429
    assert third.json()["detail"] == "rate limited"


def test_unlock_then_login(api_client):
    client, _, _ = api_client
    account = _register(client)
    _activate(client, account["account_id"])
    for _ in range(5):
        _login(client, "Wrong1!pass")

    unlocked = client.post(
        f"/v1/accounts/{account['account_id']}/unlock", headers={"X-Tenant-ID": "T1"}
    )

    assert unlocked.status_code == 200
    assert unlocked.json()["status"] == "active"
    assert unlocked.json()["locked_until"] is None
    assert _login(client, PASSWORD).status_code == 200


def test_change_password_flow(api_client):
    client, _, _ = api_client
    account = _register(client)
    _activate(client, account["account_id"])
    url = f"/v1/accounts/{account['account_id']}/password"

    wrong = client.post(
        url,
        json={"current_password": "Wrong1!pass", "new_password": "Bb2@bbbbbb"},
        headers={"X-Tenant-ID": "T1"},
    )
    changed = client.post(
        url,
        json={"current_password": PASSWORD, "new_password": "Bb2@bbbbbb"},
        headers={"X-Tenant-ID": "T1"},
    )

    assert wrong.status_code == 403
    assert wrong.json()["detail"]["error_code"] == "INCORRECT_CURRENT_PASSWORD"
    assert changed.status_code == 200
    assert changed.json()["password_changed_at"] is not None
    assert _login(client, "Bb2@bbbbbb").status_code == 200


def test_reset_password_records_actor(api_client):
    client, _, repository = api_client
    account = _register(client)

    response = client.post(
        f"/v1/accounts/{account['account_id']}/password/reset",
        json={"new_password": "Bb2@bbbbbb", "reset_type": "admin_reset"},
        headers={"X-Tenant-ID": "T1", "X-Actor-ID": "support-7"},
    )

    assert response.status_code == 200
    assert repository.audit_log[-1].event_type == "account.password_changed"
    assert repository.audit_log[-1].actor == "support-7"


def test_profile_endpoints(api_client):
    client, _, _ = api_client
    account = _register(client)
    headers = {"X-Tenant-ID": "T1"}
    base = f"/v1/accounts/{account['account_id']}"

    updated = client.patch(
        f"{base}/profile",
        json={"first_name": "Alice", "last_name": "Smith", "phone_number": "+1 555 010 2000"},
        headers=headers,
    )
    assert updated.status_code == 200
    assert updated.json()["display_name"] == "Alice Smith"
    assert updated.json()["phone_number"] == "+15550102000"

    assert client.post(f"{base}/phone/verify", headers=headers).json()["phone_verified"]
    assert client.post(f"{base}/email/verify", headers=headers).json()["email_verified"]
    enabled = client.post(f"{base}/two-factor", json={"secret": "JBSWY3DPEHPK3PXP"}, headers=headers)
    assert enabled.json()["two_factor_enabled"]
    assert not client.delete(f"{base}/two-factor", headers=headers).json()["two_factor_enabled"]

    bad_phone = client.patch(f"{base}/profile", json={"phone_number": "call me"}, headers=headers)
    assert bad_phone.status_code == 422

    cleared = client.patch(f"{base}/profile", json={"phone_number": ""}, headers=headers)
    assert cleared.status_code == 200
    assert cleared.json()["phone_number"] is None
    assert not cleared.json()["phone_verified"]


def test_delete_is_terminal(api_client):
    client, _, _ = api_client
    account = _register(client)
    headers = {"X-Tenant-ID": "T1"}

    deleted = client.delete(
        f"/v1/accounts/{account['account_id']}", params={"reason": "gdpr"}, headers=headers
    )
    again = client.delete(f"/v1/accounts/{account['account_id']}", headers=headers)
    activate = client.post(f"/v1/accounts/{account['account_id']}/activate", headers=headers)

    assert deleted.status_code == 200
    assert deleted.json()["status"] == "deleted"
    assert deleted.json()["deleted_at"] is not None
    assert again.json()["detail"]["error_code"] == "ALREADY_DELETED"
    assert activate.status_code == 409


def test_corrupted_credential_is_internal_error(api_client):
    client, _, repository = api_client
    account = _register(client)
    _activate(client, account["account_id"])
    repository._rows[("T1", account["account_id"])]["password_hash"] = "corrupted"

    response = _login(client, PASSWORD)

    assert response.status_code == 500
    assert response.json()["detail"]["error_code"] == "CREDENTIAL_CORRUPTED"


def test_audit_log_endpoint_returns_paginated_entries(api_client):
    client, _, repository = api_client
    account = _register(client)
    _activate(client, account["account_id"])
    for _ in range(3):
        _login(client, "Wrong1!pass")

    resp = client.get("/v1/audit/logs", params={"limit": 3}, headers={"X-Tenant-ID": "T1"})
    assert resp.status_code == 200
    body = resp.json()
    assert len(body["items"]) == 3
    assert body["next_cursor"]
    for entry in body["items"]:
        assert entry["tenant_id"] == "T1"

    next_resp = client.get(
        "/v1/audit/logs",
        params={"cursor": body["next_cursor"], "limit": 3},
        headers={"X-Tenant-ID": "T1"},
    )
    assert next_resp.status_code == 200
    assert len(next_resp.json()["items"]) == 2

    filter_resp = client.get(
        "/v1/audit/logs",
        params={"event_type": "account.login_failed"},
        headers={"X-Tenant-ID": "T1"},
    )
    assert [e["metadata"]["login_attempts"] for e in filter_resp.json()["items"]] == [3, 2, 1]

    other_tenant = client.get("/v1/audit/logs", headers={"X-Tenant-ID": "T2"})
    assert other_tenant.json()["items"] == []


def test_audit_log_endpoint_rejects_bad_cursor(api_client):
    client, _, _ = api_client

    resp = client.get("/v1/audit/logs", params={"cursor": "not-valid"}, headers={"X-Tenant-ID": "T1"})

    assert resp.status_code == 400
