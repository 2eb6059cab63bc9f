"""End-to-end checks of the HTTP surface over an in-memory runtime."""

import asyncio

import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from conftest import signup_payload
from hikariauth.api.routes import client_ip
from hikariauth.app import create_app
from hikariauth.service.auth import SIGNUP_SUCCESS
from hikariauth.service.runtime import Runtime


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime=runtime)) as test_client:
        yield test_client


def _signup_and_verify(client, notifier, **overrides) -> dict:
    payload = signup_payload(**overrides)
    resp = client.post("/auth/signup", json=payload)
    assert resp.status_code == 201
    verify = client.post("/auth/verify", json={"token": notifier.last_verification_token()})
    assert verify.status_code == 200
    return resp.json()["user"]


def _login(client, email="alice@example.com", password="correct-horse-1"):
    return client.post("/auth/login", json={"email": email, "password": password})


def test_signup_returns_created_user(client, notifier):
    resp = client.post("/auth/signup", json=signup_payload())

    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    assert body["message"] == SIGNUP_SUCCESS
    assert body["user"]["username"] == "alice"
    assert "password_hash" not in body["user"]
    assert notifier.verifications[0][0] == "alice@example.com"


def test_login_sets_session_cookie_and_me_resolves(client, notifier):
    _signup_and_verify(client, notifier)

    resp = _login(client)

    assert resp.status_code == 200
    cookie = resp.headers["set-cookie"]
    assert "auth_token=" in cookie
    assert "HttpOnly" in cookie
    assert "samesite=strict" in cookie.lower()

    me = client.get("/auth/me")
    assert me.status_code == 200
    assert me.json()["user"]["email"] == "alice@example.com"


def test_me_requires_session(client):
    resp = client.get("/auth/me")

    assert resp.status_code == 401
    assert resp.json() == {
        "success": False,
        "message": "Authentication required",
        "code": "unauthorized",
    }


def test_logout_clears_cookie_and_session(client, notifier):
    _signup_and_verify(client, notifier)
    _login(client)

    resp = client.post("/auth/logout")

    assert resp.status_code == 200
    assert resp.json()["message"] == "Logged out successfully"
    assert client.get("/auth/me").status_code == 401


def test_unverified_login_is_rejected_with_code(client):
    client.post("/auth/signup", json=signup_payload())

    resp = _login(client)

    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["code"] == "account_state"
    assert "auth_token" not in resp.cookies


def test_wrong_password_uses_generic_message(client, notifier):
    _signup_and_verify(client, notifier)

    resp = _login(client, password="not-the-password")

    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid email or password"
    assert resp.json()["code"] == "invalid_credentials"


def test_non_json_body_is_a_validation_error(client):
    resp = client.post(
        "/auth/signup", content=b"not json", headers={"Content-Type": "text/plain"}
    )

    assert resp.status_code == 400
    assert resp.json()["code"] == "validation_error"
    assert resp.json()["message"] == "Username must be at least 3 characters"


def test_rate_limited_requests_carry_retry_after(client):
    payload = {"email": "nobody@example.com"}
    for _ in range(3):
        assert client.post("/auth/forgot", json=payload).status_code == 200

    resp = client.post("/auth/forgot", json=payload)

    assert resp.status_code == 429
    body = resp.json()
    assert body["code"] == "rate_limited"
    assert body["retry_after"] == 3600
    assert resp.headers["Retry-After"] == "3600"


@pytest.fixture
def proxied_client(settings, notifier, clock):
    trusted = settings.model_copy(update={"trusted_proxies": ["testclient", "10.0.0.0/8"]})
    runtime = Runtime.in_memory(trusted, notifier=notifier, clock=clock)
    with TestClient(create_app(runtime=runtime)) as test_client:
        test_client.runtime = runtime
        yield test_client


def test_forwarded_ip_is_recorded_behind_trusted_proxy(proxied_client):
    proxied_client.post(
        "/auth/login",
        json={"email": "ghost@example.com", "password": "whatever-1"},
        headers={"X-Forwarded-For": "198.51.100.9, 10.0.0.1"},
    )

    (entry,) = [
        e for e in proxied_client.runtime.store.audit_logs if e.action == "login_failed"
    ]
    assert entry.ip_address == "198.51.100.9"


def test_forwarding_headers_ignored_from_untrusted_peer(client, runtime):
    client.post(
        "/auth/login",
        json={"email": "ghost@example.com", "password": "whatever-1"},
        headers={"X-Forwarded-For": "198.51.100.9", "X-Real-IP": "198.51.100.10"},
    )

    (entry,) = [e for e in runtime.store.audit_logs if e.action == "login_failed"]
    assert entry.ip_address == "testclient"


def test_rotating_forwarded_for_does_not_dodge_login_limit(client, notifier):
    _signup_and_verify(client, notifier)

    statuses = [
        client.post(
            "/auth/login",
            json={"email": "alice@example.com", "password": "wrong-password"},
            headers={"X-Forwarded-For": f"10.0.0.{i}"},
        ).status_code
        for i in range(8)
    ]

    assert statuses[:5] == [400] * 5
    assert statuses[5:] == [429] * 3


def test_request_id_and_security_headers(client):
    resp = client.get("/auth/me", headers={"X-Request-ID": "req-123"})

    assert resp.headers["X-Request-ID"] == "req-123"
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["Cache-Control"] == "no-store"


def test_password_reset_over_http(client, notifier):
    _signup_and_verify(client, notifier)

    forgot = client.post("/auth/forgot", json={"email": "alice@example.com"})
    assert forgot.status_code == 200
    token = notifier.last_reset_token()

    reset = client.post(
        "/auth/reset",
        json={"token": token, "password": "brand-new-pass", "confirmPassword": "brand-new-pass"},
    )
    assert reset.status_code == 200
    assert _login(client).status_code == 400
    assert _login(client, password="brand-new-pass").status_code == 200


def test_verify_rejects_unknown_token(client):
    resp = client.post("/auth/verify", json={"token": "garbage"})

    assert resp.status_code == 400
    assert resp.json()["code"] == "invalid_token"


class TestAdminSurface:
    def test_non_admin_is_forbidden(self, client, notifier):
        _signup_and_verify(client, notifier)
        _login(client)

        resp = client.get("/admin/audit")

        assert resp.status_code == 403
        assert resp.json()["code"] == "forbidden"

    def test_anonymous_is_unauthorized(self, client):
        assert client.get("/admin/audit/summary").status_code == 401

    def test_admin_reads_dashboard_and_history(self, client, notifier, runtime):
        user = _signup_and_verify(client, notifier)
        asyncio.run(runtime.store.set_admin(user["id"]))
        _login(client)

        dashboard = client.get("/admin/audit")
        assert dashboard.status_code == 200
        data = dashboard.json()["data"]
        assert {"events", "suspicious", "summary"} <= set(data)
        assert {e["action"] for e in data["events"]} >= {"user_created", "email_verified"}

        history = client.get(f"/admin/audit/users/{user['id']}", params={"limit": 5})
        assert history.status_code == 200
        assert all(row["user_id"] == user["id"] for row in history.json()["data"])

    def test_admin_query_bounds_are_validated(self, client, notifier, runtime):
        user = _signup_and_verify(client, notifier)
        asyncio.run(runtime.store.set_admin(user["id"]))
        _login(client)

        resp = client.get("/admin/audit/events", params={"limit": 0})

        assert resp.status_code == 400
        assert resp.json()["code"] == "validation_error"


def test_unknown_route_uses_error_body(client):
    resp = client.get("/auth/nowhere")

    assert resp.status_code == 404
    assert resp.json()["success"] is False
    assert resp.json()["code"] == "not_found"


@pytest.fixture
def admin_client(client, notifier, runtime):
    user = _signup_and_verify(client, notifier, username="root", email="root@example.com")
    asyncio.run(runtime.store.set_admin(user["id"]))
    assert _login(client, email="root@example.com").status_code == 200
    return client


def test_failed_attempts_grouped_for_ip(admin_client):
    for _ in range(2):
        admin_client.post(
            "/auth/login",
            json={"email": "ghost@example.com", "password": "whatever-1"},
        )

    resp = admin_client.get("/admin/audit/ips/testclient", params={"hours": 1})

    assert resp.status_code == 200
    (group,) = resp.json()["data"]
    assert group["action"] == "login_failed"
    assert group["attempt_count"] == 2


def test_user_history_rejects_malformed_id(admin_client):
    resp = admin_client.get("/admin/audit/users/not-a-uuid")

    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == "validation_error"
    assert body["message"].startswith("user_id: ")


def test_suspicious_report_and_summary(admin_client):
    suspicious = admin_client.get("/admin/audit/suspicious")
    summary = admin_client.get("/admin/audit/summary", params={"days": 1})

    assert suspicious.status_code == 200
    assert set(suspicious.json()["data"]) >= {"suspicious_verifications", "suspicious_ips", "rapid_signups"}
    assert summary.status_code == 200
    actions = {row["action"] for row in summary.json()["data"]}
    assert {"user_created", "login_success"} <= actions


def _request(peer, headers):
    raw = [(name.lower().encode(), value.encode()) for name, value in headers.items()]
    return Request({"type": "http", "headers": raw, "client": (peer, 50000)})


@pytest.mark.parametrize(
    "peer, trusted, headers, expected",
    [
        ("10.1.2.3", ["10.0.0.0/8"], {"X-Forwarded-For": "203.0.113.5, 10.1.2.3"}, "203.0.113.5"),
        ("10.1.2.3", ["10.0.0.0/8"], {"CF-Connecting-IP": "203.0.113.6"}, "203.0.113.6"),
        ("192.0.2.1", ["10.0.0.0/8"], {"X-Forwarded-For": "203.0.113.5"}, "192.0.2.1"),
        ("192.0.2.1", [], {"X-Real-IP": "203.0.113.5"}, "192.0.2.1"),
        ("10.1.2.3", ["not-a-network"], {"X-Forwarded-For": "203.0.113.5"}, "10.1.2.3"),
    ],
)
def test_client_ip_trusts_only_configured_proxies(peer, trusted, headers, expected):
    assert client_ip(_request(peer, headers), trusted) == expected
