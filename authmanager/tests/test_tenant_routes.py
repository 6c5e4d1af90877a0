"""Tests for the bearer-gated tenant API."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from authmanager import db
from authmanager.app import app
from authmanager.db_models import AuthUserBan
from authmanager.routes import resolve_token_service

from conftest import TENANT_SECRET, add_tenant, bearer, read_user


def _add_ban(tenant_id: str, user_id: str, *, expires_at=None, banned_at=None, reason="Spam") -> None:
    with db.session_scope() as session:
        session.add(
            AuthUserBan(
                database_id=tenant_id,
                external_user_id=user_id,
                email=f"{user_id}@example.com",
                reason=reason,
                type="temporary" if expires_at else "permanent",
                banned_at=banned_at or datetime.now(timezone.utc),
                expires_at=expires_at,
                is_active=True,
            )
        )


def test_missing_authorization_header(client, tenant_id):
    response = client.post("/api/auth/verify-email", json={"token": "abc"})

    assert response.status_code == 401
    assert response.json() == {"error": "Missing or invalid Authorization header. Use: Bearer <token>"}
    assert response.headers["access-control-allow-origin"] == "*"


def test_malformed_authorization_header(client, tenant_id):
    response = client.post(
        "/api/auth/verify-email",
        json={"token": "abc"},
        headers={"Authorization": f"Token {TENANT_SECRET}"},
    )

    assert response.status_code == 401
    assert response.json()["error"].startswith("Missing or invalid Authorization header")


def test_unknown_bearer_token(client, tenant_id):
    response = client.post("/api/auth/verify-email", json={"token": "abc"}, headers=bearer("nope"))

    assert response.status_code == 401
    assert response.json() == {"error": "Invalid API token. Token must match a connected database auth token."}


def test_inactive_tenant_is_rejected(client, tenant_url):
    add_tenant(tenant_url, service_role="retired-secret", is_active=False)

    response = client.get("/api/auth/check-ban?userId=42", headers=bearer("retired-secret"))

    assert response.status_code == 401


def test_ambiguous_bearer_token_is_rejected(client, tenant_url):
    add_tenant(tenant_url, service_role="shared-secret", app_name="One")
    add_tenant(tenant_url, service_role="shared-secret", app_name="Two")

    response = client.get("/api/auth/check-ban?userId=42", headers=bearer("shared-secret"))

    assert response.status_code == 401


def test_preflight_returns_cors_headers(client):
    response = client.options("/api/auth/send-verification")

    assert response.status_code == 204
    assert response.headers["access-control-allow-origin"] == "*"
    assert response.headers["access-control-allow-methods"] == "GET, POST, OPTIONS"
    assert response.headers["access-control-allow-headers"] == "Content-Type, Authorization"


def test_send_and_verify_email_flow(client, mailer, tenant_id, tenant_url):
    response = client.post(
        "/api/auth/send-verification",
        json={"userId": "42", "email": "alice@example.com", "verifyUrl": "https://notes.test/verify"},
        headers=bearer(),
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert "expiresAt" in payload
    assert response.headers["access-control-allow-origin"] == "*"
    assert mailer.sent[-1].url == "https://notes.test/verify"

    response = client.post("/api/auth/verify-email", json={"token": mailer.last_token}, headers=bearer())

    assert response.status_code == 200
    assert response.json() == {"success": True, "userId": "42", "email": "alice@example.com"}
    assert read_user(tenant_url, 42)["email_verified"] == 1

    replay = client.post("/api/auth/verify-email", json={"token": mailer.last_token}, headers=bearer())
    assert replay.status_code == 400
    assert replay.json() == {"error": "Token already used"}


def test_numeric_user_id_is_accepted(client, mailer, tenant_id):
    response = client.post(
        "/api/auth/send-magic-link",
        json={"userId": 42, "email": "alice@example.com"},
        headers=bearer(),
    )

    assert response.status_code == 200
    assert mailer.sent[-1].kind == "magic_link"


def test_send_requires_user_and_email(client, tenant_id):
    response = client.post("/api/auth/send-magic-link", json={"email": "alice@example.com"}, headers=bearer())

    assert response.status_code == 400
    assert response.json() == {"error": "userId and email are required"}
    assert response.headers["access-control-allow-origin"] == "*"


def test_send_reports_mail_failure(client, mailer, tenant_id):
    mailer.fail_with = "Resend is not configured. Add an API key in the email settings."

    response = client.post(
        "/api/auth/send-password-reset",
        json={"userId": "42", "email": "alice@example.com"},
        headers=bearer(),
    )

    assert response.status_code == 500
    assert response.json() == {"error": "Resend is not configured. Add an API key in the email settings."}


def test_verify_magic_link_returns_user(client, mailer, tenant_id):
    client.post("/api/auth/send-magic-link", json={"userId": "43", "email": "bob@example.com"}, headers=bearer())

    response = client.post("/api/auth/verify-magic-link", json={"token": mailer.last_token}, headers=bearer())

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "user": {"id": "43", "email": "bob@example.com", "name": "Bob", "role": "member"},
    }


def test_verify_requires_token(client, tenant_id):
    response = client.post("/api/auth/verify-magic-link", json={}, headers=bearer())

    assert response.status_code == 400
    assert response.json() == {"error": "Token is required"}


def test_verify_token_from_other_tenant(client, mailer, tenant_id, tenant_url):
    add_tenant(tenant_url, service_role="other-secret", app_name="Other")
    client.post("/api/auth/send-verification", json={"userId": "42", "email": "alice@example.com"}, headers=bearer())

    response = client.post("/api/auth/verify-email", json={"token": mailer.last_token}, headers=bearer("other-secret"))

    assert response.status_code == 403
    assert response.json() == {"error": "Token does not belong to this database"}


def test_verify_reset_flow(client, mailer, tenant_id, tenant_url):
    client.post("/api/auth/send-password-reset", json={"userId": "42", "email": "alice@example.com"}, headers=bearer())

    short = client.post(
        "/api/auth/verify-reset",
        json={"token": mailer.last_token, "newPassword": "abc"},
        headers=bearer(),
    )
    assert short.status_code == 400
    assert short.json() == {"error": "Password must be at least 6 characters"}

    response = client.post(
        "/api/auth/verify-reset",
        json={"token": mailer.last_token, "newPassword": "brand-new-pass"},
        headers=bearer(),
    )
    assert response.status_code == 200
    assert response.json() == {"success": True, "userId": "42"}
    assert read_user(tenant_url, 42)["password_hash"].startswith("$argon2")


def test_check_ban_requires_user_id(client, tenant_id):
    response = client.get("/api/auth/check-ban", headers=bearer())

    assert response.status_code == 400
    assert response.json() == {"error": "userId query parameter is required"}


def test_check_ban_not_banned(client, tenant_id):
    response = client.get("/api/auth/check-ban?userId=42", headers=bearer())

    assert response.status_code == 200
    assert response.json() == {"banned": False}


def test_check_ban_reports_latest_active_ban(client, tenant_id):
    now = datetime.now(timezone.utc)
    _add_ban(tenant_id, "42", banned_at=now - timedelta(days=2), reason="Old")
    _add_ban(tenant_id, "42", banned_at=now - timedelta(hours=1), reason="Abuse")

    response = client.get("/api/auth/check-ban?userId=42", headers=bearer())

    payload = response.json()
    assert payload["banned"] is True
    assert payload["reason"] == "Abuse"
    assert payload["type"] == "permanent"
    assert "bannedAt" in payload


def test_expired_temporary_ban_is_lifted_on_read(client, tenant_id):
    now = datetime.now(timezone.utc)
    _add_ban(tenant_id, "42", banned_at=now - timedelta(days=2), expires_at=now - timedelta(days=1))

    response = client.get("/api/auth/check-ban?userId=42", headers=bearer())

    assert response.json() == {"banned": False}
    with db.session_scope() as session:
        ban = session.query(AuthUserBan).one()
        assert ban.is_active is False
        assert ban.unbanned_at is not None


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


class _LockedStoreTokenService:
    def verify_email_token(self, tenant_id, token):
        raise OperationalError("UPDATE auth_tokens SET used_at=?", {}, Exception("database is locked"))


def test_unexpected_error_returns_json_with_cors(client, tenant_id):
    app.dependency_overrides[resolve_token_service] = _LockedStoreTokenService
    unguarded = TestClient(app, raise_server_exceptions=False)

    response = unguarded.post("/api/auth/verify-email", json={"token": "abc"}, headers=bearer())

    assert response.status_code == 500
    assert response.headers["content-type"].startswith("application/json")
    assert response.json() == {"error": "database is locked"}
    assert response.headers["access-control-allow-origin"] == "*"
