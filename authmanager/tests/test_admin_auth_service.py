"""Tests for the admin authentication service."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from authmanager import db
from authmanager.auth import crypto
from authmanager.auth.models import AdminSession
from authmanager.auth.service import AdminAuthService


def test_bootstrap_login_validate_and_logout():
    service = AdminAuthService()
    assert service.has_any_users() is False

    user = service.create_initial_user(email=" Ops@Example.com ", password="super-secret", name="Ops")
    assert user.email == "ops@example.com"
    assert service.has_any_users() is True

    assert service.authenticate(email="ops@example.com", password="wrong") is None
    authenticated = service.authenticate(email="OPS@example.com", password="super-secret")
    assert authenticated is not None
    assert authenticated.id == user.id

    tokens = service.establish_session(user_id=user.id, ip_address="127.0.0.1")
    principal = service.validate_token(tokens.token)
    assert principal is not None
    assert principal.user.email == "ops@example.com"
    assert principal.session_id == tokens.session_id

    assert service.logout(tokens.token) is True
    assert service.validate_token(tokens.token) is None
    assert service.logout(tokens.token) is False


def test_second_bootstrap_is_refused():
    service = AdminAuthService()
    service.create_initial_user(email="ops@example.com", password="super-secret")

    with pytest.raises(ValueError, match="Users already provisioned."):
        service.create_initial_user(email="other@example.com", password="super-secret")


def test_session_token_is_stored_hashed():
    service = AdminAuthService()
    user = service.create_initial_user(email="ops@example.com", password="super-secret")
    tokens = service.establish_session(user_id=user.id)

    with db.session_scope() as session:
        stored = session.execute(select(AdminSession)).scalar_one()
    assert stored.token_hash != tokens.token
    assert stored.token_hash == crypto.hash_token(tokens.token)


def test_expired_session_is_revoked_on_validation():
    service = AdminAuthService()
    user = service.create_initial_user(email="ops@example.com", password="super-secret")
    tokens = service.establish_session(user_id=user.id)

    with db.session_scope() as session:
        stored = session.execute(select(AdminSession)).scalar_one()
        stored.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)

    assert service.validate_token(tokens.token) is None
    with db.session_scope() as session:
        assert session.execute(select(AdminSession)).scalar_one().revoked_at is not None


def test_password_helpers():
    hashed = crypto.hash_password("hunter22")

    assert crypto.verify_password("hunter22", hashed) is True
    assert crypto.verify_password("hunter23", hashed) is False
    assert crypto.verify_password("hunter22", "not-a-hash") is False
    assert len(crypto.generate_hex_token()) == 64
