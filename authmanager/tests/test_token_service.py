"""Tests for token issuance and redemption."""

from __future__ import annotations

import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest
from argon2 import PasswordHasher
from sqlalchemy import select

from authmanager import db
from authmanager.db_models import AuthToken
from authmanager.errors import (
    ExternalDatabaseError,
    MailDeliveryError,
    OwnershipMismatch,
    RequestValidationFailed,
)
from authmanager.schema_mapping import SchemaMapping
from authmanager.services import TokenService, TokenType

from conftest import FULL_MAPPING, add_tenant, read_user


def _stored(token: str) -> AuthToken:
    with db.session_scope() as session:
        return session.execute(select(AuthToken).where(AuthToken.token == token)).scalar_one()


def test_issue_verification_token_persists_and_mails(token_service, mailer, tenant_id):
    before = datetime.now(timezone.utc)
    issued = token_service.issue_verification_token(tenant_id, "42", "alice@example.com", "https://app.test/verify")

    assert re.fullmatch(r"[0-9a-f]{64}", issued.token)
    assert before + timedelta(hours=24) <= issued.expires_at <= datetime.now(timezone.utc) + timedelta(hours=24)

    record = _stored(issued.token)
    assert record.type == TokenType.EMAIL_VERIFICATION
    assert record.database_id == tenant_id
    assert record.external_user_id == "42"
    assert record.used_at is None

    sent = mailer.sent[-1]
    assert sent.kind == "verification"
    assert sent.to == "alice@example.com"
    assert sent.token == issued.token
    assert sent.app_name == "Acme Notes"
    assert sent.url == "https://app.test/verify"


@pytest.mark.parametrize(
    "method, ttl",
    [
        ("issue_magic_link_token", timedelta(minutes=15)),
        ("issue_password_reset_token", timedelta(hours=1)),
    ],
)
def test_token_lifetimes(tenant_id, mailer, registry, method, ttl):
    now = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
    service = TokenService(mailer=mailer, engines=registry, clock=lambda: now)

    issued = getattr(service, method)(tenant_id, "42", "alice@example.com")

    assert issued.expires_at == now + ttl


def test_issue_requires_user_and_email(token_service, tenant_id):
    with pytest.raises(RequestValidationFailed, match="userId and email are required"):
        token_service.issue_verification_token(tenant_id, "", "alice@example.com")
    with pytest.raises(RequestValidationFailed, match="userId and email are required"):
        token_service.issue_magic_link_token(tenant_id, "42", None)


def test_mail_failure_keeps_token_redeemable(token_service, mailer, tenant_id):
    mailer.fail_with = "Resend is not configured. Add an API key in the email settings."
    with pytest.raises(MailDeliveryError):
        token_service.issue_verification_token(tenant_id, "42", "alice@example.com")

    with db.session_scope() as session:
        tokens = session.execute(select(AuthToken)).scalars().all()
    assert len(tokens) == 1
    assert tokens[0].used_at is None


def test_prior_tokens_stay_valid(token_service, mailer, tenant_id):
    first = token_service.issue_magic_link_token(tenant_id, "42", "alice@example.com")
    second = token_service.issue_magic_link_token(tenant_id, "42", "alice@example.com")

    assert first.token != second.token
    assert token_service.verify_magic_link_token(tenant_id, first.token)["id"] == "42"
    assert token_service.verify_magic_link_token(tenant_id, second.token)["id"] == "42"


def test_verify_email_sets_mapped_flag(token_service, tenant_id, tenant_url):
    issued = token_service.issue_verification_token(tenant_id, "42", "alice@example.com")

    verified = token_service.verify_email_token(tenant_id, issued.token)

    assert verified.user_id == "42"
    assert verified.email == "alice@example.com"
    assert read_user(tenant_url, 42)["email_verified"] == 1
    assert read_user(tenant_url, 43)["email_verified"] == 0
    assert _stored(issued.token).used_at is not None


def test_verify_email_without_mapping_only_marks_token(mailer, registry, tenant_url):
    tenant = add_tenant(tenant_url, mapping=None)
    service = TokenService(mailer=mailer, engines=registry)
    issued = service.issue_verification_token(tenant, "42", "alice@example.com")

    verified = service.verify_email_token(tenant, issued.token)

    assert verified.user_id == "42"
    assert read_user(tenant_url, 42)["email_verified"] == 0
    assert _stored(issued.token).used_at is not None


def test_token_is_single_use(token_service, tenant_id):
    issued = token_service.issue_verification_token(tenant_id, "42", "alice@example.com")
    token_service.verify_email_token(tenant_id, issued.token)

    with pytest.raises(RequestValidationFailed, match="Token already used"):
        token_service.verify_email_token(tenant_id, issued.token)


def test_missing_token(token_service, tenant_id):
    with pytest.raises(RequestValidationFailed, match="Token is required"):
        token_service.verify_email_token(tenant_id, "")


def test_unknown_token(token_service, tenant_id):
    with pytest.raises(RequestValidationFailed, match="Invalid token"):
        token_service.verify_email_token(tenant_id, "f" * 64)


def test_type_mismatch_leaves_token_unused(token_service, tenant_id):
    issued = token_service.issue_magic_link_token(tenant_id, "42", "alice@example.com")

    with pytest.raises(RequestValidationFailed, match="Invalid token type"):
        token_service.verify_email_token(tenant_id, issued.token)

    assert _stored(issued.token).used_at is None
    assert token_service.verify_magic_link_token(tenant_id, issued.token)["email"] == "alice@example.com"


def test_expired_token(tenant_id, mailer, registry):
    issued_at = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
    issuer = TokenService(mailer=mailer, engines=registry, clock=lambda: issued_at)
    issued = issuer.issue_magic_link_token(tenant_id, "42", "alice@example.com")

    at_expiry = TokenService(mailer=mailer, engines=registry, clock=lambda: issued_at + timedelta(minutes=15))
    later = TokenService(mailer=mailer, engines=registry, clock=lambda: issued_at + timedelta(minutes=16))

    with pytest.raises(RequestValidationFailed, match="Token expired"):
        later.verify_magic_link_token(tenant_id, issued.token)
    assert at_expiry.verify_magic_link_token(tenant_id, issued.token)["id"] == "42"


def test_used_check_precedes_expiry(tenant_id, mailer, registry):
    issued_at = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
    issuer = TokenService(mailer=mailer, engines=registry, clock=lambda: issued_at)
    issued = issuer.issue_magic_link_token(tenant_id, "42", "alice@example.com")
    issuer.verify_magic_link_token(tenant_id, issued.token)

    later = TokenService(mailer=mailer, engines=registry, clock=lambda: issued_at + timedelta(days=1))
    with pytest.raises(RequestValidationFailed, match="Token already used"):
        later.verify_magic_link_token(tenant_id, issued.token)


def test_cross_tenant_token_is_rejected(token_service, tenant_id, tenant_url):
    other = add_tenant(tenant_url, service_role="other-secret", app_name="Other")
    issued = token_service.issue_verification_token(tenant_id, "42", "alice@example.com")

    with pytest.raises(OwnershipMismatch, match="Token does not belong to this database"):
        token_service.verify_email_token(other, issued.token)

    assert _stored(issued.token).used_at is None
    assert read_user(tenant_url, 42)["email_verified"] == 0


def test_magic_link_returns_projected_user(token_service, tenant_id):
    issued = token_service.issue_magic_link_token(tenant_id, "42", "alice@example.com")

    user = token_service.verify_magic_link_token(tenant_id, issued.token)

    assert user == {"id": "42", "email": "alice@example.com", "name": "Alice", "username": "alice", "role": "admin"}


def test_magic_link_falls_back_to_token_identity(token_service, tenant_id):
    issued = token_service.issue_magic_link_token(tenant_id, "999", "ghost@example.com")

    user = token_service.verify_magic_link_token(tenant_id, issued.token)

    assert user == {"id": "999", "email": "ghost@example.com"}


def test_external_failure_rolls_back_claim(mailer, registry, tenant_url):
    broken = SchemaMapping(id_column="id", email_column="email", email_verified_column="no_such_column")
    tenant = add_tenant(tenant_url, mapping=broken)
    service = TokenService(mailer=mailer, engines=registry)
    issued = service.issue_verification_token(tenant, "42", "alice@example.com")

    with pytest.raises(ExternalDatabaseError):
        service.verify_email_token(tenant, issued.token)

    assert _stored(issued.token).used_at is None


def test_concurrent_redemption_succeeds_once(token_service, tenant_id):
    issued = token_service.issue_magic_link_token(tenant_id, "42", "alice@example.com")

    def redeem():
        try:
            token_service.verify_magic_link_token(tenant_id, issued.token)
            return "ok"
        except RequestValidationFailed as exc:
            return exc.message

    with ThreadPoolExecutor(max_workers=4) as pool:
        outcomes = list(pool.map(lambda _: redeem(), range(4)))

    assert outcomes.count("ok") == 1
    assert set(outcomes) - {"ok"} <= {"Token already used"}


def test_reset_password_stores_argon2_hash(token_service, tenant_id, tenant_url):
    issued = token_service.issue_password_reset_token(tenant_id, "42", "alice@example.com")

    user_id = token_service.reset_password(tenant_id, issued.token, "n3w-password")

    assert user_id == "42"
    stored_hash = read_user(tenant_url, 42)["password_hash"]
    assert stored_hash.startswith("$argon2")
    assert PasswordHasher().verify(stored_hash, "n3w-password")


def test_reset_password_checks_length_before_token(token_service, tenant_id):
    with pytest.raises(RequestValidationFailed, match="Password must be at least 6 characters"):
        token_service.reset_password(tenant_id, "not-a-real-token", "short")


def test_reset_password_requires_password_column(mailer, registry, tenant_url):
    tenant = add_tenant(tenant_url, mapping=SchemaMapping())
    service = TokenService(mailer=mailer, engines=registry)
    issued = service.issue_password_reset_token(tenant, "42", "alice@example.com")

    with pytest.raises(RequestValidationFailed, match="No password column mapped for this database"):
        service.reset_password(tenant, issued.token, "long-enough")

    assert _stored(issued.token).used_at is None


def test_full_mapping_fixture_matches_tenant_table():
    assert FULL_MAPPING.projection() == {
        "id": "id",
        "email": "email",
        "name": "name",
        "username": "username",
        "role": "role",
    }
