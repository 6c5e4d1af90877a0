from __future__ import annotations

import os

os.environ.setdefault("AUTHMGR_SQLITE_PATH", ":memory:")

from dataclasses import dataclass, field
from typing import Iterator, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker

from authmanager import db
from authmanager.app import app
from authmanager.clients.external_db import TenantEngineRegistry
from authmanager.db_models import ConnectedDatabase
from authmanager.errors import MailDeliveryError
from authmanager.routes import resolve_ban_service, resolve_token_service, resolve_vault_service
from authmanager.admin_routes import (
    resolve_email_settings_store,
    resolve_mailer,
    resolve_tenant_service,
    resolve_user_admin_service,
)
from authmanager.mailer import EmailSettingsStore
from authmanager.schema_mapping import SchemaMapping, save_schema_mapping
from authmanager.services import BanService, TokenService
from authmanager.tenants import TenantService
from authmanager.users import UserAdminService
from authmanager.vault import VaultService

TENANT_SECRET = "tenant-service-role-secret"

USERS_DDL = """
CREATE TABLE users (
    id INTEGER PRIMARY KEY,
    email TEXT NOT NULL,
    name TEXT,
    username TEXT,
    role TEXT,
    email_verified INTEGER NOT NULL DEFAULT 0,
    password_hash TEXT,
    status TEXT
)
"""

SESSIONS_DDL = """
CREATE TABLE sessions (
    id TEXT PRIMARY KEY,
    user_id INTEGER NOT NULL,
    expires_at TEXT
)
"""


@dataclass
class SentMail:
    kind: str
    to: str
    token: str
    app_name: str
    url: Optional[str]


@dataclass
class FakeMailer:
    """Records outgoing mail instead of calling the provider."""

    sent: List[SentMail] = field(default_factory=list)
    fail_with: Optional[str] = None

    def _record(self, kind, to, token, app_name, url) -> None:
        if self.fail_with:
            raise MailDeliveryError(self.fail_with)
        self.sent.append(SentMail(kind=kind, to=to, token=token, app_name=app_name, url=url))

    def send_verification_email(self, to, token, app_name, verify_url=None):
        self._record("verification", to, token, app_name, verify_url)

    def send_magic_link_email(self, to, token, app_name, login_url=None):
        self._record("magic_link", to, token, app_name, login_url)

    def send_password_reset_email(self, to, token, app_name, reset_url=None):
        self._record("password_reset", to, token, app_name, reset_url)

    def send_test_email(self, to, *, actor=None):
        self._record("test", to, "", "", None)

    @property
    def last_token(self) -> str:
        return self.sent[-1].token


@pytest.fixture(autouse=True)
def store(tmp_path, monkeypatch) -> Iterator[None]:
    """Point the service store at a throwaway SQLite file."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'store.db'}",
        future=True,
        connect_args={"check_same_thread": False},
    )
    session_factory = sessionmaker(bind=engine, expire_on_commit=False, autoflush=False, future=True)
    monkeypatch.setattr(db, "engine", engine)
    monkeypatch.setattr(db, "SessionLocal", session_factory)
    db.init_database()
    yield
    engine.dispose()


@pytest.fixture
def tenant_url(tmp_path) -> str:
    """A tenant user database with two users and three sessions."""
    url = f"sqlite:///{tmp_path / 'tenant.db'}"
    engine = create_engine(url, future=True)
    with engine.begin() as conn:
        conn.execute(text(USERS_DDL))
        conn.execute(
            text(
                "INSERT INTO users (id, email, name, username, role, status) VALUES "
                "(42, 'alice@example.com', 'Alice', 'alice', 'admin', 'active'), "
                "(43, 'bob@example.com', 'Bob', NULL, 'member', 'active')"
            )
        )
        conn.execute(text(SESSIONS_DDL))
        conn.execute(
            text(
                "INSERT INTO sessions (id, user_id, expires_at) VALUES "
                "('s1', 42, '2099-01-01'), ('s2', 42, '2099-01-01'), ('s3', 43, '2099-01-01')"
            )
        )
    engine.dispose()
    return url


def read_user(url: str, user_id: int) -> dict:
    engine = create_engine(url, future=True)
    try:
        with engine.connect() as conn:
            row = conn.execute(text("SELECT * FROM users WHERE id = :id"), {"id": user_id}).mappings().first()
            return dict(row)
    finally:
        engine.dispose()


def add_tenant(
    connection_url: str,
    *,
    service_role: Optional[str] = TENANT_SECRET,
    app_name: str = "Acme Notes",
    is_active: bool = True,
    mapping: Optional[SchemaMapping] = None,
) -> str:
    with db.session_scope() as session:
        record = ConnectedDatabase(
            name=f"{app_name} users",
            app_name=app_name,
            connection_url=connection_url,
            service_role=service_role,
            user_table="users",
            is_active=is_active,
        )
        session.add(record)
        session.flush()
        if mapping is not None:
            save_schema_mapping(session, record.id, mapping)
        return record.id


FULL_MAPPING = SchemaMapping(
    id_column="id",
    email_column="email",
    name_column="name",
    username_column="username",
    role_column="role",
    email_verified_column="email_verified",
    password_column="password_hash",
    status_column="status",
)


@pytest.fixture
def tenant_id(tenant_url) -> str:
    return add_tenant(tenant_url, mapping=FULL_MAPPING)


@pytest.fixture
def registry() -> Iterator[TenantEngineRegistry]:
    engines = TenantEngineRegistry()
    yield engines
    engines.dispose_all()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def token_service(mailer, registry) -> TokenService:
    return TokenService(mailer=mailer, engines=registry)


@pytest.fixture
def client(mailer, registry) -> Iterator[TestClient]:
    app.dependency_overrides[resolve_token_service] = lambda: TokenService(mailer=mailer, engines=registry)
    app.dependency_overrides[resolve_ban_service] = lambda: BanService(engines=registry)
    app.dependency_overrides[resolve_tenant_service] = lambda: TenantService(engines=registry)
    app.dependency_overrides[resolve_vault_service] = lambda: VaultService()
    settings_store = EmailSettingsStore(ttl_seconds=0)
    app.dependency_overrides[resolve_email_settings_store] = lambda: settings_store
    app.dependency_overrides[resolve_mailer] = lambda: mailer
    app.dependency_overrides[resolve_user_admin_service] = lambda: UserAdminService(
        tokens=TokenService(mailer=mailer, engines=registry),
        tenants=TenantService(engines=registry),
        engines=registry,
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


def bearer(token: str = TENANT_SECRET) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_client(client) -> TestClient:
    """Client carrying a bootstrapped admin session cookie."""
    response = client.post(
        "/api/admin/auth/bootstrap",
        json={"email": "ops@example.com", "password": "correct horse", "name": "Ops"},
    )
    assert response.status_code == 201
    return client
