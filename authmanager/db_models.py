"""SQLAlchemy ORM models for the Auth Manager store."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
)

from .db import Base


def _new_id() -> str:
    return uuid4().hex


class TimestampMixin:
    """Mixin that adds created_at/updated_at audit fields."""

    created_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class ConnectedDatabase(TimestampMixin, Base):
    """An onboarded tenant: one external application's user database."""

    __tablename__ = "connected_databases"

    id = Column(String(40), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    app_name = Column(String(255), nullable=False)
    connection_url = Column(Text, nullable=False)
    # Service-role credential; doubles as the tenant's bearer secret.
    service_role = Column(Text, nullable=True, index=True)
    user_table = Column(String(128), nullable=False, server_default="users")
    is_active = Column(Boolean, nullable=False, server_default="true", default=True)


class AuthSchemaMapping(TimestampMixin, Base):
    """Column names of a tenant's user table, keyed 1:1 by database."""

    __tablename__ = "auth_schema_mappings"

    id = Column(String(40), primary_key=True, default=_new_id)
    database_id = Column(
        String(40),
        ForeignKey("connected_databases.id", ondelete="CASCADE"),
        nullable=False,
    )
    id_column = Column(String(128), nullable=False, server_default="id")
    email_column = Column(String(128), nullable=False, server_default="email")
    name_column = Column(String(128), nullable=True)
    username_column = Column(String(128), nullable=True)
    role_column = Column(String(128), nullable=True)
    email_verified_column = Column(String(128), nullable=True)
    password_column = Column(String(128), nullable=True)
    status_column = Column(String(128), nullable=True)
    avatar_column = Column(String(128), nullable=True)
    created_at_column = Column(String(128), nullable=True)
    last_login_column = Column(String(128), nullable=True)
    session_table = Column(String(128), nullable=True)
    session_user_id_column = Column(String(128), nullable=True)

    __table_args__ = (
        UniqueConstraint("database_id", name="uq_auth_schema_mappings_database"),
    )


class AuthToken(TimestampMixin, Base):
    """Email verification, magic link or password reset credential."""

    __tablename__ = "auth_tokens"

    id = Column(String(40), primary_key=True, default=_new_id)
    database_id = Column(
        String(40),
        ForeignKey("connected_databases.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_user_id = Column(String(255), nullable=False)
    email = Column(String(320), nullable=False)
    token = Column(String(128), nullable=False, unique=True, index=True)
    type = Column(String(32), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)


Index("ix_auth_tokens_user", AuthToken.database_id, AuthToken.external_user_id)


class AuthUserBan(TimestampMixin, Base):
    """Ban placed on a tenant user, optionally time limited."""

    __tablename__ = "auth_user_bans"

    id = Column(String(40), primary_key=True, default=_new_id)
    database_id = Column(
        String(40),
        ForeignKey("connected_databases.id", ondelete="CASCADE"),
        nullable=False,
    )
    external_user_id = Column(String(255), nullable=False)
    email = Column(String(320), nullable=True)
    reason = Column(Text, nullable=False)
    type = Column(String(32), nullable=False, server_default="permanent")
    banned_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=True)
    unbanned_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, server_default="true", default=True)


Index(
    "ix_auth_user_bans_lookup",
    AuthUserBan.database_id,
    AuthUserBan.external_user_id,
    AuthUserBan.is_active,
)


class KeygenLock(TimestampMixin, Base):
    """Per-IP lock record for the keygen site."""

    __tablename__ = "keygen_locks"

    id = Column(String(40), primary_key=True, default=_new_id)
    ip_address = Column(String(64), nullable=False, unique=True, index=True)
    reason = Column(Text, nullable=False, server_default="Too many failed attempts")
    attempts = Column(Integer, nullable=False, server_default="0", default=0)
    is_locked = Column(Boolean, nullable=False, server_default="true", default=True)
    locked_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    unlocked_at = Column(DateTime(timezone=True), nullable=True)
    unlocked_by = Column(String(255), nullable=True)
    restore_url = Column(String(1024), nullable=True)


class VaultEvent(TimestampMixin, Base):
    """Event reported by the keygen site or raised by vault administration."""

    __tablename__ = "vault_events"

    id = Column(String(40), primary_key=True, default=_new_id)
    event_type = Column(String(64), nullable=False, index=True)
    ip_address = Column(String(64), nullable=False)
    user_agent = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)
    details = Column(JSON, nullable=True)
    severity = Column(String(16), nullable=False, server_default="info")


class AuditLog(TimestampMixin, Base):
    """General administrative audit trail."""

    __tablename__ = "audit_logs"

    id = Column(String(40), primary_key=True, default=_new_id)
    action = Column(String(128), nullable=False)
    ip_address = Column(String(64), nullable=False)
    user_agent = Column(Text, nullable=True)
    details = Column(Text, nullable=True)


Index("ix_audit_logs_action_created", AuditLog.action, AuditLog.created_at)


class Setting(TimestampMixin, Base):
    """Key-value application settings (e.g. outbound email configuration)."""

    __tablename__ = "settings"

    id = Column(Integer, primary_key=True)
    key = Column(String(128), nullable=False)
    value = Column(JSON, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("key", name="uq_settings_key"),
    )
