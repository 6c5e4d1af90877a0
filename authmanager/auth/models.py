"""SQLAlchemy models for admin authentication."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import relationship

from ..db import Base
from ..db_models import TimestampMixin


class AdminUser(TimestampMixin, Base):
    """Operator allowed to manage tenants and the vault."""

    __tablename__ = "admin_users"

    id = Column(String(40), primary_key=True, default=lambda: uuid4().hex)
    email = Column(String(320), unique=True, nullable=False, index=True)
    display_name = Column(String(320), nullable=True)
    password_hash = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, server_default="true", default=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)

    sessions = relationship("AdminSession", back_populates="user", cascade="all, delete-orphan")


class AdminSession(TimestampMixin, Base):
    """Cookie session; only the HMAC of the cookie value is stored."""

    __tablename__ = "admin_sessions"

    id = Column(String(40), primary_key=True, default=lambda: uuid4().hex)
    user_id = Column(String(40), ForeignKey("admin_users.id", ondelete="CASCADE"), nullable=False, index=True)
    token_hash = Column(String(128), nullable=False, unique=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    ip_address = Column(String(64), nullable=True)

    user = relationship("AdminUser", back_populates="sessions")


Index("ix_admin_sessions_expiry", AdminSession.expires_at)
