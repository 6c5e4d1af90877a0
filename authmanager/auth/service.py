"""Admin authentication service coordinating operators and cookie sessions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, select

from ..db import session_scope
from . import config
from .crypto import generate_token, hash_password, hash_token, verify_password
from .models import AdminSession, AdminUser

LOGGER = logging.getLogger(__name__)


@dataclass
class AdminIdentity:
    id: str
    email: str
    name: str


@dataclass
class AdminSessionTokens:
    session_id: str
    token: str
    expires_at: datetime


@dataclass
class AuthenticatedAdmin:
    user: AdminIdentity
    session_id: str
    expires_at: datetime


def _identity(user: AdminUser) -> AdminIdentity:
    return AdminIdentity(id=user.id, email=user.email, name=user.display_name or user.email)


class AdminAuthService:
    """Central authority for admin login, bootstrap and session validation."""

    def __init__(self) -> None:
        self._session_ttl = timedelta(hours=config.SESSION_TTL_HOURS)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _normalize_dt(value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def has_any_users(self) -> bool:
        with session_scope() as db:
            result = db.execute(select(func.count()).select_from(AdminUser))
            count = result.scalar() or 0
        return count > 0

    def create_initial_user(self, *, email: str, password: str, name: Optional[str] = None) -> AdminIdentity:
        if self.has_any_users():
            raise ValueError("Users already provisioned.")
        return self.create_user(email=email, password=password, name=name)

    def create_user(self, *, email: str, password: str, name: Optional[str] = None) -> AdminIdentity:
        normalized = email.strip().lower()
        display_name = (name or normalized).strip() or normalized
        with session_scope() as db:
            existing = db.execute(select(AdminUser).where(AdminUser.email == normalized)).scalar_one_or_none()
            if existing:
                raise ValueError("User already exists")
            user = AdminUser(
                email=normalized,
                display_name=display_name,
                password_hash=hash_password(password),
            )
            db.add(user)
            db.flush()
            return _identity(user)

    def authenticate(self, *, email: str, password: str) -> Optional[AdminIdentity]:
        normalized = email.strip().lower()
        with session_scope() as db:
            user = db.execute(select(AdminUser).where(AdminUser.email == normalized)).scalar_one_or_none()
            if user is None or not user.is_active:
                LOGGER.warning("Admin login attempt for unknown or inactive account")
                return None
            if not verify_password(password, user.password_hash):
                LOGGER.warning("Invalid password for admin %s", user.id)
                return None
            user.last_login_at = self._now()
            db.add(user)
            return _identity(user)

    def establish_session(self, *, user_id: str, ip_address: Optional[str] = None) -> AdminSessionTokens:
        now = self._now()
        token = generate_token(32)
        session = AdminSession(
            user_id=user_id,
            token_hash=hash_token(token),
            expires_at=now + self._session_ttl,
            ip_address=ip_address,
        )
        with session_scope() as db:
            db.add(session)
            db.flush()
            session_id = session.id
        return AdminSessionTokens(session_id=session_id, token=token, expires_at=now + self._session_ttl)

    def validate_token(self, token: Optional[str]) -> Optional[AuthenticatedAdmin]:
        if not token:
            return None
        now = self._now()
        with session_scope() as db:
            session = db.execute(
                select(AdminSession).where(AdminSession.token_hash == hash_token(token))
            ).scalar_one_or_none()
            if session is None or session.revoked_at is not None:
                return None
            if self._normalize_dt(session.expires_at) <= now:
                session.revoked_at = now
                db.add(session)
                return None
            user = db.get(AdminUser, session.user_id)
            if user is None or not user.is_active:
                return None
            return AuthenticatedAdmin(
                user=_identity(user),
                session_id=session.id,
                expires_at=self._normalize_dt(session.expires_at),
            )

    def logout(self, token: Optional[str]) -> bool:
        if not token:
            return False
        with session_scope() as db:
            session = db.execute(
                select(AdminSession).where(AdminSession.token_hash == hash_token(token))
            ).scalar_one_or_none()
            if session is None or session.revoked_at is not None:
                return False
            session.revoked_at = self._now()
            db.add(session)
        return True


_ADMIN_AUTH_SERVICE: Optional[AdminAuthService] = None


def get_admin_auth_service() -> AdminAuthService:
    global _ADMIN_AUTH_SERVICE
    if _ADMIN_AUTH_SERVICE is None:
        _ADMIN_AUTH_SERVICE = AdminAuthService()
    return _ADMIN_AUTH_SERVICE
