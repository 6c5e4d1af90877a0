"""Token issuance, redemption and ban checks for tenant users."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import config
from .audit import record_audit
from .auth.crypto import generate_hex_token, hash_password
from .clients.external_db import (
    ExternalUser,
    TenantEngineRegistry,
    get_engine_registry,
    get_user_by_id,
    update_user_field,
)
from .db import session_scope
from .db_models import AuthToken, AuthUserBan, ConnectedDatabase
from .errors import (
    ExternalDatabaseError,
    MailDeliveryError,
    OwnershipMismatch,
    RecordNotFound,
    RequestValidationFailed,
)
from .mailer import AuthMailer, get_auth_mailer
from .schema_mapping import resolve_schema_mapping

LOGGER = logging.getLogger(__name__)


class TokenType:
    EMAIL_VERIFICATION = "email_verification"
    MAGIC_LINK = "magic_link"
    PASSWORD_RESET = "password_reset"


TOKEN_TTLS: Dict[str, timedelta] = {
    TokenType.EMAIL_VERIFICATION: config.EMAIL_VERIFICATION_TTL,
    TokenType.MAGIC_LINK: config.MAGIC_LINK_TTL,
    TokenType.PASSWORD_RESET: config.PASSWORD_RESET_TTL,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_dt(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class IssuedToken:
    token: str
    token_type: str
    expires_at: datetime


@dataclass
class VerifiedEmail:
    user_id: str
    email: str


@dataclass
class _ClaimedToken:
    database_id: str
    external_user_id: str
    email: str


class TokenService:
    """Issues single-use tokens and redeems them against tenant databases."""

    def __init__(
        self,
        mailer: Optional[AuthMailer] = None,
        engines: Optional[TenantEngineRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.mailer = mailer or get_auth_mailer()
        self._engines = engines
        self._clock = clock or _utcnow

    @property
    def engines(self) -> TenantEngineRegistry:
        return self._engines or get_engine_registry()

    def _engine_for(self, tenant: ConnectedDatabase) -> Engine:
        return self.engines.engine_for(tenant.id, tenant.connection_url, tenant.service_role)

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------
    def _issue(
        self,
        token_type: str,
        tenant_id: str,
        external_user_id: Optional[str],
        email: Optional[str],
    ) -> Tuple[IssuedToken, str]:
        if not external_user_id or not email:
            raise RequestValidationFailed("userId and email are required")

        expires_at = self._clock() + TOKEN_TTLS[token_type]
        token = generate_hex_token(config.TOKEN_BYTES)
        with session_scope() as db:
            tenant = db.get(ConnectedDatabase, tenant_id)
            if tenant is None:
                raise MailDeliveryError("Failed to send email")
            app_name = tenant.app_name or config.DEFAULT_APP_NAME
            db.add(
                AuthToken(
                    database_id=tenant_id,
                    external_user_id=str(external_user_id),
                    email=email,
                    token=token,
                    type=token_type,
                    expires_at=expires_at,
                )
            )
        LOGGER.info("Issued %s token for tenant %s user %s", token_type, tenant_id, external_user_id)
        return IssuedToken(token=token, token_type=token_type, expires_at=expires_at), app_name

    def issue_verification_token(
        self,
        tenant_id: str,
        external_user_id: Optional[str],
        email: Optional[str],
        verify_url: Optional[str] = None,
    ) -> IssuedToken:
        issued, app_name = self._issue(TokenType.EMAIL_VERIFICATION, tenant_id, external_user_id, email)
        self.mailer.send_verification_email(email, issued.token, app_name, verify_url)
        return issued

    def issue_magic_link_token(
        self,
        tenant_id: str,
        external_user_id: Optional[str],
        email: Optional[str],
        login_url: Optional[str] = None,
    ) -> IssuedToken:
        issued, app_name = self._issue(TokenType.MAGIC_LINK, tenant_id, external_user_id, email)
        self.mailer.send_magic_link_email(email, issued.token, app_name, login_url)
        return issued

    def issue_password_reset_token(
        self,
        tenant_id: str,
        external_user_id: Optional[str],
        email: Optional[str],
        reset_url: Optional[str] = None,
    ) -> IssuedToken:
        issued, app_name = self._issue(TokenType.PASSWORD_RESET, tenant_id, external_user_id, email)
        self.mailer.send_password_reset_email(email, issued.token, app_name, reset_url)
        return issued

    # ------------------------------------------------------------------
    # Redemption
    # ------------------------------------------------------------------
    def _redeem(self, db: Session, tenant_id: str, token: str, token_type: str) -> _ClaimedToken:
        """Validate ``token`` and mark it used within ``db``'s transaction.

        The claim is a conditional update on ``used_at IS NULL`` so that only
        one concurrent redemption can succeed. Raising afterwards rolls the
        claim back with the rest of the transaction.
        """
        record = db.execute(select(AuthToken).where(AuthToken.token == token)).scalar_one_or_none()
        if record is None:
            raise RequestValidationFailed("Invalid token")
        if record.type != token_type:
            raise RequestValidationFailed("Invalid token type")
        if record.used_at is not None:
            raise RequestValidationFailed("Token already used")
        now = self._clock()
        if now > _normalize_dt(record.expires_at):
            raise RequestValidationFailed("Token expired")
        if record.database_id != tenant_id:
            raise OwnershipMismatch("Token does not belong to this database")

        claimed = _ClaimedToken(
            database_id=record.database_id,
            external_user_id=record.external_user_id,
            email=record.email,
        )
        result = db.execute(
            update(AuthToken)
            .where(AuthToken.id == record.id, AuthToken.used_at.is_(None))
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise RequestValidationFailed("Token already used")
        return claimed

    def verify_email_token(self, tenant_id: str, token: Optional[str]) -> VerifiedEmail:
        if not token:
            raise RequestValidationFailed("Token is required")
        with session_scope() as db:
            claimed = self._redeem(db, tenant_id, token, TokenType.EMAIL_VERIFICATION)
            mapping = resolve_schema_mapping(db, tenant_id)
            tenant = db.get(ConnectedDatabase, tenant_id)
            if mapping is not None and mapping.email_verified_column and tenant is not None:
                update_user_field(
                    self._engine_for(tenant),
                    tenant.user_table,
                    mapping,
                    claimed.external_user_id,
                    mapping.email_verified_column,
                    True,
                )
        LOGGER.info("Verified email for tenant %s user %s", tenant_id, claimed.external_user_id)
        return VerifiedEmail(user_id=claimed.external_user_id, email=claimed.email)

    def verify_magic_link_token(self, tenant_id: str, token: Optional[str]) -> ExternalUser:
        if not token:
            raise RequestValidationFailed("Token is required")
        with session_scope() as db:
            claimed = self._redeem(db, tenant_id, token, TokenType.MAGIC_LINK)
            mapping = resolve_schema_mapping(db, tenant_id)
            tenant = db.get(ConnectedDatabase, tenant_id)
            user: Optional[ExternalUser] = None
            if mapping is not None and tenant is not None:
                user = get_user_by_id(self._engine_for(tenant), tenant.user_table, mapping, claimed.external_user_id)
        if user is None:
            user = {"id": claimed.external_user_id, "email": claimed.email}
        LOGGER.info("Magic link redeemed for tenant %s user %s", tenant_id, claimed.external_user_id)
        return user

    def reset_password(self, tenant_id: str, token: Optional[str], new_password: Optional[str]) -> str:
        """Store a hash of ``new_password`` in the tenant's mapped password column."""
        if not token:
            raise RequestValidationFailed("Token is required")
        if not new_password or len(new_password) < config.MIN_PASSWORD_LENGTH:
            raise RequestValidationFailed(
                f"Password must be at least {config.MIN_PASSWORD_LENGTH} characters"
            )
        with session_scope() as db:
            claimed = self._redeem(db, tenant_id, token, TokenType.PASSWORD_RESET)
            mapping = resolve_schema_mapping(db, tenant_id)
            if mapping is None or not mapping.password_column:
                raise RequestValidationFailed("No password column mapped for this database")
            tenant = db.get(ConnectedDatabase, tenant_id)
            if tenant is None:
                raise RecordNotFound("Database not found")
            update_user_field(
                self._engine_for(tenant),
                tenant.user_table,
                mapping,
                claimed.external_user_id,
                mapping.password_column,
                hash_password(new_password),
            )
        LOGGER.info("Password reset for tenant %s user %s", tenant_id, claimed.external_user_id)
        return claimed.external_user_id


@dataclass
class BanStatus:
    banned: bool
    reason: Optional[str] = None
    type: Optional[str] = None
    expires_at: Optional[datetime] = None
    banned_at: Optional[datetime] = None


class BanType:
    PERMANENT = "permanent"
    TEMPORARY = "temporary"


class BanService:
    """Records bans locally and mirrors them into the tenant's status column."""

    def __init__(
        self,
        engines: Optional[TenantEngineRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._engines = engines
        self._clock = clock or _utcnow

    @property
    def engines(self) -> TenantEngineRegistry:
        return self._engines or get_engine_registry()

    def check_ban(self, tenant_id: str, external_user_id: Optional[str]) -> BanStatus:
        if not external_user_id:
            raise RequestValidationFailed("userId query parameter is required")
        with session_scope() as db:
            ban = (
                db.execute(
                    select(AuthUserBan)
                    .where(
                        AuthUserBan.database_id == tenant_id,
                        AuthUserBan.external_user_id == external_user_id,
                        AuthUserBan.is_active.is_(True),
                    )
                    .order_by(AuthUserBan.banned_at.desc())
                    .limit(1)
                )
                .scalars()
                .first()
            )
            if ban is None:
                return BanStatus(banned=False)
            now = self._clock()
            if ban.expires_at is not None and now > _normalize_dt(ban.expires_at):
                ban.is_active = False
                ban.unbanned_at = now
                db.add(ban)
                LOGGER.info("Temporary ban %s expired; deactivated", ban.id)
                return BanStatus(banned=False)
            return BanStatus(
                banned=True,
                reason=ban.reason,
                type=ban.type,
                expires_at=_normalize_dt(ban.expires_at) if ban.expires_at else None,
                banned_at=_normalize_dt(ban.banned_at),
            )

    def _mirror_status(self, tenant_id: str, external_user_id: str, value: str) -> None:
        try:
            with session_scope() as db:
                mapping = resolve_schema_mapping(db, tenant_id)
                tenant = db.get(ConnectedDatabase, tenant_id)
            if mapping is None or not mapping.status_column or tenant is None:
                return
            engine = self.engines.engine_for(tenant.id, tenant.connection_url, tenant.service_role)
            update_user_field(engine, tenant.user_table, mapping, external_user_id, mapping.status_column, value)
        except (ExternalDatabaseError, SQLAlchemyError, ValueError) as exc:
            LOGGER.warning("Could not mirror ban status for tenant %s user %s: %s", tenant_id, external_user_id, exc)

    def ban_user(
        self,
        tenant_id: str,
        external_user_id: str,
        *,
        email: Optional[str] = None,
        reason: Optional[str] = None,
        ban_type: str = BanType.PERMANENT,
        duration_hours: Optional[int] = None,
        actor: Optional[Dict[str, Any]] = None,
    ) -> BanStatus:
        if not external_user_id:
            raise RequestValidationFailed("userId is required")
        if ban_type not in (BanType.PERMANENT, BanType.TEMPORARY):
            raise RequestValidationFailed("Invalid ban type")
        now = self._clock()
        expires_at = None
        if ban_type == BanType.TEMPORARY and duration_hours:
            expires_at = now + timedelta(hours=duration_hours)
        reason = (reason or "").strip() or "No reason provided"
        actor = actor or {}

        with session_scope() as db:
            if db.get(ConnectedDatabase, tenant_id) is None:
                raise RecordNotFound("Database not found")
            db.add(
                AuthUserBan(
                    database_id=tenant_id,
                    external_user_id=external_user_id,
                    email=email,
                    reason=reason,
                    type=ban_type,
                    banned_at=now,
                    expires_at=expires_at,
                    is_active=True,
                )
            )
            record_audit(
                db,
                "auth_user_banned",
                ip_address=actor.get("ip_address"),
                user_agent=actor.get("user_agent"),
                details={"databaseId": tenant_id, "userId": external_user_id, "email": email, "reason": reason},
            )
        self._mirror_status(tenant_id, external_user_id, "banned")
        return BanStatus(banned=True, reason=reason, type=ban_type, expires_at=expires_at, banned_at=now)

    def unban_user(self, tenant_id: str, external_user_id: str, *, actor: Optional[Dict[str, Any]] = None) -> int:
        """Deactivate every active ban for the user; returns how many were lifted."""
        actor = actor or {}
        now = self._clock()
        with session_scope() as db:
            result = db.execute(
                update(AuthUserBan)
                .where(
                    AuthUserBan.database_id == tenant_id,
                    AuthUserBan.external_user_id == external_user_id,
                    AuthUserBan.is_active.is_(True),
                )
                .values(is_active=False, unbanned_at=now)
                .execution_options(synchronize_session=False)
            )
            lifted = result.rowcount
            record_audit(
                db,
                "auth_user_unbanned",
                ip_address=actor.get("ip_address"),
                user_agent=actor.get("user_agent"),
                details={"databaseId": tenant_id, "userId": external_user_id, "lifted": lifted},
            )
        self._mirror_status(tenant_id, external_user_id, "active")
        return lifted


_TOKEN_SERVICE: Optional[TokenService] = None
_BAN_SERVICE: Optional[BanService] = None


def get_token_service() -> TokenService:
    global _TOKEN_SERVICE
    if _TOKEN_SERVICE is None:
        _TOKEN_SERVICE = TokenService()
    return _TOKEN_SERVICE


def get_ban_service() -> BanService:
    global _BAN_SERVICE
    if _BAN_SERVICE is None:
        _BAN_SERVICE = BanService()
    return _BAN_SERVICE
