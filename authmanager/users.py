"""Administration of the users stored in a tenant's own database."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.engine import Engine

from . import config
from .audit import record_audit
from .auth.crypto import hash_password
from .clients.external_db import (
    ExternalUser,
    TenantEngineRegistry,
    delete_user,
    delete_user_sessions,
    get_engine_registry,
    get_user_profile,
    insert_user,
    list_user_sessions,
    query_users,
    update_user_field,
)
from .db import session_scope
from .db_models import AuthToken, AuthUserBan, ConnectedDatabase
from .errors import RecordNotFound, RequestValidationFailed
from .schema_mapping import SchemaMapping
from .services import IssuedToken, TokenService, get_token_service
from .tenants import TenantService, get_tenant_service

LOGGER = logging.getLogger(__name__)


@dataclass
class UserPage:
    users: List[ExternalUser]
    total: int
    page: int
    limit: int


@dataclass
class NewUser:
    email: Optional[str]
    id: Optional[str] = None
    name: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None
    email_verified: bool = False


@dataclass
class _Tenant:
    id: str
    app_name: str
    user_table: str
    mapping: SchemaMapping
    engine: Engine


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ban_summary(ban: AuthUserBan) -> Dict[str, Any]:
    return {
        "reason": ban.reason,
        "type": ban.type,
        "expires_at": ban.expires_at,
        "banned_at": ban.banned_at,
    }


class UserAdminService:
    """Lists, edits, creates and removes users of a connected database."""

    def __init__(
        self,
        tokens: Optional[TokenService] = None,
        tenants: Optional[TenantService] = None,
        engines: Optional[TenantEngineRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._tokens = tokens
        self._tenants = tenants
        self._engines = engines
        self._clock = clock or _utcnow

    @property
    def tokens(self) -> TokenService:
        return self._tokens or get_token_service()

    @property
    def tenants(self) -> TenantService:
        return self._tenants or get_tenant_service()

    @property
    def engines(self) -> TenantEngineRegistry:
        return self._engines or get_engine_registry()

    def _tenant(self, database_id: str) -> _Tenant:
        with session_scope() as db:
            record = db.get(ConnectedDatabase, database_id)
            if record is None:
                raise RecordNotFound("Database not found")
            app_name, user_table = record.app_name, record.user_table
            url, credential = record.connection_url, record.service_role
        mapping = self.tenants.get_schema_mapping(database_id)
        engine = self.engines.engine_for(database_id, url, credential)
        return _Tenant(id=database_id, app_name=app_name, user_table=user_table, mapping=mapping, engine=engine)

    def _require_user(self, tenant: _Tenant, user_id: str) -> ExternalUser:
        user = get_user_profile(tenant.engine, tenant.user_table, tenant.mapping, user_id)
        if user is None:
            raise RecordNotFound("User not found")
        return user

    @staticmethod
    def _audit(action: str, actor: Optional[Dict[str, Any]], details: Dict[str, Any]) -> None:
        actor = actor or {}
        with session_scope() as db:
            record_audit(
                db,
                action,
                ip_address=actor.get("ip_address"),
                user_agent=actor.get("user_agent"),
                details=details,
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def list_users(
        self,
        database_id: str,
        *,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 25,
        sort_by: Optional[str] = None,
        sort_dir: str = "DESC",
    ) -> UserPage:
        """One page of users, each carrying its active ban (or ``None``)."""
        tenant = self._tenant(database_id)
        page = max(page, 1)
        try:
            users, total = query_users(
                tenant.engine,
                tenant.user_table,
                tenant.mapping,
                search=(search or "").strip() or None,
                limit=limit,
                offset=(page - 1) * limit,
                sort_by=sort_by,
                sort_dir=sort_dir,
            )
        except ValueError as exc:
            raise RequestValidationFailed(str(exc)) from exc

        with session_scope() as db:
            bans = (
                db.execute(
                    select(AuthUserBan)
                    .where(AuthUserBan.database_id == database_id, AuthUserBan.is_active.is_(True))
                    .order_by(AuthUserBan.banned_at.asc())
                )
                .scalars()
                .all()
            )
            latest = {ban.external_user_id: _ban_summary(ban) for ban in bans}
        for user in users:
            user["ban_status"] = latest.get(user["id"])
        return UserPage(users=users, total=total, page=page, limit=limit)

    def get_user(self, database_id: str, user_id: str) -> ExternalUser:
        return self._require_user(self._tenant(database_id), user_id)

    def list_sessions(self, database_id: str, user_id: str) -> List[Dict[str, Any]]:
        tenant = self._tenant(database_id)
        return list_user_sessions(tenant.engine, tenant.mapping, user_id)

    # ------------------------------------------------------------------
    # Direct edits
    # ------------------------------------------------------------------
    def set_password(
        self,
        database_id: str,
        user_id: str,
        new_password: Optional[str],
        *,
        actor: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not new_password or len(new_password) < config.MIN_PASSWORD_LENGTH:
            raise RequestValidationFailed(
                f"Password must be at least {config.MIN_PASSWORD_LENGTH} characters"
            )
        tenant = self._tenant(database_id)
        if not tenant.mapping.password_column:
            raise RequestValidationFailed("No password column mapped for this database")
        updated = update_user_field(
            tenant.engine,
            tenant.user_table,
            tenant.mapping,
            user_id,
            tenant.mapping.password_column,
            hash_password(new_password),
        )
        if not updated:
            raise RecordNotFound("User not found")
        self._audit("auth_password_reset_direct", actor, {"databaseId": database_id, "userId": user_id})
        LOGGER.info("Password set by admin for tenant %s user %s", database_id, user_id)

    def verify_email(self, database_id: str, user_id: str, *, actor: Optional[Dict[str, Any]] = None) -> None:
        tenant = self._tenant(database_id)
        if not tenant.mapping.email_verified_column:
            raise RequestValidationFailed("No email_verified column mapped")
        updated = update_user_field(
            tenant.engine,
            tenant.user_table,
            tenant.mapping,
            user_id,
            tenant.mapping.email_verified_column,
            True,
        )
        if not updated:
            raise RecordNotFound("User not found")
        self._audit("auth_email_verified", actor, {"databaseId": database_id, "userId": user_id})

    def force_logout(self, database_id: str, user_id: str, *, actor: Optional[Dict[str, Any]] = None) -> int:
        """Delete the user's rows from the mapped session table; 0 when none is mapped."""
        tenant = self._tenant(database_id)
        destroyed = delete_user_sessions(tenant.engine, tenant.mapping, user_id)
        self._audit(
            "auth_force_logout",
            actor,
            {"databaseId": database_id, "userId": user_id, "sessionsDestroyed": destroyed},
        )
        LOGGER.info("Force logout for tenant %s user %s destroyed %d sessions", database_id, user_id, destroyed)
        return destroyed

    # ------------------------------------------------------------------
    # Mailed tokens
    # ------------------------------------------------------------------
    def _recipient(self, database_id: str, user_id: str, email: Optional[str]) -> str:
        """The address to mail: ``email`` when given, else the user's mapped email."""
        tenant = self._tenant(database_id)
        email = (email or "").strip()
        if email:
            return email
        user = self._require_user(tenant, user_id)
        if not user.get("email"):
            raise RequestValidationFailed("User has no email address")
        return str(user["email"])

    def send_verification(
        self,
        database_id: str,
        user_id: str,
        email: Optional[str] = None,
        *,
        actor: Optional[Dict[str, Any]] = None,
    ) -> IssuedToken:
        email = self._recipient(database_id, user_id, email)
        issued = self.tokens.issue_verification_token(database_id, user_id, email)
        self._audit("auth_verification_sent", actor, {"databaseId": database_id, "userId": user_id, "email": email})
        return issued

    def send_magic_link(
        self,
        database_id: str,
        user_id: str,
        email: Optional[str] = None,
        *,
        actor: Optional[Dict[str, Any]] = None,
    ) -> IssuedToken:
        email = self._recipient(database_id, user_id, email)
        issued = self.tokens.issue_magic_link_token(database_id, user_id, email)
        self._audit("auth_magic_link_sent", actor, {"databaseId": database_id, "userId": user_id, "email": email})
        return issued

    def send_password_reset(
        self,
        database_id: str,
        user_id: str,
        email: Optional[str] = None,
        *,
        actor: Optional[Dict[str, Any]] = None,
    ) -> IssuedToken:
        email = self._recipient(database_id, user_id, email)
        issued = self.tokens.issue_password_reset_token(database_id, user_id, email)
        self._audit("auth_password_reset_sent", actor, {"databaseId": database_id, "userId": user_id, "email": email})
        return issued

    # ------------------------------------------------------------------
    # Create / delete
    # ------------------------------------------------------------------
    def create_user(self, database_id: str, new_user: NewUser, *, actor: Optional[Dict[str, Any]] = None) -> str:
        """Insert a user into the tenant table and return its id.

        Only mapped columns are written; the password is stored as an argon2
        hash and a missing id is filled with a random UUID.
        """
        email = (new_user.email or "").strip()
        if not email:
            raise RequestValidationFailed("Email is required")
        tenant = self._tenant(database_id)
        mapping = tenant.mapping
        user_id = (new_user.id or "").strip() or str(uuid.uuid4())

        values: Dict[str, Any] = {mapping.id_column: user_id, mapping.email_column: email}
        if mapping.name_column:
            values[mapping.name_column] = new_user.name
        if mapping.username_column:
            values[mapping.username_column] = new_user.username
        if mapping.role_column:
            values[mapping.role_column] = new_user.role
        if mapping.password_column and new_user.password:
            values[mapping.password_column] = hash_password(new_user.password)
        if mapping.email_verified_column:
            values[mapping.email_verified_column] = 1 if new_user.email_verified else 0
        if mapping.created_at_column:
            values[mapping.created_at_column] = self._clock().isoformat()

        insert_user(tenant.engine, tenant.user_table, values)
        self._audit(
            "auth_user_created",
            actor,
            {"databaseId": database_id, "userId": user_id, "email": email, "appName": tenant.app_name},
        )
        LOGGER.info("Created user %s in tenant %s", user_id, database_id)
        return user_id

    def delete_user(self, database_id: str, user_id: str, *, actor: Optional[Dict[str, Any]] = None) -> None:
        """Remove the user row, then the user's local bans and tokens."""
        tenant = self._tenant(database_id)
        user = self._require_user(tenant, user_id)
        delete_user(tenant.engine, tenant.user_table, tenant.mapping, user_id)
        with session_scope() as db:
            db.execute(
                delete(AuthUserBan).where(
                    AuthUserBan.database_id == database_id,
                    AuthUserBan.external_user_id == user_id,
                )
            )
            db.execute(
                delete(AuthToken).where(
                    AuthToken.database_id == database_id,
                    AuthToken.external_user_id == user_id,
                )
            )
            actor = actor or {}
            record_audit(
                db,
                "auth_user_deleted",
                ip_address=actor.get("ip_address"),
                user_agent=actor.get("user_agent"),
                details={
                    "databaseId": database_id,
                    "userId": user_id,
                    "email": user.get("email"),
                    "appName": tenant.app_name,
                },
            )
        LOGGER.info("Deleted user %s from tenant %s", user_id, database_id)


_USER_ADMIN_SERVICE: Optional[UserAdminService] = None


def get_user_admin_service() -> UserAdminService:
    global _USER_ADMIN_SERVICE
    if _USER_ADMIN_SERVICE is None:
        _USER_ADMIN_SERVICE = UserAdminService()
    return _USER_ADMIN_SERVICE
