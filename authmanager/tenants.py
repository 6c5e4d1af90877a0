"""Tenant onboarding and schema mapping administration."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from . import config
from .audit import record_audit
from .clients.external_db import (
    TenantEngineRegistry,
    build_external_engine,
    database_overview,
    describe_table,
    detect_schema,
    get_engine_registry,
    list_tables,
    ping,
)
from .db import session_scope
from .db_models import AuthToken, AuthUserBan, ConnectedDatabase
from .errors import ExternalDatabaseError, RecordNotFound, RequestValidationFailed
from .schema_mapping import SchemaMapping, resolve_schema_mapping, save_schema_mapping, validate_identifier

LOGGER = logging.getLogger(__name__)


@dataclass
class DatabaseSummary:
    id: str
    name: str
    app_name: str
    user_table: str
    is_active: bool
    has_service_role: bool
    created_at: Optional[datetime]


@dataclass
class DatabaseIntrospection:
    tables: List[str]
    columns: List[Dict[str, str]]
    detected: SchemaMapping


@dataclass
class AuthStats:
    active_bans: int
    pending_tokens: int
    databases: int


def _summary(record: ConnectedDatabase) -> DatabaseSummary:
    return DatabaseSummary(
        id=record.id,
        name=record.name,
        app_name=record.app_name,
        user_table=record.user_table,
        is_active=bool(record.is_active),
        has_service_role=bool(record.service_role),
        created_at=record.created_at,
    )


class TenantService:
    """Connects, lists and deactivates tenant databases and edits their mappings."""

    def __init__(
        self,
        engines: Optional[TenantEngineRegistry] = None,
        engine_factory: Callable[[str, Optional[str]], Engine] = build_external_engine,
    ) -> None:
        self._engines = engines
        self._engine_factory = engine_factory

    @property
    def engines(self) -> TenantEngineRegistry:
        return self._engines or get_engine_registry()

    def list_databases(self) -> List[DatabaseSummary]:
        with session_scope() as db:
            records = (
                db.execute(
                    select(ConnectedDatabase)
                    .where(ConnectedDatabase.is_active.is_(True))
                    .order_by(ConnectedDatabase.app_name.asc())
                )
                .scalars()
                .all()
            )
            return [_summary(record) for record in records]

    def connect_database(
        self,
        *,
        name: Optional[str],
        app_name: Optional[str],
        connection_url: Optional[str],
        service_role: Optional[str] = None,
        user_table: Optional[str] = None,
        actor: Optional[Dict[str, Any]] = None,
    ) -> DatabaseSummary:
        """Test the connection, store the tenant and try to detect its mapping."""
        name = (name or "").strip()
        app_name = (app_name or "").strip()
        connection_url = (connection_url or "").strip()
        service_role = (service_role or "").strip() or None
        user_table = (user_table or "").strip() or config.DEFAULT_USER_TABLE
        if not name or not app_name or not connection_url:
            raise RequestValidationFailed("name, appName and connectionUrl are required")
        try:
            validate_identifier(user_table)
        except ValueError as exc:
            raise RequestValidationFailed(str(exc)) from exc

        try:
            engine = self._engine_factory(connection_url, service_role)
        except SQLAlchemyError as exc:
            raise RequestValidationFailed(f"Connection failed: {exc}") from exc

        try:
            try:
                ping(engine)
            except ExternalDatabaseError as exc:
                raise RequestValidationFailed(f"Connection failed: {exc.message}") from exc

            detected: Optional[SchemaMapping] = None
            try:
                detected = detect_schema(engine, user_table)
            except (ExternalDatabaseError, ValueError) as exc:
                LOGGER.warning("Schema detection failed for %s: %s", name, exc)
        finally:
            engine.dispose()

        actor = actor or {}
        with session_scope() as db:
            record = ConnectedDatabase(
                name=name,
                app_name=app_name,
                connection_url=connection_url,
                service_role=service_role,
                user_table=user_table,
                is_active=True,
            )
            db.add(record)
            db.flush()
            if detected is not None:
                save_schema_mapping(db, record.id, detected)
            record_audit(
                db,
                "auth_database_connected",
                ip_address=actor.get("ip_address"),
                user_agent=actor.get("user_agent"),
                details={"databaseId": record.id, "name": name, "appName": app_name},
            )
            db.flush()
            db.refresh(record)
            summary = _summary(record)
        LOGGER.info("Connected tenant database %s (%s)", summary.id, app_name)
        return summary

    def deactivate_database(self, database_id: str, *, actor: Optional[Dict[str, Any]] = None) -> None:
        actor = actor or {}
        with session_scope() as db:
            record = db.get(ConnectedDatabase, database_id)
            if record is None:
                raise RecordNotFound("Database not found")
            record.is_active = False
            db.add(record)
            record_audit(
                db,
                "auth_database_disconnected",
                ip_address=actor.get("ip_address"),
                user_agent=actor.get("user_agent"),
                details={"databaseId": database_id},
            )
        self.engines.dispose(database_id)
        LOGGER.info("Deactivated tenant database %s", database_id)

    def get_schema_mapping(self, database_id: str) -> SchemaMapping:
        """Return the stored mapping, detecting and saving one on first access."""
        with session_scope() as db:
            mapping = resolve_schema_mapping(db, database_id)
            if mapping is not None:
                return mapping
            record = db.get(ConnectedDatabase, database_id)
            if record is None:
                raise RecordNotFound("Database not found")
            engine = self.engines.engine_for(record.id, record.connection_url, record.service_role)
            detected = detect_schema(engine, record.user_table)
            save_schema_mapping(db, database_id, detected)
            LOGGER.info("Saved detected schema mapping for tenant %s", database_id)
            return detected

    def update_schema_mapping(
        self,
        database_id: str,
        values: Dict[str, Any],
        *,
        actor: Optional[Dict[str, Any]] = None,
    ) -> SchemaMapping:
        try:
            mapping = SchemaMapping.from_values(values)
        except ValueError as exc:
            raise RequestValidationFailed(str(exc)) from exc
        actor = actor or {}
        with session_scope() as db:
            if db.get(ConnectedDatabase, database_id) is None:
                raise RecordNotFound("Database not found")
            save_schema_mapping(db, database_id, mapping)
            record_audit(
                db,
                "auth_schema_updated",
                ip_address=actor.get("ip_address"),
                user_agent=actor.get("user_agent"),
                details={"databaseId": database_id},
            )
        return mapping

    def _record(self, database_id: str) -> ConnectedDatabase:
        with session_scope() as db:
            record = db.get(ConnectedDatabase, database_id)
            if record is None:
                raise RecordNotFound("Database not found")
            return record

    def introspect(self, database_id: str) -> DatabaseIntrospection:
        """Tables, user-table columns and a freshly detected mapping, without saving it."""
        record = self._record(database_id)
        engine = self.engines.engine_for(record.id, record.connection_url, record.service_role)
        return DatabaseIntrospection(
            tables=list_tables(engine),
            columns=describe_table(engine, record.user_table),
            detected=detect_schema(engine, record.user_table),
        )

    def overview(self, database_id: str) -> Dict[str, Any]:
        record = self._record(database_id)
        engine = self.engines.engine_for(record.id, record.connection_url, record.service_role)
        try:
            summary = database_overview(engine)
        except ValueError as exc:
            raise RequestValidationFailed(str(exc)) from exc
        summary.update(db_name=record.name, app_name=record.app_name)
        return summary

    def stats(self, database_id: Optional[str] = None, *, now: Optional[datetime] = None) -> AuthStats:
        """Active bans and unredeemed tokens, optionally for one tenant."""
        now = now or datetime.now(timezone.utc)
        bans = select(func.count()).select_from(AuthUserBan).where(AuthUserBan.is_active.is_(True))
        tokens = (
            select(func.count())
            .select_from(AuthToken)
            .where(AuthToken.used_at.is_(None), AuthToken.expires_at > now)
        )
        if database_id:
            bans = bans.where(AuthUserBan.database_id == database_id)
            tokens = tokens.where(AuthToken.database_id == database_id)
        databases = (
            select(func.count()).select_from(ConnectedDatabase).where(ConnectedDatabase.is_active.is_(True))
        )
        with session_scope() as db:
            return AuthStats(
                active_bans=db.execute(bans).scalar_one(),
                pending_tokens=db.execute(tokens).scalar_one(),
                databases=db.execute(databases).scalar_one(),
            )


_TENANT_SERVICE: Optional[TenantService] = None


def get_tenant_service() -> TenantService:
    global _TENANT_SERVICE
    if _TENANT_SERVICE is None:
        _TENANT_SERVICE = TenantService()
    return _TENANT_SERVICE
