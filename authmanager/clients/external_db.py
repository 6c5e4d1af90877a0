"""Access to tenants' externally hosted user databases."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import column, create_engine, delete, func, inspect, literal_column, or_, select, table, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..db import normalize_database_url
from ..errors import ExternalDatabaseError
from ..schema_mapping import SchemaMapping, validate_identifier

LOGGER = logging.getLogger(__name__)

ExternalUser = Dict[str, Any]

_SYSTEM_TABLE_PREFIXES = ("sqlite_", "_litestream_", "libsql_")

_DETECTION_CANDIDATES = {
    "id_column": ("id", "user_id", "uid", "userid"),
    "email_column": ("email", "user_email", "email_address"),
    "name_column": ("name", "full_name", "display_name", "fullname"),
    "username_column": ("username", "user_name", "handle", "screen_name"),
    "role_column": ("role", "user_role", "roles", "type", "account_type"),
    "email_verified_column": ("email_verified", "emailverified", "verified", "is_verified", "email_confirmed"),
    "password_column": ("password", "password_hash", "hashed_password", "passwd"),
    "status_column": ("status", "account_status", "is_active", "active", "banned", "state"),
    "avatar_column": ("avatar", "avatar_url", "image", "profile_image", "photo_url", "image_url"),
    "created_at_column": ("created_at", "createdat", "registered_at", "joined_at", "date_joined", "signup_date"),
    "last_login_column": ("last_login", "lastlogin", "last_login_at", "last_seen", "last_active"),
}


def build_external_engine(connection_url: str, credential: Optional[str] = None) -> Engine:
    """Create an engine for a tenant database.

    ``libsql://`` URLs are routed through the ``sqlite+libsql`` dialect with the
    tenant credential as auth token; everything else is handed to SQLAlchemy
    after Postgres scheme normalisation.
    """
    url = connection_url.strip()
    connect_args: Dict[str, Any] = {}
    if url.startswith("libsql://"):
        url = "sqlite+libsql://" + url[len("libsql://"):]
        url += "&secure=true" if "?" in url else "?secure=true"
        if credential:
            connect_args["auth_token"] = credential
    elif url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    else:
        url = normalize_database_url(url)
    return create_engine(url, future=True, pool_pre_ping=True, connect_args=connect_args)


@dataclass
class _RegisteredEngine:
    connection_url: str
    engine: Engine


class TenantEngineRegistry:
    """Lazily created, pooled engines keyed by tenant id.

    Engines are opened on first use and disposed when a tenant is deactivated,
    when its connection URL changes, or on shutdown.
    """

    def __init__(self, factory: Callable[[str, Optional[str]], Engine] = build_external_engine) -> None:
        self._factory = factory
        self._engines: Dict[str, _RegisteredEngine] = {}
        self._lock = Lock()

    def engine_for(self, database_id: str, connection_url: str, credential: Optional[str] = None) -> Engine:
        with self._lock:
            entry = self._engines.get(database_id)
            if entry is not None and entry.connection_url == connection_url:
                return entry.engine
            if entry is not None:
                LOGGER.info("Connection URL changed for tenant %s; replacing engine", database_id)
                entry.engine.dispose()
            try:
                engine = self._factory(connection_url, credential)
            except SQLAlchemyError as exc:
                self._engines.pop(database_id, None)
                raise _wrap("engine setup", exc) from exc
            self._engines[database_id] = _RegisteredEngine(connection_url=connection_url, engine=engine)
            LOGGER.debug("Opened external engine for tenant %s", database_id)
            return engine

    def dispose(self, database_id: str) -> bool:
        with self._lock:
            entry = self._engines.pop(database_id, None)
        if entry is None:
            return False
        entry.engine.dispose()
        LOGGER.info("Disposed external engine for tenant %s", database_id)
        return True

    def dispose_all(self) -> None:
        with self._lock:
            entries = list(self._engines.values())
            self._engines.clear()
        for entry in entries:
            entry.engine.dispose()

    def __contains__(self, database_id: object) -> bool:
        with self._lock:
            return database_id in self._engines


def _wrap(action: str, exc: SQLAlchemyError) -> ExternalDatabaseError:
    detail = str(getattr(exc, "orig", None) or exc)
    LOGGER.warning("External database %s failed: %s", action, detail)
    return ExternalDatabaseError(detail)


def ping(engine: Engine) -> None:
    """Raise ``ExternalDatabaseError`` if the database cannot be reached."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        raise _wrap("connection test", exc) from exc


def get_user_by_id(
    engine: Engine,
    user_table: str,
    mapping: SchemaMapping,
    external_id: str,
) -> Optional[ExternalUser]:
    """Fetch one user row projected onto ``{id, email, name, username, role}``."""
    validate_identifier(user_table)
    projection = mapping.projection()
    stmt = (
        select(*(column(name).label(key) for key, name in projection.items()))
        .select_from(table(user_table))
        .where(column(mapping.id_column) == external_id)
        .limit(1)
    )
    try:
        with engine.connect() as conn:
            row = conn.execute(stmt).mappings().first()
    except SQLAlchemyError as exc:
        raise _wrap("user lookup", exc) from exc
    if row is None:
        return None
    user: ExternalUser = {key: None for key in ("id", "email", "name", "username", "role")}
    user.update(dict(row))
    user["id"] = str(row["id"])
    return user


def update_user_field(
    engine: Engine,
    user_table: str,
    mapping: SchemaMapping,
    external_id: str,
    column_name: str,
    value: Any,
) -> int:
    """Set ``column_name`` on the row whose mapped id equals ``external_id``."""
    validate_identifier(user_table)
    validate_identifier(column_name)
    names = {column_name, mapping.id_column}
    users = table(user_table, *(column(name) for name in names))
    stmt = update(users).where(users.c[mapping.id_column] == external_id).values({column_name: value})
    try:
        with engine.begin() as conn:
            result = conn.execute(stmt)
    except SQLAlchemyError as exc:
        raise _wrap("user update", exc) from exc
    return result.rowcount


def _profile_row(row: Any, keys: Iterable[str]) -> ExternalUser:
    user: ExternalUser = {key: row[key] for key in keys}
    user["id"] = str(row["id"])
    return user


def query_users(
    engine: Engine,
    user_table: str,
    mapping: SchemaMapping,
    *,
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    sort_by: Optional[str] = None,
    sort_dir: str = "DESC",
) -> Tuple[List[ExternalUser], int]:
    """Return one page of users plus the total matching ``search``.

    ``search`` is a substring match on the mapped email, name and username
    columns. Rows are ordered by ``sort_by`` when given, otherwise by the
    created-at column if mapped, otherwise by the id column.
    """
    validate_identifier(user_table)
    projection = mapping.profile_projection()
    order_name = validate_identifier(sort_by) if sort_by else (mapping.created_at_column or mapping.id_column)
    order = column(order_name).asc() if sort_dir.upper() == "ASC" else column(order_name).desc()

    condition = None
    if search:
        pattern = f"%{search}%"
        searchable = [mapping.email_column, mapping.name_column, mapping.username_column]
        condition = or_(*(column(name).like(pattern) for name in searchable if name))

    count_stmt = select(func.count()).select_from(table(user_table))
    data_stmt = (
        select(*(column(name).label(key) for key, name in projection.items()))
        .select_from(table(user_table))
        .order_by(order)
        .limit(limit)
        .offset(offset)
    )
    if condition is not None:
        count_stmt = count_stmt.where(condition)
        data_stmt = data_stmt.where(condition)

    try:
        with engine.connect() as conn:
            total = int(conn.execute(count_stmt).scalar_one())
            rows = conn.execute(data_stmt).mappings().all()
    except SQLAlchemyError as exc:
        raise _wrap("user listing", exc) from exc
    return [_profile_row(row, projection) for row in rows], total


def get_user_profile(
    engine: Engine,
    user_table: str,
    mapping: SchemaMapping,
    external_id: str,
) -> Optional[ExternalUser]:
    """Like ``get_user_by_id`` but projects every mapped profile column."""
    validate_identifier(user_table)
    projection = mapping.profile_projection()
    stmt = (
        select(*(column(name).label(key) for key, name in projection.items()))
        .select_from(table(user_table))
        .where(column(mapping.id_column) == external_id)
        .limit(1)
    )
    try:
        with engine.connect() as conn:
            row = conn.execute(stmt).mappings().first()
    except SQLAlchemyError as exc:
        raise _wrap("user lookup", exc) from exc
    if row is None:
        return None
    return _profile_row(row, projection)


def insert_user(engine: Engine, user_table: str, values: Dict[str, Any]) -> None:
    """Insert one row; ``None`` and empty-string values are left out."""
    validate_identifier(user_table)
    cleaned = {validate_identifier(name): value for name, value in values.items() if value is not None and value != ""}
    if not cleaned:
        raise ValueError("No fields provided")
    users = table(user_table, *(column(name) for name in cleaned))
    try:
        with engine.begin() as conn:
            conn.execute(users.insert().values(cleaned))
    except SQLAlchemyError as exc:
        raise _wrap("user insert", exc) from exc


def delete_user(engine: Engine, user_table: str, mapping: SchemaMapping, external_id: str) -> int:
    validate_identifier(user_table)
    users = table(user_table, column(mapping.id_column))
    try:
        with engine.begin() as conn:
            result = conn.execute(delete(users).where(users.c[mapping.id_column] == external_id))
    except SQLAlchemyError as exc:
        raise _wrap("user delete", exc) from exc
    return result.rowcount


def list_user_sessions(engine: Engine, mapping: SchemaMapping, external_id: str) -> List[Dict[str, Any]]:
    """Rows of the mapped session table owned by the user; empty when unmapped."""
    if not mapping.tracks_sessions:
        return []
    stmt = (
        select(literal_column("*"))
        .select_from(table(mapping.session_table))
        .where(column(mapping.session_user_id_column) == external_id)
    )
    try:
        with engine.connect() as conn:
            return [dict(row) for row in conn.execute(stmt).mappings().all()]
    except SQLAlchemyError as exc:
        raise _wrap("session lookup", exc) from exc


def delete_user_sessions(engine: Engine, mapping: SchemaMapping, external_id: str) -> int:
    """Delete every session row of the user and return how many went."""
    if not mapping.tracks_sessions:
        return 0
    sessions = table(mapping.session_table, column(mapping.session_user_id_column))
    try:
        with engine.begin() as conn:
            result = conn.execute(
                delete(sessions).where(sessions.c[mapping.session_user_id_column] == external_id)
            )
    except SQLAlchemyError as exc:
        raise _wrap("session delete", exc) from exc
    return result.rowcount


def list_tables(engine: Engine) -> List[str]:
    try:
        names = inspect(engine).get_table_names()
    except SQLAlchemyError as exc:
        raise _wrap("table listing", exc) from exc
    return sorted(name for name in names if not name.startswith(_SYSTEM_TABLE_PREFIXES))


def describe_table(engine: Engine, table_name: str) -> List[Dict[str, str]]:
    """Column names and declared types of ``table_name``."""
    validate_identifier(table_name)
    try:
        columns = inspect(engine).get_columns(table_name)
    except SQLAlchemyError as exc:
        raise _wrap("schema introspection", exc) from exc
    return [{"name": str(col["name"]), "type": str(col["type"])} for col in columns]


def database_overview(engine: Engine) -> Dict[str, Any]:
    """Every user table with its columns and row count."""
    tables: List[Dict[str, Any]] = []
    total_rows = 0
    for name in list_tables(engine):
        columns = describe_table(engine, name)
        try:
            with engine.connect() as conn:
                row_count = int(conn.execute(select(func.count()).select_from(table(name))).scalar_one())
        except SQLAlchemyError as exc:
            raise _wrap("row count", exc) from exc
        total_rows += row_count
        tables.append({"name": name, "row_count": row_count, "columns": columns})
    return {"tables": tables, "total_rows": total_rows}


def list_columns(engine: Engine, user_table: str) -> List[str]:
    validate_identifier(user_table)
    try:
        inspector = inspect(engine)
        if not inspector.has_table(user_table):
            raise ExternalDatabaseError(f"Table not found: {user_table}")
        return [str(col["name"]) for col in inspector.get_columns(user_table)]
    except SQLAlchemyError as exc:
        raise _wrap("schema introspection", exc) from exc


def _pick(columns: Iterable[str], candidates: Iterable[str]) -> Optional[str]:
    by_lower = {name.lower(): name for name in columns}
    for candidate in candidates:
        if candidate in by_lower:
            return by_lower[candidate]
    return None


def detect_schema(engine: Engine, user_table: str) -> SchemaMapping:
    """Guess a mapping for ``user_table`` from well-known column names."""
    columns = list_columns(engine, user_table)
    guessed = {key: _pick(columns, candidates) for key, candidates in _DETECTION_CANDIDATES.items()}
    # Optional fields must not reuse the id/email columns.
    claimed = {guessed["id_column"], guessed["email_column"]}
    for key in ("role_column", "status_column"):
        if guessed[key] in claimed:
            guessed[key] = None
    return SchemaMapping.from_values(guessed)


@lru_cache(maxsize=1)
def get_engine_registry() -> TenantEngineRegistry:
    """Return the process-wide tenant engine registry."""
    return TenantEngineRegistry()
