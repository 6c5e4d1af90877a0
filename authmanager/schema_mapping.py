"""Per-tenant user table schema mapping."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .db_models import AuthSchemaMapping

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_identifier(name: str) -> str:
    """Return ``name`` unchanged if it is a plain SQL identifier."""
    if not name or not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid column name: {name}")
    return name


@dataclass(frozen=True)
class SchemaMapping:
    """Names of the columns in a tenant's user table.

    ``id_column`` and ``email_column`` are always present; the remaining
    columns are optional and features depending on them are skipped when
    they are not mapped.
    """

    id_column: str = "id"
    email_column: str = "email"
    name_column: Optional[str] = None
    username_column: Optional[str] = None
    role_column: Optional[str] = None
    email_verified_column: Optional[str] = None
    password_column: Optional[str] = None
    status_column: Optional[str] = None
    avatar_column: Optional[str] = None
    created_at_column: Optional[str] = None
    last_login_column: Optional[str] = None
    session_table: Optional[str] = None
    session_user_id_column: Optional[str] = None

    def __post_init__(self) -> None:
        for field in fields(self):
            value = getattr(self, field.name)
            if value is not None:
                validate_identifier(value)

    @classmethod
    def from_record(cls, record: AuthSchemaMapping) -> "SchemaMapping":
        return cls(**{field.name: getattr(record, field.name) for field in fields(cls)})

    @classmethod
    def from_values(cls, values: Dict[str, Any]) -> "SchemaMapping":
        """Build a mapping from loosely typed input, blank strings meaning unmapped."""
        cleaned: Dict[str, Optional[str]] = {}
        for field in fields(cls):
            raw = values.get(field.name)
            text = (raw or "").strip() if isinstance(raw, str) else raw
            cleaned[field.name] = text or None
        cleaned["id_column"] = cleaned["id_column"] or "id"
        cleaned["email_column"] = cleaned["email_column"] or "email"
        return cls(**cleaned)

    def as_dict(self) -> Dict[str, Optional[str]]:
        return asdict(self)

    def projection(self) -> Dict[str, str]:
        """Map canonical user field names to mapped column names."""
        columns = {"id": self.id_column, "email": self.email_column}
        for key, column in (
            ("name", self.name_column),
            ("username", self.username_column),
            ("role", self.role_column),
        ):
            if column:
                columns[key] = column
        return columns

    def profile_projection(self) -> Dict[str, str]:
        """Canonical names for every mapped profile column, used by the user admin views."""
        columns = self.projection()
        for key, column in (
            ("avatar", self.avatar_column),
            ("status", self.status_column),
            ("email_verified", self.email_verified_column),
            ("created_at", self.created_at_column),
            ("last_login", self.last_login_column),
        ):
            if column:
                columns[key] = column
        return columns

    @property
    def tracks_sessions(self) -> bool:
        return bool(self.session_table and self.session_user_id_column)


def get_mapping_record(session: Session, database_id: str) -> Optional[AuthSchemaMapping]:
    return session.execute(
        select(AuthSchemaMapping).where(AuthSchemaMapping.database_id == database_id)
    ).scalar_one_or_none()


def resolve_schema_mapping(session: Session, database_id: str) -> Optional[SchemaMapping]:
    """Return the stored mapping for ``database_id`` or ``None`` when unset."""
    record = get_mapping_record(session, database_id)
    if record is None:
        return None
    return SchemaMapping.from_record(record)


def save_schema_mapping(session: Session, database_id: str, mapping: SchemaMapping) -> AuthSchemaMapping:
    """Insert or update the mapping for ``database_id``."""
    record = get_mapping_record(session, database_id)
    if record is None:
        record = AuthSchemaMapping(database_id=database_id)
    for key, value in mapping.as_dict().items():
        setattr(record, key, value)
    session.add(record)
    session.flush()
    return record
