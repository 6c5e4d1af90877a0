"""Client wrappers used by the service."""

from .external_db import (
    ExternalUser,
    TenantEngineRegistry,
    build_external_engine,
    database_overview,
    delete_user,
    delete_user_sessions,
    describe_table,
    detect_schema,
    get_engine_registry,
    get_user_by_id,
    get_user_profile,
    insert_user,
    list_tables,
    list_user_sessions,
    ping,
    query_users,
    update_user_field,
)
from .resend import ResendClient, ResendClientError

__all__ = [
    "ExternalUser",
    "ResendClient",
    "ResendClientError",
    "TenantEngineRegistry",
    "build_external_engine",
    "database_overview",
    "delete_user",
    "delete_user_sessions",
    "describe_table",
    "detect_schema",
    "get_engine_registry",
    "get_user_by_id",
    "get_user_profile",
    "insert_user",
    "list_tables",
    "list_user_sessions",
    "ping",
    "query_users",
    "update_user_field",
]
