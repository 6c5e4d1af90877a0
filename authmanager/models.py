"""Pydantic models for the Auth Manager HTTP API.

Every model serialises with camelCase keys. Request fields are optional at
the schema level so that missing values surface as the service's own error
messages rather than generic validation failures.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase field names."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )


class SuccessResponse(CamelModel):
    success: bool = True


# ---------------------------------------------------------------------------
# Tenant API
# ---------------------------------------------------------------------------


class SendVerificationRequest(CamelModel):
    user_id: Optional[str] = Field(default=None, description="User id in the tenant's user table")
    email: Optional[str] = Field(default=None, description="Recipient address")
    verify_url: Optional[str] = Field(default=None, description="Page that receives ?token=")


class SendMagicLinkRequest(CamelModel):
    user_id: Optional[str] = None
    email: Optional[str] = None
    login_url: Optional[str] = None


class SendPasswordResetRequest(CamelModel):
    user_id: Optional[str] = None
    email: Optional[str] = None
    reset_url: Optional[str] = None


class IssueTokenResponse(CamelModel):
    success: bool = True
    expires_at: datetime = Field(..., description="When the mailed token stops being redeemable")


class VerifyTokenRequest(CamelModel):
    token: Optional[str] = None


class VerifyResetRequest(CamelModel):
    token: Optional[str] = None
    new_password: Optional[str] = None


class VerifyEmailResponse(CamelModel):
    success: bool = True
    user_id: str
    email: str


class MagicLinkUser(CamelModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    username: Optional[str] = None
    role: Optional[str] = None


class VerifyMagicLinkResponse(CamelModel):
    success: bool = True
    user: MagicLinkUser


class VerifyResetResponse(CamelModel):
    success: bool = True
    user_id: str


class BanCheckResponse(CamelModel):
    banned: bool
    reason: Optional[str] = None
    type: Optional[str] = None
    expires_at: Optional[datetime] = None
    banned_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------


class CheckIpRequest(CamelModel):
    ip_address: Optional[str] = None


class IpStatusResponse(CamelModel):
    locked: bool
    whitelisted: bool
    reason: Optional[str] = None
    locked_at: Optional[datetime] = None
    attempts: Optional[int] = None
    unlocked_at: Optional[datetime] = None
    unlocked_by: Optional[str] = None


class LogEventRequest(CamelModel):
    event_type: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class LogEventResponse(CamelModel):
    success: bool = True
    logged: str
    ip: str


class UnlockIpRequest(CamelModel):
    ip_address: Optional[str] = None


class UnlockIpResponse(CamelModel):
    success: bool = True
    message: str
    unlocked_at: datetime


class KeygenLockOut(CamelModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ip_address: str
    reason: str
    attempts: int
    is_locked: bool
    locked_at: Optional[datetime] = None
    unlocked_at: Optional[datetime] = None
    unlocked_by: Optional[str] = None
    restore_url: Optional[str] = None


class VaultEventOut(CamelModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_type: str
    ip_address: str
    user_agent: Optional[str] = None
    location: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    severity: str
    created_at: Optional[datetime] = None


class AuditLogOut(CamelModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    action: str
    ip_address: str
    user_agent: Optional[str] = None
    details: Optional[str] = None
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Admin API
# ---------------------------------------------------------------------------


class ConnectDatabaseRequest(CamelModel):
    name: Optional[str] = None
    app_name: Optional[str] = None
    connection_url: Optional[str] = None
    service_role: Optional[str] = Field(
        default=None, description="Credential for the tenant database; also the tenant's bearer token"
    )
    user_table: Optional[str] = None


class DatabaseOut(CamelModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    app_name: str
    user_table: str
    is_active: bool
    has_service_role: bool
    created_at: Optional[datetime] = None


class SchemaMappingPayload(CamelModel):
    model_config = ConfigDict(from_attributes=True)

    id_column: Optional[str] = None
    email_column: Optional[str] = None
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


class BanRequest(CamelModel):
    user_id: Optional[str] = None
    email: Optional[str] = None
    reason: Optional[str] = None
    type: str = Field(default="permanent", description="permanent or temporary")
    duration_hours: Optional[int] = Field(default=None, ge=1, description="Length of a temporary ban")


class BanResponse(CamelModel):
    banned: bool
    reason: Optional[str] = None
    type: Optional[str] = None
    expires_at: Optional[datetime] = None
    banned_at: Optional[datetime] = None


class UnbanResponse(CamelModel):
    success: bool = True
    lifted: int


class EmailSettingsOut(CamelModel):
    configured: bool
    from_email: str
    app_url: str
    source: str
    api_key_hint: Optional[str] = Field(default=None, description="Last characters of the stored key")


class EmailSettingsUpdate(CamelModel):
    resend_api_key: Optional[str] = None
    from_email: Optional[str] = None
    app_url: Optional[str] = None


class SendTestEmailRequest(CamelModel):
    test_email: Optional[str] = None


class AuthStatsOut(CamelModel):
    model_config = ConfigDict(from_attributes=True)

    active_bans: int
    pending_tokens: int
    databases: int


class ColumnOut(CamelModel):
    name: str
    type: str


class IntrospectionOut(CamelModel):
    tables: List[str]
    columns: List[ColumnOut]
    detected: SchemaMappingPayload


class TableOut(CamelModel):
    name: str
    row_count: int
    columns: List[ColumnOut]


class DatabaseOverviewOut(CamelModel):
    db_name: str
    app_name: str
    tables: List[TableOut]
    total_rows: int


# ---------------------------------------------------------------------------
# Tenant user administration
# ---------------------------------------------------------------------------


class BanSummaryOut(CamelModel):
    reason: Optional[str] = None
    type: Optional[str] = None
    expires_at: Optional[datetime] = None
    banned_at: Optional[datetime] = None


class ExternalUserOut(CamelModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    username: Optional[str] = None
    avatar: Optional[str] = None
    role: Optional[str] = None
    status: Optional[Any] = None
    email_verified: Optional[Any] = None
    created_at: Optional[Any] = None
    last_login: Optional[Any] = None
    ban_status: Optional[BanSummaryOut] = None


class UserPageOut(CamelModel):
    users: List[ExternalUserOut]
    total: int
    page: int
    limit: int


class CreateUserRequest(CamelModel):
    id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None
    email_verified: bool = False


class CreateUserResponse(CamelModel):
    success: bool = True
    user_id: str


class SetPasswordRequest(CamelModel):
    new_password: Optional[str] = None


class UserEmailRequest(CamelModel):
    email: Optional[str] = Field(default=None, description="Override the address read from the user table")


class ForceLogoutResponse(CamelModel):
    success: bool = True
    sessions_destroyed: int
