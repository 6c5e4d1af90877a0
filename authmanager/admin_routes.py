"""Admin API for tenant onboarding, tenant users, bans, email settings and the security trail."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from .auth import require_admin
from .gate import request_actor
from .mailer import AuthMailer, EmailSettings, EmailSettingsStore, get_auth_mailer, get_email_settings_store
from .models import (
    AuditLogOut,
    AuthStatsOut,
    BanRequest,
    BanResponse,
    ConnectDatabaseRequest,
    CreateUserRequest,
    CreateUserResponse,
    DatabaseOut,
    DatabaseOverviewOut,
    EmailSettingsOut,
    EmailSettingsUpdate,
    ExternalUserOut,
    ForceLogoutResponse,
    IntrospectionOut,
    IssueTokenResponse,
    KeygenLockOut,
    SchemaMappingPayload,
    SendTestEmailRequest,
    SetPasswordRequest,
    SuccessResponse,
    UnbanResponse,
    UserEmailRequest,
    UserPageOut,
    VaultEventOut,
)
from .routes import resolve_ban_service, resolve_vault_service
from .services import BanService
from .tenants import TenantService, get_tenant_service
from .users import NewUser, UserAdminService, get_user_admin_service
from .vault import VaultService

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


def resolve_tenant_service() -> TenantService:
    return get_tenant_service()


def resolve_email_settings_store() -> EmailSettingsStore:
    return get_email_settings_store()


def resolve_mailer() -> AuthMailer:
    return get_auth_mailer()


def resolve_user_admin_service() -> UserAdminService:
    return get_user_admin_service()


def _settings_out(settings: EmailSettings) -> EmailSettingsOut:
    hint = f"...{settings.api_key[-4:]}" if settings.api_key else None
    return EmailSettingsOut(
        configured=settings.configured,
        from_email=settings.from_email,
        app_url=settings.app_url,
        source=settings.source,
        api_key_hint=hint,
    )


@router.get("/databases", response_model=List[DatabaseOut])
def list_databases(tenants: TenantService = Depends(resolve_tenant_service)) -> List[DatabaseOut]:
    return [DatabaseOut.model_validate(summary) for summary in tenants.list_databases()]


@router.post("/databases", response_model=DatabaseOut, status_code=status.HTTP_201_CREATED)
def connect_database(
    payload: ConnectDatabaseRequest,
    request: Request,
    tenants: TenantService = Depends(resolve_tenant_service),
) -> DatabaseOut:
    summary = tenants.connect_database(
        name=payload.name,
        app_name=payload.app_name,
        connection_url=payload.connection_url,
        service_role=payload.service_role,
        user_table=payload.user_table,
        actor=request_actor(request),
    )
    return DatabaseOut.model_validate(summary)


@router.delete("/databases/{database_id}", response_model=SuccessResponse)
def deactivate_database(
    database_id: str,
    request: Request,
    tenants: TenantService = Depends(resolve_tenant_service),
) -> SuccessResponse:
    tenants.deactivate_database(database_id, actor=request_actor(request))
    return SuccessResponse()


@router.get("/databases/{database_id}/schema", response_model=SchemaMappingPayload)
def get_schema(database_id: str, tenants: TenantService = Depends(resolve_tenant_service)) -> SchemaMappingPayload:
    mapping = tenants.get_schema_mapping(database_id)
    return SchemaMappingPayload(**mapping.as_dict())


@router.put("/databases/{database_id}/schema", response_model=SchemaMappingPayload)
def update_schema(
    database_id: str,
    payload: SchemaMappingPayload,
    request: Request,
    tenants: TenantService = Depends(resolve_tenant_service),
) -> SchemaMappingPayload:
    mapping = tenants.update_schema_mapping(database_id, payload.model_dump(), actor=request_actor(request))
    return SchemaMappingPayload(**mapping.as_dict())


@router.post(
    "/databases/{database_id}/bans",
    response_model=BanResponse,
    response_model_exclude_none=True,
    status_code=status.HTTP_201_CREATED,
)
def ban_user(
    database_id: str,
    payload: BanRequest,
    request: Request,
    bans: BanService = Depends(resolve_ban_service),
) -> BanResponse:
    result = bans.ban_user(
        database_id,
        payload.user_id,
        email=payload.email,
        reason=payload.reason,
        ban_type=payload.type,
        duration_hours=payload.duration_hours,
        actor=request_actor(request),
    )
    return BanResponse(
        banned=result.banned,
        reason=result.reason,
        type=result.type,
        expires_at=result.expires_at,
        banned_at=result.banned_at,
    )


@router.delete("/databases/{database_id}/bans/{user_id}", response_model=UnbanResponse)
def unban_user(
    database_id: str,
    user_id: str,
    request: Request,
    bans: BanService = Depends(resolve_ban_service),
) -> UnbanResponse:
    lifted = bans.unban_user(database_id, user_id, actor=request_actor(request))
    return UnbanResponse(lifted=lifted)


@router.get("/databases/{database_id}/introspect", response_model=IntrospectionOut)
def introspect_database(database_id: str, tenants: TenantService = Depends(resolve_tenant_service)) -> IntrospectionOut:
    result = tenants.introspect(database_id)
    return IntrospectionOut(
        tables=result.tables,
        columns=result.columns,
        detected=SchemaMappingPayload(**result.detected.as_dict()),
    )


@router.get("/databases/{database_id}/overview", response_model=DatabaseOverviewOut)
def database_overview(
    database_id: str, tenants: TenantService = Depends(resolve_tenant_service)
) -> DatabaseOverviewOut:
    return DatabaseOverviewOut.model_validate(tenants.overview(database_id))


@router.get("/stats", response_model=AuthStatsOut)
def auth_stats(
    database_id: Optional[str] = Query(default=None, alias="databaseId"),
    tenants: TenantService = Depends(resolve_tenant_service),
) -> AuthStatsOut:
    return AuthStatsOut.model_validate(tenants.stats(database_id))


# ---------------------------------------------------------------------------
# Tenant users
# ---------------------------------------------------------------------------


@router.get("/databases/{database_id}/users", response_model=UserPageOut)
def list_users(
    database_id: str,
    search: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=25, ge=1, le=200),
    sort_by: Optional[str] = Query(default=None, alias="sortBy"),
    sort_dir: str = Query(default="DESC", alias="sortDir"),
    users: UserAdminService = Depends(resolve_user_admin_service),
) -> UserPageOut:
    result = users.list_users(database_id, search=search, page=page, limit=limit, sort_by=sort_by, sort_dir=sort_dir)
    return UserPageOut(
        users=[ExternalUserOut.model_validate(user) for user in result.users],
        total=result.total,
        page=result.page,
        limit=result.limit,
    )


@router.post("/databases/{database_id}/users", response_model=CreateUserResponse, status_code=status.HTTP_201_CREATED)
def create_user(
    database_id: str,
    payload: CreateUserRequest,
    request: Request,
    users: UserAdminService = Depends(resolve_user_admin_service),
) -> CreateUserResponse:
    user_id = users.create_user(
        database_id,
        NewUser(
            email=payload.email,
            id=payload.id,
            name=payload.name,
            username=payload.username,
            password=payload.password,
            role=payload.role,
            email_verified=payload.email_verified,
        ),
        actor=request_actor(request),
    )
    return CreateUserResponse(user_id=user_id)


@router.get("/databases/{database_id}/users/{user_id}", response_model=ExternalUserOut)
def get_user(
    database_id: str, user_id: str, users: UserAdminService = Depends(resolve_user_admin_service)
) -> ExternalUserOut:
    return ExternalUserOut.model_validate(users.get_user(database_id, user_id))


@router.delete("/databases/{database_id}/users/{user_id}", response_model=SuccessResponse)
def delete_user(
    database_id: str,
    user_id: str,
    request: Request,
    users: UserAdminService = Depends(resolve_user_admin_service),
) -> SuccessResponse:
    users.delete_user(database_id, user_id, actor=request_actor(request))
    return SuccessResponse()


@router.post("/databases/{database_id}/users/{user_id}/password", response_model=SuccessResponse)
def set_user_password(
    database_id: str,
    user_id: str,
    payload: SetPasswordRequest,
    request: Request,
    users: UserAdminService = Depends(resolve_user_admin_service),
) -> SuccessResponse:
    users.set_password(database_id, user_id, payload.new_password, actor=request_actor(request))
    return SuccessResponse()


@router.post("/databases/{database_id}/users/{user_id}/verify-email", response_model=SuccessResponse)
def mark_email_verified(
    database_id: str,
    user_id: str,
    request: Request,
    users: UserAdminService = Depends(resolve_user_admin_service),
) -> SuccessResponse:
    users.verify_email(database_id, user_id, actor=request_actor(request))
    return SuccessResponse()


@router.post("/databases/{database_id}/users/{user_id}/send-verification", response_model=IssueTokenResponse)
def send_user_verification(
    database_id: str,
    user_id: str,
    request: Request,
    payload: Optional[UserEmailRequest] = None,
    users: UserAdminService = Depends(resolve_user_admin_service),
) -> IssueTokenResponse:
    email = payload.email if payload else None
    issued = users.send_verification(database_id, user_id, email, actor=request_actor(request))
    return IssueTokenResponse(expires_at=issued.expires_at)


@router.post("/databases/{database_id}/users/{user_id}/send-magic-link", response_model=IssueTokenResponse)
def send_user_magic_link(
    database_id: str,
    user_id: str,
    request: Request,
    payload: Optional[UserEmailRequest] = None,
    users: UserAdminService = Depends(resolve_user_admin_service),
) -> IssueTokenResponse:
    email = payload.email if payload else None
    issued = users.send_magic_link(database_id, user_id, email, actor=request_actor(request))
    return IssueTokenResponse(expires_at=issued.expires_at)


@router.post("/databases/{database_id}/users/{user_id}/send-password-reset", response_model=IssueTokenResponse)
def send_user_password_reset(
    database_id: str,
    user_id: str,
    request: Request,
    payload: Optional[UserEmailRequest] = None,
    users: UserAdminService = Depends(resolve_user_admin_service),
) -> IssueTokenResponse:
    email = payload.email if payload else None
    issued = users.send_password_reset(database_id, user_id, email, actor=request_actor(request))
    return IssueTokenResponse(expires_at=issued.expires_at)


@router.get("/databases/{database_id}/users/{user_id}/sessions")
def list_user_sessions(
    database_id: str, user_id: str, users: UserAdminService = Depends(resolve_user_admin_service)
) -> List[dict]:
    return users.list_sessions(database_id, user_id)


@router.delete("/databases/{database_id}/users/{user_id}/sessions", response_model=ForceLogoutResponse)
def force_logout(
    database_id: str,
    user_id: str,
    request: Request,
    users: UserAdminService = Depends(resolve_user_admin_service),
) -> ForceLogoutResponse:
    destroyed = users.force_logout(database_id, user_id, actor=request_actor(request))
    return ForceLogoutResponse(sessions_destroyed=destroyed)


@router.get("/settings/email", response_model=EmailSettingsOut)
def get_email_settings(store: EmailSettingsStore = Depends(resolve_email_settings_store)) -> EmailSettingsOut:
    return _settings_out(store.load())


@router.put("/settings/email", response_model=EmailSettingsOut)
def update_email_settings(
    payload: EmailSettingsUpdate,
    request: Request,
    store: EmailSettingsStore = Depends(resolve_email_settings_store),
) -> EmailSettingsOut:
    try:
        settings = store.save(
            api_key=payload.resend_api_key or "",
            from_email=payload.from_email,
            app_url=payload.app_url,
            actor=request_actor(request),
        )
    except ValueError as error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error)) from error
    return _settings_out(settings)


@router.post("/settings/email/test", response_model=SuccessResponse)
def send_test_email(
    payload: SendTestEmailRequest,
    request: Request,
    mailer: AuthMailer = Depends(resolve_mailer),
) -> SuccessResponse:
    mailer.send_test_email(payload.test_email, actor=request_actor(request))
    return SuccessResponse()


@router.get("/vault/locks", response_model=List[KeygenLockOut])
def list_locks(vault: VaultService = Depends(resolve_vault_service)) -> List[KeygenLockOut]:
    return [KeygenLockOut.model_validate(lock) for lock in vault.list_locks()]


@router.get("/vault/events", response_model=List[VaultEventOut])
def list_events(
    limit: int = Query(default=100, ge=1, le=1000),
    vault: VaultService = Depends(resolve_vault_service),
) -> List[VaultEventOut]:
    return [VaultEventOut.model_validate(event) for event in vault.list_events(limit)]


@router.get("/audit-logs", response_model=List[AuditLogOut])
def list_audit_logs(
    limit: int = Query(default=100, ge=1, le=1000),
    vault: VaultService = Depends(resolve_vault_service),
) -> List[AuditLogOut]:
    return [AuditLogOut.model_validate(entry) for entry in vault.list_audit_logs(limit)]
