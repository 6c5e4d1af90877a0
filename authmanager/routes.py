"""Public HTTP routes: the bearer-gated tenant auth API and the keygen vault."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status

from .auth import AuthenticatedAdmin, require_admin
from .config import KEYGEN_CORS_HEADERS, PUBLIC_CORS_HEADERS
from .gate import client_ip, keygen_cors, public_cors, require_tenant
from .models import (
    BanCheckResponse,
    CheckIpRequest,
    IpStatusResponse,
    IssueTokenResponse,
    LogEventRequest,
    LogEventResponse,
    MagicLinkUser,
    SendMagicLinkRequest,
    SendPasswordResetRequest,
    SendVerificationRequest,
    UnlockIpRequest,
    UnlockIpResponse,
    VerifyEmailResponse,
    VerifyMagicLinkResponse,
    VerifyResetRequest,
    VerifyResetResponse,
    VerifyTokenRequest,
)
from .services import BanService, TokenService, get_ban_service, get_token_service
from .vault import VaultService, get_vault_service

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["tenant-auth"], dependencies=[Depends(public_cors)])
vault_router = APIRouter(prefix="/api/vault", tags=["vault"])


def resolve_token_service() -> TokenService:
    """Wrapper to allow overriding the shared token service in tests."""
    return get_token_service()


def resolve_ban_service() -> BanService:
    return get_ban_service()


def resolve_vault_service() -> VaultService:
    return get_vault_service()


@router.options("/check-ban")
@router.options("/send-verification")
@router.options("/send-magic-link")
@router.options("/send-password-reset")
@router.options("/verify-email")
@router.options("/verify-magic-link")
@router.options("/verify-reset")
def tenant_preflight() -> Response:
    return Response(status_code=status.HTTP_204_NO_CONTENT, headers=PUBLIC_CORS_HEADERS)


@router.get("/check-ban", response_model=BanCheckResponse, response_model_exclude_none=True)
def check_ban(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    tenant_id: str = Depends(require_tenant),
    bans: BanService = Depends(resolve_ban_service),
) -> BanCheckResponse:
    result = bans.check_ban(tenant_id, user_id)
    return BanCheckResponse(
        banned=result.banned,
        reason=result.reason,
        type=result.type,
        expires_at=result.expires_at,
        banned_at=result.banned_at,
    )


@router.post("/send-verification", response_model=IssueTokenResponse)
def send_verification(
    payload: Optional[SendVerificationRequest] = None,
    tenant_id: str = Depends(require_tenant),
    tokens: TokenService = Depends(resolve_token_service),
) -> IssueTokenResponse:
    payload = payload or SendVerificationRequest()
    issued = tokens.issue_verification_token(tenant_id, payload.user_id, payload.email, payload.verify_url)
    return IssueTokenResponse(expires_at=issued.expires_at)


@router.post("/send-magic-link", response_model=IssueTokenResponse)
def send_magic_link(
    payload: Optional[SendMagicLinkRequest] = None,
    tenant_id: str = Depends(require_tenant),
    tokens: TokenService = Depends(resolve_token_service),
) -> IssueTokenResponse:
    payload = payload or SendMagicLinkRequest()
    issued = tokens.issue_magic_link_token(tenant_id, payload.user_id, payload.email, payload.login_url)
    return IssueTokenResponse(expires_at=issued.expires_at)


@router.post("/send-password-reset", response_model=IssueTokenResponse)
def send_password_reset(
    payload: Optional[SendPasswordResetRequest] = None,
    tenant_id: str = Depends(require_tenant),
    tokens: TokenService = Depends(resolve_token_service),
) -> IssueTokenResponse:
    payload = payload or SendPasswordResetRequest()
    issued = tokens.issue_password_reset_token(tenant_id, payload.user_id, payload.email, payload.reset_url)
    return IssueTokenResponse(expires_at=issued.expires_at)


@router.post("/verify-email", response_model=VerifyEmailResponse)
def verify_email(
    payload: Optional[VerifyTokenRequest] = None,
    tenant_id: str = Depends(require_tenant),
    tokens: TokenService = Depends(resolve_token_service),
) -> VerifyEmailResponse:
    token = payload.token if payload else None
    verified = tokens.verify_email_token(tenant_id, token)
    return VerifyEmailResponse(user_id=verified.user_id, email=verified.email)


@router.post("/verify-magic-link", response_model=VerifyMagicLinkResponse, response_model_exclude_none=True)
def verify_magic_link(
    payload: Optional[VerifyTokenRequest] = None,
    tenant_id: str = Depends(require_tenant),
    tokens: TokenService = Depends(resolve_token_service),
) -> VerifyMagicLinkResponse:
    token = payload.token if payload else None
    user = tokens.verify_magic_link_token(tenant_id, token)
    return VerifyMagicLinkResponse(user=MagicLinkUser.model_validate(user))


@router.post("/verify-reset", response_model=VerifyResetResponse)
def verify_reset(
    payload: Optional[VerifyResetRequest] = None,
    tenant_id: str = Depends(require_tenant),
    tokens: TokenService = Depends(resolve_token_service),
) -> VerifyResetResponse:
    payload = payload or VerifyResetRequest()
    user_id = tokens.reset_password(tenant_id, payload.token, payload.new_password)
    return VerifyResetResponse(user_id=user_id)


@vault_router.options("/check-ip")
@vault_router.options("/log-event")
def vault_preflight() -> Response:
    return Response(status_code=status.HTTP_204_NO_CONTENT, headers=KEYGEN_CORS_HEADERS)


@vault_router.post(
    "/check-ip",
    response_model=IpStatusResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(keygen_cors)],
)
def check_ip(
    request: Request,
    payload: Optional[CheckIpRequest] = None,
    vault: VaultService = Depends(resolve_vault_service),
) -> IpStatusResponse:
    ip_address = client_ip(request, payload.ip_address if payload else None)
    result = vault.check_ip(ip_address)
    return IpStatusResponse(
        locked=result.locked,
        whitelisted=result.whitelisted,
        reason=result.reason,
        locked_at=result.locked_at,
        attempts=result.attempts,
        unlocked_at=result.unlocked_at,
        unlocked_by=result.unlocked_by,
    )


@vault_router.post("/log-event", response_model=LogEventResponse, dependencies=[Depends(keygen_cors)])
def log_event(
    request: Request,
    payload: Optional[LogEventRequest] = None,
    vault: VaultService = Depends(resolve_vault_service),
) -> LogEventResponse:
    payload = payload or LogEventRequest()
    ip_address = client_ip(request, payload.ip_address)
    user_agent = request.headers.get("user-agent") or payload.user_agent
    logged = vault.log_event(
        payload.event_type,
        ip_address,
        user_agent=user_agent,
        location=payload.location,
        details=payload.details,
    )
    return LogEventResponse(logged=logged, ip=ip_address)


@vault_router.post("/unlock-ip", response_model=UnlockIpResponse)
def unlock_ip(
    request: Request,
    payload: Optional[UnlockIpRequest] = None,
    principal: AuthenticatedAdmin = Depends(require_admin),
    vault: VaultService = Depends(resolve_vault_service),
) -> UnlockIpResponse:
    ip_address = payload.ip_address if payload else None
    unlocked_at = vault.unlock_ip(
        ip_address,
        unlocked_by=principal.user.email,
        user_agent=request.headers.get("user-agent"),
    )
    return UnlockIpResponse(message=f"IP {ip_address} has been unlocked", unlocked_at=unlocked_at)
