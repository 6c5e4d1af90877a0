"""FastAPI routes for admin login, bootstrap and session inspection."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from ..gate import client_ip
from . import config
from .cookies import attach_session_cookie, clear_session_cookie
from .deps import require_admin
from .schemas import (
    AdminSessionEnvelope,
    AdminUserOut,
    AuthStatusResponse,
    BootstrapRequest,
    LoginRequest,
    LogoutResponse,
)
from .service import AdminAuthService, AdminIdentity, AuthenticatedAdmin, get_admin_auth_service

router = APIRouter(prefix="/api/admin/auth", tags=["admin-auth"])


def _envelope(user: AdminIdentity, expires_at) -> AdminSessionEnvelope:
    return AdminSessionEnvelope(
        user=AdminUserOut(id=user.id, email=user.email, name=user.name),
        expires_at=expires_at,
    )


@router.get("/status", response_model=AuthStatusResponse)
def auth_status(auth_service: AdminAuthService = Depends(get_admin_auth_service)) -> AuthStatusResponse:
    return AuthStatusResponse(has_users=auth_service.has_any_users())


@router.post("/bootstrap", response_model=AdminSessionEnvelope, status_code=status.HTTP_201_CREATED)
def bootstrap(
    payload: BootstrapRequest,
    request: Request,
    response: Response,
    auth_service: AdminAuthService = Depends(get_admin_auth_service),
) -> AdminSessionEnvelope:
    try:
        user = auth_service.create_initial_user(email=payload.email, password=payload.password, name=payload.name)
    except ValueError as error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error)) from error
    tokens = auth_service.establish_session(user_id=user.id, ip_address=client_ip(request))
    attach_session_cookie(response, tokens)
    response.headers["Cache-Control"] = "no-store"
    return _envelope(user, tokens.expires_at)


@router.post("/login", response_model=AdminSessionEnvelope)
def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    auth_service: AdminAuthService = Depends(get_admin_auth_service),
) -> AdminSessionEnvelope:
    user = auth_service.authenticate(email=payload.email, password=payload.password)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    tokens = auth_service.establish_session(user_id=user.id, ip_address=client_ip(request))
    attach_session_cookie(response, tokens)
    response.headers["Cache-Control"] = "no-store"
    return _envelope(user, tokens.expires_at)


@router.post("/logout", response_model=LogoutResponse)
def logout(
    request: Request,
    response: Response,
    auth_service: AdminAuthService = Depends(get_admin_auth_service),
) -> LogoutResponse:
    auth_service.logout(request.cookies.get(config.SESSION_COOKIE_NAME))
    clear_session_cookie(response)
    return LogoutResponse()


@router.get("/session", response_model=AdminSessionEnvelope)
def session_info(principal: AuthenticatedAdmin = Depends(require_admin)) -> AdminSessionEnvelope:
    return _envelope(principal.user, principal.expires_at)
