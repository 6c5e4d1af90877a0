"""FastAPI dependencies for admin-gated routes."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from . import config
from .service import AdminAuthService, AuthenticatedAdmin, get_admin_auth_service


def require_admin(
    request: Request,
    auth_service: AdminAuthService = Depends(get_admin_auth_service),
) -> AuthenticatedAdmin:
    principal = auth_service.validate_token(request.cookies.get(config.SESSION_COOKIE_NAME))
    if principal is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return principal
