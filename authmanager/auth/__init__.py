"""Admin authentication package for the Auth Manager API."""

from .deps import require_admin
from .routes import router as admin_auth_router
from .service import AdminAuthService, AuthenticatedAdmin, get_admin_auth_service

__all__ = [
    "AdminAuthService",
    "AuthenticatedAdmin",
    "admin_auth_router",
    "get_admin_auth_service",
    "require_admin",
]
