"""Bearer-token gate for the tenant API and request helpers shared by routers."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from fastapi import Header, Request, Response
from sqlalchemy import select

from .config import KEYGEN_CORS_HEADERS, PUBLIC_CORS_HEADERS
from .db import session_scope
from .db_models import ConnectedDatabase
from .errors import AuthenticationFailed

LOGGER = logging.getLogger(__name__)

MISSING_HEADER_MESSAGE = "Missing or invalid Authorization header. Use: Bearer <token>"
INVALID_TOKEN_MESSAGE = "Invalid API token. Token must match a connected database auth token."


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer "):].strip()
    return token or None


def authenticate_bearer(authorization: Optional[str]) -> str:
    """Resolve the tenant id whose service-role credential equals the bearer token.

    Exactly one active connected database must match; anything else is an
    authentication failure.
    """
    token = _extract_bearer(authorization)
    if token is None:
        raise AuthenticationFailed(MISSING_HEADER_MESSAGE)

    with session_scope() as db:
        matches = (
            db.execute(
                select(ConnectedDatabase.id).where(
                    ConnectedDatabase.service_role == token,
                    ConnectedDatabase.is_active.is_(True),
                )
            )
            .scalars()
            .all()
        )

    if len(matches) != 1:
        if len(matches) > 1:
            LOGGER.warning("Bearer token matched %d active databases; rejecting", len(matches))
        raise AuthenticationFailed(INVALID_TOKEN_MESSAGE)
    return matches[0]


def require_tenant(authorization: Optional[str] = Header(default=None)) -> str:
    """FastAPI dependency returning the authenticated tenant id."""
    return authenticate_bearer(authorization)


def public_cors(response: Response) -> None:
    response.headers.update(PUBLIC_CORS_HEADERS)


def keygen_cors(response: Response) -> None:
    response.headers.update(KEYGEN_CORS_HEADERS)


def cors_headers_for_path(path: str) -> Dict[str, str]:
    """CORS headers that error responses on ``path`` should carry."""
    if path.startswith("/api/auth/"):
        return dict(PUBLIC_CORS_HEADERS)
    if path in ("/api/vault/check-ip", "/api/vault/log-event"):
        return dict(KEYGEN_CORS_HEADERS)
    return {}


def client_ip(request: Request, fallback: Optional[str] = None) -> str:
    """Caller IP from proxy headers, then ``fallback``, then ``"unknown"``."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",", 1)[0].strip()
        if first:
            return first
    real_ip = (request.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    if fallback:
        return fallback
    return "unknown"


def request_actor(request: Request) -> Dict[str, Optional[str]]:
    """Caller IP and user agent recorded alongside audit entries."""
    return {"ip_address": client_ip(request), "user_agent": request.headers.get("user-agent")}
