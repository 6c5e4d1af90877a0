"""Cookie helpers for admin sessions."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import Response

from . import config
from .service import AdminSessionTokens


def _max_age(target: datetime) -> int:
    now = datetime.now(timezone.utc)
    delta = int((target - now).total_seconds())
    return max(delta, 60)


def attach_session_cookie(response: Response, tokens: AdminSessionTokens) -> None:
    response.set_cookie(
        key=config.SESSION_COOKIE_NAME,
        value=tokens.token,
        path=config.SESSION_COOKIE_PATH,
        httponly=config.SESSION_COOKIE_HTTPONLY,
        secure=config.SESSION_COOKIE_SECURE,
        samesite=config.SESSION_COOKIE_SAMESITE,
        max_age=_max_age(tokens.expires_at),
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(key=config.SESSION_COOKIE_NAME, path=config.SESSION_COOKIE_PATH)
