"""Configuration helpers for admin session authentication."""

from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()


def _bool_env(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


SESSION_SECRET = os.getenv("ADMIN_SESSION_SECRET", "dev-session-secret")
SESSION_COOKIE_NAME = os.getenv("ADMIN_SESSION_COOKIE_NAME", "admin_session")
SESSION_COOKIE_PATH = os.getenv("ADMIN_SESSION_COOKIE_PATH", "/")
SESSION_COOKIE_SECURE = _bool_env("ADMIN_SESSION_COOKIE_SECURE", default=False)
SESSION_COOKIE_HTTPONLY = _bool_env("ADMIN_SESSION_COOKIE_HTTPONLY", default=True)
SESSION_COOKIE_SAMESITE = os.getenv("ADMIN_SESSION_COOKIE_SAMESITE", "Lax").capitalize()

SESSION_TTL_HOURS = int(os.getenv("ADMIN_SESSION_TTL_HOURS", "24"))
