"""Configuration helpers for the Auth Manager service."""

from __future__ import annotations

import os
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

# Load environment variables from a .env file if present.
load_dotenv()


def _normalize_base_url(value: Optional[str], fallback: str) -> str:
    """Return ``value`` as a scheme://host base URL, or ``fallback`` when unusable."""
    candidate = (value or "").strip()
    if not candidate:
        return fallback
    if "://" not in candidate:
        candidate = f"https://{candidate}"
    parsed = urlparse(candidate)
    if not parsed.scheme or not parsed.netloc:
        return fallback
    return candidate.rstrip("/")


API_HOST = os.getenv("AUTHMGR_API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("AUTHMGR_API_PORT", "8000"))

# Token lifetimes are fixed per token type.
EMAIL_VERIFICATION_TTL = timedelta(hours=24)
MAGIC_LINK_TTL = timedelta(minutes=15)
PASSWORD_RESET_TTL = timedelta(hours=1)
TOKEN_BYTES = 32
MIN_PASSWORD_LENGTH = 6

DEFAULT_APP_NAME = "Auth Manager"
DEFAULT_USER_TABLE = "users"

# Tenant API CORS policy (any origin may call the bearer-protected API).
PUBLIC_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}

# The keygen site is the only origin allowed to talk to the vault endpoints.
KEYGEN_ALLOWED_ORIGIN = os.getenv("KEYGEN_ALLOWED_ORIGIN", "http://localhost:5173").strip()
KEYGEN_CORS_HEADERS = {
    "Access-Control-Allow-Origin": KEYGEN_ALLOWED_ORIGIN,
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}
KEYGEN_RESTORE_BASE_URL = _normalize_base_url(
    os.getenv("KEYGEN_RESTORE_BASE_URL"), "http://localhost:8000"
)

# Outbound email (Resend). Values stored in the settings table take precedence.
RESEND_API_BASE = os.getenv("RESEND_API_BASE", "https://api.resend.com").rstrip("/")
RESEND_API_KEY = os.getenv("RESEND_API_KEY", "").strip()
RESEND_TIMEOUT_SECONDS = 15.0
DEFAULT_FROM_EMAIL = os.getenv("AUTH_MANAGER_FROM_EMAIL", "onboarding@resend.dev").strip()
DEFAULT_APP_URL = _normalize_base_url(os.getenv("AUTH_MANAGER_APP_URL"), "http://localhost:3000")
EMAIL_SETTINGS_CACHE_SECONDS = int(os.getenv("EMAIL_SETTINGS_CACHE_SECONDS", "60"))
