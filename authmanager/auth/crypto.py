"""Cryptographic helpers shared by admin sessions and tenant tokens."""

from __future__ import annotations

import hashlib
import hmac
import secrets

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerifyMismatchError

from .config import SESSION_SECRET

_PASSWORD_HASHER = PasswordHasher()


def hash_password(password: str) -> str:
    """Hash a plain text password using Argon2."""

    return _PASSWORD_HASHER.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password hash."""

    try:
        return _PASSWORD_HASHER.verify(password_hash, password)
    except (VerifyMismatchError, InvalidHashError):
        return False


def generate_token(length: int = 32) -> str:
    """Generate a URL-safe random token."""

    return secrets.token_urlsafe(length)


def generate_hex_token(nbytes: int = 32) -> str:
    """Generate a hex encoded random token (``2 * nbytes`` characters)."""

    return secrets.token_hex(nbytes)


def hash_token(value: str, *, secret: str = SESSION_SECRET) -> str:
    """Create a deterministic HMAC hash of a token."""

    return hmac.new(secret.encode("utf-8"), msg=value.encode("utf-8"), digestmod=hashlib.sha256).hexdigest()
