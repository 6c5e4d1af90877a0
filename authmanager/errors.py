"""Exception types surfaced to API callers as ``{"error": ...}`` responses."""

from __future__ import annotations

from fastapi import status


class AuthManagerError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class RequestValidationFailed(AuthManagerError):
    """Missing or malformed input, or a token that cannot be redeemed."""

    status_code = status.HTTP_400_BAD_REQUEST


class AuthenticationFailed(AuthManagerError):
    """Missing or invalid bearer token or admin session."""

    status_code = status.HTTP_401_UNAUTHORIZED


class OwnershipMismatch(AuthManagerError):
    """A token issued for one tenant was presented by another."""

    status_code = status.HTTP_403_FORBIDDEN


class RecordNotFound(AuthManagerError):
    status_code = status.HTTP_404_NOT_FOUND


class MailDeliveryError(AuthManagerError):
    """The mail provider rejected or failed to accept a message."""


class ExternalDatabaseError(AuthManagerError):
    """A query against a tenant's own database failed."""
