"""Outbound auth emails and their persisted configuration."""

from __future__ import annotations

import html
import logging
import time
from dataclasses import dataclass
from functools import lru_cache
from threading import Lock
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select

from . import config
from .audit import record_audit
from .clients.resend import ResendClient, ResendClientError
from .db import session_scope
from .db_models import Setting
from .errors import MailDeliveryError, RequestValidationFailed

LOGGER = logging.getLogger(__name__)

EMAIL_SETTINGS_KEY = "email_settings"


@dataclass(frozen=True)
class EmailSettings:
    api_key: Optional[str]
    from_email: str
    app_url: str
    source: str = "environment"

    @property
    def configured(self) -> bool:
        return bool(self.api_key)


def _environment_settings() -> EmailSettings:
    return EmailSettings(
        api_key=config.RESEND_API_KEY or None,
        from_email=config.DEFAULT_FROM_EMAIL,
        app_url=config.DEFAULT_APP_URL,
        source="environment",
    )


class EmailSettingsStore:
    """Reads email settings from the settings table with a short-lived cache."""

    def __init__(self, *, ttl_seconds: int = config.EMAIL_SETTINGS_CACHE_SECONDS) -> None:
        self._ttl = ttl_seconds
        self._cached: Optional[EmailSettings] = None
        self._cached_at = 0.0
        self._lock = Lock()

    def clear(self) -> None:
        with self._lock:
            self._cached = None
            self._cached_at = 0.0

    def load(self) -> EmailSettings:
        with self._lock:
            if self._cached is not None and time.monotonic() - self._cached_at < self._ttl:
                return self._cached

        settings = self._load_from_database() or _environment_settings()
        if settings.configured:
            with self._lock:
                self._cached = settings
                self._cached_at = time.monotonic()
        return settings

    def _load_from_database(self) -> Optional[EmailSettings]:
        with session_scope() as db:
            record = db.execute(select(Setting).where(Setting.key == EMAIL_SETTINGS_KEY)).scalar_one_or_none()
            value = dict(record.value or {}) if record is not None else {}
        api_key = (value.get("resend_api_key") or "").strip()
        if not api_key:
            return None
        return EmailSettings(
            api_key=api_key,
            from_email=value.get("from_email") or config.DEFAULT_FROM_EMAIL,
            app_url=(value.get("app_url") or config.DEFAULT_APP_URL).rstrip("/"),
            source="database",
        )

    def save(
        self,
        *,
        api_key: str,
        from_email: Optional[str],
        app_url: Optional[str],
        actor: Optional[Dict[str, Any]] = None,
    ) -> EmailSettings:
        api_key = (api_key or "").strip()
        if not api_key:
            raise ValueError("Resend API key is required")
        value = {
            "resend_api_key": api_key,
            "from_email": (from_email or "").strip() or config.DEFAULT_FROM_EMAIL,
            "app_url": ((app_url or "").strip() or config.DEFAULT_APP_URL).rstrip("/"),
        }
        with session_scope() as db:
            record = db.execute(select(Setting).where(Setting.key == EMAIL_SETTINGS_KEY)).scalar_one_or_none()
            if record is None:
                record = Setting(key=EMAIL_SETTINGS_KEY)
            record.value = value
            db.add(record)
            actor = actor or {}
            record_audit(
                db,
                "auth_email_settings_updated",
                ip_address=actor.get("ip_address"),
                user_agent=actor.get("user_agent"),
                details={"fromEmail": value["from_email"]},
            )
        self.clear()
        LOGGER.info("Email settings updated (from=%s)", value["from_email"])
        return EmailSettings(
            api_key=value["resend_api_key"],
            from_email=value["from_email"],
            app_url=value["app_url"],
            source="database",
        )


@lru_cache(maxsize=1)
def get_email_settings_store() -> EmailSettingsStore:
    """Return the process-wide settings store shared by the mailer and admin API."""
    return EmailSettingsStore()


_TEMPLATE = """\
<div style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; max-width: 600px; margin: 0 auto; padding: 40px 20px; background: #0f172a; color: #e2e8f0;">
  <div style="text-align: center; margin-bottom: 32px;">
    <h1 style="color: #ffffff; font-size: 24px; margin: 0;">{heading}</h1>
    <p style="color: #94a3b8; font-size: 14px; margin-top: 8px;">{app_name}</p>
  </div>
  <div style="background: #1e293b; border-radius: 12px; padding: 32px; border: 1px solid #334155;">
    <p style="color: #e2e8f0; font-size: 16px; margin: 0 0 16px 0;">{intro}</p>
    <div style="text-align: center; margin: 24px 0;">
      <a href="{link}" style="display: inline-block; background: {color}; color: #ffffff; text-decoration: none; padding: 12px 32px; border-radius: 8px; font-weight: 600; font-size: 16px;">{button}</a>
    </div>
    <p style="color: #64748b; font-size: 13px; margin: 16px 0 0 0;">{footnote}</p>
  </div>
</div>
"""


_TEST_TEMPLATE = """\
<div style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; max-width: 600px; margin: 0 auto; padding: 40px 20px; background: #0f172a; color: #e2e8f0;">
  <div style="text-align: center; margin-bottom: 32px;">
    <h1 style="color: #ffffff; font-size: 24px; margin: 0;">Test Email</h1>
    <p style="color: #94a3b8; font-size: 14px; margin-top: 8px;">{app_name}</p>
  </div>
  <div style="background: #1e293b; border-radius: 12px; padding: 32px; border: 1px solid #334155;">
    <p style="color: #22d3ee; font-size: 18px; font-weight: 600; margin: 0 0 12px 0;">It works!</p>
    <p style="color: #e2e8f0; font-size: 16px; margin: 0;">Your Resend integration is configured correctly.</p>
  </div>
</div>
"""


@dataclass(frozen=True)
class _EmailKind:
    subject: str
    heading: str
    intro: str
    button: str
    color: str
    footnote: str
    default_path: str


VERIFICATION_EMAIL = _EmailKind(
    subject="Verify Your Email",
    heading="Verify Your Email",
    intro="Please verify your email address to complete your account setup.",
    button="Verify Email",
    color="#10b981",
    footnote="This link expires in 24 hours.",
    default_path="/verify-email",
)
MAGIC_LINK_EMAIL = _EmailKind(
    subject="Sign In Link",
    heading="Magic Sign In Link",
    intro="Click the button below to sign in to your account. No password needed.",
    button="Sign In",
    color="#8b5cf6",
    footnote="This link expires in 15 minutes and can only be used once.",
    default_path="/magic-login",
)
PASSWORD_RESET_EMAIL = _EmailKind(
    subject="Password Reset",
    heading="Password Reset",
    intro="A password reset was requested for your account. Click the button below to set a new password.",
    button="Reset Password",
    color="#3b82f6",
    footnote="This link expires in 1 hour. If you didn't request this, you can safely ignore this email.",
    default_path="/reset-password",
)


def build_link(base_url: Optional[str], settings: EmailSettings, kind: _EmailKind, token: str) -> str:
    if base_url:
        return f"{base_url}?token={token}"
    return f"{settings.app_url}{kind.default_path}?token={token}"


class AuthMailer:
    """Renders and dispatches the verification, magic link and reset emails."""

    def __init__(
        self,
        settings_store: Optional[EmailSettingsStore] = None,
        *,
        client_factory: Callable[[str], ResendClient] = ResendClient,
    ) -> None:
        self.settings_store = settings_store or get_email_settings_store()
        self._client_factory = client_factory

    def _send(self, kind: _EmailKind, *, to: str, token: str, app_name: str, base_url: Optional[str]) -> None:
        settings = self.settings_store.load()
        if not settings.configured:
            raise MailDeliveryError("Resend is not configured. Add an API key in the email settings.")
        link = build_link(base_url, settings, kind, token)
        body = _TEMPLATE.format(
            heading=kind.heading,
            app_name=html.escape(app_name),
            intro=kind.intro,
            link=html.escape(link, quote=True),
            color=kind.color,
            button=kind.button,
            footnote=kind.footnote,
        )
        client = self._client_factory(settings.api_key)
        try:
            client.send_email(
                sender=f"{app_name} <{settings.from_email}>",
                to=to,
                subject=f"{kind.subject} - {app_name}",
                html=body,
            )
        except ResendClientError as exc:
            LOGGER.warning("Failed to send %s email: %s", kind.subject.lower(), exc)
            raise MailDeliveryError(str(exc) or "Failed to send email") from exc

    def send_verification_email(self, to: str, token: str, app_name: str, verify_url: Optional[str] = None) -> None:
        self._send(VERIFICATION_EMAIL, to=to, token=token, app_name=app_name, base_url=verify_url)

    def send_magic_link_email(self, to: str, token: str, app_name: str, login_url: Optional[str] = None) -> None:
        self._send(MAGIC_LINK_EMAIL, to=to, token=token, app_name=app_name, base_url=login_url)

    def send_password_reset_email(self, to: str, token: str, app_name: str, reset_url: Optional[str] = None) -> None:
        self._send(PASSWORD_RESET_EMAIL, to=to, token=token, app_name=app_name, base_url=reset_url)

    def send_test_email(self, to: Optional[str], *, actor: Optional[Dict[str, Any]] = None) -> None:
        """Send a fixed message to ``to`` to confirm the provider settings work."""
        to = (to or "").strip()
        if not to:
            raise RequestValidationFailed("Test email address is required")
        settings = self.settings_store.load()
        if not settings.configured:
            raise MailDeliveryError("Resend is not configured. Save your API key first.")
        client = self._client_factory(settings.api_key)
        try:
            client.send_email(
                sender=f"{config.DEFAULT_APP_NAME} <{settings.from_email}>",
                to=to,
                subject=f"{config.DEFAULT_APP_NAME} - Test Email",
                html=_TEST_TEMPLATE.format(app_name=html.escape(config.DEFAULT_APP_NAME)),
            )
        except ResendClientError as exc:
            raise MailDeliveryError(str(exc) or "Failed to send test email") from exc
        actor = actor or {}
        with session_scope() as db:
            record_audit(
                db,
                "auth_test_email_sent",
                ip_address=actor.get("ip_address"),
                user_agent=actor.get("user_agent"),
                details={"to": to},
            )


@lru_cache(maxsize=1)
def get_auth_mailer() -> AuthMailer:
    return AuthMailer()
