"""HTTP client for the Resend transactional email API."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests
from requests import Session
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config import RESEND_API_BASE, RESEND_TIMEOUT_SECONDS

LOGGER = logging.getLogger(__name__)


class ResendClientError(RuntimeError):
    """Raised when Resend does not accept a message."""


def _build_retry() -> Retry:
    # POST retries cover connect errors and 429/5xx only, never read timeouts.
    return Retry(
        total=3,
        read=0,
        connect=3,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=("POST",),
        raise_on_status=False,
    )


class ResendClient:
    """Lightweight wrapper around ``POST /emails``."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = RESEND_API_BASE,
        timeout: float = RESEND_TIMEOUT_SECONDS,
        session: Optional[Session] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        adapter = HTTPAdapter(max_retries=_build_retry())
        self._session.mount("http://", adapter)
        self._session.mount("https://", adapter)

    def send_email(self, *, sender: str, to: str, subject: str, html: str) -> str:
        """Send one message and return the provider message id."""
        payload: Dict[str, Any] = {"from": sender, "to": [to], "subject": subject, "html": html}
        try:
            response = self._session.post(
                f"{self.base_url}/emails",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ResendClientError(f"Resend request failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            message = ""
            if isinstance(body, dict):
                message = str(body.get("message") or body.get("error") or "")
            raise ResendClientError(message or f"Resend returned HTTP {response.status_code}")

        message_id = str(body.get("id", "")) if isinstance(body, dict) else ""
        LOGGER.debug("Resend accepted message %s", message_id or "<no id>")
        return message_id
