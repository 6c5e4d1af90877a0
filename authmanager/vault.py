"""IP lockout records and security events for the keygen site."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

from sqlalchemy import select

from . import config
from .audit import record_audit
from .db import session_scope
from .db_models import AuditLog, KeygenLock, VaultEvent
from .errors import RecordNotFound, RequestValidationFailed

LOGGER = logging.getLogger(__name__)

VALID_EVENT_TYPES = (
    "failed_attempt",
    "lockout",
    "devtools_opened",
    "key_generated",
    "key_expired",
    "key_validated",
    "page_load",
)
LOCKOUT_ATTEMPTS = 3
DEFAULT_LOCK_REASON = "Too many failed keygen attempts"


def event_severity(event_type: str) -> str:
    if event_type == "failed_attempt":
        return "warning"
    if event_type in ("lockout", "devtools_opened"):
        return "critical"
    return "info"


def restore_url_for(ip_address: str) -> str:
    return f"{config.KEYGEN_RESTORE_BASE_URL}/admin/vault?unlock={quote(ip_address, safe='')}"


def _normalize_dt(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class IpStatus:
    locked: bool
    whitelisted: bool
    reason: Optional[str] = None
    locked_at: Optional[datetime] = None
    attempts: Optional[int] = None
    unlocked_at: Optional[datetime] = None
    unlocked_by: Optional[str] = None


class VaultService:
    """Check, lock and unlock keygen IPs and expose the security trail."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def check_ip(self, ip_address: str) -> IpStatus:
        with session_scope() as db:
            lock = db.execute(select(KeygenLock).where(KeygenLock.ip_address == ip_address)).scalar_one_or_none()
            if lock is None:
                return IpStatus(locked=False, whitelisted=False)
            if lock.is_locked:
                return IpStatus(
                    locked=True,
                    whitelisted=False,
                    reason=lock.reason,
                    locked_at=_normalize_dt(lock.locked_at),
                    attempts=lock.attempts,
                )
            return IpStatus(
                locked=False,
                whitelisted=True,
                unlocked_at=_normalize_dt(lock.unlocked_at),
                unlocked_by=lock.unlocked_by,
            )

    def log_event(
        self,
        event_type: Optional[str],
        ip_address: str,
        *,
        user_agent: Optional[str] = None,
        location: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Record a keygen event; a ``lockout`` also creates or refreshes the IP lock."""
        if event_type not in VALID_EVENT_TYPES:
            raise RequestValidationFailed("Invalid event type")
        severity = event_severity(event_type)
        with session_scope() as db:
            db.add(
                VaultEvent(
                    event_type=event_type,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    location=location or None,
                    details=details or None,
                    severity=severity,
                )
            )
            if event_type == "lockout":
                self._lock_ip(db, ip_address, details or {})
        if severity != "info":
            LOGGER.warning("Vault %s event from %s", event_type, ip_address)
        return event_type

    def _lock_ip(self, db, ip_address: str, details: Dict[str, Any]) -> None:
        now = self._clock()
        restore_url = restore_url_for(ip_address)
        lock = db.execute(select(KeygenLock).where(KeygenLock.ip_address == ip_address)).scalar_one_or_none()
        if lock is None:
            reason = details.get("reason") if isinstance(details.get("reason"), str) else None
            db.add(
                KeygenLock(
                    ip_address=ip_address,
                    reason=reason or DEFAULT_LOCK_REASON,
                    attempts=LOCKOUT_ATTEMPTS,
                    is_locked=True,
                    locked_at=now,
                    restore_url=restore_url,
                )
            )
            return
        lock.attempts = (lock.attempts or 0) + LOCKOUT_ATTEMPTS
        lock.locked_at = now
        lock.is_locked = True
        lock.unlocked_at = None
        lock.restore_url = restore_url
        db.add(lock)

    def unlock_ip(
        self,
        ip_address: Optional[str],
        *,
        unlocked_by: str = "Admin",
        user_agent: Optional[str] = None,
    ) -> datetime:
        if not ip_address:
            raise RequestValidationFailed("IP address required")
        now = self._clock()
        with session_scope() as db:
            lock = db.execute(select(KeygenLock).where(KeygenLock.ip_address == ip_address)).scalar_one_or_none()
            if lock is None:
                raise RecordNotFound("IP not found in lock list")
            previous_attempts = lock.attempts
            lock.is_locked = False
            lock.unlocked_at = now
            lock.unlocked_by = unlocked_by
            db.add(lock)
            db.add(
                VaultEvent(
                    event_type="ip_unlocked",
                    ip_address=ip_address,
                    user_agent=user_agent,
                    details={"unlockedBy": unlocked_by, "previousAttempts": previous_attempts},
                    severity="info",
                )
            )
            record_audit(
                db,
                "keygen_ip_unlocked",
                ip_address=ip_address,
                user_agent=user_agent,
                details={"targetIp": ip_address, "attempts": previous_attempts},
            )
        LOGGER.info("Unlocked keygen IP %s", ip_address)
        return now

    def list_locks(self) -> List[KeygenLock]:
        with session_scope() as db:
            return list(db.execute(select(KeygenLock).order_by(KeygenLock.locked_at.desc())).scalars().all())

    def list_events(self, limit: int = 100) -> List[VaultEvent]:
        with session_scope() as db:
            return list(
                db.execute(select(VaultEvent).order_by(VaultEvent.created_at.desc()).limit(limit)).scalars().all()
            )

    def list_audit_logs(self, limit: int = 100) -> List[AuditLog]:
        with session_scope() as db:
            return list(
                db.execute(select(AuditLog).order_by(AuditLog.created_at.desc()).limit(limit)).scalars().all()
            )


_VAULT_SERVICE: Optional[VaultService] = None


def get_vault_service() -> VaultService:
    global _VAULT_SERVICE
    if _VAULT_SERVICE is None:
        _VAULT_SERVICE = VaultService()
    return _VAULT_SERVICE
