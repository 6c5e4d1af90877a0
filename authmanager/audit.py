"""Append-only administrative audit trail."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from .db_models import AuditLog

LOGGER = logging.getLogger(__name__)


def record_audit(
    db: Session,
    action: str,
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """Add an ``AuditLog`` row to ``db``; committed with the caller's transaction."""
    entry = AuditLog(
        action=action,
        ip_address=ip_address or "unknown",
        user_agent=user_agent,
        details=json.dumps(details, default=str) if details is not None else None,
    )
    db.add(entry)
    LOGGER.info("Audit: %s", action)
    return entry
