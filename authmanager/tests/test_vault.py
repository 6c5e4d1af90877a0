"""Tests for the keygen IP lockout endpoints."""

from __future__ import annotations

import json

from sqlalchemy import select

from authmanager import config, db
from authmanager.db_models import AuditLog, KeygenLock, VaultEvent
from authmanager.vault import VaultService, event_severity, restore_url_for


def _lock(ip: str) -> KeygenLock:
    with db.session_scope() as session:
        return session.execute(select(KeygenLock).where(KeygenLock.ip_address == ip)).scalar_one()


def test_check_ip_unknown(client):
    response = client.post("/api/vault/check-ip", json={}, headers={"x-forwarded-for": "203.0.113.7, 10.0.0.1"})

    assert response.status_code == 200
    assert response.json() == {"locked": False, "whitelisted": False}
    assert response.headers["access-control-allow-origin"] == config.KEYGEN_ALLOWED_ORIGIN


def test_vault_preflight(client):
    response = client.options("/api/vault/log-event")

    assert response.headers["access-control-allow-origin"] == config.KEYGEN_ALLOWED_ORIGIN
    assert response.headers["access-control-allow-methods"] == "POST, OPTIONS"
    assert response.headers["access-control-allow-headers"] == "Content-Type"


def test_severity_mapping():
    assert event_severity("failed_attempt") == "warning"
    assert event_severity("lockout") == "critical"
    assert event_severity("devtools_opened") == "critical"
    assert event_severity("page_load") == "info"


def test_log_event_rejects_unknown_type(client):
    response = client.post("/api/vault/log-event", json={"eventType": "teleport"})

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid event type"}
    assert response.headers["access-control-allow-origin"] == config.KEYGEN_ALLOWED_ORIGIN


def test_lockout_creates_lock_and_check_ip_reports_it(client):
    headers = {"x-real-ip": "198.51.100.4"}
    response = client.post(
        "/api/vault/log-event",
        json={"eventType": "lockout", "details": {"reason": "Brute force"}},
        headers=headers,
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "logged": "lockout", "ip": "198.51.100.4"}

    lock = _lock("198.51.100.4")
    assert lock.is_locked is True
    assert lock.attempts == 3
    assert lock.reason == "Brute force"
    assert lock.restore_url == restore_url_for("198.51.100.4")

    status = client.post("/api/vault/check-ip", json={}, headers=headers).json()
    assert status["locked"] is True
    assert status["whitelisted"] is False
    assert status["reason"] == "Brute force"
    assert status["attempts"] == 3
    assert "lockedAt" in status


def test_repeat_lockout_adds_attempts_and_relocks():
    service = VaultService()
    service.log_event("lockout", "192.0.2.9")
    service.unlock_ip("192.0.2.9", unlocked_by="ops@example.com")

    service.log_event("lockout", "192.0.2.9")

    lock = _lock("192.0.2.9")
    assert lock.attempts == 6
    assert lock.is_locked is True
    assert lock.unlocked_at is None
    assert lock.reason == "Too many failed keygen attempts"


def test_ip_falls_back_to_body(client):
    response = client.post("/api/vault/log-event", json={"eventType": "page_load", "ipAddress": "192.0.2.50"})

    assert response.json()["ip"] == "192.0.2.50"
    with db.session_scope() as session:
        event = session.execute(select(VaultEvent)).scalar_one()
    assert event.severity == "info"
    assert event.ip_address == "192.0.2.50"


def test_unlock_requires_admin(client):
    response = client.post("/api/vault/unlock-ip", json={"ipAddress": "192.0.2.9"})

    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}


def test_unlock_validation(admin_client):
    missing = admin_client.post("/api/vault/unlock-ip", json={})
    assert missing.status_code == 400
    assert missing.json() == {"error": "IP address required"}

    unknown = admin_client.post("/api/vault/unlock-ip", json={"ipAddress": "192.0.2.200"})
    assert unknown.status_code == 404
    assert unknown.json() == {"error": "IP not found in lock list"}


def test_unlock_whitelists_ip_and_records_trail(admin_client):
    VaultService().log_event("lockout", "192.0.2.9")

    response = admin_client.post("/api/vault/unlock-ip", json={"ipAddress": "192.0.2.9"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["message"] == "IP 192.0.2.9 has been unlocked"
    assert "unlockedAt" in payload

    status = admin_client.post("/api/vault/check-ip", json={"ipAddress": "192.0.2.9"}).json()
    assert status["locked"] is False
    assert status["whitelisted"] is True
    assert status["unlockedBy"] == "ops@example.com"

    with db.session_scope() as session:
        events = session.execute(select(VaultEvent).where(VaultEvent.event_type == "ip_unlocked")).scalars().all()
        audits = session.execute(select(AuditLog).where(AuditLog.action == "keygen_ip_unlocked")).scalars().all()
    assert len(events) == 1
    assert events[0].details["previousAttempts"] == 3
    assert len(audits) == 1
    assert json.loads(audits[0].details)["targetIp"] == "192.0.2.9"
