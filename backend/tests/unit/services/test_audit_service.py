# backend/tests/unit/services/test_audit_service.py
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from riskauth.core.request_context import RequestContext, set_request_context
from riskauth.db.models.audit_log import AuditLog
from riskauth.services.audit_service import (
    MAX_DETAILS_SIZE,
    AuditEvent,
    get_severity,
    log_event,
    sanitize_details,
)


def test_sanitize_drops_keys_outside_allowlist():
    details = {"reason": "BAD_CREDENTIALS", "password": "hunter2", "otp_code": "123456", "risk_score": 40}

    assert sanitize_details(details) == {"reason": "BAD_CREDENTIALS", "risk_score": 40}


def test_sanitize_empty_details():
    assert sanitize_details(None) is None
    assert sanitize_details({}) is None
    assert sanitize_details({"not_allowed": 1}) is None


def test_sanitize_caps_size():
    details = {"reason": "x" * (MAX_DETAILS_SIZE * 2), "risk_score": 10}

    sanitized = sanitize_details(details)

    assert sanitized["_truncated"] is True
    assert "reason" not in sanitized
    assert sanitized["risk_score"] == 10


@pytest.mark.parametrize(
    ("event", "success", "severity"),
    [
        (AuditEvent.LOGIN_SUCCESS, True, "info"),
        (AuditEvent.LOGIN_FAILURE, False, "warning"),
        (AuditEvent.ACCOUNT_LOCKED, True, "critical"),
        (AuditEvent.MFA_DISABLED, True, "critical"),
        (AuditEvent.SUSPICIOUS_ACTIVITY, False, "critical"),
        (AuditEvent.DEVICE_TRUSTED, False, "warning"),
        ("NOT_AN_EVENT", False, "info"),
    ],
)
def test_severity(event, success, severity):
    assert get_severity(event, success) == severity


@pytest.mark.asyncio
async def test_log_event_writes_row(db_session):
    ok = await log_event(
        db_session,
        AuditEvent.LOGIN_FAILURE,
        "alice",
        False,
        {"reason": "BAD_CREDENTIALS", "password": "leak"},
        ip_address="1.2.3.4",
        user_agent="pytest",
    )

    assert ok is True
    entry = (await db_session.execute(select(AuditLog))).scalars().one()
    assert entry.event_type == "LOGIN_FAILURE"
    assert entry.severity == "warning"
    assert entry.success is False
    assert entry.ip_address == "1.2.3.4"
    assert entry.details == {"reason": "BAD_CREDENTIALS"}


@pytest.mark.asyncio
async def test_log_event_falls_back_to_request_context(db_session):
    # Each async test runs in its own task, so the context variable does not leak
    set_request_context(RequestContext(ip_address="198.51.100.9", user_agent="ctx-agent"))

    await log_event(db_session, AuditEvent.OTP_SENT, "alice", True)

    entry = (await db_session.execute(select(AuditLog))).scalars().one()
    assert entry.ip_address == "198.51.100.9"
    assert entry.user_agent == "ctx-agent"


@pytest.mark.asyncio
async def test_log_event_never_raises():
    db = AsyncMock()
    db.add = MagicMock()
    db.commit.side_effect = RuntimeError("database is down")

    ok = await log_event(db, AuditEvent.LOGIN_SUCCESS, "alice", True)

    assert ok is False
    db.rollback.assert_awaited_once()


@pytest.mark.asyncio
async def test_repeated_failures_raise_suspicious_activity(db_session):
    for _ in range(9):
        await log_event(db_session, AuditEvent.LOGIN_FAILURE, "alice", False)

    events = (await db_session.execute(select(AuditLog.event_type))).scalars().all()
    assert "SUSPICIOUS_ACTIVITY" not in events

    await log_event(db_session, AuditEvent.LOGIN_FAILURE, "alice", False)

    result = await db_session.execute(
        select(AuditLog).where(AuditLog.event_type == "SUSPICIOUS_ACTIVITY")
    )
    suspicious = result.scalars().one()
    assert suspicious.username == "alice"
    assert suspicious.severity == "critical"
    assert suspicious.details["failure_count"] == 10


@pytest.mark.asyncio
async def test_failures_of_other_users_do_not_count(db_session):
    for i in range(10):
        await log_event(db_session, AuditEvent.LOGIN_FAILURE, f"user{i}", False)

    events = (await db_session.execute(select(AuditLog.event_type))).scalars().all()
    assert "SUSPICIOUS_ACTIVITY" not in events
