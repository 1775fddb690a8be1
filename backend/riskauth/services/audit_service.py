# backend/riskauth/services/audit_service.py
"""
Audit logging service for authentication events.

Provides:
- log_event(): write an audit row; failures are logged and never raised
- Severity mapping per (event, success)
- Details allowlist, secret masking and size caps
- Suspicious activity detection on repeated login failures
"""

import json
import logging
import re
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from riskauth.core.config import settings
from riskauth.core.request_context import get_request_context
from riskauth.db.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


class AuditEvent(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    LOGIN_BLOCKED = "LOGIN_BLOCKED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
    MFA_ENABLED = "MFA_ENABLED"
    MFA_DISABLED = "MFA_DISABLED"
    MFA_SUCCESS = "MFA_SUCCESS"
    MFA_FAILURE = "MFA_FAILURE"
    BACKUP_CODES_REGENERATED = "BACKUP_CODES_REGENERATED"
    OTP_SENT = "OTP_SENT"
    OTP_REQUEST_FAILED = "OTP_REQUEST_FAILED"
    OTP_VERIFIED = "OTP_VERIFIED"
    OTP_FAILED = "OTP_FAILED"
    DEVICE_TRUSTED = "DEVICE_TRUSTED"
    DEVICE_REMOVED = "DEVICE_REMOVED"
    OAUTH2_LOGIN = "OAUTH2_LOGIN"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    RATE_LIMITED = "RATE_LIMITED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET_COMPLETED = "PASSWORD_RESET_COMPLETED"


# Maximum size for details JSON (8KB)
MAX_DETAILS_SIZE = 8 * 1024

# Allowlisted keys for details field (security: no secrets)
ALLOWED_DETAIL_KEYS = {
    "reason",
    "method",
    "mfa_method",
    "purpose",
    "risk_score",
    "risk_level",
    "risk_factors",
    "attempts",
    "failure_count",
    "device_id",
    "device_name",
    "trusted_device",
    "provider",
    "count",
    "retry_after",
    "action",
    "remaining_codes",
}

SENSITIVE_PATTERNS = [
    r".*token.*",
    r".*secret.*",
    r".*password.*",
    r".*code$",
    r".*api_key.*",
]

# Severity mapping for events
SEVERITY_MAP = {
    (AuditEvent.LOGIN_SUCCESS, True): "info",
    (AuditEvent.LOGIN_FAILURE, False): "warning",
    (AuditEvent.LOGIN_BLOCKED, False): "warning",
    (AuditEvent.ACCOUNT_LOCKED, True): "critical",
    (AuditEvent.ACCOUNT_LOCKED, False): "critical",
    (AuditEvent.ACCOUNT_UNLOCKED, True): "info",
    (AuditEvent.MFA_ENABLED, True): "info",
    (AuditEvent.MFA_DISABLED, True): "critical",
    (AuditEvent.MFA_SUCCESS, True): "info",
    (AuditEvent.MFA_FAILURE, False): "warning",
    (AuditEvent.BACKUP_CODES_REGENERATED, True): "warning",
    (AuditEvent.OTP_SENT, True): "info",
    (AuditEvent.OTP_REQUEST_FAILED, False): "warning",
    (AuditEvent.OTP_VERIFIED, True): "info",
    (AuditEvent.OTP_FAILED, False): "warning",
    (AuditEvent.DEVICE_TRUSTED, True): "info",
    (AuditEvent.DEVICE_REMOVED, True): "info",
    (AuditEvent.OAUTH2_LOGIN, True): "info",
    (AuditEvent.OAUTH2_LOGIN, False): "warning",
    (AuditEvent.SUSPICIOUS_ACTIVITY, False): "critical",
    (AuditEvent.RATE_LIMITED, False): "warning",
    (AuditEvent.PASSWORD_CHANGED, True): "info",
    (AuditEvent.PASSWORD_CHANGED, False): "warning",
    (AuditEvent.PASSWORD_RESET_REQUESTED, True): "info",
    (AuditEvent.PASSWORD_RESET_COMPLETED, True): "warning",
    (AuditEvent.PASSWORD_RESET_COMPLETED, False): "warning",
}


def get_severity(event: AuditEvent | str, success: bool) -> str:
    """Get severity level for an event based on success/failure."""
    try:
        event = AuditEvent(event)
    except ValueError:
        return "info"
    return SEVERITY_MAP.get((event, success), "info" if success else "warning")


def sanitize_details(details: dict[str, Any] | None) -> dict[str, Any] | None:
    """
    Sanitize details dict: allowlist keys, mask secrets and cap size.

    Removes any keys not in ALLOWED_DETAIL_KEYS and truncates
    if the serialized JSON exceeds MAX_DETAILS_SIZE.
    """
    if not details:
        return None

    sanitized = {k: v for k, v in details.items() if k in ALLOWED_DETAIL_KEYS}

    for k, v in sanitized.items():
        if isinstance(v, str):
            for pattern in SENSITIVE_PATTERNS:
                if re.match(pattern, k, re.IGNORECASE):
                    sanitized[k] = "[REDACTED]"
                    break

    if len(json.dumps(sanitized, default=str)) > MAX_DETAILS_SIZE:
        sanitized["_truncated"] = True
        while len(json.dumps(sanitized, default=str)) > MAX_DETAILS_SIZE:
            largest_key = max(
                (k for k in sanitized if k != "_truncated"),
                key=lambda k: len(str(sanitized[k])),
                default=None,
            )
            if largest_key is None:
                break
            del sanitized[largest_key]

    return sanitized or None


async def count_recent_events(
    db: AsyncSession,
    event: AuditEvent,
    username: str,
    since: datetime,
) -> int:
    stmt = select(func.count(AuditLog.id)).where(
        AuditLog.event_type == event.value,
        AuditLog.username == username,
        AuditLog.created_at > since,
    )
    result = await db.execute(stmt)
    return int(result.scalar() or 0)


async def _write_event(
    db: AsyncSession,
    event: AuditEvent,
    username: str | None,
    success: bool,
    details: dict[str, Any] | None,
    ip_address: str | None,
    user_agent: str | None,
) -> AuditLog:
    ctx = get_request_context()
    entry = AuditLog(
        event_type=event.value,
        severity=get_severity(event, success),
        success=success,
        username=username,
        ip_address=ip_address or (ctx.ip_address if ctx else None),
        user_agent=user_agent or (ctx.user_agent if ctx else None),
        details=sanitize_details(details),
        created_at=datetime.now(UTC),
    )
    db.add(entry)
    await db.commit()
    return entry


async def _check_suspicious_activity(
    db: AsyncSession,
    username: str,
    ip_address: str | None,
    user_agent: str | None,
) -> None:
    since = datetime.now(UTC) - timedelta(minutes=settings.SUSPICIOUS_ACTIVITY_WINDOW_MINUTES)
    failures = await count_recent_events(db, AuditEvent.LOGIN_FAILURE, username, since)
    if failures >= settings.SUSPICIOUS_ACTIVITY_THRESHOLD:
        logger.warning(
            f"Suspicious activity: {failures} login failures for {username} "
            f"in the last {settings.SUSPICIOUS_ACTIVITY_WINDOW_MINUTES} minutes."
        )
        await _write_event(
            db,
            AuditEvent.SUSPICIOUS_ACTIVITY,
            username,
            False,
            {"reason": "repeated login failures", "failure_count": failures},
            ip_address,
            user_agent,
        )


async def log_event(
    db: AsyncSession,
    event: AuditEvent,
    username: str | None,
    success: bool,
    details: dict[str, Any] | None = None,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> bool:
    """
    Record an audit event. Never raises.

    The row is committed on its own, so callers should log after their own
    state change is committed. Returns False when the write failed.
    """
    try:
        await _write_event(db, event, username, success, details, ip_address, user_agent)
        if event == AuditEvent.LOGIN_FAILURE and username:
            await _check_suspicious_activity(db, username, ip_address, user_agent)
        logger.debug(f"Audit event recorded: {event.value} for {username}")
        return True
    except Exception as e:
        logger.error(f"Failed to log audit event {getattr(event, 'value', event)}: {e}")
        try:
            await db.rollback()
        except Exception as rollback_error:
            logger.error(f"Rollback after audit failure also failed: {rollback_error}")
        return False
