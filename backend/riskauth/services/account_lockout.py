# backend/riskauth/services/account_lockout.py
"""
Account lockout service for brute force protection.

Counts consecutive primary-credential failures on the User row. At
ACCOUNT_LOCK_THRESHOLD the account is locked until an administrator unlocks
it. A successful login resets the counter.

The counter is incremented in SQL so concurrent failures are never lost.
"""

import logging
from datetime import UTC, datetime
from typing import NamedTuple

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from riskauth.core.config import settings
from riskauth.core.security_logger import security_log
from riskauth.db.models.user import User
from riskauth.services.audit_service import AuditEvent, log_event

logger = logging.getLogger(__name__)


class LockoutStatus(NamedTuple):
    """Result of recording a failure."""

    failed_attempts: int
    is_locked: bool = False
    newly_locked: bool = False


def is_account_locked(user: User) -> bool:
    return bool(user.account_locked)


async def record_failed_login(
    db: AsyncSession,
    user: User,
    ip_address: str,
) -> LockoutStatus:
    """
    Increment the failure counter and lock the account at the threshold.
    Commits.
    """
    now = datetime.now(UTC)
    await db.execute(
        update(User)
        .where(User.id == user.id)
        .values(
            failed_login_count=User.failed_login_count + 1,
            last_failed_login_at=now,
        )
    )
    await db.commit()
    await db.refresh(user)

    if user.account_locked:
        return LockoutStatus(failed_attempts=user.failed_login_count, is_locked=True)

    if user.failed_login_count >= settings.ACCOUNT_LOCK_THRESHOLD:
        user.account_locked = True
        user.locked_at = now
        await db.commit()

        logger.warning(
            f"ACCOUNT LOCKED: {user.username} after {user.failed_login_count} consecutive failures."
        )
        security_log.account_locked(ip_address, user.username, user.failed_login_count)
        await log_event(
            db,
            AuditEvent.ACCOUNT_LOCKED,
            user.username,
            True,
            {"failure_count": user.failed_login_count},
            ip_address=ip_address,
        )
        return LockoutStatus(
            failed_attempts=user.failed_login_count, is_locked=True, newly_locked=True
        )

    return LockoutStatus(failed_attempts=user.failed_login_count)


async def record_successful_login(db: AsyncSession, user: User) -> None:
    """Reset failure state and stamp last_login_at. Commits."""
    user.failed_login_count = 0
    user.last_failed_login_at = None
    user.last_login_at = datetime.now(UTC)
    await db.commit()


async def unlock_account(db: AsyncSession, user: User, *, actor: str | None = None) -> None:
    """Administrative unlock."""
    user.account_locked = False
    user.locked_at = None
    user.failed_login_count = 0
    await db.commit()

    logger.info(f"Account {user.username} unlocked by {actor or 'system'}.")
    await log_event(
        db,
        AuditEvent.ACCOUNT_UNLOCKED,
        user.username,
        True,
        {"reason": f"unlocked by {actor or 'system'}"},
    )
