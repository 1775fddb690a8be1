# backend/riskauth/services/attempt_history.py
"""
Append-only ledger of login attempts and the aggregate reads the risk engine uses.

Rows are written once and never updated. All window boundaries are exclusive
(`attempted_at > since`).
"""

import logging
from datetime import datetime

from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from riskauth.db.models.login_attempt import LoginAttempt
from riskauth.schemas.auth import LoginContext, VerificationMethod

logger = logging.getLogger(__name__)

MAX_FACTORS_LENGTH = 1000


async def record_login_attempt(
    db: AsyncSession,
    username: str,
    context: LoginContext,
    successful: bool,
    risk_score: int,
    risk_factors: str | None,
    *,
    additional_verification_required: bool = False,
    verification_method: VerificationMethod | str | None = None,
    attempted_at: datetime | None = None,
    commit: bool = True,
) -> LoginAttempt:
    """
    Append one attempt to the ledger.

    Args:
        risk_factors: Human-readable factor summary, stored for audit only
        verification_method: Secondary method used, if any
        commit: Set to False to keep the row in the caller's transaction
    """
    method = (
        verification_method.value
        if isinstance(verification_method, VerificationMethod)
        else verification_method
    )
    attempt = LoginAttempt(
        username=username,
        ip_address=context.ip_address,
        user_agent=context.user_agent[:512] if context.user_agent else None,
        device_fingerprint=context.device_fingerprint,
        success=successful,
        risk_score=max(0, min(100, int(risk_score))),
        risk_factors=risk_factors[:MAX_FACTORS_LENGTH] if risk_factors else None,
        country_code=context.country_code,
        city=context.city,
        is_proxy=context.is_proxy,
        is_vpn=context.is_vpn,
        additional_verification_required=additional_verification_required,
        verification_method=method,
    )
    if attempted_at is not None:
        attempt.attempted_at = attempted_at
    db.add(attempt)

    if commit:
        await db.commit()
    else:
        await db.flush()

    logger.debug(
        f"Recorded login attempt: user={username}, success={successful}, score={attempt.risk_score}"
    )
    return attempt


async def count_failed_attempts(db: AsyncSession, username: str, since: datetime) -> int:
    stmt = select(func.count(LoginAttempt.id)).where(
        LoginAttempt.username == username,
        LoginAttempt.success.is_(False),
        LoginAttempt.attempted_at > since,
    )
    result = await db.execute(stmt)
    return int(result.scalar() or 0)


async def count_distinct_ips(db: AsyncSession, username: str, since: datetime) -> int:
    stmt = select(func.count(distinct(LoginAttempt.ip_address))).where(
        LoginAttempt.username == username,
        LoginAttempt.attempted_at > since,
    )
    result = await db.execute(stmt)
    return int(result.scalar() or 0)


async def distinct_country_codes(db: AsyncSession, username: str, since: datetime) -> set[str]:
    """Countries seen for the user since `since`. Attempts without geo data are ignored."""
    stmt = (
        select(distinct(LoginAttempt.country_code))
        .where(
            LoginAttempt.username == username,
            LoginAttempt.attempted_at > since,
            LoginAttempt.country_code.is_not(None),
        )
    )
    result = await db.execute(stmt)
    return {code for code in result.scalars().all() if code}


async def has_attempts_since(db: AsyncSession, username: str, since: datetime) -> bool:
    stmt = (
        select(LoginAttempt.id)
        .where(LoginAttempt.username == username, LoginAttempt.attempted_at > since)
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalar() is not None


async def get_last_successful_attempt(db: AsyncSession, username: str) -> LoginAttempt | None:
    stmt = (
        select(LoginAttempt)
        .where(LoginAttempt.username == username, LoginAttempt.success.is_(True))
        .order_by(LoginAttempt.attempted_at.desc(), LoginAttempt.id.desc())
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalars().first()


async def list_recent_attempts(
    db: AsyncSession, username: str, since: datetime, limit: int = 50
) -> list[LoginAttempt]:
    """Newest-first attempts for a user, e.g. for a login history page."""
    stmt = (
        select(LoginAttempt)
        .where(LoginAttempt.username == username, LoginAttempt.attempted_at > since)
        .order_by(LoginAttempt.attempted_at.desc(), LoginAttempt.id.desc())
        .limit(limit)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())
