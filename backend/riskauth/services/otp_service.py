# backend/riskauth/services/otp_service.py
"""
Emailed one-time passwords.

Issuing a code invalidates every earlier unused code for the same
(user, purpose) in the same transaction as the insert. The email is sent
only after that transaction commits, so a delivery failure never leaves a
code half-issued: the new code stays valid until it expires and the caller
gets a NotificationDeliveryError.

Verification only accepts the most recently issued live code, so even two
concurrent issuances leave at most one usable code. Marking a code used is a
conditional UPDATE, so a code cannot be consumed twice.
"""

import hmac
import logging
import secrets
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from riskauth.core.config import settings
from riskauth.core.security import is_numeric_code
from riskauth.core.security_logger import security_log
from riskauth.db.models.one_time_password import OneTimePassword, OtpPurpose
from riskauth.db.models.user import User
from riskauth.exceptions import NotificationDeliveryError, ValidationFailure
from riskauth.services import email_service

logger = logging.getLogger(__name__)


def generate_numeric_code(length: int | None = None) -> str:
    """Cryptographically random, zero-padded numeric code."""
    length = length or settings.OTP_LENGTH
    return f"{secrets.randbelow(10**length):0{length}d}"


async def _deliver(user: User, code: str, purpose: OtpPurpose) -> bool:
    if purpose == OtpPurpose.LOGIN:
        return await email_service.send_otp_email(
            user.email, user.username, code, settings.OTP_EXPIRY_MINUTES
        )
    if purpose == OtpPurpose.PASSWORD_RESET:
        return await email_service.send_password_reset_email(
            user.email, user.username, code, settings.OTP_EXPIRY_MINUTES
        )
    # EMAIL_VERIFICATION codes are delivered by the registration flow
    return True


def _is_emailed(purpose: OtpPurpose) -> bool:
    return purpose in (OtpPurpose.LOGIN, OtpPurpose.PASSWORD_RESET)


async def generate_and_send_otp(
    db: AsyncSession,
    user: User,
    purpose: OtpPurpose,
    *,
    ip_address: str | None = None,
    now: datetime | None = None,
) -> OneTimePassword:
    """
    Issue a new code for (user, purpose) and email it.

    Returns the persisted code row.

    Raises:
        ValidationFailure: the code must be emailed but the user has no address.
            Earlier codes are left untouched.
        NotificationDeliveryError: the code was issued but the email could not be sent
    """
    if _is_emailed(purpose) and not user.email:
        logger.warning(f"User {user.username} has no email address; OTP {purpose.value} not issued.")
        raise ValidationFailure(f"No email address for {user.username}")

    now = now or datetime.now(UTC)

    await db.execute(
        update(OneTimePassword)
        .where(
            OneTimePassword.user_id == user.id,
            OneTimePassword.purpose == purpose,
            OneTimePassword.used.is_(False),
        )
        .values(used=True)
    )
    otp = OneTimePassword(
        user_id=user.id,
        code=generate_numeric_code(),
        purpose=purpose,
        used=False,
        created_at=now,
        expires_at=now + timedelta(minutes=settings.OTP_EXPIRY_MINUTES),
    )
    db.add(otp)
    await db.commit()
    await db.refresh(otp)

    if not await _deliver(user, otp.code, purpose):
        logger.error(f"Failed to deliver {purpose.value} OTP to {user.username}.")
        raise NotificationDeliveryError(f"OTP email delivery failed for {user.username}")

    security_log.otp_sent(ip_address or "unknown", user.username, purpose.value)
    logger.info(f"OTP issued and sent: user={user.username}, purpose={purpose.value}")
    return otp


async def get_latest_otp(
    db: AsyncSession,
    user: User,
    purpose: OtpPurpose,
    now: datetime | None = None,
) -> OneTimePassword | None:
    """Most recently issued code for (user, purpose) that is still valid."""
    now = now or datetime.now(UTC)
    stmt = (
        select(OneTimePassword)
        .where(
            OneTimePassword.user_id == user.id,
            OneTimePassword.purpose == purpose,
            OneTimePassword.used.is_(False),
            OneTimePassword.expires_at > now,
        )
        .order_by(OneTimePassword.created_at.desc(), OneTimePassword.id.desc())
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalars().first()


async def verify_otp(
    db: AsyncSession,
    user: User,
    code: str,
    purpose: OtpPurpose,
    now: datetime | None = None,
) -> bool:
    """
    Check `code` against the live code for (user, purpose) and consume it.

    Wrong, expired, reused or superseded codes return False.
    """
    code = (code or "").strip()
    if not is_numeric_code(code):
        return False

    otp = await get_latest_otp(db, user, purpose, now)
    if otp is None or not hmac.compare_digest(otp.code.encode("ascii"), code.encode("ascii")):
        logger.warning(f"OTP verification failed: user={user.username}, purpose={purpose.value}")
        return False

    result = await db.execute(
        update(OneTimePassword)
        .where(OneTimePassword.id == otp.id, OneTimePassword.used.is_(False))
        .values(used=True)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if (getattr(result, "rowcount", 0) or 0) != 1:
        # Consumed concurrently by another request
        logger.warning(f"OTP already consumed: user={user.username}, purpose={purpose.value}")
        return False

    otp.used = True
    logger.info(f"OTP verified: user={user.username}, purpose={purpose.value}")
    return True


async def cleanup_expired_otps(db: AsyncSession, now: datetime | None = None) -> int:
    """Delete used or expired codes. Returns the number of rows removed."""
    now = now or datetime.now(UTC)
    result = await db.execute(
        delete(OneTimePassword).where(
            or_(OneTimePassword.used.is_(True), OneTimePassword.expires_at < now)
        )
    )
    await db.commit()
    count = int(getattr(result, "rowcount", 0) or 0)
    if count:
        logger.info(f"Deleted {count} used or expired one-time passwords.")
    return count
