# backend/riskauth/services/password_service.py
"""
Password policy, history, change and OTP-based reset.

A new password must pass the policy and must not match any of the user's
last PASSWORD_HISTORY_COUNT passwords, the current one included. History
rows hold the peppered hashes of previous passwords only; the current hash
stays on the User row.
"""

import logging
from datetime import UTC, datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from riskauth.core.config import settings
from riskauth.core.rate_limit import otp_rate_limiter
from riskauth.core.security import get_password_hash, verify_password
from riskauth.crud.crud_user import user as crud_user
from riskauth.db.models.one_time_password import OtpPurpose
from riskauth.db.models.password_history import PasswordHistory
from riskauth.db.models.user import User
from riskauth.exceptions import PasswordPolicyViolation, ValidationFailure
from riskauth.services import otp_service
from riskauth.services.audit_service import AuditEvent, log_event

logger = logging.getLogger(__name__)

COMMON_PASSWORDS = frozenset(
    {
        "password",
        "password1",
        "password123",
        "123456",
        "12345678",
        "123456789",
        "qwerty",
        "qwerty123",
        "abc123",
        "letmein",
        "welcome",
        "welcome1",
        "admin",
        "admin123",
        "iloveyou",
        "monkey",
        "dragon",
        "football",
        "p@ssw0rd",
        "passw0rd",
    }
)


def _longest_run(value: str) -> int:
    longest = current = 0
    previous = None
    for ch in value:
        current = current + 1 if ch == previous else 1
        longest = max(longest, current)
        previous = ch
    return longest


def validate_new_password(password: str, *, username: str | None = None) -> list[str]:
    """Every policy rule `password` breaks, as readable messages. Empty when it is acceptable."""
    errors: list[str] = []
    if len(password) < settings.PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {settings.PASSWORD_MIN_LENGTH} characters long")
    if len(password) > settings.PASSWORD_MAX_LENGTH:
        errors.append(f"Password must be at most {settings.PASSWORD_MAX_LENGTH} characters long")

    if settings.PASSWORD_REQUIRE_CHARACTER_CLASSES:
        if not any(ch.isupper() for ch in password):
            errors.append("Password must contain an uppercase letter")
        if not any(ch.islower() for ch in password):
            errors.append("Password must contain a lowercase letter")
        if not any(ch.isascii() and ch.isdigit() for ch in password):
            errors.append("Password must contain a digit")
        if not any(ch in settings.PASSWORD_SPECIAL_CHARS for ch in password):
            errors.append(
                f"Password must contain one of these special characters: {settings.PASSWORD_SPECIAL_CHARS}"
            )

    max_run = settings.PASSWORD_MAX_CONSECUTIVE_CHARS
    if max_run > 0 and _longest_run(password) >= max_run:
        errors.append(f"Password must not repeat a character {max_run} or more times in a row")

    if username and len(username) >= 3 and username.lower() in password.lower():
        errors.append("Password must not contain the username")
    if password.lower() in COMMON_PASSWORDS:
        errors.append("Password is too common")
    return errors


async def _history(db: AsyncSession, user: User) -> list[PasswordHistory]:
    stmt = (
        select(PasswordHistory)
        .where(PasswordHistory.user_id == user.id)
        .order_by(PasswordHistory.created_at.desc(), PasswordHistory.id.desc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


def _previous_kept() -> int:
    # The current password counts toward the history length
    return max(0, settings.PASSWORD_HISTORY_COUNT - 1)


async def is_password_in_history(db: AsyncSession, user: User, password: str) -> bool:
    """True when `password` matches the current password or one of the kept previous ones."""
    if user.hashed_password and verify_password(password, user.hashed_password):
        return True
    for entry in (await _history(db, user))[: _previous_kept()]:
        if verify_password(password, entry.password_hash):
            return True
    return False


async def add_password_history(db: AsyncSession, user: User, password_hash: str) -> None:
    """Record an outgoing password hash and prune the user's history. Does not commit."""
    keep = _previous_kept()
    if keep == 0:
        await db.execute(delete(PasswordHistory).where(PasswordHistory.user_id == user.id))
        return

    db.add(PasswordHistory(user_id=user.id, password_hash=password_hash, created_at=datetime.now(UTC)))
    await db.flush()
    stale_ids = [entry.id for entry in (await _history(db, user))[keep:]]
    if stale_ids:
        await db.execute(delete(PasswordHistory).where(PasswordHistory.id.in_(stale_ids)))


async def _check_new_password(db: AsyncSession, user: User, new_password: str) -> None:
    errors = validate_new_password(new_password, username=user.username)
    if errors:
        raise PasswordPolicyViolation(errors)
    if await is_password_in_history(db, user, new_password):
        raise PasswordPolicyViolation(
            [f"Password must differ from the last {settings.PASSWORD_HISTORY_COUNT} passwords"]
        )


async def _store_new_password(db: AsyncSession, user: User, new_password: str) -> None:
    if user.hashed_password:
        await add_password_history(db, user, user.hashed_password)
    user.hashed_password = get_password_hash(new_password)
    user.password_changed_at = datetime.now(UTC)
    db.add(user)
    await db.commit()
    await db.refresh(user)


async def change_password(
    db: AsyncSession,
    user: User,
    current_password: str,
    new_password: str,
    *,
    ip_address: str | None = None,
) -> None:
    """
    Replace the password of a signed-in user.

    Raises:
        ValidationFailure: the current password is wrong
        PasswordPolicyViolation: the new password breaks the policy or was used recently
    """
    if not verify_password(current_password, user.hashed_password):
        logger.warning(f"Password change rejected for {user.username}: wrong current password.")
        await log_event(
            db,
            AuditEvent.PASSWORD_CHANGED,
            user.username,
            False,
            {"reason": "WRONG_CURRENT_PASSWORD"},
            ip_address=ip_address,
        )
        raise ValidationFailure("Current password is incorrect")

    try:
        await _check_new_password(db, user, new_password)
    except PasswordPolicyViolation as e:
        await log_event(
            db,
            AuditEvent.PASSWORD_CHANGED,
            user.username,
            False,
            {"reason": "POLICY", "count": len(e.errors)},
            ip_address=ip_address,
        )
        raise

    await _store_new_password(db, user, new_password)
    logger.info(f"Password changed for {user.username}.")
    await log_event(db, AuditEvent.PASSWORD_CHANGED, user.username, True, ip_address=ip_address)


async def request_password_reset(db: AsyncSession, email: str, *, ip_address: str | None = None) -> None:
    """
    Email a PASSWORD_RESET code to the account with `email`.

    Unknown or inactive addresses return silently so the caller cannot tell
    whether an account exists.

    Raises:
        RateLimitedError: too many reset requests for the account
        NotificationDeliveryError: the code was issued but the email could not be sent
    """
    target = await crud_user.get_by_email(db, email=email.strip())
    if target is None or not target.is_active:
        logger.info("Password reset requested for an unknown or inactive address.")
        return

    otp_rate_limiter.check_and_record(f"reset-request:{target.username}", "password_reset_request")
    await otp_service.generate_and_send_otp(db, target, OtpPurpose.PASSWORD_RESET, ip_address=ip_address)
    await log_event(
        db, AuditEvent.PASSWORD_RESET_REQUESTED, target.username, True, ip_address=ip_address
    )


async def reset_password_with_otp(
    db: AsyncSession,
    username: str,
    code: str,
    new_password: str,
    *,
    ip_address: str | None = None,
) -> None:
    """
    Set a new password after checking an emailed PASSWORD_RESET code.

    The code is consumed only when the new password is acceptable, so a
    rejected password can be retried with the same code.

    Raises:
        RateLimitedError: too many reset attempts for the account
        ValidationFailure: unknown account or wrong, expired or used code
        PasswordPolicyViolation: the new password breaks the policy or was used recently
    """
    otp_rate_limiter.check_and_record(f"reset:{username}", "password_reset")

    target = await crud_user.get_by_username(db, username=username)
    if target is None or not target.is_active:
        raise ValidationFailure(f"Password reset failed for {username}")

    try:
        await _check_new_password(db, target, new_password)
    except PasswordPolicyViolation as e:
        await log_event(
            db,
            AuditEvent.PASSWORD_RESET_COMPLETED,
            target.username,
            False,
            {"reason": "POLICY", "count": len(e.errors)},
            ip_address=ip_address,
        )
        raise

    if not await otp_service.verify_otp(db, target, code, OtpPurpose.PASSWORD_RESET):
        await log_event(
            db,
            AuditEvent.PASSWORD_RESET_COMPLETED,
            target.username,
            False,
            {"reason": "INVALID_CODE"},
            ip_address=ip_address,
        )
        raise ValidationFailure(f"Password reset failed for {username}")

    await _store_new_password(db, target, new_password)
    otp_rate_limiter.reset(f"reset:{username}")
    logger.info(f"Password reset completed for {target.username}.")
    await log_event(
        db, AuditEvent.PASSWORD_RESET_COMPLETED, target.username, True, ip_address=ip_address
    )
