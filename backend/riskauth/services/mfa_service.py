# backend/riskauth/services/mfa_service.py
"""
MFA (Multi-Factor Authentication) service using TOTP.

Provides functions for:
- Generating and verifying TOTP codes
- Generating QR codes for authenticator apps
- Enabling and disabling MFA for a user
- Generating, verifying and regenerating single-use backup codes
"""

import base64
import io
import logging
import secrets
from datetime import UTC, datetime

import pyotp
import qrcode
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from riskauth.core.config import settings
from riskauth.core.security import (
    decrypt_value,
    encrypt_value,
    get_password_hash,
    is_numeric_code,
    verify_password,
)
from riskauth.db.models.backup_code import BackupCode
from riskauth.db.models.user import User
from riskauth.schemas.user import MfaSetupResponse
from riskauth.services.audit_service import AuditEvent, log_event
from riskauth.services.trusted_devices import deactivate_user_devices

logger = logging.getLogger(__name__)


def generate_totp_secret() -> str:
    """Generate a new TOTP secret."""
    return pyotp.random_base32()


def get_totp_uri(secret: str, account_name: str) -> str:
    """Generate the TOTP provisioning URI for QR code."""
    totp = pyotp.TOTP(secret)
    return totp.provisioning_uri(name=account_name, issuer_name=settings.APP_NAME)


def generate_qr_code_base64(uri: str) -> str:
    """Generate a QR code as base64 PNG for the given URI."""
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(uri)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    buffer.seek(0)

    return base64.b64encode(buffer.read()).decode("utf-8")


def _normalize_code(code: str | None) -> str:
    return (code or "").replace(" ", "").replace("-", "").strip()


def verify_totp_code(secret: str, code: str) -> bool:
    """
    Verify a TOTP code against the secret.

    Allows for 1 window of tolerance (30 seconds before/after).
    """
    code = _normalize_code(code)
    if not secret or not is_numeric_code(code):
        return False
    totp = pyotp.TOTP(secret)
    return totp.verify(code, valid_window=1)


def generate_backup_codes(count: int | None = None) -> list[str]:
    """Generate numeric backup codes for recovery."""
    count = count or settings.BACKUP_CODE_COUNT
    length = settings.BACKUP_CODE_LENGTH
    return [f"{secrets.randbelow(10**length):0{length}d}" for _ in range(count)]


def setup_mfa(user: User) -> MfaSetupResponse:
    """
    Start MFA setup: a fresh secret plus its provisioning URI and QR code.

    Nothing is stored; the caller keeps the secret until enable_mfa() confirms it.
    """
    secret = generate_totp_secret()
    uri = get_totp_uri(secret, user.email or user.username)
    qr_code_base64 = generate_qr_code_base64(uri)

    logger.info(f"MFA setup initiated for user {user.username}")
    return MfaSetupResponse(
        secret=secret,
        provisioning_uri=uri,
        qr_code=f"data:image/png;base64,{qr_code_base64}",
    )


async def _replace_backup_codes(db: AsyncSession, user: User) -> list[str]:
    """Delete the user's backup codes and stage a fresh set. Does not commit."""
    await db.execute(delete(BackupCode).where(BackupCode.user_id == user.id))
    codes = generate_backup_codes()
    db.add_all(BackupCode(user_id=user.id, code_hash=get_password_hash(c)) for c in codes)
    return codes


async def enable_mfa(
    db: AsyncSession,
    user: User,
    secret: str,
    code: str,
) -> list[str] | None:
    """
    Enable MFA after verifying a code from the new secret.

    Returns the plain backup codes (shown once), or None if the code is invalid.
    """
    if not verify_totp_code(secret, code):
        logger.warning(f"Invalid TOTP code during MFA setup for {user.username}")
        return None

    user.mfa_secret = encrypt_value(secret)
    user.mfa_enabled = True
    codes = await _replace_backup_codes(db, user)
    await db.commit()

    logger.info(f"MFA enabled for user {user.username}")
    await log_event(db, AuditEvent.MFA_ENABLED, user.username, True, {"method": "TOTP"})
    return codes


async def disable_mfa(
    db: AsyncSession,
    user: User,
) -> None:
    """Disable MFA: clears the secret, deletes backup codes and deactivates trusted devices."""
    user.mfa_secret = None
    user.mfa_enabled = False

    await db.execute(delete(BackupCode).where(BackupCode.user_id == user.id))
    await deactivate_user_devices(db, user.id)
    await db.commit()

    logger.info(f"MFA disabled for user {user.username}")
    await log_event(db, AuditEvent.MFA_DISABLED, user.username, True)


async def regenerate_backup_codes(db: AsyncSession, user: User) -> list[str]:
    """Replace the whole backup code set. Returns the new plain codes."""
    codes = await _replace_backup_codes(db, user)
    await db.commit()

    logger.info(f"Backup codes regenerated for user {user.username}")
    await log_event(
        db, AuditEvent.BACKUP_CODES_REGENERATED, user.username, True, {"count": len(codes)}
    )
    return codes


async def count_unused_backup_codes(db: AsyncSession, user: User) -> int:
    result = await db.execute(
        select(func.count(BackupCode.id)).where(
            BackupCode.user_id == user.id, BackupCode.used.is_(False)
        )
    )
    return int(result.scalar() or 0)


def verify_user_totp(user: User, code: str) -> bool:
    """Verify a TOTP code against the user's stored (encrypted) secret."""
    if not user.mfa_enabled or not user.mfa_secret:
        return False
    try:
        secret = decrypt_value(user.mfa_secret)
    except ValueError as e:
        logger.error(f"Failed to decrypt MFA secret for {user.username}: {e}")
        return False
    return verify_totp_code(secret, code)


async def verify_backup_code(db: AsyncSession, user: User, code: str) -> bool:
    """
    Check `code` against the user's unused backup codes and consume the match.
    """
    code = _normalize_code(code)
    if not is_numeric_code(code):
        return False

    result = await db.execute(
        select(BackupCode).where(BackupCode.user_id == user.id, BackupCode.used.is_(False))
    )
    for backup_code in result.scalars().all():
        if not verify_password(code, backup_code.code_hash):
            continue

        consumed = await db.execute(
            update(BackupCode)
            .where(BackupCode.id == backup_code.id, BackupCode.used.is_(False))
            .values(used=True, used_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if (getattr(consumed, "rowcount", 0) or 0) != 1:
            logger.warning(f"Backup code for {user.username} was consumed concurrently.")
            return False

        backup_code.used = True
        remaining = await count_unused_backup_codes(db, user)
        logger.info(f"Backup code used for {user.username}, {remaining} remaining")
        return True

    return False
