# backend/riskauth/services/trusted_devices.py
"""
Trusted device registry.

Provides functions for:
- Checking whether a fingerprint is trusted (read-only, used by risk scoring)
- Registering or refreshing a trusted device after explicit user opt-in
- Listing and removing a user's devices
- Deactivating expired devices in bulk (maintenance)

At most one active row exists per (user, fingerprint). Registration holds a
per-key lock within the process and the partial unique index enforces the
rule across processes; a lost race is retried once.
"""

import asyncio
import hashlib
import logging
import uuid
import weakref
from datetime import UTC, datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from riskauth import crud
from riskauth.core.config import settings
from riskauth.db.models.trusted_device import TrustedDevice
from riskauth.exceptions import NotFoundError, ValidationFailure
from riskauth.schemas.auth import LoginContext
from riskauth.schemas.user import TrustedDeviceRead
from riskauth.services.audit_service import AuditEvent, log_event

logger = logging.getLogger(__name__)

LOCK_SHARDS = 64


class _KeyedLocks:
    """
    Sharded asyncio locks. Locks are created per running loop because an
    asyncio.Lock must not be shared across event loops; a closed loop's
    locks are dropped together with the loop.
    """

    def __init__(self, shards: int = LOCK_SHARDS):
        self._shards = shards
        self._locks: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[int, asyncio.Lock]] = (
            weakref.WeakKeyDictionary()
        )

    def for_key(self, key: str) -> asyncio.Lock:
        digest = hashlib.blake2b(key.encode("utf-8"), digest_size=4).digest()
        shard = int.from_bytes(digest, "big") % self._shards
        loop_locks = self._locks.setdefault(asyncio.get_running_loop(), {})
        return loop_locks.setdefault(shard, asyncio.Lock())


_registration_locks = _KeyedLocks()


def _location_label(context: LoginContext | None) -> str | None:
    if context is None or not context.country_code:
        return None
    return f"{context.city}, {context.country_code}" if context.city else context.country_code


async def _get_active_device(
    db: AsyncSession, user_id: uuid.UUID, device_fingerprint: str
) -> TrustedDevice | None:
    stmt = select(TrustedDevice).where(
        TrustedDevice.user_id == user_id,
        TrustedDevice.device_fingerprint == device_fingerprint,
        TrustedDevice.is_active.is_(True),
    )
    result = await db.execute(stmt)
    return result.scalars().first()


async def is_trusted_device(
    db: AsyncSession,
    user_id: uuid.UUID,
    device_fingerprint: str | None,
    now: datetime | None = None,
) -> bool:
    """
    True when an active, unexpired trusted row matches the fingerprint.

    Read-only: an expired row simply does not count here.
    """
    if not device_fingerprint:
        return False
    now = now or datetime.now(UTC)
    stmt = (
        select(TrustedDevice.id)
        .where(
            TrustedDevice.user_id == user_id,
            TrustedDevice.device_fingerprint == device_fingerprint,
            TrustedDevice.is_active.is_(True),
            TrustedDevice.trust_expires_at > now,
        )
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalar() is not None


async def _upsert_device(
    db: AsyncSession,
    user_id: uuid.UUID,
    device_fingerprint: str,
    device_name: str | None,
    context: LoginContext | None,
    now: datetime,
) -> TrustedDevice:
    device = await _get_active_device(db, user_id, device_fingerprint)

    if device is not None and device.is_expired(now):
        # Lazy expiry: retire the stale row and register a fresh one
        device.is_active = False
        await db.flush()
        device = None

    if device is None:
        device = TrustedDevice(
            user_id=user_id,
            device_fingerprint=device_fingerprint,
            device_name=device_name,
            created_at=now,
            last_used_at=now,
            trust_expires_at=now + timedelta(days=settings.TRUST_DEVICE_DAYS),
            is_active=True,
        )
        db.add(device)
    else:
        device.last_used_at = now
        if device_name:
            device.device_name = device_name

    if context is not None:
        device.last_ip_address = context.ip_address
        device.last_user_agent = context.user_agent[:512] if context.user_agent else None
        device.last_location = _location_label(context)

    await db.commit()
    await db.refresh(device)
    return device


async def trust_device(
    db: AsyncSession,
    username: str,
    device_fingerprint: str,
    device_name: str | None = None,
    *,
    context: LoginContext | None = None,
    now: datetime | None = None,
) -> TrustedDevice:
    """
    Register a device as trusted, or refresh last-used on an existing active row.

    Raises:
        NotFoundError: unknown username
        ValidationFailure: empty fingerprint
    """
    if not device_fingerprint:
        raise ValidationFailure("Device fingerprint is required to trust a device")

    user = await crud.user.get_by_username(db, username=username)
    if user is None:
        raise NotFoundError(f"User '{username}' not found")

    # Read before a possible rollback expires the instance
    user_id = user.id
    now = now or datetime.now(UTC)
    async with _registration_locks.for_key(f"{user_id}:{device_fingerprint}"):
        try:
            device = await _upsert_device(db, user_id, device_fingerprint, device_name, context, now)
        except IntegrityError:
            # Another process registered the same fingerprint first
            await db.rollback()
            logger.info(f"Concurrent trusted device registration for {username}; retrying once.")
            device = await _upsert_device(db, user_id, device_fingerprint, device_name, context, now)

    logger.info(f"Trusted device registered for {username}: {device.device_name or device.id}")
    return device


async def remove_trusted_device(db: AsyncSession, username: str, device_id: int) -> None:
    """
    Deactivate one of the user's devices. Rows are never hard-deleted.

    A device owned by someone else is reported as not found.
    """
    user = await crud.user.get_by_username(db, username=username)
    if user is None:
        raise NotFoundError(f"User '{username}' not found")

    device = await db.get(TrustedDevice, device_id)
    if device is None or device.user_id != user.id:
        raise NotFoundError(f"Trusted device {device_id} not found for {username}")

    device.is_active = False
    await db.commit()
    logger.info(f"Trusted device {device_id} removed for {username}")
    await log_event(db, AuditEvent.DEVICE_REMOVED, username, True, {"device_id": device_id})


async def list_trusted_devices(
    db: AsyncSession,
    username: str,
    *,
    include_inactive: bool = False,
    now: datetime | None = None,
) -> list[TrustedDeviceRead]:
    """Get a user's trusted devices, newest first."""
    user = await crud.user.get_by_username(db, username=username)
    if user is None:
        raise NotFoundError(f"User '{username}' not found")

    stmt = select(TrustedDevice).where(TrustedDevice.user_id == user.id)
    if not include_inactive:
        stmt = stmt.where(TrustedDevice.is_active.is_(True))
    stmt = stmt.order_by(TrustedDevice.created_at.desc(), TrustedDevice.id.desc())

    result = await db.execute(stmt)
    now = now or datetime.now(UTC)
    return [
        TrustedDeviceRead(
            id=d.id,
            device_name=d.device_name,
            last_ip_address=d.last_ip_address,
            last_location=d.last_location,
            created_at=d.created_at,
            last_used_at=d.last_used_at,
            trust_expires_at=d.trust_expires_at,
            is_active=d.is_active,
            expired=d.is_expired(now),
        )
        for d in result.scalars().all()
    ]


async def deactivate_user_devices(db: AsyncSession, user_id: uuid.UUID) -> int:
    """Deactivate every active device of a user. Does not commit."""
    result = await db.execute(
        update(TrustedDevice)
        .where(TrustedDevice.user_id == user_id, TrustedDevice.is_active.is_(True))
        .values(is_active=False)
    )
    return int(getattr(result, "rowcount", 0) or 0)


async def deactivate_expired_devices(db: AsyncSession, now: datetime | None = None) -> int:
    """Deactivate all expired active devices. Returns the number of rows changed."""
    now = now or datetime.now(UTC)
    result = await db.execute(
        update(TrustedDevice)
        .where(TrustedDevice.is_active.is_(True), TrustedDevice.trust_expires_at <= now)
        .values(is_active=False)
    )
    await db.commit()
    count = int(getattr(result, "rowcount", 0) or 0)
    if count:
        logger.info(f"Deactivated {count} expired trusted devices.")
    return count
