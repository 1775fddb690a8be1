# backend/riskauth/tasks/maintenance.py
"""
Periodic maintenance tasks.

None of these are needed for correctness: OTP validity and device expiry
are both checked when read. They only keep the tables from growing.
"""

import asyncio
import logging

from riskauth.db.session import get_worker_db_session, initialize_worker_db_resources
from riskauth.services import otp_service, trusted_devices
from riskauth.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="riskauth.tasks.maintenance.cleanup_expired_otps")
def cleanup_expired_otps_task() -> int:
    return asyncio.run(cleanup_expired_otps())


async def cleanup_expired_otps() -> int:
    """Delete used and expired one-time passwords."""
    logger.info("Maintenance: Cleaning up used and expired one-time passwords.")
    initialize_worker_db_resources()
    async with get_worker_db_session() as db:
        return await otp_service.cleanup_expired_otps(db)


@celery_app.task(name="riskauth.tasks.maintenance.deactivate_expired_devices")
def deactivate_expired_devices_task() -> int:
    return asyncio.run(deactivate_expired_devices())


async def deactivate_expired_devices() -> int:
    """Flip expired trusted devices to inactive."""
    logger.info("Maintenance: Deactivating expired trusted devices.")
    initialize_worker_db_resources()
    async with get_worker_db_session() as db:
        return await trusted_devices.deactivate_expired_devices(db)
