# backend/riskauth/tasks/celery_app.py
import logging

from celery import Celery
from celery.signals import worker_process_init, worker_process_shutdown

from riskauth.core.config import settings
from riskauth.db.session import dispose_worker_db_resources_sync, initialize_worker_db_resources

logger = logging.getLogger("riskauth.tasks.celery_app")

celery_app = Celery(
    "riskauth",
    broker=str(settings.CELERY_BROKER_URL),
    backend=str(settings.CELERY_RESULT_BACKEND),
    # Modules imported when the worker starts so their tasks are registered
    include=["riskauth.tasks.maintenance"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.TIMEZONE,
    enable_utc=True,
    broker_connection_retry_on_startup=True,
    task_track_started=True,
    beat_schedule={
        "cleanup-expired-otps": {
            "task": "riskauth.tasks.maintenance.cleanup_expired_otps",
            "schedule": settings.MAINTENANCE_INTERVAL_MINUTES * 60.0,
        },
        "deactivate-expired-trusted-devices": {
            "task": "riskauth.tasks.maintenance.deactivate_expired_devices",
            "schedule": settings.MAINTENANCE_INTERVAL_MINUTES * 60.0,
        },
    },
)

# --- Worker Process Lifecycle Signal Handlers ---


@worker_process_init.connect(weak=False)
def init_worker_process_signal(**_kwargs):
    """Signal handler for when a Celery worker process starts."""
    logger.info("CELERY_WORKER_PROCESS_INIT: Initializing DB resources.")
    initialize_worker_db_resources()


@worker_process_shutdown.connect(weak=False)
def shutdown_worker_process_signal(**_kwargs):
    """Signal handler for when a Celery worker process shuts down."""
    logger.info("CELERY_WORKER_PROCESS_SHUTDOWN: Disposing DB resources.")
    dispose_worker_db_resources_sync()


@celery_app.task(name="riskauth.tasks.health_check_celery")
def health_check_celery_task() -> str:
    logger.info("Celery health check task executed.")
    return "Celery worker is healthy."
