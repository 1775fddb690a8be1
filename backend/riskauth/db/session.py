# backend/riskauth/db/session.py
import asyncio
import contextlib
import logging
from collections.abc import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from riskauth.core.config import settings

logger = logging.getLogger(__name__)

# --- Asynchronous Engine and Session Setup (web process) ---
async_engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def _redact_url(db_url: str) -> str:
    return db_url.split("@")[0] + "@..." if "@" in db_url else db_url


def _build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        class_=AsyncSession,
    )


def initialize_db_resources(db_url: str | None = None) -> None:
    """
    Initialize the async engine and session maker.
    Called by the application's startup hook.
    """
    global async_engine, AsyncSessionLocal

    if async_engine is not None:
        logger.info("Asynchronous database resources already initialized.")
        return

    db_url_str = db_url or settings.DATABASE_URL
    if not db_url_str:
        logger.critical("CRITICAL: DATABASE_URL is empty.")
        raise ValueError("DATABASE_URL is empty or None.")

    logger.info("Initializing asynchronous database engine and session maker.")
    try:
        engine_kwargs: dict = {"echo": settings.DB_ECHO}
        if not db_url_str.startswith("sqlite"):
            engine_kwargs["pool_pre_ping"] = True
        current_engine = create_async_engine(db_url_str, **engine_kwargs)
        AsyncSessionLocal = _build_session_factory(current_engine)
        async_engine = current_engine
        logger.info(
            f"Asynchronous database engine ({_redact_url(db_url_str)}) and session maker configured successfully."
        )
    except Exception as e:
        logger.critical(
            f"CRITICAL: Failed to initialize asynchronous database engine: {e}", exc_info=True
        )
        async_engine = None
        AsyncSessionLocal = None
        raise RuntimeError(f"Failed to initialize asynchronous database engine: {e}") from e


async def dispose_db_resources() -> None:
    global async_engine, AsyncSessionLocal
    if async_engine:
        logger.info("Disposing asynchronous database engine.")
        await async_engine.dispose()
        async_engine = None
        AsyncSessionLocal = None
    else:
        logger.info("No asynchronous database engine to dispose.")


async def check_db_connection() -> None:
    """Run a trivial query so startup fails fast when the database is unreachable."""
    if async_engine is None:
        raise RuntimeError("Database engine is not initialized.")
    async with async_engine.connect() as connection:
        await connection.execute(text("SELECT 1"))
    logger.info("Database connection successful.")


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    if AsyncSessionLocal is None:
        logger.critical("AsyncSessionLocal is not initialized.")
        raise RuntimeError(
            "AsyncSessionLocal is not initialized. Ensure DB resources are initialized on startup."
        )
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            logger.error("Async DB session rolled back due to an exception.", exc_info=True)
            raise


# --- Resources for Celery Worker ---
worker_async_engine: AsyncEngine | None = None
WorkerSessionLocal: async_sessionmaker[AsyncSession] | None = None


def initialize_worker_db_resources() -> None:
    global worker_async_engine, WorkerSessionLocal
    if worker_async_engine is not None:
        logger.info(
            "CELERY_WORKER: Database engine and session factory already initialized for this process."
        )
        return

    logger.info("CELERY_WORKER: Initializing database engine and session factory.")
    try:
        current_worker_engine = create_async_engine(settings.DATABASE_URL, echo=settings.DB_ECHO)
        WorkerSessionLocal = _build_session_factory(current_worker_engine)
        worker_async_engine = current_worker_engine
        logger.info(
            f"CELERY_WORKER: Database engine ({_redact_url(settings.DATABASE_URL)}) and session factory initialized."
        )
    except Exception as e:
        logger.critical(
            f"CRITICAL: CELERY_WORKER: Failed to initialize database engine: {e}", exc_info=True
        )
        worker_async_engine = None
        WorkerSessionLocal = None
        raise RuntimeError(f"CELERY_WORKER: Failed to initialize database engine: {e}") from e


def dispose_worker_db_resources_sync() -> None:
    global worker_async_engine, WorkerSessionLocal
    if not worker_async_engine:
        logger.info("CELERY_WORKER: No database engine to dispose for this worker process.")
        return

    logger.info("CELERY_WORKER: Disposing database engine (sync call).")
    try:
        asyncio.run(worker_async_engine.dispose())
    except RuntimeError as e:
        logger.warning(
            f"CELERY_WORKER: asyncio.run() failed during dispose: {e}. Common during shutdown."
        )
    finally:
        worker_async_engine = None
        WorkerSessionLocal = None


@contextlib.asynccontextmanager
async def get_worker_db_session() -> AsyncGenerator[AsyncSession, None]:
    if WorkerSessionLocal is None:
        logger.critical("CELERY_WORKER: WorkerSessionLocal not initialized!")
        raise RuntimeError(
            "Database session factory (WorkerSessionLocal) not initialized for Celery worker."
        )

    # AsyncSession's context manager rolls back and closes on error; commits stay explicit.
    async with WorkerSessionLocal() as session:
        try:
            yield session
        except Exception:
            logger.error(
                "CELERY_WORKER: Exception occurred in code using get_worker_db_session.",
                exc_info=True,
            )
            raise
