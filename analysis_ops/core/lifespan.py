"""Engine lifespan: store pool, observability and processor startup/shutdown."""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import asyncpg
import structlog

from analysis_ops import __version__
from analysis_ops.config import Settings
from analysis_ops.core.logging import configure_logging
from analysis_ops.core.sentry import init_sentry
from analysis_ops.engine import AnalysisEngine
from analysis_ops.services.retry_queue import JobExecutor

logger = structlog.get_logger(__name__)


async def create_pool(settings: Settings) -> Optional[asyncpg.Pool]:
    """Create the asyncpg pool, or None when the store is unreachable.

    The engine keeps running without a pool; store calls degrade.
    """
    if not settings.database_url:
        logger.warning("database_not_configured", hint="set DATABASE_URL")
        return None

    try:
        pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            timeout=10,  # Short connection timeout to avoid blocking startup
            command_timeout=settings.db_command_timeout_s,
            statement_cache_size=0,  # pgbouncer transaction mode
        )
    except Exception as e:
        logger.error("database_pool_init_failed", error=str(e), exc_info=True)
        return None

    logger.info(
        "database_pool_initialized",
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
    )
    return pool


@asynccontextmanager
async def engine_lifespan(
    settings: Settings, executor: Optional[JobExecutor] = None
) -> AsyncIterator[AnalysisEngine]:
    """Build, start and tear down an engine.

    Usage:
        async with engine_lifespan(get_settings(), executor) as engine:
            await engine.report_job_failure(...)
    """
    configure_logging(settings)
    init_sentry(settings)
    logger.info(
        "engine_starting",
        version=__version__,
        service=settings.service_name,
        store_backend=settings.store_backend,
        processor_enabled=settings.retry_processor_enabled and executor is not None,
    )

    pool = None
    if settings.store_backend == "postgres":
        pool = await create_pool(settings)

    engine = AnalysisEngine.from_settings(settings, executor=executor, pool=pool)
    await engine.start()
    try:
        yield engine
    finally:
        logger.info("engine_stopping")
        await engine.stop()
        if pool is not None:
            await pool.close()
            logger.info("database_pool_closed")
