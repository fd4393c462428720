"""Retry worker process.

Runs the engine lifespan with the executor named by JOB_EXECUTOR
("module:attribute"), drives hourly metric aggregation, and shuts down on
SIGINT/SIGTERM.

Usage:
    JOB_EXECUTOR=myapp.jobs:AnalysisExecutor python -m analysis_ops.worker
"""

import asyncio
import os
import signal
import socket

import structlog
from prometheus_client import start_http_server

from analysis_ops.config import Settings, get_settings
from analysis_ops.core.lifespan import engine_lifespan
from analysis_ops.engine import AnalysisEngine
from analysis_ops.services.retry_queue import load_executor

logger = structlog.get_logger(__name__)

AGGREGATION_INTERVAL_S = 3600.0


def worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


async def _aggregate_hourly(engine: AnalysisEngine, stop: asyncio.Event) -> None:
    while not stop.is_set():
        try:
            await engine.aggregator.run_hourly_aggregation()
        except Exception as e:
            logger.exception("hourly_aggregation_failed", error=str(e))
        try:
            await asyncio.wait_for(stop.wait(), timeout=AGGREGATION_INTERVAL_S)
        except asyncio.TimeoutError:
            pass


async def run(settings: Settings) -> None:
    if not settings.job_executor:
        raise SystemExit("JOB_EXECUTOR is not set (expected 'module:attribute')")
    executor = load_executor(settings.job_executor)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    if settings.metrics_enabled and settings.metrics_port:
        start_http_server(settings.metrics_port)

    async with engine_lifespan(settings, executor) as engine:
        structlog.contextvars.bind_contextvars(worker_id=worker_id())
        logger.info("worker_started", executor=settings.job_executor)
        aggregation = asyncio.create_task(_aggregate_hourly(engine, stop))
        await stop.wait()
        logger.info("worker_shutdown_requested")
        await aggregation

    logger.info("worker_stopped")


def main() -> None:
    asyncio.run(run(get_settings()))


if __name__ == "__main__":
    main()
