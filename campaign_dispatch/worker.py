"""
Campaign dispatch worker.

Usage:
    python -m campaign_dispatch.worker

Reattaches in-flight campaigns, runs the recovery sweep and keeps every
campaign queue alive until SIGINT/SIGTERM. Queues are halted on shutdown
without changing campaign status so the next process picks them up.
"""

import asyncio
import contextlib
import logging
import signal

from campaign_dispatch.core.config import settings
from campaign_dispatch.core.structured_logging import build_log_context
from campaign_dispatch.db.session import SessionLocal
from campaign_dispatch.services.dispatch_engine import DispatchEngine

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


async def run_worker(stop_event: asyncio.Event | None = None) -> None:
    """Run the dispatch engine until ``stop_event`` is set or a signal arrives."""
    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on every platform; KeyboardInterrupt still ends the run
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop_event.set)

    engine = DispatchEngine(SessionLocal)
    logger.info(
        "Worker starting (env: %s, transport: %s, batch size: %d)",
        settings.ENV,
        settings.EMAIL_TRANSPORT,
        engine.writer.batch_size,
    )
    report = await engine.start()
    if report is not None and report.failed:
        for campaign_id, error in report.failed.items():
            logger.warning(
                "Campaign could not be recovered: %s",
                error,
                extra=build_log_context(campaign_id=campaign_id, source="worker", action="recover"),
            )
    try:
        await stop_event.wait()
    finally:
        await engine.shutdown()


def main() -> None:
    """Entry point for the worker."""
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")
    except Exception:
        logger.exception(
            "Worker crashed",
            extra=build_log_context(source="worker", action="main"),
        )
        raise


if __name__ == "__main__":
    main()
