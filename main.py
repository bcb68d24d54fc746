"""Entry point: run the scheduling coordinator as a standalone worker process."""

import asyncio
import logging
import signal

from core.config import Settings
from core.logging_config import setup_logging
from scheduler.context import build_context

logger = logging.getLogger("coordinator")


async def main() -> None:
    settings = Settings()
    setup_logging(settings.log_level, settings.log_format)

    ctx = build_context(settings)
    logger.info(
        "Scheduling coordinator starting",
        extra={
            "instance_id": ctx.lease.instance_id,
            "scheduler_enabled": settings.scheduler_enabled,
            "dispatcher": ctx.dispatcher.name,
        },
    )

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    await ctx.init()
    try:
        await ctx.scheduler.start()
        await shutdown.wait()
        logger.info("Shutdown signal received")
    finally:
        await ctx.close()
    logger.info("Scheduling coordinator stopped")


if __name__ == "__main__":
    asyncio.run(main())
