"""
Housekeeping worker: deletes expired rate limit events and old metric keys.

    python -m pastebin.worker.main           # loop forever
    python -m pastebin.worker.main --once    # single pass
"""
import argparse
import asyncio
import logging
import sys
import traceback
from typing import Optional

import structlog

from pastebin.core.config import get_settings
from pastebin.schemas.rate_limit import CleanupResult
from pastebin.services.monitoring import RateLimitMonitor
from pastebin.services.store import build_store, close_store

logger = structlog.get_logger()


async def run_cleanup(monitor: RateLimitMonitor) -> CleanupResult:
    result = await monitor.cleanup()
    logger.info("worker.cleanup_done", events=result.events, metrics=result.metrics)
    return result


async def main_loop(interval_seconds: int, once: bool = False, monitor: Optional[RateLimitMonitor] = None) -> None:
    owns_store = monitor is None
    if monitor is None:
        monitor = RateLimitMonitor(build_store(get_settings()))
    logger.info("worker.start", msg="cleanup worker started", interval=interval_seconds, once=once)
    try:
        while True:
            try:
                await run_cleanup(monitor)
            except Exception as e:
                logger.error("worker.cleanup_error", error=str(e), traceback=traceback.format_exc())
            if once:
                return
            await asyncio.sleep(interval_seconds)
    finally:
        if owns_store:
            await close_store(monitor.store)


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Rate limit housekeeping worker")
    parser.add_argument("--once", action="store_true", help="run a single cleanup pass and exit")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    settings = get_settings()
    asyncio.run(main_loop(settings.rate_limit_cleanup_interval_seconds, once=args.once))


if __name__ == "__main__":
    main()
