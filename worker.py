#!/usr/bin/env python
"""
Scheduler Worker

Standalone process running the background jobs when the API runs with
SCHEDULER_ENABLED=false (e.g. several API replicas, one worker):
1. Bokun reconciliation
2. Webhook retries and stale-pending recovery
3. Message retries
4. Unsent-ticket reminders to admins
5. Daily maintenance (expired download links, booking retention)

Run with:
    python worker.py

Or for a single pass of one job:
    python worker.py --once reconciliation
"""

import argparse
import asyncio
import logging
import signal
import sys

from ticketdesk.config import get_settings
from ticketdesk.database import create_tables
from ticketdesk.services.scheduler import build_scheduler
from ticketdesk.utils.logging_config import setup_logging

logger = logging.getLogger("worker")


async def run_worker():
    """Run the scheduler until SIGINT/SIGTERM"""
    settings = get_settings()
    scheduler = build_scheduler(settings)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    logger.info("=" * 50)
    logger.info("Starting Scheduler Worker")
    logger.info(f"Jobs: {', '.join(scheduler.jobs)}")
    logger.info(f"Timezone: {settings.scheduler_timezone}")
    logger.info("=" * 50)

    scheduler.start()
    await stop_event.wait()
    scheduler.shutdown()
    # In-flight job threads are joined when asyncio.run closes the loop
    logger.info("Worker shutdown complete")


def run_once(job_name: str):
    scheduler = build_scheduler(get_settings())
    if job_name not in scheduler.jobs:
        logger.error(f"Unknown job '{job_name}'. Jobs: {', '.join(scheduler.jobs)}")
        sys.exit(2)
    result = scheduler.run_or_raise(job_name)
    report = result.as_dict() if hasattr(result, "as_dict") else result
    logger.info(f"{job_name}: {report}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Ticket desk background worker")
    parser.add_argument("--once", metavar="JOB", help="run one job once and exit")
    args = parser.parse_args()

    settings = get_settings()
    setup_logging(level=settings.log_level, json_format=settings.is_production, include_uvicorn=False)
    create_tables()

    try:
        if args.once:
            run_once(args.once)
        else:
            asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    except Exception as e:
        logger.critical(f"Worker crashed: {e}")
        sys.exit(1)
