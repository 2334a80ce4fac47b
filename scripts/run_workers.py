#!/usr/bin/env python3
"""
Worker process — runs the notification worker, event worker, delayed-job
promoter and dead letter reviewer until SIGINT/SIGTERM, then drains.

Usage:
    python scripts/run_workers.py
    python scripts/run_workers.py --config config/settings.yaml
    python scripts/run_workers.py --backend redis --log-json
"""
import argparse
import asyncio
import os
import signal
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog
from dotenv import load_dotenv


async def run(args):
    from config.settings import load_settings
    from utils.logging import configure_logging
    from core.pipeline import NotificationPipeline

    settings = load_settings(args.config)
    if args.backend:
        settings.queue.backend = args.backend
    configure_logging(args.log_level or settings.log_level, args.log_json or settings.log_json)

    logger = structlog.get_logger()

    pipeline = NotificationPipeline.from_settings(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await pipeline.start()
    logger.info("workers_running",
                notification_queue=settings.queue.notification_queue,
                event_queue=settings.queue.event_queue,
                min_delivery_interval=settings.worker.min_delivery_interval)

    # Exit on signal, or as soon as a worker dies (broker loss) so a supervisor restarts us
    watched = [t for t in (pipeline.notification_worker.task, pipeline.event_worker.task) if t]
    stop_waiter = asyncio.create_task(stop.wait())
    done, _ = await asyncio.wait([stop_waiter, *watched], return_when=asyncio.FIRST_COMPLETED)
    stop_waiter.cancel()

    exit_code = 0
    for task in done:
        if task is not stop_waiter and task.exception() is not None:
            logger.error("worker_crashed", error=str(task.exception()))
            exit_code = 1

    logger.info("workers_shutting_down")
    await pipeline.stop()
    return exit_code


def main():
    parser = argparse.ArgumentParser(description="Run notification pipeline workers")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--backend", choices=["memory", "redis"], default=None, help="Override queue backend")
    parser.add_argument("--log-level", default=None, help="Override log level")
    parser.add_argument("--log-json", action="store_true", help="Emit JSON logs")
    args = parser.parse_args()

    load_dotenv()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
