#!/usr/bin/env python3
"""
Run the WhatsApp delivery worker.

Usage:
  python scripts/run_worker.py
  python scripts/run_worker.py --once
  python scripts/run_worker.py --max-jobs 100 --stop-when-empty
"""
import argparse
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

load_dotenv()

import structlog

from simaset.config import settings
from simaset.db import SessionLocal
from simaset.logging import setup_logging
from simaset.services import delivery  # noqa: F401  registers SendWhatsAppNotification
from simaset.services.fonnte import FonnteClient
from simaset.services.queue import Worker


logger = structlog.get_logger("simaset.worker")


def main():
    parser = argparse.ArgumentParser(description="Process queued WhatsApp notifications")
    parser.add_argument("--queue", default=settings.whatsapp_queue, help="Queue to consume")
    parser.add_argument("--once", action="store_true", help="Process at most one job and exit")
    parser.add_argument("--max-jobs", type=int, help="Exit after processing this many jobs")
    parser.add_argument("--stop-when-empty", action="store_true", help="Exit when no job is due")
    parser.add_argument("--sleep", type=float, default=settings.worker_idle_sleep_seconds, help="Idle poll interval in seconds")

    args = parser.parse_args()

    setup_logging()
    worker = Worker(SessionLocal, queue=args.queue, gateway=FonnteClient())
    logger.info("worker_started", queue=args.queue)

    if args.once:
        worker.run_once()
        return
    try:
        processed = worker.work(max_jobs=args.max_jobs, stop_when_empty=args.stop_when_empty, idle_sleep=args.sleep)
    except KeyboardInterrupt:
        logger.info("worker_interrupted")
        return
    logger.info("worker_stopped", processed=processed)


if __name__ == "__main__":
    main()
