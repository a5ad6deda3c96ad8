"""
Background worker: runs the recurring schedule and processes the job queues.

    python -m sha_claims.worker                 # all queues
    python -m sha_claims.worker --queue claims  # one queue only

Several workers may run against the same database; each job is reserved by
exactly one of them.  SIGTERM or SIGINT stops the worker after the job it is
running finishes.
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import List, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from sha_claims.config import settings
from sha_claims.models.database import SessionLocal, init_db
from sha_claims.services import jobs
from sha_claims.services.queue import QUEUES, JobQueue

logger = logging.getLogger(__name__)


class Worker:
    def __init__(
        self,
        queues: Optional[List[JobQueue]] = None,
        factory=None,
        poll_interval: Optional[float] = None,
        schedule: bool = True,
    ) -> None:
        self.queues = queues or list(QUEUES.values())
        self.factory = factory or SessionLocal
        self.poll_interval = settings.worker_poll_interval if poll_interval is None else poll_interval
        self.scheduler: Optional[BackgroundScheduler] = BackgroundScheduler(timezone="UTC") if schedule else None
        self._stop = threading.Event()

    def run_once(self) -> int:
        """Run at most one due job from each queue; returns how many ran."""
        ran = 0
        for queue in self.queues:
            if self._stop.is_set():
                break
            try:
                if queue.run_next(self.factory) is not None:
                    ran += 1
            except Exception:
                logger.exception("Error polling the %s queue", queue.name)
        return ran

    def run(self) -> None:
        if self.scheduler is not None:
            jobs.schedule_recurring_jobs(self.scheduler, self.factory)
            self.scheduler.start()
        logger.info("Worker started on queues: %s", ", ".join(q.name for q in self.queues))
        try:
            while not self._stop.is_set():
                if self.run_once() == 0:
                    self._stop.wait(self.poll_interval)
        finally:
            if self.scheduler is not None and self.scheduler.running:
                self.scheduler.shutdown(wait=False)
            logger.info("Worker stopped")

    def stop(self, *_) -> None:
        logger.info("Shutting down worker...")
        self._stop.set()


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="SHA claims background worker")
    parser.add_argument(
        "--queue", "-q",
        action="append",
        choices=sorted(QUEUES),
        help="Queue to process (repeatable, default: all queues)"
    )
    parser.add_argument(
        "--no-schedule",
        action="store_true",
        help="Do not enqueue the recurring jobs from this worker"
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()

    worker = Worker(
        queues=[QUEUES[name] for name in args.queue] if args.queue else None,
        schedule=not args.no_schedule,
    )
    signal.signal(signal.SIGTERM, worker.stop)
    signal.signal(signal.SIGINT, worker.stop)
    worker.run()


if __name__ == "__main__":
    main()
