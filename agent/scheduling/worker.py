"""
RQ Worker setup and management for protocol sync jobs
"""
import logging
import signal
import time
from datetime import datetime, timezone
from typing import Optional

import redis
from rq import Queue, Worker
from rq.job import Job
from rq_scheduler import Scheduler

from config.redis import get_redis_url
from config.settings import PROTOCOL_QUEUE_NAME, RECHECK_INTERVAL_SECONDS

from .tasks import recheck_active_assignments

logger = logging.getLogger("protocol-worker")

RECHECK_JOB_ID = "protocol-recheck-active-assignments"


class ProtocolSyncWorker:
    """
    Manages the RQ worker that runs assignment and resync jobs, and the
    periodic recheck of active assignments
    """

    def __init__(self, redis_url: str = None, queue_name: str = PROTOCOL_QUEUE_NAME):
        """Initialize the worker with a Redis connection"""
        self.redis_conn = redis.Redis.from_url(redis_url or get_redis_url())
        self.queue = Queue(queue_name, connection=self.redis_conn)
        self.scheduler = Scheduler(queue=self.queue, connection=self.redis_conn)
        self.worker: Optional[Worker] = None
        self.running = False

        # Set up signal handlers for graceful shutdown
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals gracefully"""
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        self.stop()

    def start_worker(self, worker_name: Optional[str] = None):
        """
        Start the RQ worker to process protocol sync jobs

        Args:
            worker_name: Optional name for the worker (defaults to timestamp-based)
        """
        if self.running:
            logger.warning("Worker is already running")
            return

        logger.info(f"Starting protocol sync worker on queue '{self.queue.name}'...")

        self.worker = Worker(
            [self.queue],
            connection=self.redis_conn,
            name=worker_name or f"protocol-worker-{int(time.time())}"
        )

        self.running = True

        try:
            self.worker.work(with_scheduler=True, logging_level=logging.INFO)
        except KeyboardInterrupt:
            logger.info("Worker interrupted by user")
        finally:
            self.running = False
            logger.info("Worker stopped")

    def schedule_recheck(self, interval: int = RECHECK_INTERVAL_SECONDS) -> Job:
        """
        Register the periodic recheck of active assignments with rq-scheduler.

        Any previously registered recheck is cancelled first, so restarting
        the process never stacks duplicate recurring jobs.

        Args:
            interval: Seconds between rechecks
        """
        for scheduled in self.scheduler.get_jobs():
            if scheduled.id == RECHECK_JOB_ID:
                self.scheduler.cancel(scheduled)
                logger.info("Cancelled previously scheduled recheck")

        job = self.scheduler.schedule(
            scheduled_time=datetime.now(timezone.utc),
            func=recheck_active_assignments,
            interval=interval,
            repeat=None,  # Repeat indefinitely
            id=RECHECK_JOB_ID,
            queue_name=self.queue.name,
        )

        logger.info(f"Scheduled recheck of active assignments every {interval}s")
        return job

    def run_scheduler(self, interval: int = RECHECK_INTERVAL_SECONDS):
        """Register the recheck and run the rq-scheduler loop (blocks)"""
        self.schedule_recheck(interval)
        logger.info("Starting rq-scheduler loop")
        self.scheduler.run()

    def stop(self):
        """Stop the worker gracefully"""
        if self.worker and self.running:
            logger.info("Stopping worker...")
            self.worker.request_stop(signal.SIGTERM, None)
            self.running = False
        else:
            logger.info("Worker not running")

    def get_worker_stats(self) -> dict:
        """Get statistics about the worker and queue"""
        return {
            "queue": self.queue.name,
            "queue_size": len(self.queue),
            "failed_jobs": len(self.queue.failed_job_registry),
            "finished_jobs": len(self.queue.finished_job_registry),
            "started_jobs": len(self.queue.started_job_registry),
            "scheduled_jobs": len(self.queue.scheduled_job_registry),
            "worker_count": len(Worker.all(connection=self.redis_conn)),
            "is_running": self.running
        }

    def retry_failed_jobs(self, max_retries: int = 3) -> int:
        """
        Requeue failed jobs that haven't exceeded max retries

        Persistence failures are always safe to retry: every job either
        replaces an instance set atomically or is a no-op on rerun.
        """
        retried_count = 0

        for job_id in self.queue.failed_job_registry.get_job_ids():
            job = Job.fetch(job_id, connection=self.redis_conn)

            retry_count = job.meta.get('retry_count', 0)
            if retry_count >= max_retries:
                logger.warning(f"Job {job_id} has exceeded max retries ({max_retries})")
                continue

            job.meta['retry_count'] = retry_count + 1
            job.save_meta()
            self.queue.failed_job_registry.requeue(job_id)
            retried_count += 1
            logger.info(f"Retried job {job_id} (attempt {retry_count + 1})")

        logger.info(f"Retried {retried_count} failed jobs")
        return retried_count


def _run_scheduler_process(redis_url: Optional[str], interval: int):
    ProtocolSyncWorker(redis_url=redis_url).run_scheduler(interval=interval)


def main():
    """
    Main function for running the worker or the recheck scheduler
    """
    import argparse

    from config.settings import LOG_FORMAT, LOG_LEVEL

    parser = argparse.ArgumentParser(description="Protocol sync worker")
    parser.add_argument(
        "mode",
        choices=["worker", "scheduler", "both"],
        help="Mode to run: worker (process jobs), scheduler (periodic recheck), or both"
    )
    parser.add_argument(
        "--redis-url",
        help="Redis URL (default: from REDIS_URL / REDIS_HOST settings)"
    )
    parser.add_argument(
        "--recheck-interval",
        type=int,
        default=RECHECK_INTERVAL_SECONDS,
        help=f"Seconds between rechecks of active assignments (default: {RECHECK_INTERVAL_SECONDS})"
    )
    parser.add_argument(
        "--worker-name",
        help="Name for the worker process"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=LOG_LEVEL.upper(),
        help="Logging level"
    )

    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, args.log_level.upper()), format=LOG_FORMAT)

    sync_worker = ProtocolSyncWorker(redis_url=args.redis_url)

    if args.mode == "worker":
        sync_worker.start_worker(worker_name=args.worker_name)

    elif args.mode == "scheduler":
        sync_worker.run_scheduler(interval=args.recheck_interval)

    elif args.mode == "both":
        # rq-scheduler loop in a child process, worker in this one
        import multiprocessing

        scheduler_process = multiprocessing.Process(
            target=_run_scheduler_process,
            args=(args.redis_url, args.recheck_interval),
        )
        scheduler_process.start()
        try:
            sync_worker.start_worker(worker_name=args.worker_name)
        finally:
            scheduler_process.terminate()
            scheduler_process.join()


if __name__ == "__main__":
    main()
