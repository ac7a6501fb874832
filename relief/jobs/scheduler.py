import logging
import os
import time

from rq import Queue

from ..core.logging_config import configure_logging
from ..integrations.redis_client import redis_conn
from ..integrations.rq_queue import q
from ..settings import settings
from .run import reconcile_sync_wrapper

logger = logging.getLogger(__name__)

SCHEDULER_HEARTBEAT_KEY = "scheduler:heartbeat"
RECONCILE_JOB_ID = "reconcile-pending-payouts"


def _claim_heartbeat(conn, scheduler_id: str, ttl_seconds: int) -> None:
    claimed = conn.set(SCHEDULER_HEARTBEAT_KEY, scheduler_id, nx=True, ex=ttl_seconds)
    if claimed:
        return
    existing = conn.get(SCHEDULER_HEARTBEAT_KEY)
    existing_id = existing.decode() if existing else "unknown"
    if existing_id != scheduler_id:
        logger.warning("scheduler_multiple_detected existing=%s current=%s", existing_id, scheduler_id)
    conn.set(SCHEDULER_HEARTBEAT_KEY, scheduler_id, ex=ttl_seconds)


def enqueue_reconciliation(queue: Queue) -> str | None:
    """Queue one reconciliation pass unless one is already waiting."""
    if RECONCILE_JOB_ID in queue.job_ids:
        logger.info("reconcile_skipped reason=already_queued")
        return None
    job = queue.enqueue(
        reconcile_sync_wrapper,
        job_id=RECONCILE_JOB_ID,
        job_timeout=settings.PAYOUT_JOB_TIMEOUT_SECONDS,
    )
    logger.info("reconcile_enqueued id=%s", job.id)
    return job.id


def tick(queue: Queue, conn, scheduler_id: str, interval: int) -> str | None:
    _claim_heartbeat(conn, scheduler_id, max(interval * 2, 60))
    if not settings.RECONCILE_ENABLED:
        return None
    return enqueue_reconciliation(queue)


def main() -> None:
    configure_logging()
    interval = max(30, settings.RECONCILE_INTERVAL_SECONDS)
    scheduler_id = f"{os.getpid()}:{int(time.time())}"
    logger.info("scheduler_started id=%s interval=%s", scheduler_id, interval)
    while True:
        try:
            tick(q, redis_conn, scheduler_id, interval)
        except Exception:
            logger.exception("reconcile_enqueue_failed")
        time.sleep(interval)


if __name__ == "__main__":
    main()
