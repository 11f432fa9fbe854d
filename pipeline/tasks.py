import logging

from celery import shared_task
from django.conf import settings
from redis.exceptions import LockError

from . import queue
from .processor import JobProcessor
from .redis_client import get_client
from .utils import log_conditionally

logger = logging.getLogger(__name__)

TICK_LOCK_NAME = "pipeline:job_processor"


@shared_task
def process_pending_jobs():
    """
    One polling tick. Ticks never overlap: a tick that finds the lock taken
    returns immediately and leaves the due jobs for the next one.
    """
    lock = get_client().lock(TICK_LOCK_NAME, timeout=settings.PIPELINE_TICK_LOCK_TIMEOUT_SECONDS)
    if not lock.acquire(blocking=False):
        logger.warning("⏳ Previous tick still running; skipping this one")
        return {"skipped": True, "results": []}

    log_conditionally(logger, logging.INFO, "🔒 Tick lock acquired")
    try:
        results = JobProcessor().tick()
    finally:
        try:
            lock.release()
            log_conditionally(logger, logging.INFO, "🔓 Tick lock released")
        except LockError:
            # Expired under a very long tick; the next tick can already run
            logger.warning("⚠️ Tick lock expired before release")
    return {"skipped": False, "results": results}


@shared_task
def recover_stale_jobs():
    return queue.recover_stale_jobs()


@shared_task
def cleanup_completed_jobs():
    return queue.cleanup_completed_jobs()
