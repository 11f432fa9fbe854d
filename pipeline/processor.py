"""
Job processor: the polling tick that moves reports through their stages.

Each tick claims up to ``PIPELINE_BATCH_LIMIT`` due jobs and runs them one
after another:

1. claim the job (atomic, see ``queue.claim_job``)
2. for stages that drive a browser account, lease one from the capacity
   scheduler, or put the job back with the scheduler's wait estimate
3. run the stage executor under the per-job deadline
4. advance the report, or record the failure and let the retry policy decide
"""
import logging
import os
import socket
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import timedelta

from django.conf import settings
from django.db import connections
from django.utils import timezone

from . import queue
from .capacity import CapacityScheduler
from .executors import NonRetryableStageError, StageResult, StageTimeout, default_executors, validate_registry
from .stages import Stage, requires_account

logger = logging.getLogger(__name__)

RESULT_COMPLETED = "completed"
RESULT_RETRYING  = "retrying"
RESULT_FAILED    = "failed"
RESULT_DEFERRED  = "deferred"
RESULT_SKIPPED   = "skipped"

_UNSET = object()


def default_worker_id():
    return f"{socket.gethostname()}:{os.getpid()}"


class JobProcessor:
    def __init__(self, executors=None, scheduler=None, *, batch_limit=None, job_timeout=_UNSET, worker_id=None):
        self.executors = validate_registry(executors if executors is not None else default_executors())
        self.scheduler = scheduler or CapacityScheduler()
        self.batch_limit = batch_limit or settings.PIPELINE_BATCH_LIMIT
        if job_timeout is _UNSET:
            job_timeout = settings.PIPELINE_JOB_TIMEOUT_SECONDS
        self.job_timeout = job_timeout or None
        self.worker_id = worker_id or default_worker_id()

    def tick(self, now=None):
        now = now or timezone.now()
        job_ids = queue.due_job_ids(now, self.batch_limit)
        if not job_ids:
            logger.info("ℹ️ No pending jobs")
            return []

        logger.info(f"📋 Found {len(job_ids)} pending job(s)")
        results = [self.process(job_id) for job_id in job_ids]
        logger.info(f"🎉 Processed {len(results)} job(s): {[r['status'] for r in results]}")
        return results

    def process(self, job_id):
        job = queue.claim_job(job_id, self.worker_id, timezone.now())
        if job is None:
            return {"job_id": str(job_id), "status": RESULT_SKIPPED}

        logger.info(f"🚀 Processing job {job.pk} ({job.stage}) for report {job.report_id}, attempt {job.attempts}")

        account = None
        if requires_account(job.stage):
            allocation = self.scheduler.try_allocate(
                timezone.now(), holder=str(job.pk), lease=self._account_lease(),
            )
            if allocation.busy:
                queue.defer_job(job, allocation.estimated_wait_minutes)
                return {
                    "job_id": str(job.pk),
                    "stage": job.stage,
                    "status": RESULT_DEFERRED,
                    "estimated_wait_minutes": allocation.estimated_wait_minutes,
                }
            account = allocation.account
            queue.attach_account(job, account)

        result = self._execute(job, account)

        if result.success:
            next_stage = queue.complete_job(job, result.data)
            logger.info(f"✅ Job {job.pk} completed")
            return {
                "job_id": str(job.pk),
                "stage": job.stage,
                "status": RESULT_COMPLETED,
                "next_stage": next_stage.value if next_stage else None,
            }

        outcome = queue.fail_job(job, result.error or "Unknown processing error", retryable=result.retryable)
        logger.warning(f"❌ Job {job.pk} failed: {result.error}")
        return {
            "job_id": str(job.pk),
            "stage": job.stage,
            "status": RESULT_RETRYING if outcome == queue.OUTCOME_RETRYING else RESULT_FAILED,
            "error": result.error,
        }

    def _execute(self, job, account):
        executor = self.executors[Stage(job.stage)]
        holder = str(job.pk)

        def release_account():
            if account is None:
                return
            try:
                self.scheduler.release(account.pk, holder)
            except Exception as e:
                logger.warning(f"⚠️ Could not release account {account.pk} for job {job.pk}: {e}")

        try:
            result = self._call_with_deadline(
                executor.execute, job.report_id, job.pk, job.processing_data or {},
                account=account, on_finish=release_account,
            )
        except StageTimeout as e:
            if account is not None:
                # The abandoned thread still drives the account; it releases the lease when it returns
                self.scheduler.hold(
                    account.pk, holder,
                    timezone.now() + timedelta(minutes=settings.PIPELINE_STALE_JOB_MINUTES),
                )
            return StageResult.failed(str(e), retryable=True)
        except NonRetryableStageError as e:
            return StageResult.failed(str(e), retryable=False)
        except Exception as e:
            logger.exception(f"❌ Stage {job.stage} raised for job {job.pk}")
            return StageResult.failed(str(e) or e.__class__.__name__, retryable=True)

        if not isinstance(result, StageResult):
            return StageResult.failed(f"executor for {job.stage} returned {type(result).__name__}", retryable=False)
        return result

    def _call_with_deadline(self, fn, *args, on_finish=None, **kwargs):
        """
        Run ``fn`` with the per-job deadline. ``on_finish`` runs once ``fn``
        has really returned, which after a timeout is on the abandoned thread.
        """
        if not self.job_timeout:
            try:
                return fn(*args, **kwargs)
            finally:
                if on_finish is not None:
                    on_finish()

        def run():
            try:
                return fn(*args, **kwargs)
            finally:
                try:
                    if on_finish is not None:
                        on_finish()
                finally:
                    connections.close_all()

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="stage")
        future = pool.submit(run)
        try:
            return future.result(timeout=self.job_timeout)
        except FutureTimeout:
            # The thread cannot be killed; stop waiting and let the retry policy run
            raise StageTimeout(f"stage exceeded {self.job_timeout}s deadline") from None
        finally:
            pool.shutdown(wait=False)

    def _account_lease(self):
        # Hold the account at least as long as the executor may run
        minutes = settings.SCHEDULER_LEASE_MINUTES
        if self.job_timeout:
            minutes = max(minutes, self.job_timeout / 60 + 1)
        return timedelta(minutes=minutes)
