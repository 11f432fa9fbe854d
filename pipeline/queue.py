"""
Durable job queue for staged report processing.

One ``Job`` row per (report, stage) attempt. Every transition is a
conditional UPDATE guarded by the row's current status, and is taken while
holding the owning report's row lock, so overlapping ticks cannot run two
jobs for one report or advance a report twice.
"""
import logging
from datetime import timedelta

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from .models import Account, Job, Report
from .stages import FIRST_STAGE, Stage, stage_position, successor

logger = logging.getLogger(__name__)

OUTCOME_COMPLETED = "completed"
OUTCOME_RETRYING  = "retrying"
OUTCOME_FAILED    = "failed"


def backoff_delay(attempts):
    """60s, 120s, 240s ... capped at PIPELINE_RETRY_BACKOFF_MAX_SECONDS."""
    base = settings.PIPELINE_RETRY_BACKOFF_SECONDS
    cap = settings.PIPELINE_RETRY_BACKOFF_MAX_SECONDS
    return timedelta(seconds=min(cap, base * 2 ** max(0, attempts - 1)))


def create_report(brand_id, report_date, processing_data=None, *, max_attempts=None, now=None):
    """
    Create the report for (brand, date) and queue its first stage.

    Returns ``(report, created)``; an existing report is returned untouched.
    """
    now = now or timezone.now()
    with transaction.atomic():
        report, created = Report.objects.get_or_create(
            brand_id=brand_id,
            report_date=report_date,
            defaults={"status": Report.STATUS_RUNNING, "stage": FIRST_STAGE},
        )
        if created:
            job = enqueue_job(report, FIRST_STAGE, processing_data or {},
                              max_attempts=max_attempts, scheduled_at=now)
            logger.info(f"🆕 Report {report.pk} created for brand {brand_id} on {report_date}; queued {job.stage} job {job.pk}")
    return report, created


def enqueue_job(report, stage, processing_data, *, attempts=0, max_attempts=None, scheduled_at=None):
    return Job.objects.create(
        report=report,
        stage=Stage(stage).value,
        status=Job.STATUS_PENDING,
        attempts=attempts,
        max_attempts=max_attempts or settings.PIPELINE_MAX_ATTEMPTS,
        scheduled_at=scheduled_at or timezone.now(),
        processing_data=processing_data or {},
    )


def due_job_ids(now, limit):
    return list(
        Job.objects.filter(status=Job.STATUS_PENDING, scheduled_at__lte=now)
        .order_by("scheduled_at")
        .values_list("id", flat=True)[:limit]
    )


def claim_job(job_id, worker_id, now):
    """
    Move one pending job to running, or return None if someone else got it,
    its report already has a running job, or the report has moved on.
    """
    with transaction.atomic():
        report_id = Job.objects.filter(pk=job_id).values_list("report_id", flat=True).first()
        if report_id is None:
            return None
        report = Report.objects.select_for_update().get(pk=report_id)

        stale_reason = None
        if report.status != Report.STATUS_RUNNING:
            stale_reason = f"report is already {report.status}"
        else:
            job_stage = Job.objects.values_list("stage", flat=True).get(pk=job_id)
            if stage_position(job_stage) < stage_position(report.stage):
                stale_reason = f"report already passed stage {job_stage}"
        if stale_reason:
            dropped = Job.objects.filter(pk=job_id, status=Job.STATUS_PENDING).update(
                status=Job.STATUS_FAILED, error_message=stale_reason, completed_at=now, updated_at=now,
            )
            if dropped:
                logger.warning(f"⏩ Dropped job {job_id}: {stale_reason}")
            return None

        if Job.objects.filter(report_id=report_id, status=Job.STATUS_RUNNING).exists():
            logger.info(f"⏩ Report {report_id} already has a running job; leaving {job_id} pending")
            return None

        try:
            with transaction.atomic():
                claimed = Job.objects.filter(
                    pk=job_id, status=Job.STATUS_PENDING, scheduled_at__lte=now,
                ).update(
                    status=Job.STATUS_RUNNING,
                    attempts=F("attempts") + 1,
                    started_at=now,
                    worker_id=worker_id,
                    updated_at=now,
                )
        except IntegrityError:
            logger.warning(f"⏩ Job {job_id} lost the running slot for report {report_id}")
            return None
        if not claimed:
            return None

        Report.objects.filter(pk=report_id).update(current_job_id=job_id, updated_at=now)

    return Job.objects.select_related("report").get(pk=job_id)


def attach_account(job, account):
    Job.objects.filter(pk=job.pk).update(account=account)
    job.account = account


def complete_job(job, data, now=None):
    """
    Mark a running job completed and advance its report one stage.

    Returns the report's new stage, or None if the job was no longer running
    (for example the watchdog failed it while the executor was still busy).
    """
    now = now or timezone.now()
    with transaction.atomic():
        report = Report.objects.select_for_update().get(pk=job.report_id)
        done = Job.objects.filter(pk=job.pk, status=Job.STATUS_RUNNING).update(
            status=Job.STATUS_COMPLETED, completed_at=now, updated_at=now, error_message=None,
        )
        if not done:
            logger.warning(f"⚠️ Job {job.pk} is no longer running; discarding its result")
            return None
        if report.status != Report.STATUS_RUNNING:
            logger.warning(f"⚠️ Report {report.pk} is {report.status}; not advancing past {job.stage}")
            report.current_job_id = None
            report.save(update_fields=["current_job_id", "updated_at"])
            return None

        next_stage = successor(job.stage)
        if stage_position(next_stage) <= stage_position(report.stage):
            # Never move a report backwards
            logger.warning(f"⚠️ Report {report.pk} is at {report.stage}; ignoring completion of {job.stage}")
            report.current_job_id = None
            report.save(update_fields=["current_job_id", "updated_at"])
            return None

        report.stage = next_stage.value
        report.current_job_id = None
        if next_stage == Stage.COMPLETED:
            report.status = Report.STATUS_COMPLETED
            report.completed_at = now
            logger.info(f"🎉 Report {report.pk} completed")
        else:
            next_job = enqueue_job(report, next_stage, data, scheduled_at=now)
            logger.info(f"➡️  Report {report.pk} advanced to {next_stage.value}; queued job {next_job.pk}")
        report.save(update_fields=["stage", "status", "completed_at", "current_job_id", "updated_at"])
    return next_stage


def fail_job(job, error, *, retryable=True, now=None):
    """
    Mark a running job failed. Retry it with backoff while attempts remain,
    otherwise fail the report. Returns the outcome, or None if the job was no
    longer running.
    """
    now = now or timezone.now()
    with transaction.atomic():
        report = Report.objects.select_for_update().get(pk=job.report_id)
        done = Job.objects.filter(pk=job.pk, status=Job.STATUS_RUNNING).update(
            status=Job.STATUS_FAILED, error_message=error, completed_at=now, updated_at=now,
        )
        if not done:
            logger.warning(f"⚠️ Job {job.pk} is no longer running; failure not recorded")
            return None

        attempts, max_attempts, processing_data = Job.objects.values_list(
            "attempts", "max_attempts", "processing_data",
        ).get(pk=job.pk)

        report.current_job_id = None
        report.last_error = error
        fields = ["current_job_id", "last_error", "updated_at"]

        if report.status != Report.STATUS_RUNNING:
            outcome = OUTCOME_FAILED
        elif retryable and attempts < max_attempts:
            retry_at = now + backoff_delay(attempts)
            retry = enqueue_job(report, job.stage, processing_data, attempts=attempts,
                                max_attempts=max_attempts, scheduled_at=retry_at)
            logger.warning(
                f"🔁 Job {job.pk} ({job.stage}) failed attempt {attempts}/{max_attempts}: {error}; "
                f"retry {retry.pk} at {retry_at.isoformat()}"
            )
            outcome = OUTCOME_RETRYING
        else:
            report.status = Report.STATUS_FAILED
            report.failed_stage = job.stage
            report.stage = Stage.FAILED.value
            report.completed_at = now
            fields += ["status", "failed_stage", "stage", "completed_at"]
            logger.error(f"❌ Report {report.pk} failed at {job.stage} after {attempts} attempt(s): {error}")
            outcome = OUTCOME_FAILED

        report.save(update_fields=fields)
    return outcome


def defer_job(job, wait_minutes, now=None):
    """Put a claimed job back without spending an attempt (no account was free)."""
    now = now or timezone.now()
    with transaction.atomic():
        deferred = Job.objects.filter(pk=job.pk, status=Job.STATUS_RUNNING).update(
            status=Job.STATUS_PENDING,
            attempts=F("attempts") - 1,
            scheduled_at=now + timedelta(minutes=wait_minutes),
            started_at=None,
            worker_id=None,
            account=None,
            updated_at=now,
        )
        Report.objects.filter(pk=job.report_id, current_job_id=job.pk).update(current_job_id=None, updated_at=now)
    if deferred:
        logger.info(f"⏳ Job {job.pk} deferred {wait_minutes} min waiting for an account")
    return bool(deferred)


def record_stage_counters(report_id, stage, counters, **totals):
    """
    Overwrite one stage's counters (and any report total fields) in place.

    Counters are recomputed from stored rows by each executor, so re-running a
    stage replaces its numbers instead of adding to them.
    """
    with transaction.atomic():
        report = Report.objects.select_for_update().get(pk=report_id)
        report.stage_counters = {**(report.stage_counters or {}), Stage(stage).value: counters}
        for name, value in totals.items():
            setattr(report, name, value)
        report.save(update_fields=["stage_counters", "updated_at", *totals])
    return report


def recover_stale_jobs(now=None, stale_minutes=None):
    """Fail running jobs whose worker went away; the retry policy takes it from there."""
    now = now or timezone.now()
    stale_minutes = stale_minutes or settings.PIPELINE_STALE_JOB_MINUTES
    cutoff = now - timedelta(minutes=stale_minutes)

    recovered = []
    for job in Job.objects.filter(status=Job.STATUS_RUNNING, started_at__lt=cutoff):
        age_minutes = (now - job.started_at).total_seconds() / 60
        error = f"watchdog: stuck running > {stale_minutes}m (age={age_minutes:.0f}m)"
        outcome = fail_job(job, error, retryable=True, now=now)
        if job.account_id:
            Account.objects.filter(pk=job.account_id, leased_by=str(job.pk)).update(
                leased_until=None, leased_by=None,
            )
        recovered.append({
            "job_id": str(job.pk),
            "report_id": str(job.report_id),
            "stage": job.stage,
            "age_minutes": round(age_minutes),
            "outcome": outcome,
        })

    if recovered:
        logger.warning(f"🐶 Watchdog recovered {len(recovered)} stuck job(s)")
    return recovered


def cleanup_completed_jobs(now=None, retention_days=None):
    now = now or timezone.now()
    retention_days = retention_days or settings.PIPELINE_JOB_RETENTION_DAYS
    cutoff = now - timedelta(days=retention_days)
    deleted, _ = Job.objects.filter(status=Job.STATUS_COMPLETED, completed_at__lt=cutoff).delete()
    if deleted:
        logger.info(f"🧹 Deleted {deleted} completed job(s) older than {retention_days} days")
    return deleted
