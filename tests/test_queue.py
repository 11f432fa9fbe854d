from datetime import timedelta

import pytest
from django.db import IntegrityError, transaction
from django.utils import timezone

from pipeline import queue
from pipeline.models import Job, Report
from pipeline.stages import Stage


@pytest.fixture
def report(brand_id, today):
    report, _ = queue.create_report(brand_id, today, {"brand_name": "Acme", "prompts": ["best crm?"]})
    return report


def _claim_first(report):
    job = report.jobs.get(status=Job.STATUS_PENDING)
    return queue.claim_job(job.pk, "worker-1", timezone.now())


@pytest.mark.django_db
def test_create_report_queues_first_stage(report):
    assert report.status == Report.STATUS_RUNNING
    assert report.stage == Stage.QUERY
    job = report.jobs.get()
    assert job.stage == Stage.QUERY
    assert job.status == Job.STATUS_PENDING
    assert job.processing_data["brand_name"] == "Acme"


@pytest.mark.django_db
def test_create_report_is_idempotent_per_brand_and_day(report, brand_id, today):
    again, created = queue.create_report(brand_id, today, {"prompts": ["other"]})

    assert not created
    assert again.pk == report.pk
    assert Job.objects.filter(report=report).count() == 1


@pytest.mark.django_db
def test_backoff_doubles_and_caps(settings):
    assert queue.backoff_delay(1) == timedelta(seconds=60)
    assert queue.backoff_delay(2) == timedelta(seconds=120)
    assert queue.backoff_delay(3) == timedelta(seconds=240)
    assert queue.backoff_delay(10) == timedelta(seconds=1800)


@pytest.mark.django_db
def test_claim_marks_running_and_counts_attempt(report):
    job = _claim_first(report)

    assert job.status == Job.STATUS_RUNNING
    assert job.attempts == 1
    assert job.worker_id == "worker-1"
    report.refresh_from_db()
    assert report.current_job_id == job.pk


@pytest.mark.django_db
def test_second_claim_of_same_job_loses(report):
    job = report.jobs.get()
    assert queue.claim_job(job.pk, "worker-1", timezone.now()) is not None
    assert queue.claim_job(job.pk, "worker-2", timezone.now()) is None


@pytest.mark.django_db
def test_report_never_has_two_running_jobs(report):
    original = report.jobs.get()
    extra = queue.enqueue_job(report, Stage.QUERY, {})
    assert queue.claim_job(original.pk, "worker-1", timezone.now()) is not None

    assert queue.claim_job(extra.pk, "worker-2", timezone.now()) is None
    assert report.jobs.filter(status=Job.STATUS_RUNNING).count() == 1


@pytest.mark.django_db
def test_database_rejects_second_running_job(report):
    _claim_first(report)

    with pytest.raises(IntegrityError), transaction.atomic():
        Job.objects.create(report=report, stage=Stage.QUERY, status=Job.STATUS_RUNNING)


@pytest.mark.django_db
def test_claim_does_not_take_future_jobs(report):
    job = report.jobs.get()
    Job.objects.filter(pk=job.pk).update(scheduled_at=timezone.now() + timedelta(minutes=5))

    assert queue.due_job_ids(timezone.now(), 5) == []
    assert queue.claim_job(job.pk, "worker-1", timezone.now()) is None


@pytest.mark.django_db
def test_claim_drops_jobs_of_finished_reports(report):
    job = report.jobs.get()
    Report.objects.filter(pk=report.pk).update(status=Report.STATUS_FAILED, stage=Stage.FAILED)

    assert queue.claim_job(job.pk, "worker-1", timezone.now()) is None
    job.refresh_from_db()
    assert job.status == Job.STATUS_FAILED
    assert "already failed" in job.error_message


@pytest.mark.django_db
def test_complete_advances_one_stage_and_hands_data_on(report):
    job = _claim_first(report)

    next_stage = queue.complete_job(job, {"citation_urls": ["https://a.example"]})

    assert next_stage == Stage.CLASSIFY
    report.refresh_from_db()
    assert report.stage == Stage.CLASSIFY
    assert report.current_job_id is None
    nxt = report.jobs.get(status=Job.STATUS_PENDING)
    assert nxt.stage == Stage.CLASSIFY
    assert nxt.attempts == 0
    assert nxt.processing_data == {"citation_urls": ["https://a.example"]}


@pytest.mark.django_db
def test_completing_last_stage_finishes_report(report):
    Report.objects.filter(pk=report.pk).update(stage=Stage.EXTRACT)
    Job.objects.filter(report=report).update(stage=Stage.EXTRACT)
    job = _claim_first(report)

    assert queue.complete_job(job, {}) == Stage.COMPLETED

    report.refresh_from_db()
    assert report.status == Report.STATUS_COMPLETED
    assert report.stage == Stage.COMPLETED
    assert report.completed_at is not None
    assert not report.jobs.filter(status=Job.STATUS_PENDING).exists()


@pytest.mark.django_db
def test_late_completion_never_moves_report_backwards(report):
    Report.objects.filter(pk=report.pk).update(stage=Stage.EXTRACT)
    stray = Job.objects.create(report=report, stage=Stage.QUERY, status=Job.STATUS_RUNNING)

    assert queue.complete_job(stray, {}) is None

    report.refresh_from_db()
    assert report.stage == Stage.EXTRACT
    assert not report.jobs.filter(stage=Stage.CLASSIFY).exists()


@pytest.mark.django_db
def test_completion_on_stopped_report_clears_current_job(report):
    job = _claim_first(report)
    Report.objects.filter(pk=report.pk).update(status=Report.STATUS_FAILED)

    assert queue.complete_job(job, {}) is None

    report.refresh_from_db()
    assert report.current_job_id is None
    assert report.stage == Stage.QUERY
    assert not report.jobs.filter(status=Job.STATUS_PENDING).exists()


@pytest.mark.django_db
def test_failure_with_attempts_left_schedules_backoff_retry(report):
    job = _claim_first(report)
    now = timezone.now()

    assert queue.fail_job(job, "flaky", now=now) == queue.OUTCOME_RETRYING

    job.refresh_from_db()
    assert job.status == Job.STATUS_FAILED
    retry = report.jobs.get(status=Job.STATUS_PENDING)
    assert retry.stage == Stage.QUERY
    assert retry.attempts == 1
    assert retry.scheduled_at == now + timedelta(seconds=60)
    assert retry.processing_data == job.processing_data
    report.refresh_from_db()
    assert report.status == Report.STATUS_RUNNING
    assert report.last_error == "flaky"
    assert report.current_job_id is None


@pytest.mark.django_db
def test_exhausted_attempts_fail_the_report(report):
    Job.objects.filter(report=report).update(attempts=2)
    job = _claim_first(report)

    assert queue.fail_job(job, "still broken") == queue.OUTCOME_FAILED

    report.refresh_from_db()
    assert report.status == Report.STATUS_FAILED
    assert report.stage == Stage.FAILED
    assert report.failed_stage == Stage.QUERY
    assert report.last_error == "still broken"
    assert not report.jobs.filter(status=Job.STATUS_PENDING).exists()


@pytest.mark.django_db
def test_non_retryable_failure_fails_report_at_once(report):
    job = _claim_first(report)

    assert queue.fail_job(job, "bad input", retryable=False) == queue.OUTCOME_FAILED
    report.refresh_from_db()
    assert report.status == Report.STATUS_FAILED


@pytest.mark.django_db
def test_defer_returns_job_without_spending_attempt(report):
    job = _claim_first(report)
    now = timezone.now()

    assert queue.defer_job(job, 7, now=now)

    job.refresh_from_db()
    assert job.status == Job.STATUS_PENDING
    assert job.attempts == 0
    assert job.scheduled_at == now + timedelta(minutes=7)
    report.refresh_from_db()
    assert report.current_job_id is None


@pytest.mark.django_db
def test_record_stage_counters_overwrites(report):
    queue.record_stage_counters(report.pk, Stage.QUERY, {"completed_prompts": 3}, completed_prompts=3)
    queue.record_stage_counters(report.pk, Stage.QUERY, {"completed_prompts": 2}, completed_prompts=2)

    report.refresh_from_db()
    assert report.completed_prompts == 2
    assert report.stage_counters == {"query": {"completed_prompts": 2}}


@pytest.mark.django_db
def test_watchdog_fails_stuck_jobs_into_retry(report, make_account):
    job = _claim_first(report)
    account = make_account(leased_until=timezone.now() + timedelta(hours=1), leased_by=str(job.pk))
    Job.objects.filter(pk=job.pk).update(started_at=timezone.now() - timedelta(hours=2), account=account)

    recovered = queue.recover_stale_jobs(stale_minutes=90)

    assert [r["job_id"] for r in recovered] == [str(job.pk)]
    assert recovered[0]["outcome"] == queue.OUTCOME_RETRYING
    job.refresh_from_db()
    assert job.status == Job.STATUS_FAILED
    assert job.error_message.startswith("watchdog")
    account.refresh_from_db()
    assert account.leased_by is None
    assert report.jobs.filter(status=Job.STATUS_PENDING).count() == 1


@pytest.mark.django_db
def test_watchdog_ignores_recent_jobs(report):
    _claim_first(report)

    assert queue.recover_stale_jobs(stale_minutes=90) == []


@pytest.mark.django_db
def test_cleanup_removes_only_old_completed_jobs(report):
    job = _claim_first(report)
    queue.complete_job(job, {})
    Job.objects.filter(pk=job.pk).update(completed_at=timezone.now() - timedelta(days=31))

    assert queue.cleanup_completed_jobs(retention_days=30) == 1
    assert not Job.objects.filter(pk=job.pk).exists()
    assert report.jobs.filter(status=Job.STATUS_PENDING).exists()
    assert queue.cleanup_completed_jobs(retention_days=30) == 0
