import uuid
from datetime import date, timedelta

import pytest
from django.utils import timezone

from pipeline.models import Account, Job, OnboardingRun, ScheduledBatch


@pytest.fixture(autouse=True)
def pipeline_settings(settings):
    settings.PIPELINE_RETRY_BACKOFF_SECONDS = 60
    settings.PIPELINE_RETRY_BACKOFF_MAX_SECONDS = 1800
    settings.PIPELINE_MAX_ATTEMPTS = 3
    settings.SCHEDULER_MINUTES_PER_PROMPT = 2.5
    settings.SCHEDULER_DEFAULT_BATCH_SIZE = 3
    settings.SCHEDULER_DEFAULT_WAIT_MINUTES = 15
    settings.SCHEDULER_RESERVE_WINDOW_MINUTES = 15
    settings.PYTHON_ENVIRONMENT = "test"
    return settings


@pytest.fixture
def now():
    return timezone.now().replace(microsecond=0)


@pytest.fixture
def brand_id():
    return uuid.uuid4()


@pytest.fixture
def today():
    return date(2026, 10, 17)


@pytest.fixture
def make_account():
    counter = {"n": 0}

    def _make(**kwargs):
        counter["n"] += 1
        kwargs.setdefault("email", f"bot{counter['n']}@example.com")
        return Account.objects.create(**kwargs)

    return _make


@pytest.fixture
def make_batch(brand_id, today):
    def _make(account, execution_time, status=ScheduledBatch.STATUS_RUNNING, batch_size=3):
        return ScheduledBatch.objects.create(
            brand_id=brand_id,
            schedule_date=today,
            execution_time=execution_time,
            batch_size=batch_size,
            status=status,
            account=account,
        )

    return _make


@pytest.fixture
def make_onboarding(brand_id):
    def _make(account, total_prompts=30, prompts_sent=0):
        return OnboardingRun.objects.create(
            brand_id=brand_id, account=account, total_prompts=total_prompts, prompts_sent=prompts_sent,
        )

    return _make


@pytest.fixture
def make_due():
    """Pull every pending job's schedule to the present, skipping backoff and deferral waits."""

    def _make_due():
        return Job.objects.filter(status=Job.STATUS_PENDING).update(
            scheduled_at=timezone.now() - timedelta(seconds=1)
        )

    return _make_due
