"""
Onboarding runs: a new signup's first report, run on a dedicated account.

The account is claimed through the capacity scheduler like any other work;
while the run is ``running`` the scheduler counts the account as busy, with
the remaining prompts driving the wait estimate.
"""
import logging

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from .capacity import CapacityScheduler
from .models import Account, OnboardingRun

logger = logging.getLogger(__name__)


def _holder(run_id):
    return f"onboarding:{run_id}"


def start_onboarding(brand_id, now=None, *, total_prompts=None, scheduler=None):
    """
    Returns ``(run, allocation)``. ``run`` is None when every account is busy;
    ``allocation.estimated_wait_minutes`` then says when to try again.
    """
    now = now or timezone.now()
    scheduler = scheduler or CapacityScheduler()
    run = OnboardingRun(
        brand_id=brand_id,
        total_prompts=total_prompts or settings.ONBOARDING_TOTAL_PROMPTS,
        started_at=now,
    )

    allocation = scheduler.try_allocate(now, holder=_holder(run.pk))
    if allocation.busy:
        logger.info(f"⏳ Onboarding for brand {brand_id} must wait ~{allocation.estimated_wait_minutes} min")
        return None, allocation

    run.account = allocation.account
    run.save()
    logger.info(f"🚀 Onboarding run {run.pk} for brand {brand_id} started on {run.account.email}")
    return run, allocation


def record_onboarding_progress(run, sent):
    """Store how many prompts have gone out; only ever moves forward."""
    with transaction.atomic():
        run = OnboardingRun.objects.select_for_update().get(pk=run.pk)
        if run.status != OnboardingRun.STATUS_RUNNING:
            return run
        run.prompts_sent = min(run.total_prompts, max(run.prompts_sent, sent))
        run.save(update_fields=["prompts_sent"])
    return run


def finish_onboarding(run, ok=True, now=None, *, scheduler=None):
    now = now or timezone.now()
    scheduler = scheduler or CapacityScheduler()
    with transaction.atomic():
        run = OnboardingRun.objects.select_for_update().get(pk=run.pk)
        if run.status != OnboardingRun.STATUS_RUNNING:
            return run
        run.status = OnboardingRun.STATUS_COMPLETED if ok else OnboardingRun.STATUS_FAILED
        run.completed_at = now
        run.save(update_fields=["status", "completed_at"])

        if run.account_id:
            Account.objects.filter(pk=run.account_id).update(last_used_at=now)
            scheduler.release(run.account_id, _holder(run.pk))

    logger.info(f"🏁 Onboarding run {run.pk} finished as {run.status}")
    return run
