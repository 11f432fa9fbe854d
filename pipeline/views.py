import logging
import os
import uuid
from datetime import date

from django.shortcuts import get_object_or_404
from django.utils import timezone
from django.utils.dateparse import parse_date
from rest_framework import status
from rest_framework.decorators import api_view
from rest_framework.response import Response

from . import onboarding, queue
from .capacity import CapacityScheduler
from .models import Account, Job, Report
from .stages import is_terminal
from .tasks import process_pending_jobs

logger = logging.getLogger(__name__)

REPORT_COUNTERS = (
    "total_prompts", "completed_prompts", "failed_prompts", "total_mentions", "total_citations",
    "classified_results", "urls_total", "urls_extracted", "urls_failed",
)


def _iso(value):
    return value.isoformat() if value else None


def _parse_uuid(value):
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


@api_view(['POST'])
def process_jobs(request):
    """Cron trigger: queue one processing tick and return straight away."""
    task = process_pending_jobs.delay()
    logger.info(f"⏰ Processing tick queued as task {task.id}")
    return Response({"status": "queued", "task_id": str(task.id)}, status=status.HTTP_202_ACCEPTED)


@api_view(['POST'])
def create_report(request):
    brand_id = _parse_uuid(request.data.get("brand_id"))
    prompts = request.data.get("prompts") or []
    if brand_id is None or not prompts:
        return Response({"error": "brand_id and prompts are required"}, status=status.HTTP_400_BAD_REQUEST)
    if not isinstance(prompts, list):
        return Response({"error": "prompts must be a list"}, status=status.HTTP_400_BAD_REQUEST)

    raw_date = request.data.get("report_date")
    report_date = parse_date(raw_date) if raw_date else timezone.localdate()
    if not isinstance(report_date, date):
        return Response({"error": "report_date must be YYYY-MM-DD"}, status=status.HTTP_400_BAD_REQUEST)

    report, created = queue.create_report(
        brand_id,
        report_date,
        {"brand_name": request.data.get("brand_name", ""), "prompts": prompts},
    )
    return Response({
        "report_id": str(report.pk),
        "status": report.status,
        "stage": report.stage,
        "created": created,
    }, status=status.HTTP_201_CREATED if created else status.HTTP_200_OK)


@api_view(['GET'])
def report_status(request, report_id):
    report = get_object_or_404(Report, pk=report_id)
    jobs = report.jobs.order_by("created_at")

    response_data = {
        "report_id": str(report.pk),
        "brand_id": str(report.brand_id),
        "report_date": report.report_date.isoformat(),
        "status": report.status,
        "stage": report.stage,
        "finished": is_terminal(report.stage),
        "current_job_id": str(report.current_job_id) if report.current_job_id else None,
        "counters": {name: getattr(report, name) for name in REPORT_COUNTERS},
        "stage_counters": report.stage_counters or {},
        "created_at": _iso(report.created_at),
        "completed_at": _iso(report.completed_at),
        "jobs": [
            {
                "job_id": str(job.pk),
                "stage": job.stage,
                "status": job.status,
                "attempts": job.attempts,
                "max_attempts": job.max_attempts,
                "scheduled_at": _iso(job.scheduled_at),
                "started_at": _iso(job.started_at),
                "completed_at": _iso(job.completed_at),
                "error": job.error_message,
            }
            for job in jobs
        ],
    }

    if report.status == Report.STATUS_FAILED:
        response_data.update({
            "failed_stage": report.failed_stage,
            "error": report.last_error or "Unknown error",
        })
    elif report.status == Report.STATUS_RUNNING:
        response_data["pending_jobs"] = jobs.filter(status=Job.STATUS_PENDING).count()

    return Response(response_data)


@api_view(['GET'])
def system_capacity(request):
    return Response(CapacityScheduler().snapshot().to_dict())


@api_view(['POST'])
def reinstate_account(request, account_id):
    """Operator hook once a flagged account's browser session is re-initialised."""
    get_object_or_404(Account, pk=account_id)
    if not CapacityScheduler().reinstate_account(account_id):
        return Response({"error": "account is disabled"}, status=status.HTTP_409_CONFLICT)
    return Response({"status": "reinstated", "account_id": str(account_id)})


@api_view(['POST'])
def start_onboarding(request):
    brand_id = _parse_uuid(request.data.get("brand_id"))
    if brand_id is None:
        return Response({"error": "brand_id is required"}, status=status.HTTP_400_BAD_REQUEST)

    run, allocation = onboarding.start_onboarding(brand_id)
    if run is None:
        return Response({
            "status": "busy",
            "estimated_wait_minutes": allocation.estimated_wait_minutes,
        }, status=status.HTTP_503_SERVICE_UNAVAILABLE)

    return Response({
        "status": "started",
        "onboarding_id": str(run.pk),
        "account": run.account.email,
        "total_prompts": run.total_prompts,
    }, status=status.HTTP_201_CREATED)


@api_view(['GET'])
def health_check(request):
    port = os.getenv("PORT", "8000")
    return Response({"status": "ok", "message": f"Server running on PORT {port}"}, status=200)
