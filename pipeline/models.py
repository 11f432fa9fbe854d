import uuid
from django.db import models
from django.db.models import Q
from django.utils import timezone

from .stages import Stage, FIRST_STAGE, PROCESSING_STAGES


class Account(models.Model):
    """An automation-capable account; backs at most one unit of work at a time."""

    STATUS_ACTIVE   = "active"
    STATUS_DISABLED = "disabled"

    id               = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    email            = models.CharField(max_length=254, unique=True)
    credentials_ref  = models.CharField(max_length=255, blank=True, default="")
    status           = models.CharField(max_length=20, default=STATUS_ACTIVE)
    is_eligible      = models.BooleanField(default=True)
    last_used_at     = models.DateTimeField(null=True, blank=True)
    leased_until     = models.DateTimeField(null=True, blank=True)
    leased_by        = models.CharField(max_length=100, null=True, blank=True)
    needs_attention  = models.BooleanField(default=False)
    attention_reason = models.TextField(null=True, blank=True)
    flagged_at       = models.DateTimeField(null=True, blank=True)
    created_at       = models.DateTimeField(auto_now_add=True)

    @classmethod
    def eligible(cls):
        return cls.objects.filter(is_eligible=True, status=cls.STATUS_ACTIVE)

    def __str__(self):
        return self.email


class ScheduledBatch(models.Model):
    """A nightly batch slot; read by the capacity scheduler, run elsewhere."""

    STATUS_PENDING   = "pending"
    STATUS_RUNNING   = "running"
    STATUS_COMPLETED = "completed"
    STATUS_FAILED    = "failed"

    id             = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    brand_id       = models.UUIDField()
    schedule_date  = models.DateField()
    batch_number   = models.PositiveIntegerField(default=1)
    execution_time = models.DateTimeField()
    batch_size     = models.PositiveIntegerField(null=True, blank=True)
    status         = models.CharField(max_length=20, default=STATUS_PENDING)
    account        = models.ForeignKey(Account, null=True, blank=True, on_delete=models.SET_NULL,
                                       related_name="scheduled_batches")
    created_at     = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [models.Index(fields=["status", "execution_time"], name="batch_status_exec_idx")]


class OnboardingRun(models.Model):
    """First-report run for a new signup, holding one account while it runs."""

    STATUS_RUNNING   = "running"
    STATUS_COMPLETED = "completed"
    STATUS_FAILED    = "failed"

    id            = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    brand_id      = models.UUIDField()
    account       = models.ForeignKey(Account, null=True, blank=True, on_delete=models.SET_NULL,
                                      related_name="onboarding_runs")
    status        = models.CharField(max_length=20, default=STATUS_RUNNING)
    total_prompts = models.PositiveIntegerField(default=30)
    prompts_sent  = models.PositiveIntegerField(default=0)
    started_at    = models.DateTimeField(default=timezone.now)
    completed_at  = models.DateTimeField(null=True, blank=True)

    @property
    def remaining_prompts(self):
        return max(1, self.total_prompts - self.prompts_sent)


class Report(models.Model):
    STATUS_RUNNING   = "running"
    STATUS_COMPLETED = "completed"
    STATUS_FAILED    = "failed"

    id                 = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    brand_id           = models.UUIDField()
    report_date        = models.DateField()
    status             = models.CharField(max_length=20, default=STATUS_RUNNING)
    stage              = models.CharField(max_length=20, choices=Stage.choices, default=FIRST_STAGE)
    # Weak reference: no FK so job cleanup never touches the report
    current_job_id     = models.UUIDField(null=True, blank=True)
    failed_stage       = models.CharField(max_length=20, null=True, blank=True)
    last_error         = models.TextField(null=True, blank=True)

    total_prompts      = models.PositiveIntegerField(default=0)
    completed_prompts  = models.PositiveIntegerField(default=0)
    failed_prompts     = models.PositiveIntegerField(default=0)
    total_mentions     = models.PositiveIntegerField(default=0)
    total_citations    = models.PositiveIntegerField(default=0)
    classified_results = models.PositiveIntegerField(default=0)
    urls_total         = models.PositiveIntegerField(default=0)
    urls_extracted     = models.PositiveIntegerField(default=0)
    urls_failed        = models.PositiveIntegerField(default=0)
    stage_counters     = models.JSONField(default=dict, blank=True)

    created_at         = models.DateTimeField(auto_now_add=True)
    updated_at         = models.DateTimeField(auto_now=True)
    completed_at       = models.DateTimeField(null=True, blank=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["brand_id", "report_date"], name="unique_report_per_brand_day"),
        ]

    def __str__(self):
        return f"Report {self.brand_id} {self.report_date} ({self.status}/{self.stage})"


class Job(models.Model):
    STATUS_PENDING   = "pending"
    STATUS_RUNNING   = "running"
    STATUS_COMPLETED = "completed"
    STATUS_FAILED    = "failed"

    id              = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    report          = models.ForeignKey(Report, on_delete=models.CASCADE, related_name="jobs")
    stage           = models.CharField(max_length=20, choices=[(s.value, s.label) for s in PROCESSING_STAGES])
    status          = models.CharField(max_length=20, default=STATUS_PENDING)
    attempts        = models.PositiveIntegerField(default=0)
    max_attempts    = models.PositiveIntegerField(default=3)
    scheduled_at    = models.DateTimeField(default=timezone.now)
    processing_data = models.JSONField(default=dict, blank=True)
    error_message   = models.TextField(null=True, blank=True)
    account         = models.ForeignKey(Account, null=True, blank=True, on_delete=models.SET_NULL,
                                        related_name="jobs")
    worker_id       = models.CharField(max_length=100, null=True, blank=True)
    started_at      = models.DateTimeField(null=True, blank=True)
    completed_at    = models.DateTimeField(null=True, blank=True)
    created_at      = models.DateTimeField(auto_now_add=True)
    updated_at      = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [models.Index(fields=["status", "scheduled_at"], name="job_status_scheduled_idx")]
        constraints = [
            models.UniqueConstraint(
                fields=["report"],
                condition=Q(status="running"),
                name="one_running_job_per_report",
            ),
        ]

    def __str__(self):
        return f"Job {self.id} {self.stage} ({self.status}, attempt {self.attempts}/{self.max_attempts})"


class QueryResult(models.Model):
    """One answer collected by the query stage; upserted per (report, prompt_key)."""

    id                   = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    report               = models.ForeignKey(Report, on_delete=models.CASCADE, related_name="query_results")
    prompt_key           = models.CharField(max_length=100)
    prompt_text          = models.TextField()
    response_text        = models.TextField(blank=True, default="")
    citations            = models.JSONField(default=list, blank=True)
    brand_mentioned      = models.BooleanField(default=False)
    error_message        = models.TextField(null=True, blank=True)
    classification       = models.CharField(max_length=100, null=True, blank=True)
    classification_error = models.TextField(null=True, blank=True)
    created_at           = models.DateTimeField(auto_now_add=True)
    updated_at           = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["report", "prompt_key"], name="unique_result_per_prompt"),
        ]

    @property
    def ok(self):
        return not self.error_message


class CitationContent(models.Model):
    id            = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    report        = models.ForeignKey(Report, on_delete=models.CASCADE, related_name="citation_contents")
    url           = models.URLField(max_length=2000)
    domain        = models.CharField(max_length=255, blank=True, default="")
    content       = models.TextField(blank=True, default="")
    extracted     = models.BooleanField(default=False)
    retry_count   = models.PositiveIntegerField(default=0)
    last_error    = models.TextField(null=True, blank=True)
    last_retry_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["report", "url"], name="unique_content_per_url"),
        ]


class RateLimit(models.Model):
    key        = models.CharField(max_length=100, primary_key=True)
    tokens     = models.FloatField()
    updated_at = models.DateTimeField()
