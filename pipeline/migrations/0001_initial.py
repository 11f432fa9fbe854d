import uuid

import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Account",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("email", models.CharField(max_length=254, unique=True)),
                ("credentials_ref", models.CharField(blank=True, default="", max_length=255)),
                ("status", models.CharField(default="active", max_length=20)),
                ("is_eligible", models.BooleanField(default=True)),
                ("last_used_at", models.DateTimeField(blank=True, null=True)),
                ("leased_until", models.DateTimeField(blank=True, null=True)),
                ("leased_by", models.CharField(blank=True, max_length=100, null=True)),
                ("needs_attention", models.BooleanField(default=False)),
                ("attention_reason", models.TextField(blank=True, null=True)),
                ("flagged_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
        ),
        migrations.CreateModel(
            name="RateLimit",
            fields=[
                ("key", models.CharField(max_length=100, primary_key=True, serialize=False)),
                ("tokens", models.FloatField()),
                ("updated_at", models.DateTimeField()),
            ],
        ),
        migrations.CreateModel(
            name="Report",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("brand_id", models.UUIDField()),
                ("report_date", models.DateField()),
                ("status", models.CharField(default="running", max_length=20)),
                ("stage", models.CharField(
                    choices=[
                        ("query", "Query"),
                        ("classify", "Classify"),
                        ("extract", "Extract"),
                        ("completed", "Completed"),
                        ("failed", "Failed"),
                    ],
                    default="query",
                    max_length=20,
                )),
                ("current_job_id", models.UUIDField(blank=True, null=True)),
                ("failed_stage", models.CharField(blank=True, max_length=20, null=True)),
                ("last_error", models.TextField(blank=True, null=True)),
                ("total_prompts", models.PositiveIntegerField(default=0)),
                ("completed_prompts", models.PositiveIntegerField(default=0)),
                ("failed_prompts", models.PositiveIntegerField(default=0)),
                ("total_mentions", models.PositiveIntegerField(default=0)),
                ("total_citations", models.PositiveIntegerField(default=0)),
                ("classified_results", models.PositiveIntegerField(default=0)),
                ("urls_total", models.PositiveIntegerField(default=0)),
                ("urls_extracted", models.PositiveIntegerField(default=0)),
                ("urls_failed", models.PositiveIntegerField(default=0)),
                ("stage_counters", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(fields=("brand_id", "report_date"), name="unique_report_per_brand_day"),
                ],
            },
        ),
        migrations.CreateModel(
            name="ScheduledBatch",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("brand_id", models.UUIDField()),
                ("schedule_date", models.DateField()),
                ("batch_number", models.PositiveIntegerField(default=1)),
                ("execution_time", models.DateTimeField()),
                ("batch_size", models.PositiveIntegerField(blank=True, null=True)),
                ("status", models.CharField(default="pending", max_length=20)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("account", models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name="scheduled_batches",
                    to="pipeline.account",
                )),
            ],
            options={
                "indexes": [models.Index(fields=["status", "execution_time"], name="batch_status_exec_idx")],
            },
        ),
        migrations.CreateModel(
            name="OnboardingRun",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("brand_id", models.UUIDField()),
                ("status", models.CharField(default="running", max_length=20)),
                ("total_prompts", models.PositiveIntegerField(default=30)),
                ("prompts_sent", models.PositiveIntegerField(default=0)),
                ("started_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("account", models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name="onboarding_runs",
                    to="pipeline.account",
                )),
            ],
        ),
        migrations.CreateModel(
            name="Job",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("stage", models.CharField(
                    choices=[("query", "Query"), ("classify", "Classify"), ("extract", "Extract")],
                    max_length=20,
                )),
                ("status", models.CharField(default="pending", max_length=20)),
                ("attempts", models.PositiveIntegerField(default=0)),
                ("max_attempts", models.PositiveIntegerField(default=3)),
                ("scheduled_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("processing_data", models.JSONField(blank=True, default=dict)),
                ("error_message", models.TextField(blank=True, null=True)),
                ("worker_id", models.CharField(blank=True, max_length=100, null=True)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("account", models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name="jobs",
                    to="pipeline.account",
                )),
                ("report", models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name="jobs",
                    to="pipeline.report",
                )),
            ],
            options={
                "indexes": [models.Index(fields=["status", "scheduled_at"], name="job_status_scheduled_idx")],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "running")),
                        fields=("report",),
                        name="one_running_job_per_report",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="QueryResult",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("prompt_key", models.CharField(max_length=100)),
                ("prompt_text", models.TextField()),
                ("response_text", models.TextField(blank=True, default="")),
                ("citations", models.JSONField(blank=True, default=list)),
                ("brand_mentioned", models.BooleanField(default=False)),
                ("error_message", models.TextField(blank=True, null=True)),
                ("classification", models.CharField(blank=True, max_length=100, null=True)),
                ("classification_error", models.TextField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("report", models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name="query_results",
                    to="pipeline.report",
                )),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(fields=("report", "prompt_key"), name="unique_result_per_prompt"),
                ],
            },
        ),
        migrations.CreateModel(
            name="CitationContent",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("url", models.URLField(max_length=2000)),
                ("domain", models.CharField(blank=True, default="", max_length=255)),
                ("content", models.TextField(blank=True, default="")),
                ("extracted", models.BooleanField(default=False)),
                ("retry_count", models.PositiveIntegerField(default=0)),
                ("last_error", models.TextField(blank=True, null=True)),
                ("last_retry_at", models.DateTimeField(blank=True, null=True)),
                ("report", models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name="citation_contents",
                    to="pipeline.report",
                )),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(fields=("report", "url"), name="unique_content_per_url"),
                ],
            },
        ),
    ]
