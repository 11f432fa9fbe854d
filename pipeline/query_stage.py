import logging

from django.core.exceptions import ImproperlyConfigured
from django.db import transaction

from .automation import AutomationSession, load_driver_factory
from .capacity import CapacityScheduler
from .executors import NonRetryableStageError, StageExecutor, StageResult
from .models import QueryResult
from .queue import record_stage_counters
from .stages import Stage
from .utils import brand_mentioned, unique_citation_urls

logger = logging.getLogger(__name__)


def normalize_prompts(raw_prompts):
    """Accept ``[{"id", "text"}]`` or plain strings; keys default to the position."""
    prompts = []
    for index, item in enumerate(raw_prompts or [], start=1):
        if isinstance(item, str):
            key, text = str(index), item
        elif isinstance(item, dict):
            key, text = str(item.get("id") or index), item.get("text") or item.get("prompt")
        else:
            text = None
        if not text:
            raise NonRetryableStageError(f"prompt #{index} has no text")
        prompts.append((key, text))
    return prompts


class QueryStage(StageExecutor):
    """
    Sends every prompt of the report through one browser session on the
    leased account and stores each answer as a ``QueryResult``.
    """

    stage = Stage.QUERY

    def __init__(self, driver_factory=None, scheduler=None, session_options=None):
        self._driver_factory = driver_factory
        self.scheduler = scheduler or CapacityScheduler()
        self.session_options = session_options or {}

    @property
    def driver_factory(self):
        if self._driver_factory is None:
            try:
                self._driver_factory = load_driver_factory()
            except (ImproperlyConfigured, ImportError) as e:
                raise NonRetryableStageError(f"automation driver unavailable: {e}") from e
        return self._driver_factory

    def execute(self, report_id, job_id, processing_data, account=None):
        if account is None:
            raise NonRetryableStageError("query stage needs an account")

        prompts = normalize_prompts(processing_data.get("prompts"))
        if not prompts:
            raise NonRetryableStageError("no prompts to query")
        brand_name = processing_data.get("brand_name", "")

        answered = set(
            QueryResult.objects.filter(report_id=report_id, error_message__isnull=True)
            .values_list("prompt_key", flat=True)
        )
        todo = [(key, text) for key, text in prompts if key not in answered]
        logger.info(f"🤖 Querying {len(todo)} of {len(prompts)} prompt(s) for report {report_id} on {account.email}")
        outcome = self._run_session(account, todo) if todo else None

        if outcome is not None:
            with transaction.atomic():
                for (key, text), result in zip(todo, outcome.results):
                    # A failed retry never overwrites an earlier good answer
                    if not result.ok and QueryResult.objects.filter(
                        report_id=report_id, prompt_key=key, error_message__isnull=True,
                    ).exists():
                        continue
                    QueryResult.objects.update_or_create(
                        report_id=report_id,
                        prompt_key=key,
                        defaults={
                            "prompt_text": text,
                            "response_text": result.response_text or "",
                            "citations": result.citations or [],
                            "brand_mentioned": result.ok and brand_mentioned(result.response_text, brand_name),
                            "error_message": result.error,
                        },
                    )

        counters = self._recount(report_id, len(prompts))

        if outcome is not None and not outcome.session_ok:
            self.scheduler.flag_account(account.pk, outcome.error or "session failure")
            return StageResult.failed(f"session failure on {account.email}: {outcome.error}", retryable=True)

        if counters["completed_prompts"] == 0:
            return StageResult.failed("every query failed", retryable=True)

        citation_urls = unique_citation_urls(
            QueryResult.objects.filter(report_id=report_id, error_message__isnull=True)
            .order_by("prompt_key")
            .values_list("citations", flat=True)
        )
        logger.info(
            f"✅ Query stage done for report {report_id}: {counters['completed_prompts']}/{len(prompts)} ok, "
            f"{counters['total_mentions']} mention(s), {len(citation_urls)} url(s)"
        )
        return StageResult.ok({"brand_name": brand_name, "citation_urls": citation_urls})

    def _recount(self, report_id, total_prompts):
        rows = QueryResult.objects.filter(report_id=report_id)
        ok_rows = rows.filter(error_message__isnull=True)
        counters = {
            "total_prompts": total_prompts,
            "completed_prompts": ok_rows.count(),
            "failed_prompts": rows.exclude(error_message__isnull=True).count(),
            "total_mentions": ok_rows.filter(brand_mentioned=True).count(),
            "total_citations": sum(len(c or []) for c in ok_rows.values_list("citations", flat=True)),
        }
        record_stage_counters(report_id, Stage.QUERY, counters, **counters)
        return counters

    def _run_session(self, account, prompts):
        driver = self.driver_factory(account)
        try:
            outcome = AutomationSession(driver, **self.session_options).run([text for _, text in prompts])
        finally:
            try:
                driver.close()
            except Exception as e:
                logger.warning(f"⚠️ Driver close failed for {account.email}: {e}")
        logger.info(f"📬 Session returned {len(outcome.succeeded)}/{len(prompts)} answer(s)")
        return outcome
