import logging

from django.conf import settings

from .db_rate_limiter import DBRateLimiter
from .executors import StageExecutor, StageResult
from .llm_query import query_openrouter
from .models import QueryResult
from .queue import record_stage_counters
from .stages import Stage

logger = logging.getLogger(__name__)

CLASSIFY_PROMPT = (
    "Classify how the brand \"{brand}\" appears in the answer below. "
    "Reply with exactly one word: recommended, mentioned, or absent.\n\n{answer}"
)
MAX_LABEL_LENGTH = 100


class LLMClassifier:
    """Labels one answer with a chat completion, rate limited across workers."""

    def __init__(self, model_id=None, limiter=None, slot_timeout=120):
        self.model_id = model_id or settings.CLASSIFIER_MODEL
        self.limiter = limiter or DBRateLimiter.for_service("openrouter")
        self.slot_timeout = slot_timeout

    def __call__(self, response_text, brand_name):
        self.limiter.wait_for_slot(timeout=self.slot_timeout)
        reply = query_openrouter(
            CLASSIFY_PROMPT.format(brand=brand_name, answer=response_text),
            self.model_id,
            max_tokens=10,
        )
        label = reply.strip().split()[0].strip(".,:;\"'").lower() if reply.strip() else ""
        if not label:
            raise ValueError("classifier returned an empty label")
        return label[:MAX_LABEL_LENGTH]


class ClassifyStage(StageExecutor):
    stage = Stage.CLASSIFY

    def __init__(self, classifier=None):
        self._classifier = classifier

    @property
    def classifier(self):
        if self._classifier is None:
            self._classifier = LLMClassifier()
        return self._classifier

    def execute(self, report_id, job_id, processing_data, account=None):
        brand_name = processing_data.get("brand_name", "")
        # Already-labelled rows are kept, so a retried job only redoes the failures
        pending = QueryResult.objects.filter(
            report_id=report_id, error_message__isnull=True, classification__isnull=True,
        ).order_by("prompt_key")

        for row in pending:
            try:
                label = self.classifier(row.response_text, brand_name)
            except Exception as e:
                logger.warning(f"⚠️ Could not classify {row.prompt_key} for report {report_id}: {e}")
                row.classification_error = str(e) or e.__class__.__name__
                row.save(update_fields=["classification_error", "updated_at"])
                continue
            row.classification = label
            row.classification_error = None
            row.save(update_fields=["classification", "classification_error", "updated_at"])

        ok_rows = QueryResult.objects.filter(report_id=report_id, error_message__isnull=True)
        counters = {
            "classified": ok_rows.filter(classification__isnull=False).count(),
            "failed": ok_rows.filter(classification__isnull=True).count(),
        }
        record_stage_counters(report_id, Stage.CLASSIFY, counters, classified_results=counters["classified"])
        logger.info(f"🏷️ Classified {counters['classified']} result(s) for report {report_id}, {counters['failed']} failed")

        return StageResult.ok({
            "brand_name": brand_name,
            "citation_urls": processing_data.get("citation_urls", []),
        })
