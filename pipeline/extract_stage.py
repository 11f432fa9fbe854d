import logging

from django.conf import settings
from django.db.models import Q
from django.utils import timezone

from .content_extract import TavilyExtractor
from .executors import StageExecutor, StageResult
from .models import CitationContent, QueryResult
from .queue import record_stage_counters
from .stages import Stage
from .utils import domain_of, unique_citation_urls

logger = logging.getLogger(__name__)


class ExtractStage(StageExecutor):
    """Pulls the text of every cited page; a dead url never fails the report."""

    stage = Stage.EXTRACT

    def __init__(self, extractor=None, max_retries=None, chunk_size=20):
        self._extractor = extractor
        self.max_retries = max_retries or settings.EXTRACT_MAX_RETRIES
        self.chunk_size = chunk_size

    @property
    def extractor(self):
        if self._extractor is None:
            self._extractor = TavilyExtractor()
        return self._extractor

    def execute(self, report_id, job_id, processing_data, account=None):
        urls = processing_data.get("citation_urls")
        if urls is None:
            urls = unique_citation_urls(
                QueryResult.objects.filter(report_id=report_id, error_message__isnull=True)
                .order_by("prompt_key")
                .values_list("citations", flat=True)
            )

        for url in urls:
            CitationContent.objects.get_or_create(
                report_id=report_id, url=url, defaults={"domain": domain_of(url)},
            )

        pending = set(
            CitationContent.objects.filter(report_id=report_id, url__in=urls, extracted=False,
                                           retry_count__lt=self.max_retries)
            .values_list("url", flat=True)
        )
        todo = [url for url in urls if url in pending]
        logger.info(f"🌐 Extracting {len(todo)} of {len(urls)} url(s) for report {report_id}")

        for start in range(0, len(todo), self.chunk_size):
            chunk = todo[start:start + self.chunk_size]
            self._store(report_id, self.extractor(chunk))

        rows = CitationContent.objects.filter(report_id=report_id, url__in=urls)
        counters = {
            "urls_total": rows.count(),
            "urls_extracted": rows.filter(extracted=True).count(),
            "urls_failed": rows.filter(extracted=False).filter(
                Q(retry_count__gte=self.max_retries) | Q(last_error__isnull=False)
            ).count(),
        }
        record_stage_counters(report_id, Stage.EXTRACT, counters, **counters)
        logger.info(
            f"✅ Extracted {counters['urls_extracted']}/{counters['urls_total']} url(s) for report {report_id}"
        )
        return StageResult.ok({"urls_extracted": counters["urls_extracted"]})

    def _store(self, report_id, extracted):
        now = timezone.now()
        for url, (content, error) in extracted.items():
            row = CitationContent.objects.get(report_id=report_id, url=url)
            if error is None:
                row.content = content
                row.extracted = True
                row.last_error = None
                row.save(update_fields=["content", "extracted", "last_error"])
            else:
                row.retry_count += 1
                row.last_error = error
                row.last_retry_at = now
                row.save(update_fields=["retry_count", "last_error", "last_retry_at"])
                logger.warning(f"⚠️ {url}: {error} (try {row.retry_count}/{self.max_retries})")
