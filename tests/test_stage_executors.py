from unittest import mock

import pytest
import requests

from pipeline import queue
from pipeline.classify_stage import ClassifyStage, LLMClassifier
from pipeline.content_extract import TavilyExtractor
from pipeline.executors import NonRetryableStageError
from pipeline.extract_stage import ExtractStage
from pipeline.models import CitationContent, QueryResult
from pipeline.processor import JobProcessor
from pipeline.query_stage import QueryStage
from pipeline.stages import Stage
from tests.fakes import FakeDriver

FAST_SESSION = {"settle_seconds": 0, "poll_interval": 0, "sleep": lambda seconds: None}

PROMPTS = [
    {"id": "p1", "text": "best crm for startups?"},
    {"id": "p2", "text": "cheapest crm?"},
    {"id": "p3", "text": "crm with email sync?"},
]


@pytest.fixture
def report(brand_id, today):
    report, _ = queue.create_report(brand_id, today, {"brand_name": "Acme", "prompts": PROMPTS})
    return report


def _query_stage(driver):
    return QueryStage(driver_factory=lambda account: driver, session_options=FAST_SESSION)


@pytest.mark.django_db
def test_query_stage_stores_answers_and_counts_mentions(report, make_account):
    account = make_account()
    driver = FakeDriver(
        answers={"best crm for startups?": "Acme and Zoho are popular.", "cheapest crm?": "Try Zoho."},
        citations={
            "best crm for startups?": [{"url": "https://acme.example/crm"}, "https://zoho.example"],
            "cheapest crm?": ["https://zoho.example", "ftp://skip.example"],
        },
    )

    result = _query_stage(driver).execute(report.pk, None, {"brand_name": "Acme", "prompts": PROMPTS}, account)

    assert result.success
    assert result.data == {
        "brand_name": "Acme",
        "citation_urls": ["https://acme.example/crm", "https://zoho.example"],
    }
    assert driver.closed
    rows = {r.prompt_key: r for r in QueryResult.objects.filter(report=report)}
    assert set(rows) == {"p1", "p2", "p3"}
    assert rows["p1"].brand_mentioned and not rows["p2"].brand_mentioned
    report.refresh_from_db()
    assert (report.total_prompts, report.completed_prompts, report.total_mentions) == (3, 3, 1)
    assert report.total_citations == 4
    assert report.stage_counters["query"]["completed_prompts"] == 3


@pytest.mark.django_db
def test_rerunning_query_stage_does_not_duplicate_rows(report, make_account):
    account = make_account()
    stage = _query_stage(FakeDriver())

    stage.execute(report.pk, None, {"prompts": PROMPTS}, account)
    stage.execute(report.pk, None, {"prompts": PROMPTS}, account)

    assert QueryResult.objects.filter(report=report).count() == 3
    report.refresh_from_db()
    assert report.completed_prompts == 3


@pytest.mark.django_db
def test_logged_out_account_is_flagged_and_stage_retries(report, make_account):
    account = make_account()

    result = _query_stage(FakeDriver(logged_in=False)).execute(report.pk, None, {"prompts": PROMPTS}, account)

    assert not result.success
    assert result.retryable
    errors = QueryResult.objects.filter(report=report).values_list("error_message", flat=True)
    assert len(errors) == 3
    assert all(e.startswith("session:") for e in errors)
    account.refresh_from_db()
    assert account.needs_attention
    assert not account.is_eligible


@pytest.mark.django_db
def test_session_failure_moves_retry_to_another_account(report, make_account, make_due):
    bad = make_account()
    good = make_account(last_used_at=bad.created_at)
    drivers = {bad.pk: FakeDriver(logged_in=False), good.pk: FakeDriver()}
    stage = QueryStage(driver_factory=lambda account: drivers[account.pk], session_options=FAST_SESSION)
    processor = JobProcessor({Stage.QUERY: stage, Stage.CLASSIFY: ClassifyStage(lambda text, brand: "x"),
                              Stage.EXTRACT: ExtractStage(lambda urls: {})}, job_timeout=None)

    first = processor.tick()
    make_due()
    second = processor.tick()

    assert first[0]["status"] == "retrying"
    assert second[0]["status"] == "completed"
    assert drivers[bad.pk].submitted == []
    assert len(drivers[good.pk].submitted) == 3
    assert QueryResult.objects.filter(report=report, error_message__isnull=True).count() == 3


class FlakyReadDriver(FakeDriver):
    """Healthy session whose answer for one query cannot be read."""

    def __init__(self, broken, **kwargs):
        super().__init__(**kwargs)
        self.broken = broken

    def read_response(self):
        if self.submitted[-1] == self.broken:
            raise RuntimeError("response never rendered")
        return super().read_response()


@pytest.mark.django_db
def test_retry_only_queries_unanswered_prompts_and_keeps_good_rows(report, make_account):
    first, second = make_account(), make_account()
    _query_stage(FakeDriver(answers={"best crm for startups?": "Acme wins."}, fail_at=2)).execute(
        report.pk, None, {"brand_name": "Acme", "prompts": PROMPTS}, first,
    )
    retry_driver = FlakyReadDriver("best crm for startups?")

    result = _query_stage(retry_driver).execute(
        report.pk, None, {"brand_name": "Acme", "prompts": PROMPTS}, second,
    )

    assert result.success
    assert retry_driver.submitted == ["cheapest crm?", "crm with email sync?"]
    p1 = QueryResult.objects.get(report=report, prompt_key="p1")
    assert p1.error_message is None
    assert p1.response_text == "Acme wins." and p1.brand_mentioned
    report.refresh_from_db()
    assert (report.completed_prompts, report.failed_prompts) == (3, 0)


@pytest.mark.django_db
def test_failed_query_on_healthy_retry_leaves_earlier_answer(report, make_account):
    _seed_results(report, {"p1": "Acme wins."})
    driver = FlakyReadDriver("cheapest crm?")

    result = _query_stage(driver).execute(report.pk, None, {"brand_name": "Acme", "prompts": PROMPTS},
                                          make_account())

    assert result.success
    assert "best crm for startups?" not in driver.submitted
    rows = {r.prompt_key: r for r in QueryResult.objects.filter(report=report)}
    assert rows["p1"].response_text == "Acme wins." and rows["p1"].error_message is None
    assert rows["p2"].error_message == "response never rendered"
    assert rows["p3"].error_message is None
    report.refresh_from_db()
    assert (report.completed_prompts, report.failed_prompts) == (2, 1)


@pytest.mark.django_db
def test_fully_answered_report_skips_the_browser(report, make_account):
    _seed_results(report, {"p1": "a", "p2": "b", "p3": "c"})

    def no_driver(account):
        raise AssertionError("browser should not open")

    stage = QueryStage(driver_factory=no_driver, session_options=FAST_SESSION)
    result = stage.execute(report.pk, None, {"prompts": PROMPTS}, make_account())

    assert result.success
    report.refresh_from_db()
    assert report.completed_prompts == 3

@pytest.mark.django_db
def test_query_stage_without_prompts_is_not_retryable(report, make_account):
    with pytest.raises(NonRetryableStageError):
        _query_stage(FakeDriver()).execute(report.pk, None, {"prompts": []}, make_account())


@pytest.mark.django_db
def test_query_stage_without_driver_is_not_retryable(report, make_account, settings):
    settings.AUTOMATION_DRIVER_FACTORY = ""
    with pytest.raises(NonRetryableStageError):
        QueryStage().execute(report.pk, None, {"prompts": PROMPTS}, make_account())


def _seed_results(report, texts):
    for key, text in texts.items():
        QueryResult.objects.create(report=report, prompt_key=key, prompt_text=key, response_text=text)


@pytest.mark.django_db
def test_classify_records_item_failures_without_failing_stage(report):
    _seed_results(report, {"p1": "Acme is great", "p2": "boom", "p3": "nothing"})
    QueryResult.objects.create(report=report, prompt_key="p4", prompt_text="p4", error_message="session: x")

    def classifier(text, brand):
        if text == "boom":
            raise ValueError("model refused")
        return "mentioned" if brand in text else "absent"

    result = ClassifyStage(classifier).execute(report.pk, None, {"brand_name": "Acme", "citation_urls": ["u"]})

    assert result.success
    assert result.data == {"brand_name": "Acme", "citation_urls": ["u"]}
    rows = {r.prompt_key: r for r in QueryResult.objects.filter(report=report)}
    assert rows["p1"].classification == "mentioned"
    assert rows["p2"].classification is None
    assert rows["p2"].classification_error == "model refused"
    assert rows["p4"].classification is None and rows["p4"].classification_error is None
    report.refresh_from_db()
    assert report.classified_results == 2
    assert report.stage_counters["classify"] == {"classified": 2, "failed": 1}


@pytest.mark.django_db
def test_llm_classifier_takes_first_word_of_reply():
    limiter = mock.Mock()
    with mock.patch("pipeline.classify_stage.query_openrouter", return_value=" Recommended.\n") as query:
        label = LLMClassifier(model_id="test/model", limiter=limiter)("Acme is the best", "Acme")

    assert label == "recommended"
    limiter.wait_for_slot.assert_called_once()
    assert query.call_args.args[1] == "test/model"


@pytest.mark.django_db
def test_extract_tracks_per_url_failures(report):
    urls = ["https://www.acme.example/a", "https://dead.example/b"]

    def extractor(chunk):
        return {u: ("page text", None) if "acme" in u else (None, "404") for u in chunk}

    stage = ExtractStage(extractor, max_retries=2)
    result = stage.execute(report.pk, None, {"citation_urls": urls})

    assert result.success
    ok = CitationContent.objects.get(report=report, url=urls[0])
    dead = CitationContent.objects.get(report=report, url=urls[1])
    assert ok.extracted and ok.content == "page text" and ok.domain == "acme.example"
    assert not dead.extracted and dead.retry_count == 1 and dead.last_error == "404"
    report.refresh_from_db()
    assert (report.urls_total, report.urls_extracted, report.urls_failed) == (2, 1, 1)


@pytest.mark.django_db
def test_extract_skips_done_and_exhausted_urls(report):
    urls = ["https://acme.example/a", "https://dead.example/b"]
    calls = []

    def extractor(chunk):
        calls.append(list(chunk))
        return {u: (None, "timeout") if "dead" in u else ("text", None) for u in chunk}

    stage = ExtractStage(extractor, max_retries=2)
    for _ in range(3):
        stage.execute(report.pk, None, {"citation_urls": urls})

    assert calls == [urls, ["https://dead.example/b"]]
    assert CitationContent.objects.get(url=urls[1]).retry_count == 2


@pytest.mark.django_db
def test_extract_falls_back_to_stored_citations(report):
    QueryResult.objects.create(report=report, prompt_key="p1", prompt_text="p1",
                               citations=[{"url": "https://acme.example"}])

    ExtractStage(lambda chunk: {u: ("text", None) for u in chunk}).execute(report.pk, None, {})

    assert CitationContent.objects.filter(report=report, extracted=True).count() == 1


def test_tavily_maps_results_and_failures():
    session = mock.Mock()
    session.post.return_value.json.return_value = {
        "results": [{"url": "https://a.example", "raw_content": "hello"}],
        "failed_results": [{"url": "https://b.example", "error": "blocked"}],
    }
    extractor = TavilyExtractor(api_key="key", endpoint="https://tavily.test/extract",
                                session=session, limiter=mock.Mock())

    result = extractor(["https://a.example", "https://b.example", "https://c.example"])

    assert result == {
        "https://a.example": ("hello", None),
        "https://b.example": (None, "blocked"),
        "https://c.example": (None, "missing from extract response"),
    }
    assert session.post.call_args.kwargs["json"] == {
        "urls": ["https://a.example", "https://b.example", "https://c.example"],
    }


def test_tavily_request_error_fails_every_url():
    session = mock.Mock()
    session.post.side_effect = requests.ConnectionError("down")
    extractor = TavilyExtractor(api_key="key", session=session, limiter=mock.Mock())

    result = extractor(["https://a.example"])

    assert result["https://a.example"][0] is None
    assert "down" in result["https://a.example"][1]
