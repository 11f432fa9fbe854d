import logging
from urllib.parse import urlparse

from django.conf import settings


def brand_mentioned(response_text, brand_name):
    if not brand_name or not response_text:
        return False
    if not isinstance(response_text, str):
        response_text = str(response_text)
    return brand_name.lower() in response_text.lower()


def citation_url(citation):
    if isinstance(citation, str):
        return citation
    if isinstance(citation, dict):
        return citation.get("url") or citation.get("href")
    return None


def unique_citation_urls(citation_lists):
    """Flatten citation lists into unique http(s) urls, first-seen order."""
    seen = []
    for citations in citation_lists:
        for citation in citations or []:
            url = citation_url(citation)
            if url and url.startswith(("http://", "https://")) and url not in seen:
                seen.append(url)
    return seen


def domain_of(url):
    host = urlparse(url).netloc.lower()
    return host[4:] if host.startswith("www.") else host


def log_conditionally(logger, level, msg, *args, **kwargs):
    """
    Logs a message only if in development environment or if the log level
    is WARNING, ERROR, or CRITICAL.
    """
    if settings.PYTHON_ENVIRONMENT == "development" or level >= logging.WARNING:
        logger.log(level, msg, *args, **kwargs)


def print_env_variables():
    for name in ("PIPELINE_BATCH_LIMIT", "PIPELINE_MAX_ATTEMPTS", "PIPELINE_JOB_TIMEOUT_SECONDS",
                 "SCHEDULER_RESERVE_WINDOW_MINUTES", "AUTOMATION_DRIVER_FACTORY",
                 "RATE_INTERVAL_S", "RATE_LIMIT_MAX"):
        print(f"➡️  {name}:", getattr(settings, name, "Not Set"))
