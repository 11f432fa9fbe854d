import logging

import requests
from django.conf import settings

from .db_rate_limiter import DBRateLimiter

logger = logging.getLogger(__name__)


class TavilyExtractor:
    """
    Fetches page content for a list of urls in one call.

    Returns ``{url: (content, error)}`` with exactly one of the two set, for
    every url asked for.
    """

    def __init__(self, api_key=None, endpoint=None, timeout=60, session=None, limiter=None):
        self.api_key = api_key or settings.TAVILY_API_KEY
        self.endpoint = endpoint or settings.TAVILY_EXTRACT_URL
        self.timeout = timeout
        self.session = session or requests.Session()
        self.limiter = limiter or DBRateLimiter.for_service("tavily")

    def __call__(self, urls):
        if not urls:
            return {}
        if not self.api_key:
            return {url: (None, "TAVILY_API_KEY is not set") for url in urls}

        self.limiter.wait_for_slot(timeout=self.timeout)
        try:
            response = self.session.post(
                self.endpoint,
                json={"urls": list(urls)},
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"❌ Tavily extract failed for {len(urls)} url(s): {e}")
            return {url: (None, f"extract request failed: {e}") for url in urls}

        extracted = {}
        for item in payload.get("results") or []:
            url = item.get("url")
            content = item.get("raw_content") or item.get("content") or ""
            if url:
                extracted[url] = (content, None) if content else (None, "empty content")
        for item in payload.get("failed_results") or []:
            url = item.get("url")
            if url:
                extracted[url] = (None, item.get("error") or "extraction failed")

        return {url: extracted.get(url, (None, "missing from extract response")) for url in urls}
