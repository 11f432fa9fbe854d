"""
Automation execution session.

Drives a chat-style service through a logged-in browser account, one query at
a time. The browser steps themselves live behind ``AutomationDriver``; this
module owns the parts the scheduler depends on:

- the session is checked once, before the first query; a dead session fails
  the whole batch and is reported apart from per-query failures
- each answer is read by polling until its length stops changing
- a conversation is reset between queries
"""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.utils.module_loading import import_string

logger = logging.getLogger(__name__)


class SessionError(Exception):
    """The account's session is unusable (logged out, expired, blocked)."""


class ResponseTimeout(Exception):
    """An answer never stopped growing within the poll bound."""


class AutomationDriver(ABC):
    """Browser-side steps for one account. Implementations are not part of this repo."""

    @abstractmethod
    def is_logged_in(self) -> bool: ...

    @abstractmethod
    def submit(self, text: str) -> None: ...

    @abstractmethod
    def read_response(self) -> str: ...

    @abstractmethod
    def extract_citations(self) -> list: ...

    @abstractmethod
    def new_conversation(self) -> None: ...

    def close(self) -> None:
        pass


@dataclass
class QueryOutcome:
    text: str
    response_text: str = ""
    citations: list = field(default_factory=list)
    error: str = None

    @property
    def ok(self):
        return self.error is None


@dataclass
class SessionOutcome:
    session_ok: bool
    results: list = field(default_factory=list)
    error: str = None

    @property
    def succeeded(self):
        return [r for r in self.results if r.ok]

    @property
    def failed(self):
        return [r for r in self.results if not r.ok]


class AutomationSession:
    def __init__(self, driver, *, settle_seconds=None, poll_interval=None,
                 stable_polls=None, max_polls=None, sleep=time.sleep):
        self.driver = driver
        self.settle_seconds = settle_seconds if settle_seconds is not None else settings.AUTOMATION_SETTLE_SECONDS
        self.poll_interval = poll_interval if poll_interval is not None else settings.AUTOMATION_POLL_INTERVAL_SECONDS
        self.stable_polls = stable_polls or settings.AUTOMATION_STABLE_POLLS
        self.max_polls = max_polls or settings.AUTOMATION_MAX_POLLS
        self.sleep = sleep

    def run(self, queries):
        try:
            logged_in = self.driver.is_logged_in()
        except Exception as e:
            logged_in = False
            reason = f"session check failed: {e}"
        else:
            reason = "session not logged in - requires re-initialization"

        if not logged_in:
            logger.error(f"❌ {reason}; skipping {len(queries)} queries")
            return SessionOutcome(
                session_ok=False,
                error=reason,
                results=[QueryOutcome(text=q, error=f"session: {reason}") for q in queries],
            )

        results = []
        for index, text in enumerate(queries, start=1):
            logger.info(f"📝 Query {index}/{len(queries)}: {text[:80]}")
            try:
                if index > 1:
                    self.driver.new_conversation()
                self.driver.submit(text)
                response_text = self._wait_for_stable_response()
                citations = self.driver.extract_citations() or []
                results.append(QueryOutcome(text=text, response_text=response_text, citations=citations))
                logger.info(f"✅ Response {len(response_text)} chars, {len(citations)} citations")
            except SessionError as e:
                # Session died mid-batch: the rest cannot run on this account either
                logger.error(f"❌ Session lost at query {index}: {e}")
                results.append(QueryOutcome(text=text, error=f"session: {e}"))
                results.extend(QueryOutcome(text=q, error=f"session: {e}") for q in queries[index:])
                return SessionOutcome(session_ok=False, results=results, error=str(e))
            except Exception as e:
                logger.error(f"❌ Query {index} failed: {e}")
                results.append(QueryOutcome(text=text, error=str(e)))

        return SessionOutcome(session_ok=True, results=results)

    def _wait_for_stable_response(self):
        self.sleep(self.settle_seconds)

        stable = 0
        last_length = 0
        for _ in range(self.max_polls):
            self.sleep(self.poll_interval)
            text = self.driver.read_response() or ""
            if text and len(text) == last_length:
                stable += 1
                if stable >= self.stable_polls:
                    return text
            else:
                stable = 0
            last_length = len(text)

        raise ResponseTimeout(
            f"response did not stabilise after {self.max_polls} polls ({last_length} chars)"
        )


def load_driver_factory(path=None):
    """Resolve the configured ``account -> AutomationDriver`` factory."""
    path = path or settings.AUTOMATION_DRIVER_FACTORY
    if not path:
        raise ImproperlyConfigured("AUTOMATION_DRIVER_FACTORY is not set")
    return import_string(path)
