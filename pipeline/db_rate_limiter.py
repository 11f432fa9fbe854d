import logging
import time
from django.conf import settings
from django.db import transaction
from django.utils import timezone
from .models import RateLimit

logger = logging.getLogger(__name__)


class DBRateLimiter:
    """
    Token bucket kept in the ``RateLimit`` table, so every worker process
    calling the same outbound service draws from one budget.
    """

    def __init__(self, key, rate_per_sec, burst, poll_seconds=0.05):
        self.key          = key
        self.rate         = rate_per_sec
        self.burst        = burst
        self.poll_seconds = poll_seconds

    @classmethod
    def for_service(cls, service):
        burst = settings.RATE_LIMIT_MAX
        return cls(f"outbound:{service}", rate_per_sec=burst / settings.RATE_INTERVAL_S, burst=burst)

    def wait_for_slot(self, timeout=None):
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.try_consume():
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError(f"Rate limit '{self.key}': no token within {timeout}s")
            time.sleep(self.poll_seconds)

    @transaction.atomic
    def try_consume(self):
        now = timezone.now()
        bucket, created = RateLimit.objects.select_for_update().get_or_create(
            key=self.key,
            defaults={"tokens": self.burst, "updated_at": now}
        )
        if created:
            logger.debug(f"Created rate-limit bucket {self.key} with {self.burst} tokens")
        refilled = min(self.burst, bucket.tokens + (now - bucket.updated_at).total_seconds() * self.rate)
        if refilled < 1.0:
            return False
        bucket.tokens     = refilled - 1.0
        bucket.updated_at = now
        bucket.save(update_fields=["tokens", "updated_at"])
        return True
