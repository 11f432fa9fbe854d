"""
Capacity scheduler for the shared pool of automation accounts.

Nightly batches, onboarding runs and query-stage jobs all compete for the same
handful of accounts. Every call rebuilds the busy sets from the database:

- accounts backing a running scheduled batch
- accounts reserved by a pending batch starting inside the look-ahead window
- accounts backing a running onboarding run
- accounts holding an unexpired lease (the atomic claim written by
  ``try_allocate``)

Free accounts are handed out least-recently-used first. Handing one out is a
conditional UPDATE on the account row, so two allocators can never both win
the same account. When nothing is free the caller gets a wait estimate
instead of an exception.
"""
import logging
import math
from dataclasses import dataclass
from datetime import timedelta

from django.conf import settings
from django.db.models import Q
from django.utils import timezone

from .models import Account, OnboardingRun, ScheduledBatch

logger = logging.getLogger(__name__)

STATE_FREE       = "FREE"
STATE_DAILY      = "BUSY:daily"
STATE_ONBOARDING = "BUSY:onboarding"
STATE_LEASED     = "LEASED"
STATE_RESERVED   = "RESERVED"


@dataclass(frozen=True)
class AccountState:
    account_id: object
    state: str
    last_used_at: object = None
    estimated_free_at: object = None
    next_batch_at: object = None

    @property
    def is_free(self):
        return self.state == STATE_FREE

    def lru_key(self):
        # Never-used accounts first, then oldest use; id breaks ties
        return (self.last_used_at is not None, self.last_used_at or 0, str(self.account_id))


@dataclass(frozen=True)
class CapacitySnapshot:
    now: object
    accounts: tuple
    default_wait_minutes: int = 15

    @property
    def free_accounts(self):
        return sorted((a for a in self.accounts if a.is_free), key=AccountState.lru_key)

    @property
    def free_slots(self):
        return len(self.free_accounts)

    @property
    def can_accept(self):
        return self.free_slots > 0

    @property
    def estimated_wait_minutes(self):
        if self.can_accept:
            return 0
        return self.wait_estimate()

    def wait_estimate(self):
        """Minutes until the earliest busy account frees up, never below 1."""
        fallback = self.now + timedelta(minutes=self.default_wait_minutes)
        times = [a.estimated_free_at or fallback for a in self.accounts if not a.is_free]
        if not times:
            return self.default_wait_minutes
        seconds = (min(times) - self.now).total_seconds()
        return max(1, math.ceil(seconds / 60))

    def to_dict(self):
        return {
            "free_slots": self.free_slots,
            "total_accounts": len(self.accounts),
            "can_accept_onboarding": self.can_accept,
            "estimated_wait_minutes": self.estimated_wait_minutes,
            "accounts": [
                {
                    "id": str(a.account_id),
                    "state": a.state,
                    "estimated_free_at": a.estimated_free_at.isoformat() if a.estimated_free_at else None,
                    "next_batch_at": a.next_batch_at.isoformat() if a.next_batch_at else None,
                }
                for a in self.accounts
            ],
        }


@dataclass(frozen=True)
class Allocation:
    account: Account = None
    estimated_wait_minutes: int = 0
    snapshot: CapacitySnapshot = None

    @property
    def ok(self):
        return self.account is not None

    @property
    def busy(self):
        return self.account is None


def compute_capacity(now, accounts, running_batches=None, reserved_batches=None,
                     onboardings=None, leases=None, *, minutes_per_prompt=2.5,
                     default_batch_size=3, default_wait_minutes=15):
    """
    Pure capacity computation.

    ``accounts`` is an iterable of ``(account_id, last_used_at)`` for eligible
    accounts only. ``running_batches`` and ``reserved_batches`` map an account
    id to ``(execution_time, batch_size)``, ``onboardings`` maps it to the
    remaining prompt count and ``leases`` to ``leased_until``.
    """
    running_batches = running_batches or {}
    reserved_batches = reserved_batches or {}
    onboardings = onboardings or {}
    leases = leases or {}
    per_prompt = timedelta(minutes=minutes_per_prompt)

    def batch_end(batch):
        execution_time, batch_size = batch
        return execution_time + (batch_size or default_batch_size) * per_prompt

    states = []
    for account_id, last_used_at in accounts:
        if account_id in running_batches:
            state = AccountState(account_id, STATE_DAILY, last_used_at,
                                 batch_end(running_batches[account_id]))
        elif account_id in onboardings:
            remaining = max(1, onboardings[account_id])
            state = AccountState(account_id, STATE_ONBOARDING, last_used_at,
                                 now + remaining * per_prompt)
        elif account_id in leases:
            state = AccountState(account_id, STATE_LEASED, last_used_at, leases[account_id])
        elif account_id in reserved_batches:
            batch = reserved_batches[account_id]
            state = AccountState(account_id, STATE_RESERVED, last_used_at,
                                 batch_end(batch), next_batch_at=batch[0])
        else:
            state = AccountState(account_id, STATE_FREE, last_used_at)
        states.append(state)

    return CapacitySnapshot(now=now, accounts=tuple(states), default_wait_minutes=default_wait_minutes)


class CapacityScheduler:
    """Reads the live busy sets and hands out accounts one lease at a time."""

    def __init__(self, *, reserve_window_minutes=None, minutes_per_prompt=None,
                 default_batch_size=None, default_wait_minutes=None, lease_minutes=None):
        self.reserve_window = timedelta(minutes=reserve_window_minutes
                                        if reserve_window_minutes is not None
                                        else settings.SCHEDULER_RESERVE_WINDOW_MINUTES)
        self.minutes_per_prompt = (minutes_per_prompt if minutes_per_prompt is not None
                                   else settings.SCHEDULER_MINUTES_PER_PROMPT)
        self.default_batch_size = default_batch_size or settings.SCHEDULER_DEFAULT_BATCH_SIZE
        self.default_wait_minutes = default_wait_minutes or settings.SCHEDULER_DEFAULT_WAIT_MINUTES
        self.lease = timedelta(minutes=lease_minutes or settings.SCHEDULER_LEASE_MINUTES)

    def snapshot(self, now=None):
        now = now or timezone.now()

        accounts = list(Account.eligible().values_list("id", "last_used_at", "leased_until"))
        running = {
            account_id: (execution_time, batch_size)
            for account_id, execution_time, batch_size in ScheduledBatch.objects.filter(
                status=ScheduledBatch.STATUS_RUNNING, account__isnull=False,
            ).values_list("account_id", "execution_time", "batch_size")
        }
        reserved = {}
        for account_id, execution_time, batch_size in ScheduledBatch.objects.filter(
            status=ScheduledBatch.STATUS_PENDING,
            account__isnull=False,
            execution_time__gte=now,
            execution_time__lte=now + self.reserve_window,
        ).order_by("execution_time").values_list("account_id", "execution_time", "batch_size"):
            reserved.setdefault(account_id, (execution_time, batch_size))
        onboardings = {
            account_id: total - sent
            for account_id, total, sent in OnboardingRun.objects.filter(
                status=OnboardingRun.STATUS_RUNNING, account__isnull=False,
            ).values_list("account_id", "total_prompts", "prompts_sent")
        }
        leases = {
            account_id: leased_until
            for account_id, _, leased_until in accounts
            if leased_until is not None and leased_until > now
        }

        return compute_capacity(
            now,
            [(account_id, last_used_at) for account_id, last_used_at, _ in accounts],
            running_batches=running,
            reserved_batches=reserved,
            onboardings=onboardings,
            leases=leases,
            minutes_per_prompt=self.minutes_per_prompt,
            default_batch_size=self.default_batch_size,
            default_wait_minutes=self.default_wait_minutes,
        )

    def try_allocate(self, now=None, *, holder, lease=None):
        """
        Claim the least-recently-used free account for ``holder``.

        Returns an ``Allocation`` holding the account, or a busy allocation
        with the estimated wait in minutes. Never raises for lack of capacity.
        """
        now = now or timezone.now()
        lease = lease or self.lease

        snapshot = None
        for _ in range(2):
            snapshot = self.snapshot(now)
            if not snapshot.can_accept:
                wait = snapshot.estimated_wait_minutes
                logger.info(f"⏳ No free account for {holder}; estimated wait {wait} min")
                return Allocation(estimated_wait_minutes=wait, snapshot=snapshot)

            for candidate in snapshot.free_accounts:
                if self._claim(candidate.account_id, holder, now, lease):
                    account = Account.objects.get(pk=candidate.account_id)
                    logger.info(f"🔐 Account {account.email} leased to {holder} until {account.leased_until}")
                    return Allocation(account=account, snapshot=snapshot)

            logger.warning(f"⚠️ Lost every account claim for {holder}; recomputing capacity")

        return Allocation(estimated_wait_minutes=max(1, snapshot.wait_estimate()), snapshot=snapshot)

    def _claim(self, account_id, holder, now, lease):
        updated = (
            Account.eligible()
            .filter(pk=account_id)
            .filter(Q(leased_until__isnull=True) | Q(leased_until__lte=now))
            .update(leased_until=now + lease, leased_by=holder, last_used_at=now)
        )
        return updated == 1

    def release(self, account_id, holder):
        """Drop a lease, but only if ``holder`` still owns it."""
        released = Account.objects.filter(pk=account_id, leased_by=holder).update(
            leased_until=None, leased_by=None,
        )
        if released:
            logger.info(f"🔓 Released account {account_id} from {holder}")
        return bool(released)

    def hold(self, account_id, holder, until):
        """Push a lease out to ``until`` if ``holder`` still owns it."""
        held = Account.objects.filter(pk=account_id, leased_by=holder).update(leased_until=until)
        if held:
            logger.warning(f"⛓️ Account {account_id} held for {holder} until {until}")
        return bool(held)

    def flag_account(self, account_id, reason, now=None):
        """Pull an account out of rotation after a session-level failure."""
        now = now or timezone.now()
        Account.objects.filter(pk=account_id).update(
            is_eligible=False,
            needs_attention=True,
            attention_reason=reason,
            flagged_at=now,
            leased_until=None,
            leased_by=None,
        )
        logger.error(f"🚩 Account {account_id} flagged for attention: {reason}")

    def reinstate_account(self, account_id):
        """Put a flagged account back into rotation once its session is fixed."""
        reinstated = Account.objects.filter(pk=account_id, status=Account.STATUS_ACTIVE).update(
            is_eligible=True,
            needs_attention=False,
            attention_reason=None,
            flagged_at=None,
        )
        if reinstated:
            logger.info(f"♻️ Account {account_id} back in rotation")
        return bool(reinstated)
