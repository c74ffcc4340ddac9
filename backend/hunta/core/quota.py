import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Dict, Optional, Tuple, Union

logger = logging.getLogger(__name__)

UNLIMITED = "unlimited"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_utc_midnight(now: datetime) -> datetime:
    """Start of the UTC calendar day after `now`."""
    day = now.astimezone(timezone.utc).date()
    return datetime.combine(day + timedelta(days=1), time.min, tzinfo=timezone.utc)


@dataclass
class QuotaRecord:
    count: int
    reset_at: datetime


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    remaining: Union[int, str]
    reset_at: datetime
    decided_at: datetime

    @property
    def retry_after_seconds(self) -> int:
        return max(0, int((self.reset_at - self.decided_at).total_seconds()))


class QuotaGate:
    """
    Per-identity daily search allowance, held in memory for the process lifetime.

    Records are keyed by (identity, UTC date) recomputed on every call, so a record
    from an earlier day can never block today's allowance. Check-and-increment runs
    under one lock; nothing inside the critical section awaits, so it's atomic for
    both threads and asyncio tasks.
    """

    def __init__(
        self,
        daily_limit: int = 1,
        now: Callable[[], datetime] = utcnow,
        sweep_interval: timedelta = timedelta(minutes=10),
    ) -> None:
        if daily_limit < 0:
            raise ValueError("daily_limit must be >= 0")
        self.daily_limit = daily_limit
        self._now = now
        self._sweep_interval = sweep_interval
        self._records: Dict[Tuple[str, date], QuotaRecord] = {}
        self._lock = threading.Lock()
        self._last_sweep: Optional[datetime] = None

    def __len__(self) -> int:
        return len(self._records)

    def check_and_consume(self, identity: str, is_privileged: bool = False) -> QuotaDecision:
        now = self._now()
        reset_at = next_utc_midnight(now)
        if is_privileged:
            return QuotaDecision(allowed=True, remaining=UNLIMITED, reset_at=reset_at, decided_at=now)

        key = (identity, now.astimezone(timezone.utc).date())
        with self._lock:
            self._maybe_sweep(now)
            record = self._records.get(key)
            if record is None:
                record = QuotaRecord(count=0, reset_at=reset_at)
                self._records[key] = record

            if record.count >= self.daily_limit:
                logger.info("Daily limit reached for %s (limit=%d)", identity, self.daily_limit)
                return QuotaDecision(allowed=False, remaining=0, reset_at=reset_at, decided_at=now)

            record.count += 1
            return QuotaDecision(
                allowed=True, remaining=self.daily_limit - record.count, reset_at=reset_at, decided_at=now
            )

    def peek(self, identity: str, is_privileged: bool = False) -> QuotaDecision:
        """What check_and_consume would answer, without consuming anything."""
        now = self._now()
        reset_at = next_utc_midnight(now)
        if is_privileged:
            return QuotaDecision(allowed=True, remaining=UNLIMITED, reset_at=reset_at, decided_at=now)

        key = (identity, now.astimezone(timezone.utc).date())
        with self._lock:
            record = self._records.get(key)
            used = record.count if record is not None else 0
        remaining = max(0, self.daily_limit - used)
        return QuotaDecision(allowed=remaining > 0, remaining=remaining, reset_at=reset_at, decided_at=now)

    def sweep(self) -> int:
        """Drop records whose reset time has passed. Returns how many were removed."""
        with self._lock:
            return self._sweep_locked(self._now())

    def _maybe_sweep(self, now: datetime) -> None:
        if self._last_sweep is not None and now - self._last_sweep < self._sweep_interval:
            return
        self._sweep_locked(now)

    def _sweep_locked(self, now: datetime) -> int:
        expired = [k for k, r in self._records.items() if r.reset_at <= now]
        for k in expired:
            del self._records[k]
        self._last_sweep = now
        if expired:
            logger.debug("Swept %d expired quota records", len(expired))
        return len(expired)
