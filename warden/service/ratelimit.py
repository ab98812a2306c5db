from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from warden.config import Settings
from warden.logging import get_logger
from warden.storage.common import AuthStore
from warden.storage.models import RateLimitRecord, utcnow

logger = get_logger(__name__)


class RateLimiter:
    """Per-identifier budget of failed secret checks.

    The budget refills linearly: ``max_attempts`` per ``window``, so after the
    budget is spent one attempt comes back every ``window / max_attempts``
    (six minutes with the defaults). Each failure spends one attempt from the
    refilled budget, never going below zero, so the wait before the next
    allowed attempt only grows with consecutive failures.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.max_attempts = settings.sign_in_max_failed_attempts
        self.window = timedelta(minutes=settings.sign_in_rate_limit_window_minutes)
        self._clock = clock

    def _refilled(self, record: RateLimitRecord, now: datetime) -> float:
        elapsed = max(0.0, (now - record.last_attempt_at).total_seconds())
        rate = self.max_attempts / self.window.total_seconds()
        return min(float(self.max_attempts), record.attempts_left + elapsed * rate)

    def attempts_left(self, identifier: str) -> float:
        record = self.store.get_rate_limit(identifier)
        if record is None:
            return float(self.max_attempts)
        return self._refilled(record, self._clock())

    def is_limited(self, identifier: str) -> bool:
        return self.attempts_left(identifier) < 1

    def retry_after(self, identifier: str) -> Optional[timedelta]:
        """Time until the next attempt is allowed, or None when not limited."""
        left = self.attempts_left(identifier)
        if left >= 1:
            return None
        per_attempt = self.window.total_seconds() / self.max_attempts
        return timedelta(seconds=(1 - left) * per_attempt)

    def record_failure(self, identifier: str) -> float:
        now = self._clock()
        with self.store.transaction():
            record = self.store.get_rate_limit(identifier)
            if record is None:
                remaining = float(self.max_attempts - 1)
            else:
                remaining = max(0.0, self._refilled(record, now) - 1)
            self.store.put_rate_limit(
                RateLimitRecord(
                    identifier=identifier, attempts_left=remaining, last_attempt_at=now
                )
            )
        if remaining < 1:
            logger.info("sign_in_rate_limited", identifier=identifier)
        return remaining

    def reset(self, identifier: str) -> None:
        self.store.delete_rate_limit(identifier)
