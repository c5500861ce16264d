from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from vib3sales.config import Settings
from vib3sales.logging import get_logger, redact_email
from vib3sales.storage.models import normalize_email, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_minutes: int = 0


class LoginRateLimiter:
    """Sliding-window counter of failed logins per email.

    Only failures count toward the threshold and successes never reset the
    count. Storage errors degrade to allowing the request.
    """

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.max_attempts = settings.max_login_attempts
        self.window = settings.login_attempt_window

    def check_allowed(self, email: str) -> RateLimitDecision:
        now = utcnow()
        try:
            failures = self.store.list_failed_login_attempts(
                normalize_email(email), now - self.window
            )
        except Exception as exc:
            logger.warning(
                "login_rate_limiter_degraded",
                operation="check",
                email=redact_email(email),
                error=str(exc),
            )
            return RateLimitDecision(allowed=True)

        if len(failures) < self.max_attempts:
            return RateLimitDecision(allowed=True)

        oldest = min(attempt.attempted_at for attempt in failures)
        remaining = (oldest + self.window - now).total_seconds()
        retry_after = max(1, math.ceil(remaining / 60))
        logger.warning(
            "login_rate_limited",
            email=redact_email(email),
            failures=len(failures),
            retry_after_minutes=retry_after,
        )
        return RateLimitDecision(allowed=False, retry_after_minutes=retry_after)

    def record(self, email: str, ip_address: Optional[str], success: bool) -> None:
        try:
            self.store.record_login_attempt(normalize_email(email), ip_address, success, utcnow())
        except Exception as exc:
            logger.warning(
                "login_rate_limiter_degraded",
                operation="record",
                email=redact_email(email),
                error=str(exc),
            )

    def cleanup(self) -> int:
        """Drop attempts that can no longer affect any window."""
        removed = self.store.delete_login_attempts_before(utcnow() - self.window)
        if removed:
            logger.info("login_attempts_pruned", count=removed)
        return removed
