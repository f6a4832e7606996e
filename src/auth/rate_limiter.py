"""
Rate limiting for repeated auth failure logs.

Identical failures (same endpoint, status, signer and signature type)
get one full log, then one-line summaries until the cooldown expires.
Each new full log grows the cooldown by the multiplier, up to the cap.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .models import signature_type_label

MS_PER_MINUTE = 60_000


@dataclass(frozen=True)
class FailureKey:
    """Identity of a repeated failure."""
    endpoint: str
    status: int
    signer_address: str
    signature_type: int


@dataclass
class RateLimitEntry:
    """Tracking state for one FailureKey (times in ms)."""
    first_seen_at: float
    last_seen_at: float
    count: int
    suppress_until: float
    last_logged_at: float

    @property
    def cooldown_ms(self) -> float:
        return self.suppress_until - self.last_logged_at


@dataclass(frozen=True)
class ShouldLogResult:
    """Decision for one failure occurrence."""
    log_full: bool
    log_summary: bool
    suppressed_count: int
    next_full_log_ms: float
    cooldown_ms: float

    @property
    def next_full_log_minutes(self) -> float:
        return self.next_full_log_ms / MS_PER_MINUTE

    @property
    def cooldown_minutes(self) -> float:
        return self.cooldown_ms / MS_PER_MINUTE


class AuthFailureRateLimiter:
    """
    Escalating-cooldown deduplicator for auth failures.

    The clock returns seconds (time.time by default) and is injectable
    for tests.
    """

    def __init__(
        self,
        initial_cooldown_ms: int = 5 * MS_PER_MINUTE,
        max_cooldown_ms: int = 15 * MS_PER_MINUTE,
        multiplier: float = 2,
        clock: Callable[[], float] = time.time
    ):
        self.initial_cooldown_ms = initial_cooldown_ms
        self.max_cooldown_ms = max_cooldown_ms
        self.multiplier = multiplier
        self.clock = clock
        self._entries: dict[FailureKey, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def _now_ms(self) -> float:
        return self.clock() * 1000

    def should_log(self, key: FailureKey) -> ShouldLogResult:
        """Record one occurrence of key and decide how to log it."""
        with self._lock:
            now = self._now_ms()
            entry = self._entries.get(key)

            if entry is None:
                self._entries[key] = RateLimitEntry(
                    first_seen_at=now,
                    last_seen_at=now,
                    count=1,
                    suppress_until=now + self.initial_cooldown_ms,
                    last_logged_at=now,
                )
                return ShouldLogResult(
                    log_full=True,
                    log_summary=False,
                    suppressed_count=0,
                    next_full_log_ms=self.initial_cooldown_ms,
                    cooldown_ms=self.initial_cooldown_ms,
                )

            entry.last_seen_at = now
            entry.count += 1

            if now < entry.suppress_until:
                return ShouldLogResult(
                    log_full=False,
                    log_summary=True,
                    suppressed_count=entry.count - 1,
                    next_full_log_ms=entry.suppress_until - now,
                    cooldown_ms=entry.cooldown_ms,
                )

            next_cooldown = min(entry.cooldown_ms * self.multiplier, self.max_cooldown_ms)
            suppressed = entry.count - 1
            entry.last_logged_at = now
            entry.suppress_until = now + next_cooldown
            entry.count = 1

            return ShouldLogResult(
                log_full=True,
                log_summary=False,
                suppressed_count=suppressed,
                next_full_log_ms=next_cooldown,
                cooldown_ms=next_cooldown,
            )

    def entry(self, key: FailureKey) -> Optional[RateLimitEntry]:
        return self._entries.get(key)

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()

    @property
    def entry_count(self) -> int:
        return len(self._entries)


def format_summary(key: FailureKey, result: ShouldLogResult) -> str:
    """One-line log for a suppressed repeat. Empty when a full log is due."""
    if result.log_full:
        return ""
    return (
        f"Auth still failing ({key.status} on {key.endpoint}, sigType={signature_type_label(key.signature_type)}) - "
        f"suppressed {result.suppressed_count} repeats "
        f"(next full log in {math.ceil(result.next_full_log_minutes)}m)"
    )


_global_rate_limiter: Optional[AuthFailureRateLimiter] = None


def get_auth_failure_rate_limiter() -> AuthFailureRateLimiter:
    """Process-wide default limiter."""
    global _global_rate_limiter
    if _global_rate_limiter is None:
        _global_rate_limiter = AuthFailureRateLimiter()
    return _global_rate_limiter


def reset_auth_failure_rate_limiter() -> None:
    global _global_rate_limiter
    if _global_rate_limiter is not None:
        _global_rate_limiter.reset()
    _global_rate_limiter = None
