# Spotfleet bounded retry
# One explicit policy object instead of "wait and try again" scattered
# through every caller. Used for offer fallback, readiness probes, the first
# remote command after boot, and termination retries.

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

log = logging.getLogger("spotfleet")


class RetryExhausted(Exception):
    """Every attempt failed. `last_error` holds the final failure."""

    def __init__(self, message, attempts=0, last_error=None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


@dataclass
class RetryPolicy:
    """
    max_attempts: total calls, including the first.
    delays: sleep before attempt n+1 is delays[n-1]; the last value repeats.
    retry_on: exception types that are retryable at all.
    is_transient: optional finer filter on a caught exception.
    deadline: optional wall-clock budget in seconds across all attempts.
    """
    max_attempts: int = 3
    delays: Sequence[float] = field(default_factory=lambda: (1.0,))
    retry_on: tuple = (Exception,)
    is_transient: Optional[Callable[[BaseException], bool]] = None
    deadline: Optional[float] = None

    @classmethod
    def exponential(cls, base=1.0, factor=2.0, cap=300.0, max_attempts=5, **kwargs):
        """Delays base, base*factor, ... capped at `cap`."""
        delays = [min(base * (factor ** i), cap) for i in range(max(1, max_attempts - 1))]
        return cls(max_attempts=max_attempts, delays=delays, **kwargs)

    @classmethod
    def fixed(cls, delay, max_attempts, **kwargs):
        return cls(max_attempts=max_attempts, delays=(delay,), **kwargs)

    def delay_for(self, attempt):
        """Sleep after failed attempt number `attempt` (1-based)."""
        if not self.delays:
            return 0.0
        idx = min(attempt - 1, len(self.delays) - 1)
        return float(self.delays[idx])

    def should_retry(self, exc):
        if not isinstance(exc, self.retry_on):
            return False
        if self.is_transient is not None:
            return bool(self.is_transient(exc))
        return True


def retry_call(fn, policy, sleep=time.sleep, clock=time.monotonic, on_retry=None, label="operation"):
    """
    Call fn(attempt) until it returns, raises a non-retryable error, or the
    policy runs out. Non-retryable errors propagate unchanged. Exhaustion
    raises RetryExhausted chained to the last error.
    """
    started = clock()
    last_error = None
    attempt = 0
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return fn(attempt)
        except Exception as e:
            if not policy.should_retry(e):
                raise
            last_error = e

        if attempt >= policy.max_attempts:
            break
        delay = policy.delay_for(attempt)
        if policy.deadline is not None and clock() - started + delay > policy.deadline:
            log.warning("RETRY DEADLINE %s after %d attempts: %s", label, attempt, last_error)
            break
        log.info(
            "RETRY %s attempt=%d/%d delay=%.1fs err=%s",
            label, attempt, policy.max_attempts, delay, last_error,
        )
        if on_retry:
            on_retry(attempt, last_error)
        if delay > 0:
            sleep(delay)

    raise RetryExhausted(
        f"{label} failed after {attempt} attempts: {last_error}",
        attempts=attempt,
        last_error=last_error,
    ) from last_error
