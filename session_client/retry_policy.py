"""
Retry policy: a pure decision over (attempt, error) -> retry or not, and how long to wait.

Backoff: base * 2^(attempt-1), +/- jitter, capped at max_delay.
- Attempt 1 failed: ~1s
- Attempt 2 failed: ~2s
- attempt >= max_attempts: give up (default 3 attempts total, i.e. 2 retries)
Jitter is a fraction of the delay, at most 1/3, so successive delays never decrease.
"""
import random
from dataclasses import dataclass, field

from session_client.config import RETRY_BASE_DELAY, RETRY_JITTER_RATIO, RETRY_MAX_ATTEMPTS, RETRY_MAX_DELAY
from session_client.errors import ApiError, ErrorKind

RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.RATE_LIMIT, ErrorKind.SERVER})
RETRYABLE_SERVER_STATUSES = frozenset({502, 503, 504})
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
MAX_JITTER_RATIO = 1 / 3


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0


NO_RETRY = RetryDecision(retry=False)


@dataclass
class RetryContext:
    """Bookkeeping for one logical request; discarded when the request settles."""

    max_attempts: int
    attempt: int = 0
    last_error: ErrorKind | None = None
    backoff: float = 0.0


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = RETRY_MAX_ATTEMPTS
    base_delay: float = RETRY_BASE_DELAY
    max_delay: float = RETRY_MAX_DELAY
    jitter_ratio: float = RETRY_JITTER_RATIO
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")

    def is_retryable(self, error: ApiError) -> bool:
        if error.kind not in RETRYABLE_KINDS:
            return False
        if error.kind is ErrorKind.SERVER:
            return error.status is None or error.status in RETRYABLE_SERVER_STATUSES
        return True

    def backoff(self, attempt: int) -> float:
        """Jittered exponential delay (seconds) after the given failed attempt (1-based)."""
        delay = self.base_delay * (2 ** (attempt - 1))
        ratio = min(max(self.jitter_ratio, 0.0), MAX_JITTER_RATIO)
        if ratio:
            delay += delay * self.rng.uniform(-ratio, ratio)
        return min(max(delay, 0.0), self.max_delay)

    def decide(self, attempt: int, error: ApiError, idempotent: bool = True) -> RetryDecision:
        """
        attempt is the 1-based number of the attempt that just failed.
        Unsafe requests (idempotent=False) are never retried.
        """
        if not idempotent or attempt >= self.max_attempts:
            return NO_RETRY
        if not self.is_retryable(error):
            return NO_RETRY
        if error.kind is ErrorKind.RATE_LIMIT and error.retry_after is not None:
            # Honour the server's hint; retrying sooner would just be rejected again
            if error.retry_after > self.max_delay:
                return NO_RETRY
            return RetryDecision(retry=True, delay=error.retry_after)
        return RetryDecision(retry=True, delay=self.backoff(attempt))


def is_safe_method(method: str) -> bool:
    return method.upper() in SAFE_METHODS
