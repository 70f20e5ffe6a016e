"""Fixed-window request counters, process-local and fail-open."""
import logging
import math
import random
import time
from dataclasses import dataclass
from typing import Callable

from app.security.redact import fingerprint

logger = logging.getLogger(__name__)

GC_HORIZON_SECONDS = 300
GC_SAMPLE_RATE = 0.01


@dataclass
class RateLimitCounter:
    window_id: int
    window_start: float
    window_seconds: float
    count: int = 0


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int = 0


class RateLimiter:
    """Best-effort abuse mitigation keyed by (endpoint class, client).

    Counters live in this instance only; nothing is shared across processes.
    Any internal failure lets the request through.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        gc_horizon_seconds: float = GC_HORIZON_SECONDS,
        gc_sample_rate: float = GC_SAMPLE_RATE,
        rng: Callable[[], float] = random.random,
    ):
        self._clock = clock
        self._gc_horizon = gc_horizon_seconds
        self._gc_sample_rate = gc_sample_rate
        self._rng = rng
        self._counters: dict[tuple[str, str], RateLimitCounter] = {}

    def __len__(self) -> int:
        return len(self._counters)

    def allow(self, client_key: str, endpoint_class: str, limit: int, window_seconds: int) -> bool:
        return self.check(client_key, endpoint_class, limit, window_seconds).allowed

    def check(self, client_key: str, endpoint_class: str, limit: int, window_seconds: int) -> RateLimitDecision:
        try:
            decision = self._check(client_key, endpoint_class, limit, window_seconds)
        except Exception as e:
            logger.warning(
                f"Rate limiter error, allowing request: {type(e).__name__} "
                f"class={endpoint_class} client={fingerprint(client_key)}"
            )
            return RateLimitDecision(allowed=True, remaining=limit)

        if not decision.allowed:
            logger.warning(f"Rate limit exceeded: class={endpoint_class} client={fingerprint(client_key)} limit={limit}")
        return decision

    def _check(self, client_key: str, endpoint_class: str, limit: int, window_seconds: int) -> RateLimitDecision:
        now = self._clock()
        window_id = int(now // window_seconds)
        key = (endpoint_class, client_key)

        counter = self._counters.get(key)
        if counter is None or counter.window_id != window_id:
            counter = RateLimitCounter(
                window_id=window_id,
                window_start=window_id * window_seconds,
                window_seconds=window_seconds,
            )
            self._counters[key] = counter
            if self._rng() < self._gc_sample_rate:
                self.cleanup(now)

        if counter.count >= limit:
            retry_after = max(1, math.ceil(counter.window_start + window_seconds - now))
            return RateLimitDecision(allowed=False, remaining=0, retry_after=retry_after)

        counter.count += 1
        return RateLimitDecision(allowed=True, remaining=limit - counter.count)

    def cleanup(self, now: float | None = None) -> int:
        """Evict counters whose window ended more than the GC horizon ago."""
        now = self._clock() if now is None else now
        stale = [k for k, c in self._counters.items() if now - (c.window_start + c.window_seconds) > self._gc_horizon]
        for key in stale:
            del self._counters[key]
        if stale:
            logger.debug(f"Rate limiter evicted {len(stale)} stale counters")
        return len(stale)
