"""
Keyed in-memory rate limiters.

This module implements the two admission gates used around the Graph API:
- A token bucket limiter capping outbound calls per key (e.g. token
  refreshes per page)
- A sliding window limiter de-duplicating bursts of inbound deliveries
  per key (e.g. webhooks per page)

Both are plain instances owned by the composition root. State is keyed,
in-memory and lost on restart. Every bucket/window carries its own lock, so
checks on the same key are serialized while different keys do not contend.
Denial is a normal return value; check() never raises.
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class TimeProvider(ABC):
    """Protocol for providing time values, allows injection of fake time in tests."""

    @abstractmethod
    def now(self) -> float:
        """Return current time in seconds since epoch."""
        pass

    def now_ms(self) -> float:
        """Return current time in milliseconds since epoch."""
        return self.now() * 1000.0


class SystemTimeProvider(TimeProvider):
    """Real time provider using system clock."""

    def now(self) -> float:
        return time.time()


class FakeTimeProvider(TimeProvider):
    """Fake time provider for deterministic tests."""

    def __init__(self, initial_time: float = 1000.0):
        self._current_time = initial_time
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self._current_time

    def advance(self, seconds: float) -> None:
        """Advance time by given seconds."""
        with self._lock:
            self._current_time += seconds

    def set(self, time: float) -> None:
        """Set absolute time."""
        with self._lock:
            self._current_time = time


class TokenBucket:
    """
    Token bucket for rate limiting with configurable refill rate.

    Uses an injectable TimeProvider so tests control elapsed time.
    """

    def __init__(
        self,
        rate: float,
        capacity: int,
        time_provider: TimeProvider,
        initial_tokens: Optional[float] = None
    ):
        """
        Initialize token bucket.

        Args:
            rate: Token refill rate (tokens per second)
            capacity: Maximum tokens in bucket (burst capacity)
            time_provider: Time provider for getting current time
            initial_tokens: Initial number of tokens (defaults to capacity)
        """
        self.rate = rate
        self.capacity = capacity
        self.time_provider = time_provider
        self._tokens = float(initial_tokens if initial_tokens is not None else capacity)
        self._last_refill = self.time_provider.now()
        self._lock = threading.Lock()

    @property
    def last_refill(self) -> float:
        return self._last_refill

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = self.time_provider.now()
        elapsed = max(0.0, now - self._last_refill)

        self._tokens = min(float(self.capacity), self._tokens + elapsed * self.rate)
        self._last_refill = now

    def consume(self, tokens: int = 1) -> bool:
        """
        Try to consume tokens from bucket.

        Args:
            tokens: Number of tokens to consume

        Returns:
            True if tokens were consumed, False if insufficient tokens
        """
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                self._tokens -= tokens
                return True
            return False

    def peek(self) -> float:
        """Get current token count without consuming."""
        with self._lock:
            self._refill()
            return self._tokens

    def time_until_tokens(self, tokens: int = 1) -> float:
        """
        Calculate time until specified tokens are available.

        Args:
            tokens: Number of tokens needed

        Returns:
            Seconds until tokens available (0 if already available)
        """
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                return 0.0

            tokens_needed = tokens - self._tokens
            return tokens_needed / self.rate if self.rate > 0 else float('inf')

    def reconfigure(self, rate: float, capacity: int) -> None:
        """Apply a new rate and capacity, clamping the current level."""
        with self._lock:
            self._refill()
            self.rate = rate
            self.capacity = capacity
            self._tokens = min(self._tokens, float(capacity))


@dataclass
class TokenBucketStatus:
    """Snapshot of one key's bucket."""

    tokens: float
    capacity: int
    last_refill: float


class TokenBucketRateLimiter:
    """
    Per-key token bucket limiter.

    Keys are created lazily at full capacity. Callers own key cardinality
    (one key per external page identifier, for instance).
    """

    def __init__(self, time_provider: Optional[TimeProvider] = None):
        self.time_provider = time_provider or SystemTimeProvider()
        self._capacity: Optional[int] = None
        self._refill_rate: Optional[float] = None

        self._buckets: Dict[str, TokenBucket] = {}
        self._bucket_lock = threading.Lock()

    @property
    def configured(self) -> bool:
        return self._capacity is not None

    def configure(self, capacity: int, refill_rate: float) -> None:
        """
        Set bucket capacity and refill rate.

        Args:
            capacity: Maximum tokens per key
            refill_rate: Tokens added per second
        """
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if refill_rate < 0:
            raise ValueError("refill_rate must not be negative")

        with self._bucket_lock:
            self._capacity = capacity
            self._refill_rate = refill_rate
            for bucket in self._buckets.values():
                bucket.reconfigure(refill_rate, capacity)

    def _get_or_create_bucket(self, key: str) -> TokenBucket:
        """Get existing bucket or create new one."""
        with self._bucket_lock:
            if key not in self._buckets:
                self._buckets[key] = TokenBucket(
                    rate=self._refill_rate,
                    capacity=self._capacity,
                    time_provider=self.time_provider
                )
            return self._buckets[key]

    def check(self, key: str) -> bool:
        """
        Admit one request for key if a token is available.

        Returns:
            True if admitted (one token consumed), False if denied
        """
        if not self.configured:
            logger.warning("Token bucket not configured, admitting request")
            return True

        bucket = self._get_or_create_bucket(key)
        if bucket.consume(1):
            return True

        logger.debug(f"Token bucket exhausted for {key!r}")
        return False

    def get_status(self, key: str) -> TokenBucketStatus:
        """Current level for key; unknown keys report full capacity."""
        if not self.configured:
            return TokenBucketStatus(
                tokens=0.0, capacity=0, last_refill=self.time_provider.now()
            )

        with self._bucket_lock:
            bucket = self._buckets.get(key)

        if bucket is None:
            return TokenBucketStatus(
                tokens=float(self._capacity),
                capacity=self._capacity,
                last_refill=self.time_provider.now(),
            )

        return TokenBucketStatus(
            tokens=bucket.peek(),
            capacity=bucket.capacity,
            last_refill=bucket.last_refill,
        )

    def reset(self, key: str) -> None:
        """Forget key; the next check starts from full capacity."""
        with self._bucket_lock:
            self._buckets.pop(key, None)


@dataclass
class SlidingWindowStatus:
    """Usage of one key's window. reset_at is in epoch milliseconds."""

    used: int
    limit: int
    remaining: int
    reset_at: float


class _Window:
    """Admitted timestamps (ms) for one key inside the trailing window."""

    def __init__(self, window_ms: float):
        self.window_ms = window_ms
        self.requests: Deque[float] = deque()
        self.lock = threading.Lock()
        # Set by cleanup once the window is dropped from the registry
        self.retired = False

    def prune(self, now_ms: float) -> None:
        window_start = now_ms - self.window_ms
        while self.requests and self.requests[0] <= window_start:
            self.requests.popleft()


class SlidingWindowRateLimiter:
    """
    Named sliding window limiter.

    Each name is initialized with (max_requests, window_ms); each
    (name, key) pair keeps the timestamps of its admitted requests. With
    max_requests == 1 this is "admit iff nothing was admitted for this key
    in the last window_ms".
    """

    CLEANUP_INTERVAL_S = 60.0

    def __init__(self, time_provider: Optional[TimeProvider] = None):
        self.time_provider = time_provider or SystemTimeProvider()
        self._configs: Dict[str, Tuple[int, float]] = {}
        self._windows: Dict[str, _Window] = {}
        self._registry_lock = threading.Lock()
        self._last_cleanup = self.time_provider.now()

    def initialize(self, name: str, max_requests: int, window_ms: float) -> None:
        """
        Register a named limit.

        Args:
            name: Limiter name, used as key namespace
            max_requests: Admissions allowed per key inside the window
            window_ms: Window length in milliseconds
        """
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")

        with self._registry_lock:
            self._configs[name] = (max_requests, float(window_ms))

    def _get_or_create_window(self, name: str, key: str, window_ms: float) -> _Window:
        bucket_key = f"{name}:{key}"
        with self._registry_lock:
            window = self._windows.get(bucket_key)
            if window is None:
                window = _Window(window_ms)
                self._windows[bucket_key] = window
            return window

    def check(self, name: str, key: str) -> bool:
        """
        Admit one request for (name, key) if the window has room.

        Returns:
            True if admitted (timestamp recorded), False if denied
        """
        config = self._configs.get(name)
        if config is None:
            logger.warning(f"Rate limiter {name!r} not initialized, admitting request")
            return True

        max_requests, window_ms = config
        self._maybe_cleanup()

        while True:
            window = self._get_or_create_window(name, key, window_ms)
            now_ms = self.time_provider.now_ms()

            with window.lock:
                if window.retired:
                    continue
                window.prune(now_ms)
                if len(window.requests) >= max_requests:
                    logger.debug(
                        f"Rate limit exceeded for {name}:{key} "
                        f"({len(window.requests)}/{max_requests} in {window_ms:.0f}ms)"
                    )
                    return False
                window.requests.append(now_ms)
                return True

    def get_status(self, name: str, key: str) -> SlidingWindowStatus:
        """Usage snapshot for (name, key) without recording a request."""
        config = self._configs.get(name)
        if config is None:
            return SlidingWindowStatus(used=0, limit=0, remaining=0, reset_at=0.0)

        max_requests, window_ms = config
        now_ms = self.time_provider.now_ms()

        with self._registry_lock:
            window = self._windows.get(f"{name}:{key}")

        if window is None:
            return SlidingWindowStatus(
                used=0,
                limit=max_requests,
                remaining=max_requests,
                reset_at=now_ms + window_ms,
            )

        with window.lock:
            window.prune(now_ms)
            used = len(window.requests)
            reset_at = (
                window.requests[0] + window_ms if window.requests else now_ms + window_ms
            )

        return SlidingWindowStatus(
            used=used,
            limit=max_requests,
            remaining=max(0, max_requests - used),
            reset_at=reset_at,
        )

    def reset(self, name: str, key: str) -> None:
        """Forget the history of (name, key)."""
        with self._registry_lock:
            window = self._windows.pop(f"{name}:{key}", None)
            if window is not None:
                with window.lock:
                    window.retired = True

    def cleanup(self) -> int:
        """
        Drop windows with no admissions left inside their interval.

        Returns:
            Number of windows removed
        """
        now_ms = self.time_provider.now_ms()
        removed = 0
        with self._registry_lock:
            for bucket_key in list(self._windows):
                window = self._windows[bucket_key]
                with window.lock:
                    window.prune(now_ms)
                    if window.requests:
                        continue
                    window.retired = True
                del self._windows[bucket_key]
                removed += 1
            self._last_cleanup = now_ms / 1000.0
        return removed

    def _maybe_cleanup(self) -> None:
        if self.time_provider.now() - self._last_cleanup >= self.CLEANUP_INTERVAL_S:
            removed = self.cleanup()
            if removed:
                logger.debug(f"Sliding window cleanup removed {removed} idle keys")

    def destroy(self) -> None:
        """Drop all names and windows."""
        with self._registry_lock:
            self._windows.clear()
            self._configs.clear()


class BoundSlidingWindowLimiter:
    """A SlidingWindowRateLimiter pinned to a single name."""

    def __init__(self, name: str, limiter: SlidingWindowRateLimiter):
        self.name = name
        self.limiter = limiter

    def check(self, key: str) -> bool:
        return self.limiter.check(self.name, key)

    def get_status(self, key: str) -> SlidingWindowStatus:
        return self.limiter.get_status(self.name, key)

    def reset(self, key: str) -> None:
        self.limiter.reset(self.name, key)

    def destroy(self) -> None:
        self.limiter.destroy()


def create_sliding_window_limiter(
    name: str,
    max_requests: int,
    window_ms: float,
    time_provider: Optional[TimeProvider] = None,
) -> BoundSlidingWindowLimiter:
    """Create a fresh limiter initialized with one named limit."""
    limiter = SlidingWindowRateLimiter(time_provider=time_provider)
    limiter.initialize(name, max_requests, window_ms)
    return BoundSlidingWindowLimiter(name, limiter)


def create_token_bucket_limiter(
    capacity: int,
    refill_rate: float,
    time_provider: Optional[TimeProvider] = None,
) -> TokenBucketRateLimiter:
    """Create a configured token bucket limiter."""
    limiter = TokenBucketRateLimiter(time_provider=time_provider)
    limiter.configure(capacity, refill_rate)
    return limiter
