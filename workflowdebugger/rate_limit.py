"""In-process fixed-window rate limiter for unauthenticated and sensitive endpoints.

State lives in this process only. Behind N instances the effective limit is
N times the configured one; replace with a shared counter store before scaling out.
"""
import logging
import threading
import time
from dataclasses import dataclass

from fastapi import Request

from .errors import ApiError

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 5
DEFAULT_WINDOW_SECONDS = 15 * 60
SWEEP_INTERVAL_SECONDS = 5 * 60


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: float


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._entries = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper = None

    def check(self, key: str, limit: int = DEFAULT_LIMIT, window: float = DEFAULT_WINDOW_SECONDS) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.reset_at < now:
                entry = _Window(count=0, reset_at=now + window)
                self._entries[key] = entry
            entry.count += 1
            count, reset_at = entry.count, entry.reset_at

        allowed = count <= limit
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - count),
            reset_at=reset_at,
            retry_after=0.0 if allowed else reset_at - now,
        )

    def sweep(self) -> int:
        """Drop expired windows. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.reset_at < now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def reset(self):
        with self._lock:
            self._entries.clear()

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def start_sweeper(self, interval: float = SWEEP_INTERVAL_SECONDS):
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop, args=(interval,), name="rate-limit-sweeper", daemon=True
        )
        self._sweeper.start()

    def stop_sweeper(self):
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None

    def _sweep_loop(self, interval: float):
        while not self._stop.wait(interval):
            removed = self.sweep()
            if removed:
                logger.debug("Rate limiter swept %d expired entries", removed)


limiter = RateLimiter()


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = request.headers.get(header)
        if value:
            return value.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def rate_limit(scope: str, limit: int = DEFAULT_LIMIT, window: float = DEFAULT_WINDOW_SECONDS,
               message: str = "Too many requests. Please try again later."):
    """Dependency factory: count one hit against `scope:<client ip>`, 429 when over."""

    def dependency(request: Request) -> RateLimitResult:
        ip = get_client_ip(request)
        result = limiter.check(f"{scope}:{ip}", limit=limit, window=window)
        if not result.allowed:
            logger.warning("Rate limit exceeded", extra={"scope": scope, "client_ip": ip})
            raise ApiError.too_many_requests(result.retry_after, message)
        return result

    return dependency
