from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable

from algo_engine.config import _read_float_env, _read_int_env

# Requests per window as published by each broker's order API.
_DEFAULT_LIMITS = {
    "dhan": (25, 1.0),
    "angel": (20, 1.0),
}


@dataclass(frozen=True)
class ProviderLimit:
    max_requests: int
    window_seconds: float


class RateLimited(ValueError):
    def __init__(self, provider: str, scope: str, retry_after_seconds: float) -> None:
        self.provider = provider
        self.scope = scope
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"provider_rate_limited provider={provider} scope={scope} retry_after_seconds={retry_after_seconds:.3f}"
        )


def provider_limit(provider: str) -> ProviderLimit:
    key = provider.strip().lower()
    if key not in _DEFAULT_LIMITS:
        raise ValueError(f"unsupported provider for rate limit: {provider}")
    max_requests, window_seconds = _DEFAULT_LIMITS[key]
    prefix = f"ALGO_ENGINE_RATE_LIMIT_{key.upper()}"
    return ProviderLimit(
        max_requests=_read_int_env(f"{prefix}_MAX_REQUESTS", max_requests),
        window_seconds=_read_float_env(f"{prefix}_WINDOW_SECONDS", window_seconds),
    )


class SlidingWindowLimiter:
    """Request timestamps per (provider, account) key; one broker account never throttles another."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[tuple[str, str], deque[float]] = {}

    def acquire(self, provider: str, scope: str, limit: ProviderLimit) -> int:
        """Record one request; return how many remain in the current window."""
        now = self._clock()
        with self._lock:
            window = self._windows.setdefault((provider, scope), deque())
            while window and now - window[0] >= limit.window_seconds:
                window.popleft()
            if len(window) >= limit.max_requests:
                raise RateLimited(provider, scope, max(0.0, limit.window_seconds - (now - window[0])))
            window.append(now)
            return limit.max_requests - len(window)

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()


_LIMITER = SlidingWindowLimiter()


def enforce_provider_limit(provider: str, scope: str = "") -> dict[str, Any]:
    limit = provider_limit(provider)
    remaining = _LIMITER.acquire(provider, scope, limit)
    return {
        "provider": provider,
        "scope": scope,
        "max_requests": limit.max_requests,
        "window_seconds": limit.window_seconds,
        "remaining_in_window": remaining,
    }


def reset_rate_limits() -> None:
    _LIMITER.clear()
