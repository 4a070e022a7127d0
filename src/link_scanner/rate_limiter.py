"""
Rate Limiter module for the link scanner.

Tracks a sliding window of remote API calls and decides whether a new call
is currently permitted. Admission and recording are separate steps: the
caller checks first and records only once a call has actually been issued,
so a denied check leaves no trace in the window.
"""

import time
from dataclasses import dataclass
from typing import Optional

from link_scanner.config import RateLimitConfig


@dataclass
class RateLimitStatus:
    """Result of a rate limit check."""

    allowed: bool
    wait_seconds: float
    reason: Optional[str] = None


class RateLimiter:
    """
    Sliding-window rate limiter for remote API calls.

    Timestamps are seconds on the monotonic clock unless the caller passes
    an explicit `now`. The window is process-local and never persisted.
    """

    def __init__(self, config: Optional[RateLimitConfig] = None) -> None:
        """
        Initialize the rate limiter.

        Args:
            config: Window size and maximum calls per window
        """
        self._config = config or RateLimitConfig()
        self._request_times: list[float] = []

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    def _prune(self, current_time: float) -> None:
        window_start = current_time - self._config.window_seconds
        self._request_times = [t for t in self._request_times if t > window_start]

    def check(self, now: Optional[float] = None) -> RateLimitStatus:
        """
        Check whether a call may be made now, without recording it.

        Args:
            now: Current time in seconds (defaults to time.monotonic())

        Returns:
            RateLimitStatus with the wait until the oldest entry leaves the window
        """
        current_time = time.monotonic() if now is None else now
        self._prune(current_time)

        request_count = len(self._request_times)
        if request_count >= self._config.max_requests:
            if self._request_times:
                wait_until = min(self._request_times) + self._config.window_seconds
                wait_seconds = max(0.0, wait_until - current_time)
            else:
                # max_requests of zero admits nothing
                wait_seconds = self._config.window_seconds
            return RateLimitStatus(
                allowed=False,
                wait_seconds=wait_seconds,
                reason=f"Rate limit reached: {request_count}/{self._config.max_requests}",
            )

        return RateLimitStatus(allowed=True, wait_seconds=0.0, reason=None)

    def try_admit(self, now: Optional[float] = None) -> bool:
        """Return True iff fewer than max_requests calls remain in the window."""
        return self.check(now).allowed

    def record_call(self, now: Optional[float] = None) -> None:
        """
        Record that a remote call was issued.

        Should be called after the call returns, whatever its outcome.
        """
        self._request_times.append(time.monotonic() if now is None else now)

    def calls_in_window(self, now: Optional[float] = None) -> int:
        current_time = time.monotonic() if now is None else now
        self._prune(current_time)
        return len(self._request_times)

    def reset(self) -> None:
        """Forget all recorded calls."""
        self._request_times.clear()
