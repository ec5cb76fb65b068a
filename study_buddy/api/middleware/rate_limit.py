"""
Per-student request throttling.

Each student (the UUID in X-User-Id) gets `rate_limit_requests_per_minute`
requests per `rate_limit_window_seconds`. Callers without a valid id share
a budget per client address. Throttled requests get the same error body as
an upstream outage, a 429 and a Retry-After header.
"""

import logging
import math
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from study_buddy.api.dependencies import parse_user_id
from study_buddy.api.responses import error_response
from study_buddy.shared.config import ApiConfig, settings
from study_buddy.shared.logging import get_logger, log_with_context

logger = get_logger(__name__)

RATE_LIMITED_DETAIL = "Too many requests. Please slow down and try again shortly."


class StudentRateLimiter:
    """Sliding window of admitted request times per caller."""

    def __init__(self, limit: int, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self._windows: Dict[str, Deque[float]] = {}

    def _window(self, key: str, now: float) -> Deque[float]:
        window = self._windows.setdefault(key, deque())
        while window and window[0] <= now - self.window_seconds:
            window.popleft()
        return window

    def acquire(self, key: str) -> int:
        """
        Admit one request for `key`.

        Returns 0 when admitted, otherwise the whole seconds until the oldest
        request in the window expires (at least 1).
        """
        now = self.clock()
        window = self._window(key, now)
        if len(window) >= self.limit:
            return max(1, math.ceil(window[0] + self.window_seconds - now))
        window.append(now)
        return 0

    def prune(self):
        """Forget callers whose windows have emptied."""
        now = self.clock()
        for key in list(self._windows):
            if not self._window(key, now):
                del self._windows[key]

    def __len__(self) -> int:
        return len(self._windows)


def caller_key(request: Request) -> Tuple[Optional[str], Optional[str]]:
    """(throttle key, user id): the student when X-User-Id is a UUID, else the client address."""
    user_id = parse_user_id(request.headers.get("X-User-Id"))
    if user_id:
        return f"user:{user_id}", user_id
    if request.client:
        return f"ip:{request.client.host}", None
    return None, None


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Throttle chat, feedback and session calls per student."""

    def __init__(self, app, config: Optional[ApiConfig] = None):
        super().__init__(app)
        self.config = config or settings.api
        self.limiter = StudentRateLimiter(
            self.config.rate_limit_requests_per_minute,
            self.config.rate_limit_window_seconds,
        )
        self.exempt = tuple(self.config.rate_limit_exempt_paths)
        self._admitted = 0

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path.startswith(self.exempt):
            return await call_next(request)

        key, user_id = caller_key(request)
        if key is None:
            return await call_next(request)

        retry_after = self.limiter.acquire(key)
        if retry_after:
            log_with_context(
                logger, logging.WARNING, "Request throttled",
                user_id=user_id,
                action="rate_limited",
                path=request.url.path,
                retry_after=retry_after,
            )
            return error_response(429, RATE_LIMITED_DETAIL, retry_after=retry_after)

        self._admitted += 1
        if self._admitted % 1000 == 0:
            self.limiter.prune()
        return await call_next(request)
