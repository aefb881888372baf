import os
import threading
import time
from collections import defaultdict, deque
from typing import Deque, Dict, Iterable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse


class SlidingWindowLimiter(BaseHTTPMiddleware):
    """Per-client request cap over a rolling minute.

    OTP endpoints get a tighter cap (``otp_limit_per_minute``) since code
    guessing and SMS pumping are both throughput attacks.
    """

    def __init__(
        self,
        app,
        limit_per_minute: int = 60,
        otp_limit_per_minute: int = 20,
        otp_prefix: str = "/otp/",
        exclude_paths: Iterable[str] = ("/health", "/metrics"),
    ):
        super().__init__(app)
        self.window_seconds = 60
        self.limit_per_minute = limit_per_minute
        self.otp_limit_per_minute = otp_limit_per_minute
        self.otp_prefix = otp_prefix
        self.exclude_paths = set(exclude_paths)
        self.store: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def _key(self, request: Request) -> str:
        client = request.client.host if request.client else "unknown"
        return f"ip:{client}"

    def _limit_for(self, path: str) -> int:
        # allow runtime override via env
        try:
            base = int(os.getenv("RL_LIMIT_PER_MINUTE_OVERRIDE", str(self.limit_per_minute)))
        except ValueError:
            base = self.limit_per_minute
        if path.startswith(self.otp_prefix):
            base = min(base, self.otp_limit_per_minute)
        return base

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in self.exclude_paths:
            return await call_next(request)
        now = time.time()
        limit = self._limit_for(path)
        with self._lock:
            dq = self.store[self._key(request)]
            while dq and now - dq[0] > self.window_seconds:
                dq.popleft()
            if len(dq) >= limit:
                retry_after = max(1, int(self.window_seconds - (now - dq[0])))
                return JSONResponse(
                    status_code=429,
                    content={"error": {"code": "rate_limited", "message": "Too many requests", "details": {"retryAfterSeconds": retry_after}}},
                    headers={"Retry-After": str(retry_after)},
                )
            dq.append(now)
        return await call_next(request)
