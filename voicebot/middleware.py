"""
HTTP middleware: per-client rate limiting and security headers.
"""
import logging
import math
import time
from typing import Callable, Dict, Optional, Tuple

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = logging.getLogger("voicebot")


def extract_client_id(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class FixedWindowLimiter:
    """In-memory fixed-window counter per client. Expired windows are pruned once per window."""

    def __init__(self, window_s: float, max_requests: int, clock: Callable[[], float] = time.monotonic):
        self.window_s = window_s
        self.max_requests = max_requests
        self.clock = clock
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._last_prune = clock()

    def _prune(self, now: float) -> None:
        expired = [cid for cid, (start, _) in self._windows.items() if now - start >= self.window_s]
        for cid in expired:
            del self._windows[cid]
        self._last_prune = now

    def hit(self, client_id: str) -> Tuple[bool, int, float]:
        """Count one request. Returns (allowed, remaining, seconds until reset)."""
        now = self.clock()
        if now - self._last_prune >= self.window_s:
            self._prune(now)
        start, count = self._windows.get(client_id, (now, 0))
        if now - start >= self.window_s:
            start, count = now, 0
        count += 1
        self._windows[client_id] = (start, count)
        reset_in = max(0.0, self.window_s - (now - start))
        return count <= self.max_requests, max(0, self.max_requests - count), reset_in

    def __len__(self) -> int:
        return len(self._windows)


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: ASGIApp,
        window_ms: int = 900000,
        max_requests: int = 100,
        exclude_paths: Optional[list] = None,
    ):
        super().__init__(app)
        self.limiter = FixedWindowLimiter(window_ms / 1000.0, max_requests)
        self.exclude_paths = exclude_paths or ["/health"]

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.exclude_paths or request.method == "OPTIONS":
            return await call_next(request)

        client_id = extract_client_id(request)
        allowed, remaining, reset_in = self.limiter.hit(client_id)
        if not allowed:
            logger.warning(f"Rate limit exceeded for {client_id} on {request.url.path}")
            return JSONResponse(
                status_code=429,
                content={
                    "error": "Too many requests from this IP, please try again later.",
                    "retryAfter": math.ceil(reset_in),
                },
                headers={"Retry-After": str(math.ceil(reset_in))},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.limiter.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    HEADERS = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "no-referrer",
        "Cross-Origin-Resource-Policy": "same-site",
    }

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        for name, value in self.HEADERS.items():
            response.headers.setdefault(name, value)
        return response
