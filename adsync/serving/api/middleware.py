"""
API Middleware

Requests are logged with a request id, and with the ad account when the path
names one, both bound into the structlog context so engine logs carry them.
Callers are throttled per (client, account); health probes are never throttled.
"""

import asyncio
import re
import time
import uuid
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional, Tuple

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = structlog.get_logger(__name__)

_ACCOUNT_PATH = re.compile(r"/accounts/([^/]+)")
_UNTHROTTLED_PREFIX = "/api/v1/health"


def account_from_path(path: str) -> Optional[str]:
    match = _ACCOUNT_PATH.search(path)
    return match.group(1) if match else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with its account, status and duration"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        context = {"request_id": request_id}
        account_id = account_from_path(request.url.path)
        if account_id:
            context["account_id"] = account_id

        structlog.contextvars.bind_contextvars(**context)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            elapsed_ms = (time.perf_counter() - started) * 1000
            log = logger.warning if response.status_code >= 500 else logger.info
            log(
                "Request handled",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(elapsed_ms, 2),
            )
        finally:
            structlog.contextvars.unbind_contextvars(*context)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{elapsed_ms:.2f}ms"
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window limit per client and ad account.

    Keeps one noisy caller from draining the upstream call budget of an
    account; the budget itself still decides every upstream call.
    """

    def __init__(self, app, max_requests: int = 100, window_seconds: int = 60):
        super().__init__(app)
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._windows: Dict[Tuple[str, Optional[str]], Deque[float]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    def _admit(self, key: Tuple[str, Optional[str]], now: float) -> Tuple[bool, int]:
        """Returns (admitted, remaining or retry-after seconds)"""
        window = self._windows[key]
        while window and now - window[0] >= self.window_seconds:
            window.popleft()
        if len(window) >= self.max_requests:
            return False, max(1, int(self.window_seconds - (now - window[0])))
        window.append(now)
        return True, self.max_requests - len(window)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path.startswith(_UNTHROTTLED_PREFIX):
            return await call_next(request)

        key = (request.client.host if request.client else "unknown", account_from_path(path))
        async with self._lock:
            admitted, value = self._admit(key, time.monotonic())

        if not admitted:
            logger.warning("Request rate limit exceeded", client=key[0], account_id=key[1])
            return JSONResponse(
                {"detail": "Rate limit exceeded"},
                status_code=429,
                headers={
                    "Retry-After": str(value),
                    "X-RateLimit-Limit": str(self.max_requests),
                    "X-RateLimit-Remaining": "0",
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(value)
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers.update({
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "Referrer-Policy": "no-referrer",
            "Cache-Control": "no-store",
        })
        return response
