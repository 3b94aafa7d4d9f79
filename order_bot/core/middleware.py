"""
FastAPI middleware and exception handlers.

- RequestContextMiddleware: correlation id + one log line per request, phone
  numbers in paths masked (``/orders/phone/25571234****``)
- SecurityHeadersMiddleware
- WebhookRateLimitMiddleware: per-IP sliding window on the webhook paths
- AppException -> ``{"error": {"code", "message", "details"}}`` responses
"""
import re
import time
from collections import defaultdict, deque
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from order_bot.core.exceptions import AppException, ErrorCode
from order_bot.core.logging import get_correlation_id, get_logger, set_correlation_id

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"

# מספר טלפון כמקטע path (למשל /orders/phone/255712345678)
_PHONE_SEGMENT_RE = re.compile(r"(?<=/)(\+?\d{3,})\d{4}(?=/|$)")


def mask_phone_in_path(path: str) -> str:
    return _PHONE_SEGMENT_RE.sub(r"\1****", path)


def _error_response(status_code: int, code: ErrorCode, message: str,
                    headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code.value, "message": message, "details": {}}},
        headers={CORRELATION_HEADER: get_correlation_id(), **(headers or {})},
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a correlation id to the request and log its outcome"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = correlation_id
        path = mask_phone_in_path(request.url.path)
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"{request.method} {path} failed",
                extra_data={"error": str(e), "duration_ms": round((time.perf_counter() - started) * 1000, 1)},
                exc_info=True,
            )
            raise

        response.headers[CORRELATION_HEADER] = correlation_id
        log = logger.info if response.status_code < 400 else logger.warning
        log(
            f"{request.method} {path} -> {response.status_code}",
            extra_data={
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                "client_host": request.client.host if request.client else None,
            },
        )
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """nosniff always; HSTS and CSP only outside DEBUG so local HTTP keeps working"""

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        if not self._debug:
            response.headers["Content-Security-Policy"] = "upgrade-insecure-requests"
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


class WebhookRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window limit per client IP for paths containing ``/webhook``.

    Meta retries on non-2xx, so a 429 here only delays a delivery; the
    idempotency table makes the retry safe.
    """

    def __init__(self, app: FastAPI, *, max_requests: int = 100, window_seconds: int = 60) -> None:
        super().__init__(app)
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._hits: dict[str, deque[float]] = defaultdict(deque)

    def _allow(self, ip: str, now: float) -> bool:
        hits = self._hits[ip]
        while hits and hits[0] < now - self._window_seconds:
            hits.popleft()
        if len(hits) >= self._max_requests:
            return False
        hits.append(now)
        return True

    def _forget_idle(self, now: float) -> None:
        # IP שלא שלח כלום בחלון האחרון לא נשמר בזיכרון
        for ip in [ip for ip, hits in self._hits.items() if not hits or hits[-1] < now - self._window_seconds]:
            del self._hits[ip]

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if "/webhook" not in request.url.path:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        now = time.monotonic()
        self._forget_idle(now)

        if not self._allow(client_ip, now):
            logger.warning(
                "Webhook rate limit exceeded",
                extra_data={"client_ip": client_ip, "limit": self._max_requests, "window_seconds": self._window_seconds},
            )
            return _error_response(
                429, ErrorCode.RATE_LIMITED, "Too many requests. Please try again later.",
                headers={"Retry-After": str(self._window_seconds)},
            )
        return await call_next(request)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    logger.warning(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": mask_phone_in_path(request.url.path),
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={CORRELATION_HEADER: get_correlation_id()},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={"message": str(exc), "path": mask_phone_in_path(request.url.path)},
        exc_info=True,
    )
    return _error_response(500, ErrorCode.INTERNAL_ERROR, "An unexpected error occurred")


def setup_middleware(app: FastAPI) -> None:
    """Register middleware. Last added is outermost."""
    from order_bot.core.config import settings

    # סדר עיבוד בקשה: SecurityHeaders -> RequestContext -> RateLimit -> app
    app.add_middleware(
        WebhookRateLimitMiddleware,
        max_requests=settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
    )
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
