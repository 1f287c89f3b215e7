"""
FastAPI Middleware

Request/response middleware for the support desk API:
- Correlation ID injection (also accepted from the gateway's X-Request-ID)
- Request logging with contact number masking
- Security headers
- Sliding-window rate limiting for the gateway webhook
"""
import re
import time
from collections import defaultdict, deque
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.logging import (
    get_logger,
    set_correlation_id,
    get_correlation_id
)
from app.core.exceptions import AppException, ErrorCode

logger = get_logger(__name__)

# מספרי WhatsApp מופיעים ב-path כ-digits בלבד (לפעמים עם @c.us)
_PHONE_IN_PATH_RE = re.compile(r"(\d{4})\d{3,}(\d{2})")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds a correlation ID for the lifetime of the request"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        incoming = (
            request.headers.get("X-Correlation-ID")
            or request.headers.get("X-Request-ID")
        )
        correlation_id = set_correlation_id(incoming)
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


def mask_path_pii(path: str) -> str:
    """מיסוך מספרי טלפון ב-URL path"""
    return _PHONE_IN_PATH_RE.sub(r"\1****\2", path)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with duration, masking contact numbers in the path"""

    # נקודות שנסרקות כל כמה שניות (poll של QR, health) - רק ב-debug
    QUIET_SUFFIXES = ("/qr", "/health", "/health/ready")

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        start_time = time.monotonic()
        safe_path = mask_path_pii(request.url.path)
        quiet = safe_path.endswith(self.QUIET_SUFFIXES)

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {safe_path}",
                extra_data={
                    "method": request.method,
                    "path": safe_path,
                    "duration_seconds": round(time.monotonic() - start_time, 4),
                    "error": str(e),
                },
                exc_info=True
            )
            raise

        extra = {
            "method": request.method,
            "path": safe_path,
            "status_code": response.status_code,
            "duration_seconds": round(time.monotonic() - start_time, 4),
            "client_host": request.client.host if request.client else None,
        }
        if response.status_code >= 400:
            logger.warning(f"Request completed: {request.method} {safe_path}", extra_data=extra)
        elif quiet:
            logger.debug(f"Request completed: {request.method} {safe_path}", extra_data=extra)
        else:
            logger.info(f"Request completed: {request.method} {safe_path}", extra_data=extra)
        return response


async def app_exception_handler(
    request: Request,
    exc: AppException
) -> JSONResponse:
    """Handle application exceptions"""
    logger.warning(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": mask_path_pii(request.url.path),
        }
    )

    headers = {"X-Correlation-ID": get_correlation_id()}
    retry_after = exc.details.get("retry_after_seconds")
    if exc.status_code == 429 and retry_after is not None:
        headers["Retry-After"] = str(max(1, int(retry_after)))

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=headers,
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """Handle unexpected exceptions"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": mask_path_pii(request.url.path),
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred",
                "details": {}
            }
        },
        headers={"X-Correlation-ID": get_correlation_id()}
    )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    כותרות אבטחה לכל תשובה.

    nosniff תמיד; HSTS ו-upgrade-insecure-requests רק מחוץ ל-DEBUG,
    כדי לא לשבור פיתוח מקומי ב-HTTP.
    """

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        if not self._debug:
            response.headers["Content-Security-Policy"] = "upgrade-insecure-requests"
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response


class WebhookRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window rate limit for the gateway webhook, keyed by client IP.

    The gateway normally calls from a single address, so the limit is sized for
    a whole tenant's traffic rather than for a single browser.
    """

    def __init__(
        self,
        app: FastAPI,
        *,
        max_requests: int = 600,
        window_seconds: int = 60,
        path_prefix: str = "/api/gateway/webhook",
    ) -> None:
        super().__init__(app)
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._path_prefix = path_prefix
        self._requests: dict[str, deque[float]] = defaultdict(deque)

    def _prune(self, ip: str, now: float) -> int:
        """מסיר timestamps מחוץ לחלון ומחזיר כמה נשארו"""
        cutoff = now - self._window_seconds
        timestamps = self._requests[ip]
        while timestamps and timestamps[0] < cutoff:
            timestamps.popleft()
        if not timestamps:
            # IP חד-פעמי לא נשאר בזיכרון
            del self._requests[ip]
            return 0
        return len(timestamps)

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        path = request.url.path
        if not path.startswith(self._path_prefix):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        now = time.monotonic()

        if self._prune(client_ip, now) >= self._max_requests:
            logger.warning(
                "Rate limit exceeded for gateway webhook",
                extra_data={
                    "client_ip": client_ip,
                    "limit": self._max_requests,
                    "window_seconds": self._window_seconds,
                },
            )
            return JSONResponse(
                status_code=429,
                content={
                    "error": {
                        "code": ErrorCode.RATE_LIMITED.value,
                        "message": "Too many requests",
                        "details": {},
                    }
                },
                headers={
                    "Retry-After": str(self._window_seconds),
                    "X-Correlation-ID": get_correlation_id(),
                },
            )

        self._requests[client_ip].append(now)
        return await call_next(request)


def setup_middleware(app: FastAPI) -> None:
    """Setup all middleware for the application"""
    from app.core.config import settings

    # ב-Starlette ה-middleware האחרון שנוסף הוא ה-outermost.
    # סדר עיבוד בקשה: SecurityHeaders → CORS → CorrelationId → RequestLogging → RateLimit → app
    app.add_middleware(
        WebhookRateLimitMiddleware,
        max_requests=settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)

    origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    """Setup exception handlers"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
