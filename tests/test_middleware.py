"""
בדיקות ל-Middleware - app/core/middleware.py

מכסה:
- CorrelationIdMiddleware: הפצת correlation ID בבקשות
- RequestLoggingMiddleware: לוג בקשות עם מיסוך מספרי מגע
- WebhookRateLimitMiddleware: הגבלת קצב ל-webhook של הגטוויי
- Exception handlers: טיפול ב-AppException ו-Exception גנרי
- mask_path_pii: מיסוך מספרי טלפון ב-URL
- setup_middleware: הגדרת middleware stack
"""
import time
from unittest.mock import AsyncMock

import pytest
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse, JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from app.core.exceptions import (
    AppException,
    ErrorCode,
    InitializationBackoffError,
    TicketNotFoundError,
)
from app.core.middleware import (
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    WebhookRateLimitMiddleware,
    mask_path_pii,
    app_exception_handler,
    generic_exception_handler,
)

WEBHOOK_PATH = "/api/gateway/webhook"


# ============================================================================
# Helpers
# ============================================================================


def _hello(request: Request) -> PlainTextResponse:
    """endpoint מינימלי לבדיקה."""
    return PlainTextResponse("ok")


def _webhook(request: Request) -> PlainTextResponse:
    """endpoint שמדמה את ה-webhook של הגטוויי."""
    return PlainTextResponse("webhook ok")


def _error(request: Request) -> PlainTextResponse:
    """endpoint שזורק שגיאה."""
    raise ValueError("שגיאת בדיקה")


def _build_app(
    *,
    routes: list[Route] | None = None,
    middlewares: list[tuple] | None = None,
) -> Starlette:
    """בונה אפליקציית Starlette מינימלית עם middleware."""
    default_routes = [
        Route("/test", _hello),
        Route(WEBHOOK_PATH, _webhook),
        Route("/error", _error),
    ]
    app = Starlette(routes=routes or default_routes)
    if middlewares:
        for mw_class, kwargs in middlewares:
            app.add_middleware(mw_class, **kwargs)
    return app


# ============================================================================
# בדיקות mask_path_pii
# ============================================================================


class TestMaskPathPii:
    """בדיקות למיסוך מספרי טלפון ב-URL path"""

    @pytest.mark.unit
    def test_masks_contact_number_in_path(self) -> None:
        masked = mask_path_pii("/api/contacts/5511999990001/tickets")
        assert masked == "/api/contacts/5511****01/tickets"

    @pytest.mark.unit
    def test_masks_chat_id(self) -> None:
        masked = mask_path_pii("/api/chats/972501234567@c.us")
        assert "1234" not in masked
        assert masked.endswith("@c.us")

    @pytest.mark.unit
    def test_no_phone_no_change(self) -> None:
        """path ללא מספר טלפון - ללא שינוי"""
        path = "/api/connections/3/qr"
        assert mask_path_pii(path) == path

    @pytest.mark.unit
    def test_multiple_phones_in_path(self) -> None:
        path = "/api/chat/5511999990001/to/972509876543"
        assert mask_path_pii(path).count("****") == 2

    @pytest.mark.unit
    def test_short_ids_not_masked(self) -> None:
        """מזהי טיקט והודעה קצרים לא מוסתרים"""
        assert "****" not in mask_path_pii("/api/tickets/12345/status")


# ============================================================================
# בדיקות CorrelationIdMiddleware
# ============================================================================


class TestCorrelationIdMiddleware:
    """בדיקות להפצת Correlation ID"""

    @pytest.mark.unit
    def test_generates_correlation_id_when_missing(self) -> None:
        """יוצר correlation ID חדש כשאין בבקשה"""
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert response.status_code == 200
            assert len(response.headers["x-correlation-id"]) > 0

    @pytest.mark.unit
    def test_preserves_existing_correlation_id(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test", headers={"X-Correlation-ID": "my-correlation-id"})
            assert response.headers["x-correlation-id"] == "my-correlation-id"

    @pytest.mark.unit
    def test_accepts_gateway_request_id(self) -> None:
        """הגטוויי שולח X-Request-ID; הוא הופך ל-correlation ID"""
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get(WEBHOOK_PATH, headers={"X-Request-ID": "gw-req-1"})
            assert response.headers["x-correlation-id"] == "gw-req-1"

    @pytest.mark.unit
    def test_correlation_id_unique_per_request(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            id1 = client.get("/test").headers["x-correlation-id"]
            id2 = client.get("/test").headers["x-correlation-id"]
            assert id1 != id2


# ============================================================================
# בדיקות RequestLoggingMiddleware
# ============================================================================


class TestRequestLoggingMiddleware:
    """בדיקות ללוג בקשות"""

    @pytest.mark.unit
    def test_successful_request_logged(self) -> None:
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with TestClient(app) as client:
            assert client.get("/test").status_code == 200

    @pytest.mark.unit
    def test_exception_in_handler_reraised(self) -> None:
        """exception ב-handler עולה מחדש"""
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with TestClient(app, raise_server_exceptions=False) as client:
            assert client.get("/error").status_code == 500


# ============================================================================
# בדיקות WebhookRateLimitMiddleware
# ============================================================================


class TestWebhookRateLimitMiddleware:
    """בדיקות להגבלת קצב webhook"""

    @pytest.mark.unit
    def test_allows_requests_under_limit(self) -> None:
        app = _build_app(
            middlewares=[(WebhookRateLimitMiddleware, {"max_requests": 5, "window_seconds": 60})]
        )
        with TestClient(app) as client:
            for _ in range(5):
                assert client.get(WEBHOOK_PATH).status_code == 200

    @pytest.mark.unit
    def test_blocks_requests_over_limit(self) -> None:
        """בקשות מעל הלימיט נחסמות עם 429"""
        app = _build_app(
            middlewares=[(WebhookRateLimitMiddleware, {"max_requests": 3, "window_seconds": 60})]
        )
        with TestClient(app) as client:
            for _ in range(3):
                assert client.get(WEBHOOK_PATH).status_code == 200

            response = client.get(WEBHOOK_PATH)
            assert response.status_code == 429
            assert response.headers["Retry-After"] == "60"
            assert response.json()["error"]["code"] == ErrorCode.RATE_LIMITED.value

    @pytest.mark.unit
    def test_other_paths_not_limited(self) -> None:
        app = _build_app(
            middlewares=[(WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 60})]
        )
        with TestClient(app) as client:
            assert client.get(WEBHOOK_PATH).status_code == 200
            assert client.get(WEBHOOK_PATH).status_code == 429

            assert client.get("/test").status_code == 200
            assert client.get("/test").status_code == 200

    @pytest.mark.unit
    def test_prune_removes_old_entries(self) -> None:
        """timestamps מחוץ לחלון נמחקים"""
        mw = WebhookRateLimitMiddleware(_build_app(), max_requests=100, window_seconds=60)
        now = time.monotonic()
        mw._requests["1.2.3.4"].extend([now - 120, now - 90, now - 30, now])

        assert mw._prune("1.2.3.4", now) == 2

    @pytest.mark.unit
    def test_prune_deletes_empty_ip(self) -> None:
        """IP בלי timestamps בחלון נמחק מהזיכרון"""
        mw = WebhookRateLimitMiddleware(_build_app(), max_requests=100, window_seconds=60)
        now = time.monotonic()
        mw._requests["1.2.3.4"].append(now - 120)

        assert mw._prune("1.2.3.4", now) == 0
        assert "1.2.3.4" not in mw._requests

    @pytest.mark.unit
    def test_429_response_includes_correlation_id(self) -> None:
        app = _build_app(
            middlewares=[
                (WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 60}),
                (CorrelationIdMiddleware, {}),
            ]
        )
        with TestClient(app) as client:
            client.get(WEBHOOK_PATH)
            response = client.get(WEBHOOK_PATH)

            assert response.status_code == 429
            assert "x-correlation-id" in response.headers


# ============================================================================
# בדיקות Exception Handlers
# ============================================================================


class TestAppExceptionHandler:
    """בדיקות ל-app_exception_handler"""

    @pytest.mark.unit
    async def test_handles_app_exception(self) -> None:
        """מטפל ב-AppException ומחזיר JSON תקין"""
        exc = TicketNotFoundError(123)

        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = "/api/tickets/123/status"

        response = await app_exception_handler(mock_request, exc)

        assert isinstance(response, JSONResponse)
        assert response.status_code == 404
        assert "x-correlation-id" in response.headers
        assert ErrorCode.TICKET_NOT_FOUND.value in response.body.decode()

    @pytest.mark.unit
    async def test_backoff_sets_retry_after(self) -> None:
        exc = InitializationBackoffError(3, retry_after_seconds=42.7, failures=3)

        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = "/api/connections/3/init"

        response = await app_exception_handler(mock_request, exc)

        assert response.status_code == 429
        assert response.headers["retry-after"] == "42"

    @pytest.mark.unit
    async def test_plain_app_exception_has_no_retry_after(self) -> None:
        exc = AppException("boom", error_code=ErrorCode.INTERNAL_ERROR, status_code=500)

        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = "/api/test"

        response = await app_exception_handler(mock_request, exc)

        assert "retry-after" not in response.headers


class TestGenericExceptionHandler:
    """בדיקות ל-generic_exception_handler"""

    @pytest.mark.unit
    async def test_handles_unexpected_exception(self) -> None:
        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = "/api/something"

        response = await generic_exception_handler(mock_request, RuntimeError("שגיאה בלתי צפויה"))

        assert isinstance(response, JSONResponse)
        assert response.status_code == 500
        assert "x-correlation-id" in response.headers

    @pytest.mark.unit
    async def test_does_not_leak_internal_details(self) -> None:
        """לא חושף פרטים פנימיים בתשובה"""
        exc = RuntimeError("database connection failed on host 10.0.0.1")

        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = "/api/test"

        response = await generic_exception_handler(mock_request, exc)

        body = response.body.decode()
        assert "10.0.0.1" not in body
        assert "database connection" not in body
        assert "ERR_1000" in body


# ============================================================================
# בדיקות SecurityHeadersMiddleware
# ============================================================================


class TestSecurityHeadersMiddleware:

    @pytest.mark.unit
    def test_nosniff_on_all_responses(self) -> None:
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": False})])
        with TestClient(app) as client:
            assert client.get("/test").headers["x-content-type-options"] == "nosniff"

    @pytest.mark.unit
    def test_no_csp_or_hsts_in_debug_mode(self) -> None:
        """במצב debug אין CSP ואין HSTS"""
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": True})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert "content-security-policy" not in response.headers
            assert "strict-transport-security" not in response.headers

    @pytest.mark.unit
    def test_hsts_includes_subdomains(self) -> None:
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": False})])
        with TestClient(app) as client:
            hsts = client.get("/test").headers.get("strict-transport-security", "")
            assert "includeSubDomains" in hsts


# ============================================================================
# בדיקות setup_middleware
# ============================================================================


class TestSetupMiddleware:
    """בדיקות ל-setup_middleware דרך האפליקציה המלאה"""

    @pytest.mark.unit
    async def test_full_middleware_stack(self, test_client) -> None:
        response = await test_client.get("/health")

        assert response.status_code == 200
        assert "x-correlation-id" in response.headers
        assert response.headers.get("x-content-type-options") == "nosniff"

    @pytest.mark.unit
    async def test_gateway_webhook_through_full_stack(self, test_client) -> None:
        response = await test_client.post(
            WEBHOOK_PATH,
            json={"session": "unknown-1", "event": "ready", "data": {}},
            headers={"X-Gateway-Token": "test-gateway-token"},
        )

        assert response.status_code == 200
        assert "x-correlation-id" in response.headers
        assert response.headers.get("x-content-type-options") == "nosniff"
