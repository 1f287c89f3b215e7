"""
בדיקות יחידה ל-Health Check endpoints - liveness ו-readiness.
"""
from contextlib import contextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from app.domain.services.health_service import _session_summary, check_readiness


@contextmanager
def _dependencies(db="ok", redis="ok", gateway="ok", celery="ok"):
    """החלפת ארבע בדיקות התלויות בערכים קבועים"""
    with patch(
        "app.domain.services.health_service._check_db",
        new_callable=AsyncMock,
        return_value=db,
    ), patch(
        "app.domain.services.health_service._check_redis",
        new_callable=AsyncMock,
        return_value=redis,
    ), patch(
        "app.domain.services.health_service._check_gateway",
        new_callable=AsyncMock,
        return_value=gateway,
    ), patch(
        "app.domain.services.health_service._check_celery",
        new_callable=AsyncMock,
        return_value=celery,
    ):
        yield


# ============================================================================
# Liveness Probe - GET /health
# ============================================================================


class TestLivenessProbe:
    """בדיקות ל-endpoint /health (liveness probe)."""

    @pytest.mark.unit
    async def test_liveness_returns_healthy(self, test_client: httpx.AsyncClient) -> None:
        """liveness probe מחזיר status=healthy תמיד."""
        response = await test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


# ============================================================================
# Readiness Probe - GET /health/ready
# ============================================================================


class TestReadinessProbe:
    """בדיקות ל-endpoint /health/ready (readiness probe)."""

    @pytest.mark.unit
    async def test_readiness_all_healthy(self, test_client: httpx.AsyncClient) -> None:
        """כשכל התלויות תקינות - status=healthy ו-HTTP 200."""
        with _dependencies():
            response = await test_client.get("/health/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["db"] == "ok"
        assert data["redis"] == "ok"
        assert data["whatsapp_gateway"] == "ok"
        assert data["celery"] == "ok"
        assert data["sessions"] == {"registered": 0, "connected": 0, "initializing": 0}

    @pytest.mark.unit
    async def test_readiness_db_down(self, test_client: httpx.AsyncClient) -> None:
        """כש-DB לא זמין - status=degraded ו-HTTP 503."""
        with _dependencies(db="error: db_unavailable"):
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert "error" in data["db"]
        assert data["redis"] == "ok"

    @pytest.mark.unit
    async def test_readiness_gateway_down(self, test_client: httpx.AsyncClient) -> None:
        with _dependencies(gateway="error: gateway_unavailable"):
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["whatsapp_gateway"] == "error: gateway_unavailable"
        assert data["db"] == "ok"

    @pytest.mark.unit
    async def test_readiness_multiple_failures(self, test_client: httpx.AsyncClient) -> None:
        """כשכמה תלויות נכשלות - status=degraded ופירוט לכל תלות."""
        with _dependencies(db="error: db_unavailable", celery="error: celery_unavailable"):
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert "error" in data["db"]
        assert "error" in data["celery"]
        assert data["redis"] == "ok"

    @pytest.mark.unit
    async def test_readiness_counts_sessions(
        self, test_client: httpx.AsyncClient, connected_client
    ) -> None:
        """ספירת sessions היא מידע בלבד ולא משפיעה על status"""
        with _dependencies():
            response = await test_client.get("/health/ready")

        data = response.json()
        assert data["status"] == "healthy"
        assert data["sessions"] == {"registered": 1, "connected": 1, "initializing": 0}


class TestSessionSummary:

    @pytest.mark.unit
    def test_summary_of_snapshot(self) -> None:
        snapshot = [
            {"registered": True, "lifecycle": "CONNECTED", "initializing": False},
            {"registered": True, "lifecycle": "QR_PENDING", "initializing": True},
            {"registered": False, "lifecycle": "IDLE", "initializing": False},
        ]

        assert _session_summary(snapshot) == {"registered": 2, "connected": 1, "initializing": 1}

    @pytest.mark.unit
    def test_summary_without_snapshot(self) -> None:
        assert _session_summary(None) == {"registered": 0, "connected": 0, "initializing": 0}

    @pytest.mark.unit
    async def test_check_readiness_without_session_manager(self) -> None:
        with _dependencies():
            result = await check_readiness()

        assert result["status"] == "healthy"
        assert result["sessions"]["registered"] == 0


# ============================================================================
# בדיקות יחידה לפונקציות בדיקה פנימיות
# ============================================================================


def _mock_http_client(response=None, side_effect=None) -> AsyncMock:
    mock_client = AsyncMock()
    mock_client.get = AsyncMock(return_value=response, side_effect=side_effect)
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=None)
    return mock_client


class TestHealthCheckFunctions:
    """בדיקות ישירות לפונקציות הבדיקה בשירות."""

    @pytest.mark.unit
    async def test_check_db_success(self) -> None:
        """_check_db מחזיר ok כש-DB זמין."""
        mock_session = AsyncMock()
        mock_session.execute = AsyncMock()
        mock_session.__aenter__ = AsyncMock(return_value=mock_session)
        mock_session.__aexit__ = AsyncMock(return_value=None)

        with patch(
            "app.domain.services.health_service.AsyncSessionLocal",
            return_value=mock_session,
        ):
            from app.domain.services.health_service import _check_db
            result = await _check_db()

        assert result == "ok"

    @pytest.mark.unit
    async def test_check_db_failure(self) -> None:
        """_check_db מחזיר error כש-DB לא זמין."""
        mock_session = AsyncMock()
        mock_session.execute = AsyncMock(side_effect=ConnectionError("refused"))
        mock_session.__aenter__ = AsyncMock(return_value=mock_session)
        mock_session.__aexit__ = AsyncMock(return_value=None)

        with patch(
            "app.domain.services.health_service.AsyncSessionLocal",
            return_value=mock_session,
        ):
            from app.domain.services.health_service import _check_db
            result = await _check_db()

        assert result == "error: db_unavailable"

    @pytest.mark.unit
    async def test_check_redis_uses_ping(self) -> None:
        with patch(
            "app.domain.services.health_service.ping_redis",
            new_callable=AsyncMock,
            return_value=False,
        ):
            from app.domain.services.health_service import _check_redis
            result = await _check_redis()

        assert result == "error: redis_unavailable"

    @pytest.mark.unit
    async def test_check_redis_with_fake_redis(self) -> None:
        """ה-FakeRedis מה-conftest עונה ל-ping"""
        from app.domain.services.health_service import _check_redis

        assert await _check_redis() == "ok"

    @pytest.mark.unit
    async def test_check_gateway_success(self) -> None:
        mock_response = MagicMock()
        mock_response.status_code = 200

        with patch(
            "app.domain.services.health_service.httpx.AsyncClient",
            return_value=_mock_http_client(mock_response),
        ):
            from app.domain.services.health_service import _check_gateway
            result = await _check_gateway()

        assert result == "ok"

    @pytest.mark.unit
    async def test_check_gateway_bad_status(self) -> None:
        mock_response = MagicMock()
        mock_response.status_code = 404

        with patch(
            "app.domain.services.health_service.httpx.AsyncClient",
            return_value=_mock_http_client(mock_response),
        ):
            from app.domain.services.health_service import _check_gateway
            result = await _check_gateway()

        assert result == "error: gateway_unavailable"

    @pytest.mark.unit
    async def test_check_gateway_connection_error(self) -> None:
        with patch(
            "app.domain.services.health_service.httpx.AsyncClient",
            return_value=_mock_http_client(side_effect=httpx.ConnectError("refused")),
        ):
            from app.domain.services.health_service import _check_gateway
            result = await _check_gateway()

        assert result == "error: gateway_unavailable"

    @pytest.mark.unit
    async def test_check_celery_success(self) -> None:
        """_check_celery מחזיר ok כש-Celery broker זמין."""
        mock_client = AsyncMock()
        mock_client.ping = AsyncMock(return_value=True)
        mock_client.aclose = AsyncMock()

        with patch(
            "app.domain.services.health_service.aioredis.from_url",
            return_value=mock_client,
        ):
            from app.domain.services.health_service import _check_celery
            result = await _check_celery()

        assert result == "ok"
        mock_client.aclose.assert_awaited_once()

    @pytest.mark.unit
    async def test_check_celery_failure(self) -> None:
        """_check_celery מחזיר error כש-Celery broker לא זמין."""
        mock_client = AsyncMock()
        mock_client.ping = AsyncMock(side_effect=ConnectionError("refused"))
        mock_client.aclose = AsyncMock()

        with patch(
            "app.domain.services.health_service.aioredis.from_url",
            return_value=mock_client,
        ):
            from app.domain.services.health_service import _check_celery
            result = await _check_celery()

        assert result == "error: celery_unavailable"
