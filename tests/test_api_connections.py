"""
בדיקות API לניהול session של חיבור: init, QR, disconnect, abort, status.
"""
import httpx
import pytest

from app.core.exceptions import TransportError
from app.domain.services.transport.base_transport import TransportEvent


class TestConnectionAuth:

    @pytest.mark.unit
    async def test_requires_token(self, test_client: httpx.AsyncClient, default_connection) -> None:
        response = await test_client.post(f"/api/connections/{default_connection.id}/init")

        assert response.status_code == 401

    @pytest.mark.unit
    async def test_requires_admin(
        self, test_client: httpx.AsyncClient, default_connection, agent_headers
    ) -> None:
        """נציג רגיל לא מנהל חיבורים"""
        response = await test_client.post(
            f"/api/connections/{default_connection.id}/init", headers=agent_headers
        )

        assert response.status_code == 403


class TestInitConnection:

    @pytest.mark.unit
    async def test_init_accepted(
        self, test_client, services, client_factory, default_connection, admin_headers
    ) -> None:
        response = await test_client.post(
            f"/api/connections/{default_connection.id}/init", headers=admin_headers
        )

        assert response.status_code == 202
        assert response.json() == {"connection_id": default_connection.id, "status": "INITIALIZING"}
        assert client_factory.last.initialize_calls == 1
        assert services.session_manager.is_initializing(default_connection.id)

    @pytest.mark.unit
    async def test_second_init_conflicts(
        self, test_client, default_connection, admin_headers
    ) -> None:
        url = f"/api/connections/{default_connection.id}/init"
        await test_client.post(url, headers=admin_headers)

        response = await test_client.post(url, headers=admin_headers)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "ERR_2002"

    @pytest.mark.unit
    async def test_unknown_connection(self, test_client, services, admin_headers) -> None:
        response = await test_client.post("/api/connections/999/init", headers=admin_headers)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ERR_2001"

    @pytest.mark.unit
    async def test_backoff_after_repeated_failures(
        self, test_client, client_factory, default_connection, admin_headers
    ) -> None:
        """שלושה כשלונות רצופים: הניסיון הבא נדחה עם 429 ו-Retry-After"""
        client_factory.prepare = lambda client: setattr(
            client, "initialize_error", TransportError("gateway down")
        )
        url = f"/api/connections/{default_connection.id}/init"
        for _ in range(3):
            response = await test_client.post(url, headers=admin_headers)
            assert response.status_code == 503

        response = await test_client.post(url, headers=admin_headers)

        assert response.status_code == 429
        assert response.json()["error"]["details"]["failures"] == 3
        assert int(response.headers["Retry-After"]) >= 1
        assert len(client_factory.clients) == 3


class TestQrPolling:

    @pytest.mark.unit
    async def test_no_qr_without_init(
        self, test_client, services, default_connection, admin_headers
    ) -> None:
        response = await test_client.get(
            f"/api/connections/{default_connection.id}/qr", headers=admin_headers
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ERR_2004"

    @pytest.mark.unit
    async def test_waiting_while_initializing(
        self, test_client, default_connection, admin_headers
    ) -> None:
        await test_client.post(
            f"/api/connections/{default_connection.id}/init", headers=admin_headers
        )

        response = await test_client.get(
            f"/api/connections/{default_connection.id}/qr", headers=admin_headers
        )

        assert response.status_code == 202
        assert response.json()["status"] == "waiting"

    @pytest.mark.unit
    async def test_qr_available(
        self, test_client, client_factory, default_connection, admin_headers
    ) -> None:
        await test_client.post(
            f"/api/connections/{default_connection.id}/init", headers=admin_headers
        )
        await client_factory.last.emit(TransportEvent.QR, "2@qr-code-payload")

        response = await test_client.get(
            f"/api/connections/{default_connection.id}/qr", headers=admin_headers
        )

        assert response.status_code == 200
        assert response.json()["qr_url"].startswith("data:image/png;base64,")

    @pytest.mark.unit
    async def test_failure_reason_after_auth_failure(
        self, test_client, client_factory, default_connection, admin_headers
    ) -> None:
        await test_client.post(
            f"/api/connections/{default_connection.id}/init", headers=admin_headers
        )
        await client_factory.last.emit(TransportEvent.AUTH_FAILURE, "bad credentials")

        response = await test_client.get(
            f"/api/connections/{default_connection.id}/qr", headers=admin_headers
        )

        assert response.status_code == 404
        assert "bad credentials" in response.json()["error"]["details"]["last_error"]


class TestTeardownRoutes:

    @pytest.mark.unit
    async def test_disconnect(
        self, test_client, services, connected_client, default_connection, admin_headers
    ) -> None:
        response = await test_client.post(
            f"/api/connections/{default_connection.id}/disconnect", headers=admin_headers
        )

        assert response.status_code == 200
        assert response.json()["had_live_session"] is True
        assert connected_client.logout_calls == 1
        assert services.session_manager.get_client(default_connection.id) is None

    @pytest.mark.unit
    async def test_disconnect_is_idempotent(
        self, test_client, services, default_connection, admin_headers
    ) -> None:
        response = await test_client.post(
            f"/api/connections/{default_connection.id}/disconnect", headers=admin_headers
        )

        assert response.status_code == 200
        assert response.json()["had_live_session"] is False

    @pytest.mark.unit
    async def test_abort_initialization(
        self, test_client, services, client_factory, default_connection, admin_headers
    ) -> None:
        await test_client.post(
            f"/api/connections/{default_connection.id}/init", headers=admin_headers
        )

        response = await test_client.post(
            f"/api/connections/{default_connection.id}/abort", headers=admin_headers
        )

        assert response.status_code == 200
        assert response.json()["had_live_session"] is True
        assert client_factory.last.logout_calls == 0
        assert client_factory.last.destroy_calls == 1
        assert not services.session_manager.is_initializing(default_connection.id)


class TestConnectionStatus:

    @pytest.mark.unit
    async def test_status_of_connected(
        self, test_client, connected_client, default_connection, admin_headers
    ) -> None:
        response = await test_client.get(
            f"/api/connections/{default_connection.id}/status", headers=admin_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "CONNECTED"
        assert data["lifecycle"] == "CONNECTED"
        assert data["initializing"] is False
        assert data["failures"] == 0

    @pytest.mark.unit
    async def test_status_unknown_connection(self, test_client, services, admin_headers) -> None:
        response = await test_client.get("/api/connections/999/status", headers=admin_headers)

        assert response.status_code == 404
