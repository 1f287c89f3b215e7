"""
Session Registry - מיפוי connection id → Transport Client חי.

Writer יחיד לכל מפתח (מנהל ה-lifecycle); אין צורך בנעילות כי הכל רץ
על event loop אחד. הרישום נעשה סינכרונית, בלי await באמצע.
"""
from __future__ import annotations

from typing import Optional

from app.domain.services.transport.base_transport import BaseTransportClient


class SessionRegistry:
    """connection id → transport client"""

    def __init__(self) -> None:
        self._clients: dict[int, BaseTransportClient] = {}

    def get(self, connection_id: int) -> Optional[BaseTransportClient]:
        return self._clients.get(connection_id)

    def set(self, connection_id: int, client: BaseTransportClient) -> None:
        self._clients[connection_id] = client

    def remove(
        self,
        connection_id: int,
        client: BaseTransportClient | None = None,
    ) -> Optional[BaseTransportClient]:
        """
        Remove the client registered for a connection.

        When ``client`` is given, removal only happens if that exact object is
        still the registered one, so a stale client's late event cannot evict
        its replacement.
        """
        current = self._clients.get(connection_id)
        if current is None:
            return None
        if client is not None and current is not client:
            return None
        return self._clients.pop(connection_id)

    def is_current(self, connection_id: int, client: BaseTransportClient) -> bool:
        return self._clients.get(connection_id) is client

    def list(self) -> list[tuple[int, BaseTransportClient]]:
        return sorted(self._clients.items())

    def __contains__(self, connection_id: int) -> bool:
        return connection_id in self._clients

    def __len__(self) -> int:
        return len(self._clients)
