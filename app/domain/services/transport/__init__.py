"""
Transport layer - הממשק ל-session של WhatsApp ומימוש מעל gateway חיצוני.
"""
from app.domain.services.transport.base_transport import (
    BaseTransportClient,
    CONNECTED_STATE,
    DeliveryAck,
    InboundMessage,
    TransportEvent,
)
from app.domain.services.transport.gateway_transport import GatewayTransportClient

__all__ = [
    "BaseTransportClient",
    "CONNECTED_STATE",
    "DeliveryAck",
    "InboundMessage",
    "TransportEvent",
    "GatewayTransportClient",
]
