"""
QR Store - מטמון read-through לקודי QR לפי חיבור (polling, לא push).

הקוד הגולמי מהגטוויי מומר ל-PNG כ-data URL. הערך נשאר עד ready,
ניקוי מפורש (abort/disconnect) או timeout - בטוח לקרוא שוב ושוב.
"""
from __future__ import annotations

import base64
import io
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import qrcode

from app.core.clock import utcnow


@dataclass(frozen=True)
class QrArtifact:
    connection_id: int
    raw_code: str
    data_url: str
    created_at: datetime


def encode_qr_data_url(raw_code: str) -> str:
    """Render a pairing code as a PNG data URL"""
    image = qrcode.make(raw_code)
    buffer = io.BytesIO()
    image.save(buffer)
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"


class QrCodeStore:
    """connection id → latest QR artifact"""

    def __init__(self) -> None:
        self._artifacts: dict[int, QrArtifact] = {}
        self._last_errors: dict[int, str] = {}

    def put(self, connection_id: int, raw_code: str) -> QrArtifact:
        # הגטוויי שולח את אותו קוד שוב ושוב עד שהוא מתחלף - אין צורך לרנדר מחדש
        current = self._artifacts.get(connection_id)
        if current is not None and current.raw_code == raw_code:
            return current
        artifact = QrArtifact(
            connection_id=connection_id,
            raw_code=raw_code,
            data_url=encode_qr_data_url(raw_code),
            created_at=utcnow(),
        )
        self._artifacts[connection_id] = artifact
        self._last_errors.pop(connection_id, None)
        return artifact

    def get(self, connection_id: int) -> Optional[QrArtifact]:
        return self._artifacts.get(connection_id)

    def clear(self, connection_id: int) -> bool:
        return self._artifacts.pop(connection_id, None) is not None

    def record_error(self, connection_id: int, reason: str) -> None:
        self._last_errors[connection_id] = reason

    def last_error(self, connection_id: int) -> Optional[str]:
        return self._last_errors.get(connection_id)

    def clear_error(self, connection_id: int) -> None:
        self._last_errors.pop(connection_id, None)
