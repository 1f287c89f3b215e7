"""
שעות פעילות של חיבור והרשאת הבוט לדבר.

החלון נשמר כ-"HH:MM" באזור הזמן BUSINESS_TIMEZONE. end < start הוא חלון
לילי (למשל 22:00-06:00). חלון חסר (NULL) = פתוח תמיד.
"""
from __future__ import annotations

from datetime import datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from app.core.config import settings
from app.db.models.connection import Connection


def parse_hhmm(value: Optional[str]) -> Optional[time]:
    """'09:30' → time(9, 30); ערך ריק או לא תקין → None"""
    if not value:
        return None
    try:
        hours, minutes = value.strip().split(":")[:2]
        return time(int(hours), int(minutes))
    except (ValueError, TypeError):
        return None


def local_now(now: datetime | None = None) -> datetime:
    """
    Current time in the business timezone.

    A naive ``now`` is taken as UTC, matching how timestamps are stored.
    """
    zone = ZoneInfo(settings.BUSINESS_TIMEZONE)
    if now is None:
        return datetime.now(zone)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(zone)


def is_within_business_hours(connection: Connection, now: datetime | None = None) -> bool:
    """
    Whether ``now`` falls inside the connection's daily window.

    The window is ``[start, end)``. Equal start and end mean a full
    24-hour window, so the connection is always open; a missing or
    unparsable bound also means always open.
    """
    start = parse_hhmm(connection.start_time)
    end = parse_hhmm(connection.end_time)
    if start is None or end is None or start == end:
        return True

    current = local_now(now).time().replace(second=0, microsecond=0)
    if start < end:
        return start <= current < end
    # חלון לילי
    return current >= start or current < end


def bot_may_speak(connection: Optional[Connection], now: datetime | None = None) -> bool:
    """
    Whether automated messages may be sent on this connection right now.

    Requires a default connection with the chatbot enabled, inside business hours.
    """
    if connection is None:
        return False
    if not connection.is_default or not connection.chatbot_enabled:
        return False
    return is_within_business_hours(connection, now)
