"""
שעון אחיד לכל המערכת : UTC נאיבי.

העמודות ב-DB הן DateTime ללא timezone (גם ב-SQLite בבדיקות), ולכן כל
חותמות הזמן נשמרות ומושוות כ-UTC נאיבי.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
