"""
FiscalBridge - Shared Helpers
==============================
Pure utility functions with NO database or module dependencies.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional


def now_utc() -> datetime:
    """Returns current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def safe_int(value: Optional[str]) -> Optional[int]:
    """Safely convert a string to int. Returns None on failure."""
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except (ValueError, TypeError):
        return None


def new_uuid() -> str:
    return str(uuid.uuid4())


def truncate(text: Optional[str], limit: int) -> Optional[str]:
    """Cut text to `limit` characters, marking the cut with '...'."""
    if text is None or len(text) <= limit:
        return text
    return text[:limit] + "..."
