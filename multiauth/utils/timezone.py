"""Time helpers for multiauth."""

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def get_now() -> datetime:
    """
    Get the current timezone-aware UTC datetime.

    Components accept a ``Clock`` so tests can pin time; this is the default.
    """
    return datetime.now(UTC)


def ensure_aware(dt: datetime) -> datetime:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt
