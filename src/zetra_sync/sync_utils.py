from __future__ import annotations

from datetime import datetime, timezone

from zetra_sync.config import settings


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def datetime_to_ms(value: datetime | None) -> int:
    if value is None:
        return 0
    if value.tzinfo is None:
        # Naive timestamps from clients are taken as UTC.
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def ms_to_iso(value: int | None) -> str | None:
    if not value:
        return None
    dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")


def clamp_client_timestamp_ms(value: int | None) -> int:
    if not value or value < 0:
        return 0
    server_now = now_ms()
    max_ahead = settings.sync_max_client_clock_skew_seconds * 1000
    if value > server_now + max_ahead:
        return server_now + max_ahead
    return value


def datetime_to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        # SQLite hands back naive values; everything is stored in UTC.
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat().replace("+00:00", "Z")
