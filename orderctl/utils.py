from datetime import datetime, timezone, timedelta
from typing import Union

REMOTE_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def now_iso() -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def iso_in_utc_from_seconds_from_now(seconds: float) -> str:
    """Return UTC ISO time `seconds` from now, with 'Z' suffix."""
    return (datetime.now(timezone.utc) + timedelta(seconds=seconds)).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_datetime(value: Union[str, datetime]) -> datetime:
    """
    Parse an order date. Accepts 'DD/MM/YYYY HH:MM' (the import file format)
    and ISO strings. Raises ValueError on anything else.
    """
    if isinstance(value, datetime):
        return value
    if not value or not isinstance(value, str):
        raise ValueError(f"Missing or invalid date: {value!r}")
    s = value.strip()
    try:
        return datetime.strptime(s, "%d/%m/%Y %H:%M")
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        raise ValueError(f"Unrecognised date format: {value!r}")


def add_minutes(value: Union[str, datetime], minutes: int) -> datetime:
    return parse_datetime(value) + timedelta(minutes=minutes)


def format_remote_datetime(value: Union[str, datetime]) -> str:
    """'YYYY-MM-DD HH:MM:SS', the format the remote backdating endpoints take."""
    return parse_datetime(value).strftime(REMOTE_DATETIME_FORMAT)
