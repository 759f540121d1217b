"""Timestamp helpers. Everything is compared and stored in UTC."""

from datetime import datetime, timezone

SQL_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (as read back from SQLite), convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO 8601 timestamp or a `YYYY-MM-DD HH:MM:SS` local-store time.

    Strings without an offset are taken as UTC.

    Raises:
        ValueError: If the string is not a recognizable timestamp
    """
    text = value.strip()
    if not text:
        raise ValueError("empty timestamp")

    try:
        return datetime.strptime(text, SQL_DATETIME_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        pass

    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def to_iso(value: datetime) -> str:
    """Format as ISO 8601 UTC with milliseconds, the way the remote API does."""
    return as_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return to_iso(utc_now())


def later_of(first: str | None, second: str | None) -> str | None:
    """The later of two timestamps; unparsable values lose to parsable ones."""
    if not first:
        return second
    if not second:
        return first
    try:
        first_dt = parse_timestamp(first)
    except ValueError:
        return second
    try:
        second_dt = parse_timestamp(second)
    except ValueError:
        return first
    return first if first_dt >= second_dt else second
