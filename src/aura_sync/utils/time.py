"""Time utilities for entity timestamps."""

from datetime import UTC, datetime

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

# Epoch values above this are treated as milliseconds.
_MILLISECONDS_THRESHOLD = 100_000_000_000


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def parse_timestamp(value: object) -> datetime | None:
    """Parse a wire timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings (with or without ``Z``), epoch seconds or
    milliseconds and ``datetime`` instances. Returns None for anything else.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        seconds = value / 1000 if abs(value) >= _MILLISECONDS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            try:
                return parse_timestamp(float(text))
            except ValueError:
                return None
        return parse_timestamp(parsed)
    return None


def isoformat(value: datetime) -> str:
    """Render a datetime the way the backend expects it."""
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")
