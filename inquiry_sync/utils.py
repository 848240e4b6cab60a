"""
Timestamp helpers shared by the thread and registry code.
"""

from datetime import datetime, timezone

from pydantic import TypeAdapter, ValidationError

# pydantic's parser accepts any fraction length (e.g. PostgREST's
# 2024-01-01T10:00:03.12345+00:00) on every supported interpreter
_datetime_adapter = TypeAdapter(datetime)


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts a trailing 'Z', explicit offsets and fractional seconds of any
    precision. Naive values are treated as UTC.

    Args:
        value: ISO-8601 timestamp string

    Returns:
        Timezone-aware datetime

    Raises:
        ValueError: if the value is not a valid ISO-8601 timestamp
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"not an ISO-8601 timestamp: {value!r}")
    try:
        parsed = _datetime_adapter.validate_python(value.strip())
    except ValidationError as e:
        raise ValueError(f"not an ISO-8601 timestamp: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def timestamp_ms(value: str) -> float:
    """Milliseconds since the epoch for an ISO-8601 timestamp."""
    return parse_timestamp(value).timestamp() * 1000


def utc_now_iso() -> str:
    """Current time as ISO-8601 UTC with millisecond precision and 'Z' suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
