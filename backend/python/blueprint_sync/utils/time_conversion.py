from datetime import datetime, timezone
from typing import Optional, Union


def get_epoch_timestamp_in_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def get_iso_timestamp() -> str:
    """Current UTC time as an ISO-8601 string with a trailing Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Union[str, int, float, None]) -> Optional[datetime]:
    """Parse an ISO-8601 string or an epoch (ms) number into an aware datetime.

    Returns None for missing or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def timestamp_to_ms(value: Union[str, int, float, None]) -> Optional[int]:
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    return int(parsed.timestamp() * 1000)
