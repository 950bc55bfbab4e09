"""
Date and Time utilities

This module handles XMLTV timestamp conversion and the epoch-millisecond
clock used by the EPG index and the catalog cache.
"""
from datetime import datetime, timezone
from zoneinfo import ZoneInfo
import logging
import re
import time

logger = logging.getLogger(__name__)

_XMLTV_TIME_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})(\d{2})(\d{2})(\d{2})(?:\s*([+-]\d{4}))?")


def now_ms() -> int:
    """Current UTC instant in epoch milliseconds."""
    return int(time.time() * 1000)


def parse_xmltv_time(
    value: str | None,
    fallback_zone: ZoneInfo | None = None,
    *,
    now: int | None = None,
) -> int:
    """
    Convert an XMLTV timestamp to epoch milliseconds (UTC).

    Accepts 'YYYYMMDDHHMMSS' optionally followed by a '±HHMM' offset, with
    or without a separating space. With an offset the local time is shifted
    to UTC; without one the time is UTC unless fallback_zone is given, in
    which case it is read as wall-clock time in that zone.

    Args:
        value: Raw 'start'/'stop' attribute
        fallback_zone: Zone for offset-less timestamps
        now: Value returned for malformed input (defaults to the current time)

    Returns:
        Epoch milliseconds; malformed input yields "now" instead of failing
    """
    match = _XMLTV_TIME_RE.match((value or "").strip())
    if not match:
        return now if now is not None else now_ms()

    year, month, day, hour, minute, second, offset = match.groups()
    try:
        naive = datetime(int(year), int(month), int(day), int(hour), int(minute), int(second))
    except ValueError:
        logger.debug("Invalid XMLTV timestamp '%s', using current time", value)
        return now if now is not None else now_ms()

    if offset:
        sign = -1 if offset.startswith("-") else 1
        offset_minutes = sign * (int(offset[1:3]) * 60 + int(offset[3:5]))
        base_ms = int(naive.replace(tzinfo=timezone.utc).timestamp() * 1000)
        return base_ms - offset_minutes * 60_000

    zone = fallback_zone or timezone.utc
    return int(naive.replace(tzinfo=zone).timestamp() * 1000)
