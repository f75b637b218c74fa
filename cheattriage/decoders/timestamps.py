"""
Browser epoch conversion.

Chromium stores microseconds since 1601-01-01, Firefox microseconds since
1970-01-01. Zero means "never" in both schemas, so non-positive values map to
None instead of an epoch date.
"""

from datetime import datetime, timedelta, timezone

CHROME_EPOCH = datetime(1601, 1, 1, tzinfo=timezone.utc)
UNIX_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _from_epoch(epoch: datetime, microseconds) -> datetime | None:
    if isinstance(microseconds, bool) or not isinstance(microseconds, int):
        return None
    if microseconds <= 0:
        return None
    try:
        return epoch + timedelta(microseconds=microseconds)
    except OverflowError:
        return None


def chrome_time(microseconds) -> datetime | None:
    return _from_epoch(CHROME_EPOCH, microseconds)


def firefox_time(microseconds) -> datetime | None:
    return _from_epoch(UNIX_EPOCH, microseconds)


def format_browser_time(value: datetime | None) -> str:
    if value is None:
        return "Unknown"
    return value.strftime("%Y-%m-%d %H:%M:%S UTC")
