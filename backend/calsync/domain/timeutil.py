"""UTC instant helpers and the all-day span convention.

An all-day span covering dates [D1, D2) is stored as the closed interval
D1T00:00:00Z .. D2T00:00:00Z - 60s.
"""
from __future__ import annotations
import re
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from tzlocal.windows_tz import win_tz

ALL_DAY_END_OFFSET = timedelta(seconds=60)
_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive values (e.g. read back from SQLite) are taken to already be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso_z(value: datetime) -> str:
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_instant(raw: Optional[str], assume_utc: bool = True) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; returns None when absent or malformed.

    Graph returns 7 fractional digits and no offset; both are tolerated.
    """
    if not raw:
        return None
    text = raw.strip().replace("Z", "+00:00")
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1), text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        if not assume_utc:
            return None
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_date(raw: Optional[str]) -> Optional[date]:
    if not raw:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        return None


def all_day_span(start: date, end_exclusive: Optional[date]) -> tuple[datetime, datetime]:
    start_at = datetime(start.year, start.month, start.day, tzinfo=timezone.utc)
    if end_exclusive is None or end_exclusive <= start:
        end_exclusive = start + timedelta(days=1)
    end_at = datetime(end_exclusive.year, end_exclusive.month, end_exclusive.day, tzinfo=timezone.utc)
    return start_at, end_at - ALL_DAY_END_OFFSET


def all_day_dates(start_at: datetime, end_at: datetime) -> tuple[date, date]:
    """Inverse of all_day_span: (start date, exclusive end date)."""
    start_day = as_utc(start_at).date()
    end_day = (as_utc(end_at) + ALL_DAY_END_OFFSET).date()
    if end_day <= start_day:
        end_day = start_day + timedelta(days=1)
    return start_day, end_day


def _known_zone(name: str) -> bool:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def iana_timezone(label: Optional[str], default: str) -> str:
    """Canonical IANA name for a provider zone label.

    Outlook reports Windows names ("GMT Standard Time") and custom zones
    ("tzone://Microsoft/Custom"); the former map through the CLDR table, anything
    still unknown becomes default.
    """
    if not label:
        return default
    label = label.strip()
    if _known_zone(label):
        return label
    mapped = win_tz.get(label)
    if mapped and _known_zone(mapped):
        return mapped
    return default
