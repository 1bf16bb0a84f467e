from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from dateutil import parser as date_parser
from dateutil import tz


CAIRO_TZ = tz.gettz("Africa/Cairo")


def parse_portal_date(value: str) -> date:
    """
    Parse portal dates, which are rendered day-first:
    - "25-11-2025"
    - "05-01-2026"
    """
    if value is None:
        raise ValueError("parse_portal_date: value is None")
    s = value.strip()
    if not s:
        raise ValueError("parse_portal_date: empty string")
    dt = date_parser.parse(s, dayfirst=True, yearfirst=False)
    return dt.date()


def cairo_day(moment: Optional[datetime] = None) -> str:
    """
    Calendar day (YYYY-MM-DD) in Africa/Cairo for a UTC (or naive-UTC) timestamp.
    Usage history is bucketed by the subscriber's local day, not UTC.
    """
    m = moment or datetime.now(timezone.utc)
    if m.tzinfo is None:
        m = m.replace(tzinfo=timezone.utc)
    return m.astimezone(CAIRO_TZ).date().isoformat()
