from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from dateutil import parser as date_parser


def parse_timestamp(value: Optional[str]) -> datetime:
    """
    Parse store timestamps like:
    - "2024-01-01T00:00:00Z"
    - "2024-01-01T05:30:00.123456+05:30"

    Naive values are taken as UTC.
    """
    if value is None:
        raise ValueError("parse_timestamp: value is None")
    s = value.strip()
    if not s:
        raise ValueError("parse_timestamp: empty string")
    dt = date_parser.isoparse(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_local_date(value: datetime) -> date:
    # Installments accrue per calendar day in the operator's timezone.
    return value.astimezone().date()


def parse_loose_date(value: str) -> date:
    """
    Parse operator-entered dates like:
    - "2024-01-05"
    - "05/01/2024" (day first, as Indian bank statements print them)
    - "5 Jan 2024"
    """
    if value is None:
        raise ValueError("parse_loose_date: value is None")
    s = value.strip()
    if not s:
        raise ValueError("parse_loose_date: empty string")
    if len(s) == 10 and s[4] == "-" and s[7] == "-":
        return date.fromisoformat(s)
    dt = date_parser.parse(s, dayfirst=True)
    return dt.date()
