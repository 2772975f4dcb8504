"""
Statement value parsing.

Bank exports arrive as spreadsheets with Korean formatting: "50,000원",
"₩1,200", "2025.03.02", "20250302". These helpers turn them into plain
won integers and dates.
"""

import re
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from dateutil.parser import parse as parse_datetime

DATE_FORMATS = [
    "%Y-%m-%d",
    "%Y.%m.%d",
    "%Y/%m/%d",
    "%Y%m%d",
    "%Y-%m-%d %H:%M:%S",
    "%Y.%m.%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
]

_CURRENCY = re.compile(r"[₩원\s]")


def parse_date(value: Any) -> Optional[date]:
    """Parse a date from the formats bank exports use. None when blank."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    if value is None or str(value).strip() == "":
        return None

    value_str = str(value).strip()

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value_str, fmt).date()
        except ValueError:
            continue

    # Free-form dates such as "02 Mar 2025"
    try:
        return parse_datetime(value_str, yearfirst=True).date()
    except (ValueError, OverflowError):
        raise ValueError(f"Unrecognized date '{value_str}'")


def parse_amount(value: Any) -> Optional[int]:
    """
    Parse a won amount. None when blank.

    Raises:
        ValueError: not a number, negative, or has a fractional part
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float, Decimal)):
        amount = Decimal(str(value))
    else:
        value_str = _CURRENCY.sub("", str(value)).replace(",", "")
        if not value_str:
            return None
        if value_str.startswith("(") and value_str.endswith(")"):
            value_str = "-" + value_str[1:-1]
        try:
            amount = Decimal(value_str)
        except InvalidOperation:
            raise ValueError(f"Invalid amount '{value}'")

    if not amount.is_finite():
        raise ValueError(f"Invalid amount '{value}'")
    if amount < 0:
        raise ValueError(f"Amount cannot be negative: {value}")
    if amount != amount.to_integral_value():
        raise ValueError(f"Won amounts have no fractional part: {value}")

    return int(amount)


def week_ending_sunday(day: date) -> date:
    """The Sunday on or after ``day``; offerings are booked to that Sunday."""
    return day + timedelta(days=(6 - day.weekday()) % 7)
