from __future__ import annotations

import calendar
import datetime as dt
import re
from functools import lru_cache
from typing import Optional


def parse_date_flex(value) -> Optional[dt.date]:
    """Best-effort date parser: ISO, 'YYYY/MM/DD', or Dutch 'DD-MM-YYYY'."""

    if not value:
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    s = str(value).strip()
    if not s:
        return None
    try:
        return dt.date.fromisoformat(s)
    except ValueError:
        pass
    parts = [p for p in re.split(r"[^0-9]", s) if p]
    if len(parts) >= 3:
        a, b, c = map(int, parts[:3])
        try:
            if len(parts[0]) == 4:
                return dt.date(a, b, c)
            if len(parts[2]) == 4:
                return dt.date(c, b, a)
        except ValueError:
            return None
    return None


def month_bounds(year: int, month: int) -> tuple[dt.date, dt.date]:
    last = calendar.monthrange(year, month)[1]
    return dt.date(year, month, 1), dt.date(year, month, last)


def age_on(date_of_birth: dt.date, reference: dt.date) -> int:
    years = reference.year - date_of_birth.year
    if (reference.month, reference.day) < (date_of_birth.month, date_of_birth.day):
        years -= 1
    return years


def easter_sunday(year: int) -> dt.date:
    """Gregorian Easter (anonymous Gregorian algorithm)."""
    a = year % 19
    b, c = divmod(year, 100)
    d, e = divmod(b, 4)
    f = (b + 8) // 25
    g = (b - f + 1) // 3
    h = (19 * a + b - d - g + 15) % 30
    i, k = divmod(c, 4)
    l = (32 + 2 * e + 2 * i - h - k) % 7
    m = (a + 11 * h + 22 * l) // 451
    month, day = divmod(h + l - 7 * m + 114, 31)
    return dt.date(year, month, day + 1)


@lru_cache(maxsize=32)
def dutch_public_holidays(year: int) -> frozenset[dt.date]:
    easter = easter_sunday(year)
    kings_day = dt.date(year, 4, 27)
    if kings_day.weekday() == 6:
        kings_day = dt.date(year, 4, 26)
    return frozenset(
        {
            dt.date(year, 1, 1),
            easter,
            easter + dt.timedelta(days=1),
            kings_day,
            dt.date(year, 5, 5),
            easter + dt.timedelta(days=39),  # Ascension
            easter + dt.timedelta(days=49),  # Whit Sunday
            easter + dt.timedelta(days=50),  # Whit Monday
            dt.date(year, 12, 25),
            dt.date(year, 12, 26),
        }
    )


def is_working_day(day: dt.date) -> bool:
    return day.weekday() < 5 and day not in dutch_public_holidays(day.year)


def count_working_days(start: dt.date, end: dt.date) -> int:
    if start > end:
        return 0
    n = 0
    cur = start
    while cur <= end:
        if is_working_day(cur):
            n += 1
        cur += dt.timedelta(days=1)
    return n


def count_calendar_days(start: dt.date, end: dt.date) -> int:
    if start > end:
        return 0
    return (end - start).days + 1
