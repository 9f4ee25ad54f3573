"""Relative / absolute date phrase extraction."""

from __future__ import annotations

import calendar
import re
from datetime import date, timedelta
from typing import Callable, Optional, Tuple

from bicopilot.context.models import TimeContext, TimeGranularity

__all__ = ["extract_time_context"]

_MONTHS = {name.lower(): idx for idx, name in enumerate(calendar.month_name) if name}
_MONTHS.update({name.lower(): idx for idx, name in enumerate(calendar.month_abbr) if name})
# Month words that are also ordinary English; they need a year or a preposition.
_AMBIGUOUS_MONTHS = {name.lower() for name in calendar.month_abbr if name} | {"may", "march"}
_MONTH_PREPOSITIONS = {"in", "during", "of", "for", "since", "from", "until", "through", "before", "after"}

_RE_LAST_N = re.compile(r"\b(?:last|past|previous)\s+(\d{1,3})\s+(day|days|week|weeks|month|months)\b")
_RE_RELATIVE = re.compile(r"\b(this|last|previous|next|current)\s+(week|month|quarter|year)\b")
_RE_QUARTER = re.compile(r"\bq([1-4])(?:\s+(\d{4}))?\b")
_RE_YEAR = re.compile(r"\b(19\d{2}|20\d{2})\b")
_RE_MONTH = re.compile(r"\b(" + "|".join(sorted(_MONTHS, key=len, reverse=True)) + r")\b(?:\s+(\d{4}))?")
_RE_HOURS = re.compile(r"\b(?:last|past)\s+(\d{1,2})\s+hours?\b")


def _month_match(text: str) -> Optional[re.Match]:
    for m in _RE_MONTH.finditer(text):
        if m.group(1) not in _AMBIGUOUS_MONTHS or m.group(2):
            return m
        before = text[: m.start()].split()
        if before and before[-1] in _MONTH_PREPOSITIONS:
            return m
    return None


def _month_bounds(year: int, month: int) -> Tuple[date, date]:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def _quarter_bounds(year: int, quarter: int) -> Tuple[date, date]:
    first_month = 3 * (quarter - 1) + 1
    start, _ = _month_bounds(year, first_month)
    _, end = _month_bounds(year, first_month + 2)
    return start, end


def _shift_month(year: int, month: int, delta: int) -> Tuple[int, int]:
    idx = year * 12 + (month - 1) + delta
    return idx // 12, idx % 12 + 1


def _relative_period(anchor: str, unit: str, today: date) -> Tuple[date, date, TimeGranularity]:
    offset = {"this": 0, "current": 0, "last": -1, "previous": -1, "next": 1}[anchor]
    if unit == "week":
        monday = today - timedelta(days=today.weekday()) + timedelta(weeks=offset)
        return monday, monday + timedelta(days=6), TimeGranularity.WEEK
    if unit == "month":
        y, m = _shift_month(today.year, today.month, offset)
        start, end = _month_bounds(y, m)
        return start, end, TimeGranularity.MONTH
    if unit == "quarter":
        q = (today.month - 1) // 3 + 1
        y, q0 = divmod((today.year * 4 + q - 1) + offset, 4)
        start, end = _quarter_bounds(y, q0 + 1)
        return start, end, TimeGranularity.QUARTER
    y = today.year + offset
    return date(y, 1, 1), date(y, 12, 31), TimeGranularity.YEAR


def extract_time_context(question: str, *, clock: Optional[Callable[[], date]] = None) -> Optional[TimeContext]:
    """
    Resolve the first recognised time phrase in ``question`` against ``clock()``.

    Returns None when the question carries no time signal.
    """
    text = str(question or "").lower()
    if not text.strip():
        return None
    today = (clock or date.today)()

    m = _RE_HOURS.search(text)
    if m:
        return TimeContext(expression=m.group(0), granularity=TimeGranularity.HOUR, start=today, end=today)

    for phrase, delta in (("today", 0), ("yesterday", -1), ("tomorrow", 1)):
        if re.search(r"\b" + phrase + r"\b", text):
            d = today + timedelta(days=delta)
            return TimeContext(expression=phrase, granularity=TimeGranularity.DAY, start=d, end=d)

    m = _RE_LAST_N.search(text)
    if m:
        n = int(m.group(1))
        unit = m.group(2).rstrip("s")
        days = n * {"day": 1, "week": 7, "month": 30}[unit]
        granularity = TimeGranularity.DAY if unit == "day" else TimeGranularity(unit.capitalize())
        return TimeContext(
            expression=m.group(0),
            granularity=granularity,
            start=today - timedelta(days=days),
            end=today,
        )

    if re.search(r"\b(?:ytd|year to date)\b", text):
        return TimeContext(expression="year to date", granularity=TimeGranularity.YEAR,
                           start=date(today.year, 1, 1), end=today)
    if re.search(r"\b(?:mtd|month to date)\b", text):
        return TimeContext(expression="month to date", granularity=TimeGranularity.MONTH,
                           start=date(today.year, today.month, 1), end=today)

    m = _RE_RELATIVE.search(text)
    if m:
        start, end, granularity = _relative_period(m.group(1), m.group(2), today)
        return TimeContext(expression=m.group(0), granularity=granularity, start=start, end=end)

    m = re.search(r"\bpast (week|month)\b", text)
    if m:
        unit = m.group(1)
        days = 7 if unit == "week" else 30
        return TimeContext(
            expression=f"past {unit}",
            granularity=TimeGranularity.DAY,
            start=today - timedelta(days=days),
            end=today,
        )

    m = _RE_QUARTER.search(text)
    if m:
        year = int(m.group(2)) if m.group(2) else today.year
        start, end = _quarter_bounds(year, int(m.group(1)))
        return TimeContext(expression=m.group(0), granularity=TimeGranularity.QUARTER, start=start, end=end)

    m = _month_match(text)
    if m:
        month = _MONTHS[m.group(1)]
        year = int(m.group(2)) if m.group(2) else today.year
        start, end = _month_bounds(year, month)
        return TimeContext(expression=m.group(0), granularity=TimeGranularity.MONTH, start=start, end=end)

    m = _RE_YEAR.search(text)
    if m:
        year = int(m.group(1))
        return TimeContext(expression=m.group(0), granularity=TimeGranularity.YEAR,
                           start=date(year, 1, 1), end=date(year, 12, 31))

    if re.search(r"\b(?:recent|recently|lately)\b", text):
        return TimeContext(expression="recent", granularity=TimeGranularity.DAY,
                           start=today - timedelta(days=7), end=today)

    return None
