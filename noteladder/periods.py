"""
Canonical period keys for review cadences.

    weekly   2024-W48   week-numbering year + two-digit week
    monthly  2024-11
    yearly   2024

Weeks start on the configured first weekday (0=Monday ... 6=Sunday). Week
numbers follow the ISO 8601 rule applied to the shifted calendar, so a key and
its date range always agree: period_key(d) == k for every d in
period_date_range(k).
"""
from __future__ import annotations

from datetime import date, datetime, time, timedelta
import re

from noteladder.errors import InvalidPeriod
from noteladder.models import ReviewType

_WEEK_RE = re.compile(r"^(\d{4})-W(\d{2})$")
_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")
_YEAR_RE = re.compile(r"^(\d{4})$")


def _as_review_type(review_type: ReviewType | str) -> ReviewType:
    try:
        return ReviewType(review_type)
    except ValueError as e:
        raise InvalidPeriod("", str(review_type), "unknown review type") from e


def _week_shift(first_weekday: int) -> timedelta:
    # Moves a week starting on `first_weekday` onto Monday..Sunday
    return timedelta(days=(7 - first_weekday) % 7)


def _as_date(when: date | datetime) -> date:
    return when.date() if isinstance(when, datetime) else when


def period_key(when: date | datetime, review_type: ReviewType | str, first_weekday: int = 0) -> str:
    rt = _as_review_type(review_type)
    d = _as_date(when)
    if rt is ReviewType.WEEKLY:
        iso = (d + _week_shift(first_weekday)).isocalendar()
        return f"{iso[0]:04d}-W{iso[1]:02d}"
    if rt is ReviewType.MONTHLY:
        return f"{d.year:04d}-{d.month:02d}"
    return f"{d.year:04d}"


def period_date_range(key: str, review_type: ReviewType | str, first_weekday: int = 0) -> tuple[datetime, datetime]:
    """
    Half-open [start, end) range of naive datetimes covered by `key`.
    Raises InvalidPeriod for keys that do not parse for `review_type`.
    """
    rt = _as_review_type(review_type)
    key = (key or "").strip()
    try:
        if rt is ReviewType.WEEKLY:
            m = _WEEK_RE.match(key)
            if not m:
                raise InvalidPeriod(key, rt.value, "expected YYYY-Www")
            year, week = int(m.group(1)), int(m.group(2))
            try:
                monday = date.fromisocalendar(year, week, 1)
            except ValueError as e:
                raise InvalidPeriod(key, rt.value, f"no week {week} in {year}") from e
            start = datetime.combine(monday - _week_shift(first_weekday), time())
            return start, start + timedelta(days=7)

        if rt is ReviewType.MONTHLY:
            m = _MONTH_RE.match(key)
            if not m:
                raise InvalidPeriod(key, rt.value, "expected YYYY-MM")
            year, month = int(m.group(1)), int(m.group(2))
            if not 1 <= month <= 12 or year < 1:
                raise InvalidPeriod(key, rt.value, "month out of range")
            start = datetime(year, month, 1)
            end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
            return start, end

        m = _YEAR_RE.match(key)
        if not m or int(m.group(1)) < 1:
            raise InvalidPeriod(key, rt.value, "expected YYYY")
        year = int(m.group(1))
        return datetime(year, 1, 1), datetime(year + 1, 1, 1)
    except (OverflowError, ValueError) as e:
        if isinstance(e, InvalidPeriod):
            raise
        # Ranges that run past datetime.max
        raise InvalidPeriod(key, rt.value, str(e)) from e


def current_period_key(review_type: ReviewType | str, now: datetime | None = None, first_weekday: int = 0) -> str:
    return period_key(now or datetime.now(), review_type, first_weekday)


def previous_period_key(key: str, review_type: ReviewType | str, first_weekday: int = 0) -> str:
    start, _ = period_date_range(key, review_type, first_weekday)
    return period_key(start - timedelta(days=1), review_type, first_weekday)


def is_valid_period_key(key: str, review_type: ReviewType | str, first_weekday: int = 0) -> bool:
    try:
        period_date_range(key, review_type, first_weekday)
    except InvalidPeriod:
        return False
    return True
