from __future__ import annotations

import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from roster import coerce_date, week_monday


WEEKEND_DAYS = {5, 6}  # Saturday, Sunday


class HolidayCalendar:
    """Answers whether a date is a public or custom holiday.

    Public holidays come from an external calendar feed; custom holidays are
    site-specific additions. A date listed in ``removed`` is treated as a
    normal workday even when the public feed marks it as a holiday.
    """

    def __init__(
        self,
        public_holidays: Optional[Iterable[Any]] = None,
        custom_holidays: Optional[Iterable[Any]] = None,
        removed: Optional[Iterable[Any]] = None,
    ) -> None:
        self._public: Set[datetime.date] = {coerce_date(value) for value in public_holidays or []}
        self._custom: Set[datetime.date] = {coerce_date(value) for value in custom_holidays or []}
        self._removed: Set[datetime.date] = {coerce_date(value) for value in removed or []}

    def is_holiday(self, date_value: datetime.date) -> bool:
        date_value = coerce_date(date_value)
        if date_value in self._removed:
            return False
        return date_value in self._public or date_value in self._custom

    def add_custom(self, date_value: datetime.date) -> None:
        date_value = coerce_date(date_value)
        self._removed.discard(date_value)
        self._custom.add(date_value)

    def remove(self, date_value: datetime.date) -> None:
        date_value = coerce_date(date_value)
        self._custom.discard(date_value)
        if date_value in self._public:
            self._removed.add(date_value)

    def holidays_between(self, start: datetime.date, end: datetime.date) -> List[datetime.date]:
        start, end = coerce_date(start), coerce_date(end)
        dates = (self._public | self._custom) - self._removed
        return sorted(d for d in dates if start <= d <= end)

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> "HolidayCalendar":
        payload = payload or {}

        def dates_of(key: str) -> List[Any]:
            values = []
            for entry in payload.get(key) or []:
                values.append(entry.get("date") if isinstance(entry, dict) else entry)
            return values

        return cls(dates_of("public"), dates_of("custom"), dates_of("removed"))


def is_weekend(date_value: datetime.date) -> bool:
    return coerce_date(date_value).weekday() in WEEKEND_DAYS


def next_workday(date_value: datetime.date, is_holiday=None) -> datetime.date:
    """Return the first date after ``date_value`` that is neither a weekend day nor a holiday."""
    candidate = coerce_date(date_value) + datetime.timedelta(days=1)
    # A run of holidays longer than a few weeks means a broken calendar feed.
    for _ in range(366):
        if not is_weekend(candidate) and not (is_holiday and is_holiday(candidate)):
            return candidate
        candidate += datetime.timedelta(days=1)
    raise ValueError(f"No workday found within a year after {date_value.isoformat()}.")


def weekdays_of(week_start: datetime.date) -> List[datetime.date]:
    """Return Monday through Friday of the week containing ``week_start``."""
    monday = week_monday(week_start)
    return [monday + datetime.timedelta(days=offset) for offset in range(5)]


def days_of_week(week_start: datetime.date) -> List[datetime.date]:
    monday = week_monday(week_start)
    return [monday + datetime.timedelta(days=offset) for offset in range(7)]
