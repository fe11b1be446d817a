"""
MRP Engine - Calendar Provider
==============================

Per-company working-day classification used by backward scheduling.

A date is classified by, in order:
1. an explicit company calendar entry for that date (working, holiday,
   maintenance, shutdown)
2. the standard working weekdays (Monday-Friday unless configured)

When a calendar declares a coverage window, dates outside it cannot be
classified and raise MissingCalendarDataError.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import date
from typing import Dict, Iterable, Optional, Tuple

from .errors import MissingCalendarDataError
from .models import CalendarDay, CalendarDayType, is_available

logger = logging.getLogger(__name__)

DEFAULT_WORKING_WEEKDAYS: Tuple[int, ...] = (0, 1, 2, 3, 4)


class CalendarProvider(ABC):
    """Source of working-day information, scoped by company."""

    @abstractmethod
    def day_type(self, company_id: int, day: date) -> CalendarDayType:
        """Classify a date for a company."""

    def is_working_day(self, company_id: int, day: date) -> bool:
        return is_available(self.day_type(company_id, day))


class CompanyCalendar(CalendarProvider):
    """
    In-memory company calendar.

    Usage:
        calendar = CompanyCalendar()
        calendar.add_entry(CalendarDay(1, date(2025, 12, 25), CalendarDayType.HOLIDAY))
        calendar.is_working_day(1, date(2025, 12, 25))  # False
    """

    def __init__(self, working_weekdays: Iterable[int] = DEFAULT_WORKING_WEEKDAYS):
        self._default_weekdays = frozenset(working_weekdays)
        self._weekdays: Dict[int, frozenset] = {}
        self._entries: Dict[Tuple[int, date], CalendarDay] = {}
        self._coverage: Dict[int, Tuple[date, date]] = {}
        self._lock = threading.Lock()

    def set_working_weekdays(self, company_id: int, weekdays: Iterable[int]) -> None:
        with self._lock:
            self._weekdays[company_id] = frozenset(weekdays)

    def set_coverage(self, company_id: int, start: date, end: date) -> None:
        """Restrict the calendar to [start, end]; other dates become unknown."""
        if start > end:
            raise ValueError("Calendar coverage start must not be after end")
        with self._lock:
            self._coverage[company_id] = (start, end)

    def add_entry(self, entry: CalendarDay) -> None:
        with self._lock:
            self._entries[(entry.company_id, entry.calendar_date)] = entry

    def add_entries(self, entries: Iterable[CalendarDay]) -> None:
        for entry in entries:
            self.add_entry(entry)

    def remove_entry(self, company_id: int, day: date) -> None:
        with self._lock:
            self._entries.pop((company_id, day), None)

    def entry_for(self, company_id: int, day: date) -> Optional[CalendarDay]:
        return self._entries.get((company_id, day))

    def day_type(self, company_id: int, day: date) -> CalendarDayType:
        coverage = self._coverage.get(company_id)
        if coverage is not None and not (coverage[0] <= day <= coverage[1]):
            raise MissingCalendarDataError(company_id, day)

        entry = self._entries.get((company_id, day))
        if entry is not None:
            return entry.day_type

        weekdays = self._weekdays.get(company_id, self._default_weekdays)
        if day.weekday() in weekdays:
            return CalendarDayType.WORKING
        # weekends are reported as holidays
        return CalendarDayType.HOLIDAY
