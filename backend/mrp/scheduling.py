"""
MRP Engine - Lead-Time Scheduling
=================================

Backward scheduling in working days:

    release_date + lead_time_days (working) = required_date

The walk steps back one calendar day at a time and only counts days the
calendar reports as working.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta

from .calendar import CalendarProvider
from .errors import MissingCalendarDataError

logger = logging.getLogger(__name__)


@dataclass
class ScheduleResult:
    required_date: date
    release_date: date
    lead_time_days: int
    today: date

    @property
    def calendar_days(self) -> int:
        return (self.required_date - self.release_date).days

    @property
    def expedite_eligible(self) -> bool:
        """Release date already passed."""
        return self.release_date < self.today

    @property
    def is_urgent(self) -> bool:
        return self.release_date <= self.today


class LeadTimeScheduler:
    """Computes release dates against a company calendar."""

    def __init__(self, calendar: CalendarProvider, max_lookback_days: int = 3660):
        self.calendar = calendar
        self.max_lookback_days = max_lookback_days

    def release_date(self, company_id: int, required_date: date, lead_time_days: int) -> date:
        """
        Raises:
            MissingCalendarDataError: the calendar cannot classify a day, or
                fewer than `lead_time_days` working days exist in the lookback window
        """
        remaining = max(0, int(lead_time_days))
        day = required_date
        steps = 0

        while remaining > 0:
            day -= timedelta(days=1)
            steps += 1
            if steps > self.max_lookback_days:
                raise MissingCalendarDataError(
                    company_id,
                    day,
                    message=(
                        f"No {lead_time_days} working days found within "
                        f"{self.max_lookback_days} days before {required_date.isoformat()} "
                        f"for company {company_id}"
                    ),
                )
            if self.calendar.is_working_day(company_id, day):
                remaining -= 1

        return day

    def schedule(
        self,
        company_id: int,
        required_date: date,
        lead_time_days: int,
        today: date,
        respect_lead_times: bool = True,
    ) -> ScheduleResult:
        if respect_lead_times:
            release = self.release_date(company_id, required_date, lead_time_days)
        else:
            release = required_date

        result = ScheduleResult(
            required_date=required_date,
            release_date=release,
            lead_time_days=lead_time_days,
            today=today,
        )
        if result.expedite_eligible:
            logger.debug(
                f"Release date {release} for requirement on {required_date} is in the past"
            )
        return result
