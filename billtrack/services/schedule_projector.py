"""
Schedule projection for recurring services.

Pure date arithmetic: projecting the next expected payment from a frequency,
an anchor day and a base date, and classifying that date against today.
"""
import calendar
import enum
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterator, Optional

from billtrack.models import Frequency


# Fixed "due soon" window in days; deliberately not user-tunable.
DUE_SOON_WINDOW_DAYS = 5

DAY_INTERVALS = {
    Frequency.WEEKLY: 7,
    Frequency.BIWEEKLY: 14,
}

MONTH_INTERVALS = {
    Frequency.MONTHLY: 1,
    Frequency.BIMONTHLY: 2,
    Frequency.QUARTERLY: 3,
    Frequency.SEMIANNUAL: 6,
    Frequency.ANNUAL: 12,
}

# Average length of one period in days, used for gap classification.
NOMINAL_INTERVAL_DAYS = {
    Frequency.WEEKLY: 7.0,
    Frequency.BIWEEKLY: 14.0,
    Frequency.MONTHLY: 30.44,
    Frequency.BIMONTHLY: 60.88,
    Frequency.QUARTERLY: 91.31,
    Frequency.SEMIANNUAL: 182.62,
    Frequency.ANNUAL: 365.25,
}

# How many occurrences fit in one month, for monthly-equivalent cost.
MONTHLY_MULTIPLIERS = {
    Frequency.WEEKLY: Decimal("4.33"),
    Frequency.BIWEEKLY: Decimal("2.17"),
    Frequency.MONTHLY: Decimal("1"),
    Frequency.BIMONTHLY: Decimal("0.5"),
    Frequency.QUARTERLY: Decimal("0.3333"),
    Frequency.SEMIANNUAL: Decimal("0.1667"),
    Frequency.ANNUAL: Decimal("0.0833"),
}

# Hard stop for schedule iteration over long windows.
MAX_SCHEDULE_STEPS = 1000


class DueWindow(str, enum.Enum):
    OVERDUE = "overdue"
    DUE_SOON = "due_soon"
    UP_TO_DATE = "up_to_date"


def utc_today() -> date:
    return datetime.utcnow().date()


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def add_months(value: date, months: int, anchor_day: Optional[int] = None) -> date:
    """
    Move a date by a number of calendar months (negative allowed).

    The day becomes anchor_day (or the original day) clamped to the last valid
    day of the target month: Jan 31 + 1 month -> Feb 28/29.
    """
    month_index = value.year * 12 + (value.month - 1) + months
    year, month = divmod(month_index, 12)
    month += 1
    day = anchor_day or value.day
    return date(year, month, min(day, last_day_of_month(year, month)))


def next_date(frequency: Frequency, anchor_day: Optional[int], from_date: date) -> date:
    """
    Project the next expected payment date after from_date.

    Weekly/biweekly add 7/14 days and ignore the anchor day. Month-based
    frequencies add N calendar months and land on the anchor day, clamped to
    the end of the resulting month.
    """
    frequency = Frequency(frequency)
    if frequency in DAY_INTERVALS:
        return from_date + timedelta(days=DAY_INTERVALS[frequency])
    return add_months(from_date, MONTH_INTERVALS[frequency], anchor_day)


def classify_due_window(today: date, next_expected_date: date) -> DueWindow:
    if next_expected_date < today:
        return DueWindow.OVERDUE
    if next_expected_date <= today + timedelta(days=DUE_SOON_WINDOW_DAYS):
        return DueWindow.DUE_SOON
    return DueWindow.UP_TO_DATE


def nominal_interval_days(frequency: Frequency) -> float:
    return NOMINAL_INTERVAL_DAYS[Frequency(frequency)]


def iter_schedule(
    frequency: Frequency,
    anchor_day: Optional[int],
    first_date: date,
    start: date,
    end: date,
) -> Iterator[date]:
    """
    Yield projected dates in the half-open window [start, end).

    first_date is the first expected occurrence; later ones are derived with
    next_date. Dates before start are skipped but still advance the schedule.
    """
    current = first_date
    for _ in range(MAX_SCHEDULE_STEPS):
        if current >= end:
            return
        if current >= start:
            yield current
        current = next_date(frequency, anchor_day, current)


def monthly_equivalent(amount: Decimal, frequency: Frequency) -> Decimal:
    return amount * MONTHLY_MULTIPLIERS[Frequency(frequency)]
