from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

PRESETS = ("today", "7d", "30d", "90d", "custom")
PRESET_DAYS = {"7d": 7, "30d": 30, "90d": 90}


@dataclass(frozen=True)
class DateRange:
    """Inclusive calendar-day range."""

    date_from: date
    date_to: date

    @property
    def start(self) -> datetime:
        return datetime.combine(self.date_from, time.min)

    @property
    def end(self) -> datetime:
        # exclusive upper bound
        return datetime.combine(self.date_to + timedelta(days=1), time.min)

    @property
    def days(self) -> list[date]:
        return [self.date_from + timedelta(days=i) for i in range((self.date_to - self.date_from).days + 1)]

    def previous(self) -> "DateRange":
        length = self.date_to - self.date_from
        prev_to = self.date_from - timedelta(days=1)
        return DateRange(prev_to - length, prev_to)


def resolve_range(
    preset: str | None,
    date_from: date | None = None,
    date_to: date | None = None,
    today: date | None = None,
) -> DateRange:
    today = today or date.today()
    if preset == "custom" and date_from and date_to:
        if date_to < date_from:
            date_from, date_to = date_to, date_from
        return DateRange(date_from, date_to)
    if preset == "today":
        return DateRange(today, today)
    days = PRESET_DAYS.get(preset or "", 30)
    return DateRange(today - timedelta(days=days - 1), today)


def default_revenue_range(today: date | None = None) -> DateRange:
    """Last 12 months ending today."""
    today = today or date.today()
    year, month = today.year - 1, today.month
    try:
        start = today.replace(year=year, month=month)
    except ValueError:
        # Feb 29 -> Feb 28
        start = today.replace(year=year, month=month, day=28)
    return DateRange(start, today)


def months_in_range(r: DateRange) -> int:
    return max(1, (r.date_to.year - r.date_from.year) * 12 + (r.date_to.month - r.date_from.month))


def pct(part: float, whole: float, digits: int = 1) -> float:
    if whole <= 0:
        return 0.0
    return round(part / whole * 100, digits)
