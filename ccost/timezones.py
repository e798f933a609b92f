"""Local calendar days in a configured timezone, with a daily cutoff hour."""

import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ccost.config import ConfigError

LAST_N_DAYS_RE = re.compile(r"^last-(\d+)-days?$")

Bounds = Tuple[datetime, datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimezoneCalculator:
    """Maps UTC instants to local "days" and periods back to UTC intervals.

    A local day starts at ``daily_cutoff_hour`` o'clock; with cutoff 4, 02:00
    local time still belongs to the previous day. All bounds are half-open
    ``[start, end)`` intervals in UTC.
    """

    def __init__(self, tz_name: str = "UTC", daily_cutoff_hour: int = 0, now: Callable[[], datetime] = _utcnow):
        if not isinstance(daily_cutoff_hour, int) or not 0 <= daily_cutoff_hour <= 23:
            raise ConfigError(f"Daily cutoff hour must be 0-23, got: {daily_cutoff_hour}")
        try:
            self.tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigError(f"Invalid timezone: {tz_name}") from e
        self.tz_name = tz_name
        self.cutoff = daily_cutoff_hour
        self._now = now

    def now(self) -> datetime:
        return self._now()

    def to_local(self, dt: datetime) -> datetime:
        return dt.astimezone(self.tz)

    def local_date(self, dt: datetime) -> date:
        return (self.to_local(dt) - timedelta(hours=self.cutoff)).date()

    def today(self) -> date:
        return self.local_date(self.now())

    def day_start(self, d: date) -> datetime:
        local = datetime.combine(d, time(hour=self.cutoff), tzinfo=self.tz)
        return local.astimezone(timezone.utc)

    def day_bounds(self, d: date) -> Bounds:
        return self.day_start(d), self.day_start(d + timedelta(days=1))

    def days_bounds(self, first: date, last: date) -> Bounds:
        return self.day_start(first), self.day_start(last + timedelta(days=1))

    def bounds(self, period: str) -> Bounds:
        """UTC interval for today, yesterday, this-week, this-month or last-N-days."""
        today = self.today()
        if period == "today":
            return self.day_bounds(today)
        if period == "yesterday":
            return self.day_bounds(today - timedelta(days=1))
        if period == "this-week":
            monday = today - timedelta(days=today.weekday())
            return self.days_bounds(monday, today)
        if period == "this-month":
            return self.days_bounds(today.replace(day=1), today)
        m = LAST_N_DAYS_RE.match(period)
        if m:
            n = int(m.group(1))
            if n < 1:
                raise ValueError("last-N-days needs N >= 1")
            return self.days_bounds(today - timedelta(days=n - 1), today)
        raise ValueError(f"Unknown period: {period}")

    def parse_bound(self, value: str, end_of_day: bool = False) -> datetime:
        """Parse a --since/--until value.

        ``YYYY-MM-DD`` means the local start of that day, or for until the last
        microsecond of it; anything else must be an RFC 3339 timestamp.
        """
        s = value.strip()
        if len(s) == 10:
            try:
                d = date.fromisoformat(s)
            except ValueError:
                d = None
            if d is not None:
                if end_of_day:
                    return self.day_start(d + timedelta(days=1)) - timedelta(microseconds=1)
                return self.day_start(d)
        try:
            dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValueError(f"Invalid date: {value} (expected YYYY-MM-DD or RFC 3339)") from e
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=self.tz)
        return dt.astimezone(timezone.utc)


def inclusive_until(end: datetime) -> datetime:
    """Turn a half-open end into the inclusive bound used by the until filter."""
    return end - timedelta(microseconds=1)


def utc_calculator(now: Optional[Callable[[], datetime]] = None) -> TimezoneCalculator:
    return TimezoneCalculator("UTC", 0, now or _utcnow)
