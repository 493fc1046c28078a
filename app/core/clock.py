"""UTC time helpers. All stored timestamps are naive UTC."""

from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]

PERIODS = ("daily", "weekly", "monthly")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def start_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_week(dt: datetime) -> datetime:
    """Monday 00:00 UTC (ISO weeks)."""
    return start_of_day(dt) - timedelta(days=dt.weekday())


def start_of_month(dt: datetime) -> datetime:
    return start_of_day(dt).replace(day=1)


def period_key(dt: datetime, period: str) -> str:
    """Bucket label: 2024-05-17 (daily), 2024-W20 (weekly), 2024-05 (monthly)."""
    if period == "daily":
        return dt.strftime("%Y-%m-%d")
    if period == "weekly":
        year, week, _ = dt.isocalendar()
        return f"{year}-W{week:02d}"
    if period == "monthly":
        return dt.strftime("%Y-%m")
    raise ValueError(f"Unknown period: {period}")


def series_start(now: datetime, period: str) -> datetime:
    """Start of the window a time series covers: 30 days, 12 weeks or 12 months."""
    if period == "daily":
        return start_of_day(now) - timedelta(days=29)
    if period == "weekly":
        return start_of_week(now) - timedelta(weeks=11)
    if period == "monthly":
        month_start = start_of_month(now)
        year, month = month_start.year, month_start.month - 11
        while month <= 0:
            month += 12
            year -= 1
        return month_start.replace(year=year, month=month)
    raise ValueError(f"Unknown period: {period}")


TIMEFRAMES = ("all",) + PERIODS


def timeframe_start(now: datetime, timeframe: str) -> datetime | None:
    """Start of the current day/week/month; None for "all"."""
    if timeframe == "all":
        return None
    if timeframe == "daily":
        return start_of_day(now)
    if timeframe == "weekly":
        return start_of_week(now)
    if timeframe == "monthly":
        return start_of_month(now)
    raise ValueError(f"Unknown timeframe: {timeframe}")
