"""Local calendar-day helpers.

Every day boundary in vocabook (next-review dates, DailyStats rows, session
snapshot expiry, streaks) is evaluated in the user's local calendar, never UTC.
"""
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from vocabook.config import settings


def get_timezone(name: Optional[str] = None) -> tzinfo:
    """Return the configured timezone, falling back to the system local zone."""
    name = settings.quiz.timezone if name is None else name
    if name:
        return ZoneInfo(name)
    return datetime.now().astimezone().tzinfo


def now_local(tz: Optional[tzinfo] = None) -> datetime:
    """Get the current aware datetime in the local zone."""
    return datetime.now(tz or get_timezone())


def to_local(moment: datetime, tz: Optional[tzinfo] = None) -> datetime:
    """Convert a datetime to the local zone; naive values are taken as UTC."""
    tz = tz or get_timezone()
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=ZoneInfo("UTC"))
    return moment.astimezone(tz)


def local_date(moment: Optional[datetime] = None, tz: Optional[tzinfo] = None) -> date:
    """Get the local calendar day for a moment (default: now)."""
    if moment is None:
        return now_local(tz).date()
    return to_local(moment, tz).date()


def get_local_date_string(moment: Optional[datetime] = None, tz: Optional[tzinfo] = None) -> str:
    """Get YYYY-MM-DD string in the local timezone."""
    return local_date(moment, tz).isoformat()


def start_of_local_day(day: date, tz: Optional[tzinfo] = None) -> datetime:
    """Get local midnight for a calendar day as an aware datetime."""
    return datetime.combine(day, time.min, tzinfo=tz or get_timezone())


def add_local_days(moment: datetime, days: int, tz: Optional[tzinfo] = None) -> datetime:
    """Local midnight `days` calendar days after the local day of `moment`."""
    tz = tz or get_timezone()
    return start_of_local_day(local_date(moment, tz) + timedelta(days=days), tz)


def as_aware(moment: datetime) -> datetime:
    """SQLite drops tzinfo on the way back; treat stored values as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=ZoneInfo("UTC"))
    return moment


def as_utc(moment: Optional[datetime]) -> Optional[datetime]:
    """Normalise a datetime to UTC before it is written to a row."""
    if moment is None:
        return None
    return as_aware(moment).astimezone(ZoneInfo("UTC"))


def compute_streak(active_dates: Iterable[str], today: str) -> int:
    """Count consecutive active days ending today, or yesterday if today is idle."""
    active = set(active_dates)
    day = date.fromisoformat(today)
    if day.isoformat() not in active:
        day -= timedelta(days=1)
    streak = 0
    while day.isoformat() in active:
        streak += 1
        day -= timedelta(days=1)
    return streak
