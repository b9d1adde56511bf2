from datetime import date, datetime, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def business_date(moment: datetime, tz_name: str) -> date:
    """Calendar date of ``moment`` as seen in the business timezone."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(ZoneInfo(tz_name)).date()


def start_of_day(moment: datetime, tz_name: str) -> datetime:
    local = moment.astimezone(ZoneInfo(tz_name))
    return local.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_month(moment: datetime, tz_name: str) -> datetime:
    return start_of_day(moment, tz_name).replace(day=1)


def to_millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


class FrozenClock:
    """Manually advanced clock for deterministic tests and replays."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now
