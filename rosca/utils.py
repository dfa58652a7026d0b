import datetime
from typing import Callable


Clock = Callable[[], datetime.datetime]


def system_clock() -> datetime.datetime:
    return datetime.datetime.now()


def to_local_datetime(timestamp: int) -> datetime.datetime:
    return datetime.datetime.fromtimestamp(timestamp)


def to_timestamp(value: datetime.datetime) -> int:
    return int(value.timestamp())


def add_months(value: datetime.date, months: int) -> datetime.date:
    """Shift a date by whole calendar months, landing on the first of the month"""
    serial = value.year * 12 + (value.month - 1) + months
    return datetime.date(serial // 12, serial % 12 + 1, 1)


def months_between(start: datetime.date, end: datetime.date) -> int:
    """Calendar months from ``start`` to ``end``, ignoring the day of month"""
    return (end.year - start.year) * 12 + (end.month - start.month)


def day_key(value: datetime.date) -> str:
    return value.strftime("%Y-%m-%d")
