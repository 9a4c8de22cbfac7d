import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


MONTH_KEY_RE = re.compile(r"^(\d{4})-(\d{2})$")


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def month_key_for(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def current_month_key(*, today: Optional[date] = None) -> str:
    return month_key_for(today or local_today())


def previous_month_key(*, today: Optional[date] = None) -> str:
    first_this = (today or local_today()).replace(day=1)
    return month_key_for(first_this - date.resolution)


def parse_month_key(month_key: str) -> tuple[int, int]:
    match = MONTH_KEY_RE.match((month_key or "").strip())
    if not match:
        raise ValueError(f"Invalid month key '{month_key}', expected YYYY-MM")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month in '{month_key}'")
    return year, month


def month_period(month_key: str) -> Period:
    year, month = parse_month_key(month_key)
    first = date(year, month, 1)
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return Period(month_key, first, next_month - date.resolution)
