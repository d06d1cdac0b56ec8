from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from config import get_settings


Clock = Callable[[], datetime]


def local_now() -> datetime:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


@dataclass(frozen=True)
class Period:
    """A calendar month, keyed as ``YYYY-MM``."""

    year: int
    month: int

    @property
    def key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def quarter(self) -> int:
        return (self.month - 1) // 3 + 1

    def day(self, day_of_month: int) -> date:
        return date(self.year, self.month, day_of_month)

    def shifted(self, months: int) -> "Period":
        index = self.year * 12 + (self.month - 1) + months
        return Period(index // 12, index % 12 + 1)

    def __str__(self) -> str:
        return self.key


def period_of(value: date) -> Period:
    return Period(value.year, value.month)


def is_period_behind(last_generated: Optional[str], current: Period) -> bool:
    # Zero-padded keys compare in calendar order.
    return last_generated is None or last_generated < current.key
