from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ticobot.config import parse_business_hours
from ticobot.logging_config import get_logger

logger = get_logger("business_hours")

# Keys follow the backend convention: 0 = Sunday ... 6 = Saturday.
DAY_NAMES = ["Dom", "Lun", "Mar", "Mié", "Jue", "Vie", "Sáb"]


def hhmm_to_minutes(value: str) -> int:
    hours, _, minutes = str(value).partition(":")
    return int(hours) * 60 + int(minutes or 0)


class BusinessHours:
    def __init__(self, schedule=None, timezone: str = "America/Costa_Rica"):
        self.schedule: dict = parse_business_hours(schedule)
        self.timezone = timezone

    @property
    def tz(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except ZoneInfoNotFoundError:
            logger.warning(f"Unknown timezone {self.timezone}, falling back to America/Costa_Rica")
            return ZoneInfo("America/Costa_Rica")

    def update(self, schedule=None, timezone: Optional[str] = None) -> None:
        if schedule:
            merged = dict(self.schedule)
            merged.update(parse_business_hours(schedule))
            self.schedule = merged
        if timezone:
            self.timezone = timezone

    def local_now(self, now: Optional[datetime] = None) -> datetime:
        now = now or datetime.now(self.tz)
        if now.tzinfo is None:
            return now.replace(tzinfo=self.tz)
        return now.astimezone(self.tz)

    def is_open(self, now: Optional[datetime] = None) -> bool:
        local = self.local_now(now)
        day = (local.weekday() + 1) % 7
        hours = self.schedule.get(str(day))
        if not hours:
            return False
        try:
            start = hhmm_to_minutes(hours["open"])
            end = hhmm_to_minutes(hours["close"])
        except (KeyError, ValueError):
            logger.debug(f"Malformed business hours for day {day}: {hours}")
            return False
        minutes = local.hour * 60 + local.minute
        return start <= minutes <= end

    def describe(self) -> str:
        """Weekdays first, then Sunday and Saturday, as operators are used to reading it."""
        parts = []
        for day in (1, 2, 3, 4, 5, 0, 6):
            hours = self.schedule.get(str(day))
            if hours and hours.get("open") and hours.get("close"):
                parts.append(f"{DAY_NAMES[day]} {hours['open']}-{hours['close']}")
        return ", ".join(parts) if parts else "Horario no disponible"
