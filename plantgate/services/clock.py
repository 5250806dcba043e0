"""Clock sources supplying the current instant and the local day key."""

from datetime import UTC, datetime, time, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from plantgate.constants import DAY_KEY_FORMAT
from plantgate.exceptions import ConfigurationError


class Clock(Protocol):
    """Time contract used by the quota and subscription services."""

    def now(self) -> datetime:
        """Current aware instant."""

    def day_key(self) -> str:
        """Local calendar date of `now()` as YYYY-MM-DD."""

    def next_reset(self) -> datetime:
        """Next local midnight, when daily counters roll over."""


def day_key_for(moment: datetime, tz: ZoneInfo) -> str:
    return moment.astimezone(tz).strftime(DAY_KEY_FORMAT)


def next_midnight(moment: datetime, tz: ZoneInfo) -> datetime:
    local = moment.astimezone(tz)
    tomorrow = local.date() + timedelta(days=1)
    return datetime.combine(tomorrow, time.min, tzinfo=tz)


class SystemClock:
    """Wall clock with day boundaries in a configured IANA time zone."""

    def __init__(self, timezone_name: str = "UTC", now_provider=None) -> None:
        try:
            self.tz = ZoneInfo(timezone_name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigurationError(f"Unknown time zone '{timezone_name}'") from exc
        self._now_provider = now_provider or (lambda: datetime.now(UTC))

    def now(self) -> datetime:
        return self._now_provider()

    def day_key(self) -> str:
        return day_key_for(self.now(), self.tz)

    def next_reset(self) -> datetime:
        return next_midnight(self.now(), self.tz)
