# gate_attendance/backend/modules/clock.py

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..services.errors import InvalidTimestampError, InvalidArgumentError

DayLike = Union[date, datetime]

# Numeric timestamps at or above this are epoch milliseconds (1e11 s is far past year 5000).
EPOCH_MILLIS_THRESHOLD = 1e11


class ClockService:
    """
    The single authority on "what day is it" for the attendance engine.

    Every instant that gets bucketed into a civil day goes through here, so the
    day boundary is the same for scans, manual entries, listings and reports.
    """

    def __init__(self, timezone_name: str = "Asia/Jakarta", device_offset_hours: float = 7):
        try:
            self.tz = ZoneInfo(timezone_name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise InvalidArgumentError(f"Unknown timezone: {timezone_name}") from e
        self.timezone_name = timezone_name
        self.device_offset = timedelta(hours=device_offset_hours)

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def to_local(self, instant: datetime) -> datetime:
        """Converts an instant to the canonical timezone. Naive values are taken as canonical wall time."""
        if instant.tzinfo is None:
            return instant.replace(tzinfo=self.tz)
        return instant.astimezone(self.tz)

    def civil_day(self, instant: datetime) -> date:
        return self.to_local(instant).date()

    def _as_day(self, value: DayLike) -> date:
        if isinstance(value, datetime):
            return self.civil_day(value)
        return value

    def start_of_day(self, value: DayLike) -> datetime:
        return datetime.combine(self._as_day(value), time.min, tzinfo=self.tz)

    def end_of_day(self, value: DayLike) -> datetime:
        return datetime.combine(self._as_day(value), time.max, tzinfo=self.tz)

    def next_day(self, value: DayLike) -> datetime:
        return datetime.combine(self._as_day(value) + timedelta(days=1), time.min, tzinfo=self.tz)

    @staticmethod
    def days_inclusive(start_day: date, end_day: date) -> int:
        return (end_day - start_day).days + 1

    def isoformat(self, instant: datetime) -> str:
        return self.to_local(instant).isoformat()

    def parse_device_timestamp(self, raw) -> datetime:
        """
        Parses a timestamp reported by a reader.

        - ISO-8601 with an offset: converted to the canonical timezone.
        - ISO-8601 without an offset: the reader's clock runs on a different base,
          so the configured device offset is added and the result is read as canonical wall time.
        - int/float: epoch milliseconds, as readers send them; small values are taken as POSIX seconds.
        """
        if isinstance(raw, bool):
            raise InvalidTimestampError(f"Unparseable device timestamp: {raw!r}")
        if isinstance(raw, datetime):
            parsed = raw
        elif isinstance(raw, (int, float)):
            try:
                seconds = raw / 1000 if abs(raw) >= EPOCH_MILLIS_THRESHOLD else raw
                return datetime.fromtimestamp(seconds, tz=timezone.utc).astimezone(self.tz)
            except (OverflowError, OSError, ValueError) as e:
                raise InvalidTimestampError(f"Unparseable device timestamp: {raw!r}") from e
        elif isinstance(raw, str) and raw.strip():
            value = raw.strip()
            # fromisoformat on older interpreters does not accept a trailing 'Z'
            if value.endswith(("Z", "z")):
                value = value[:-1] + "+00:00"
            try:
                parsed = datetime.fromisoformat(value)
            except ValueError as e:
                raise InvalidTimestampError(f"Unparseable device timestamp: {raw!r}") from e
        else:
            raise InvalidTimestampError(f"Unparseable device timestamp: {raw!r}")

        if parsed.tzinfo is None:
            return (parsed + self.device_offset).replace(tzinfo=self.tz)
        return parsed.astimezone(self.tz)

    def parse_instant(self, raw) -> Optional[datetime]:
        """The instant carried by a datetime or a full ISO timestamp; None for a bare date."""
        if isinstance(raw, datetime):
            return self.to_local(raw)
        if isinstance(raw, date):
            return None
        if isinstance(raw, str) and raw.strip():
            value = raw.strip()
            try:
                date.fromisoformat(value)
                return None
            except ValueError:
                pass
            if value.endswith(("Z", "z")):
                value = value[:-1] + "+00:00"
            try:
                return self.to_local(datetime.fromisoformat(value))
            except ValueError as e:
                raise InvalidTimestampError(f"Unparseable date: {raw!r}") from e
        raise InvalidTimestampError(f"Unparseable date: {raw!r}")

    def parse_day(self, raw) -> date:
        """Accepts a date, a datetime, 'YYYY-MM-DD' or a full ISO instant (bucketed to its civil day)."""
        instant = self.parse_instant(raw)
        if instant is not None:
            return instant.date()
        if isinstance(raw, date):
            return raw
        return date.fromisoformat(raw.strip())
