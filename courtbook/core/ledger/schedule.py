"""
Calendar helpers for class slots, and the schedule file format.

All calendar arithmetic happens in one reference timezone so that "the
same day" means the same thing for every client, whatever timezone the
request was made from. Timestamps are stored as aware UTC datetimes.
"""

import logging
from dataclasses import dataclass
from datetime import date as Date, datetime, time, timezone, tzinfo
from typing import Optional, Union
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

DayLike = Union[Date, datetime]


def load_timezone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def _local(moment: datetime, tz: tzinfo) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(tz)


def calendar_day(day: DayLike, tz: tzinfo) -> Date:
    """The calendar date of `day` as seen in the reference timezone."""
    if isinstance(day, datetime):
        return _local(day, tz).date()
    return day


def start_of_day(day: DayLike, tz: tzinfo) -> datetime:
    """Midnight of `day` in the reference timezone, expressed in UTC."""
    local_day = calendar_day(day, tz)
    return datetime.combine(local_day, time.min, tzinfo=tz).astimezone(timezone.utc)


def normalize_onto_day(day: DayLike, moment: datetime, tz: tzinfo) -> datetime:
    """
    Combine the date of `day` with the hour and minute of `moment`.

    Date pickers and time pickers hand back independent values; a time
    picker's value can carry any date. Only its time-of-day is kept.
    """
    local_day = calendar_day(day, tz)
    local_moment = _local(moment, tz)
    combined = datetime.combine(
        local_day,
        time(hour=local_moment.hour, minute=local_moment.minute),
        tzinfo=tz,
    )
    return combined.astimezone(timezone.utc)


def same_calendar_day(a: DayLike, b: DayLike, tz: tzinfo) -> bool:
    return calendar_day(a, tz) == calendar_day(b, tz)


def format_clock(moment: datetime, tz: tzinfo) -> str:
    """Short clock time, e.g. '9:05 AM'."""
    return _local(moment, tz).strftime("%I:%M %p").lstrip("0")


def format_time_label(start: datetime, end: datetime, tz: tzinfo) -> str:
    """Human-readable slot time, e.g. '9:00 AM - 10:00 AM'."""
    return f"{format_clock(start, tz)} - {format_clock(end, tz)}"


# ---------------------------------------------------------------------------
# Schedule Files
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScheduleEntry:
    """One slot from a schedule file, in reference-timezone wall-clock time."""
    day: Date
    start: time
    end: time
    credit_cost: int
    instructor_name: Optional[str] = None

    def start_datetime(self, tz: tzinfo) -> datetime:
        return datetime.combine(self.day, self.start, tzinfo=tz)

    def end_datetime(self, tz: tzinfo) -> datetime:
        return datetime.combine(self.day, self.end, tzinfo=tz)


def parse_schedule_line(line: str) -> ScheduleEntry:
    """
    Parse `YYYY-MM-DD HH:MM HH:MM CREDITS [INSTRUCTOR NAME]`.

    Raises ValueError if the line doesn't match.
    """
    parts = line.split(None, 4)
    if len(parts) < 4:
        raise ValueError(f"Expected date, start, end and credits: {line!r}")

    day = Date.fromisoformat(parts[0])
    start = time.fromisoformat(parts[1])
    end = time.fromisoformat(parts[2])
    credit_cost = int(parts[3])
    if credit_cost < 0:
        raise ValueError("Credit cost cannot be negative")
    if end < start:
        raise ValueError("End time is before start time")

    instructor_name = parts[4].strip() if len(parts) == 5 else None
    return ScheduleEntry(
        day=day,
        start=start,
        end=end,
        credit_cost=credit_cost,
        instructor_name=instructor_name or None,
    )


def parse_schedule(text: str) -> list[ScheduleEntry]:
    """
    Parse a schedule file, one slot per line.

    Blank lines and lines starting with '#' are ignored. Lines that don't
    parse are logged and skipped.
    """
    entries = []
    for number, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        try:
            entries.append(parse_schedule_line(line))
        except ValueError as e:
            logger.warning(
                "Skipping malformed schedule line",
                extra={"line_number": number, "error": str(e)}
            )
    return entries
