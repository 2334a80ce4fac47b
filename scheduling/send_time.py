"""
Send-Time Scheduler — maps "now" to the next allowed delivery slot.

Weekly table (default):
  Monday:    09:45, 15:00
  Tuesday:   10:00, 16:00
  Wednesday: 10:00, 15:30
  Thursday:  09:30, 16:30
  Friday:    09:15, 14:30
  Weekends:  no slots

Pure: the result depends only on `now` and the table. The "send immediately"
path never consults this module.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Mapping, Optional, Sequence
from zoneinfo import ZoneInfo

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
MONDAY = 0


@dataclass(frozen=True, order=True)
class SendSlot:
    hour: int
    minute: int = 0

    def __post_init__(self):
        if not 0 <= self.hour <= 23 or not 0 <= self.minute <= 59:
            raise ValueError(f"Invalid slot {self.hour:02d}:{self.minute:02d}")

    @classmethod
    def parse(cls, text: str) -> SendSlot:
        """Parse "HH:MM"."""
        try:
            hour, minute = text.strip().split(":")
            return cls(int(hour), int(minute))
        except (AttributeError, ValueError) as e:
            raise ValueError(f"Invalid slot {text!r}, expected HH:MM") from e

    def on(self, day: datetime) -> datetime:
        return day.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)

    def __str__(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


# Keys are datetime.weekday() values: Monday=0 … Sunday=6
DEFAULT_WEEKLY_SCHEDULE: dict[int, tuple[SendSlot, ...]] = {
    0: (SendSlot(9, 45), SendSlot(15, 0)),
    1: (SendSlot(10, 0), SendSlot(16, 0)),
    2: (SendSlot(10, 0), SendSlot(15, 30)),
    3: (SendSlot(9, 30), SendSlot(16, 30)),
    4: (SendSlot(9, 15), SendSlot(14, 30)),
}

# Used only when the table has no slots at all
FALLBACK_SLOT = SendSlot(9, 0)


class SendTimeScheduler:
    """Computes the next send slot from a fixed weekly table."""

    def __init__(
        self,
        schedule: Optional[Mapping[int, Sequence[SendSlot]]] = None,
        tz: str | tzinfo = "UTC",
    ):
        table = DEFAULT_WEEKLY_SCHEDULE if schedule is None else schedule
        self._schedule: dict[int, tuple[SendSlot, ...]] = {}
        for day, slots in table.items():
            if day not in range(7):
                raise ValueError(f"Invalid weekday index {day}")
            if slots:
                self._schedule[day] = tuple(sorted(slots))
        self.tz = ZoneInfo(tz) if isinstance(tz, str) else tz

    @classmethod
    def from_config(cls, config) -> SendTimeScheduler:
        """Build from a ScheduleConfig (weekday name → ["HH:MM", ...])."""
        schedule: dict[int, list[SendSlot]] = {}
        for name, slots in (config.slots or {}).items():
            key = str(name).strip().lower()
            if key not in WEEKDAYS:
                raise ValueError(f"Unknown weekday {name!r} in schedule")
            schedule[WEEKDAYS.index(key)] = [SendSlot.parse(s) for s in slots or []]
        return cls(schedule, tz=config.timezone)

    @property
    def schedule(self) -> dict[int, tuple[SendSlot, ...]]:
        return dict(self._schedule)

    def _localize(self, now: datetime) -> datetime:
        if now.tzinfo is None:
            return now.replace(tzinfo=self.tz)
        return now.astimezone(self.tz)

    def next_slot(self, now: datetime) -> datetime:
        """Return the first slot strictly after `now`."""
        local_now = self._localize(now)
        today = local_now.weekday()

        for slot in self._schedule.get(today, ()):
            candidate = slot.on(local_now)
            if candidate > local_now:
                return candidate

        # Scan forward day by day; day 7 is today's weekday next week.
        for days_ahead in range(1, 8):
            day = (today + days_ahead) % 7
            slots = self._schedule.get(day)
            if slots:
                return self._on_day(local_now, days_ahead, slots[0])

        days_ahead = (MONDAY - today) % 7 or 7
        return self._on_day(local_now, days_ahead, FALLBACK_SLOT)

    def delay_until_next_slot(self, now: datetime) -> timedelta:
        local_now = self._localize(now)
        return self.next_slot(local_now).astimezone(timezone.utc) - local_now.astimezone(timezone.utc)

    def _on_day(self, local_now: datetime, days_ahead: int, slot: SendSlot) -> datetime:
        # Add whole calendar days on the wall clock, then re-resolve the offset (DST).
        target = slot.on(local_now.replace(tzinfo=None) + timedelta(days=days_ahead))
        return target.replace(tzinfo=self.tz)
