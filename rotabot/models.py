"""Core domain models used across layers."""

from __future__ import annotations

import asyncio
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from enum import Enum, IntEnum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


@dataclass(slots=True)
class Message:
    """Message normalized by adapters for runtime usage."""

    group_id: str
    sender_id: str
    text: str
    timestamp: datetime
    message_id: str | None = None
    is_group: bool = True


class Weekday(IntEnum):
    """Day of week numbered like ``date.weekday()``."""

    MON = 0
    TUE = 1
    WED = 2
    THU = 3
    FRI = 4
    SAT = 5
    SUN = 6

    @classmethod
    def parse(cls, raw: str | int) -> Weekday:
        if isinstance(raw, int):
            return cls(raw)
        key = raw.strip().upper()[:3]
        try:
            return cls[key]
        except KeyError:
            raise ValueError(f"Unknown weekday {raw!r}") from None

    @property
    def label(self) -> str:
        return self.name.capitalize()


class Frequency(str, Enum):
    WEEKLY = "weekly"
    FORTNIGHTLY = "fortnightly"
    # Approximated as a fixed four-week interval, not a calendar month.
    MONTHLY = "monthly"

    @property
    def interval(self) -> int:
        """Number of weeks between qualifying occurrences."""
        return {Frequency.WEEKLY: 1, Frequency.FORTNIGHTLY: 2, Frequency.MONTHLY: 4}[self]


class Schedule(BaseModel):
    """When a rotation picks: weekdays, local time of day, timezone and cadence."""

    model_config = ConfigDict(frozen=True)

    weekdays: frozenset[Weekday] = frozenset()
    time_of_day: time | None = None
    timezone: str | None = None
    frequency: Frequency = Frequency.WEEKLY

    @field_validator("weekdays", mode="before")
    @classmethod
    def _parse_weekdays(cls, value: object) -> object:
        if isinstance(value, str):
            value = [part for part in value.split(",") if part.strip()]
        if isinstance(value, (list, tuple, set, frozenset)):
            return frozenset(Weekday.parse(item) for item in value)
        return value

    @field_validator("time_of_day", mode="before")
    @classmethod
    def _parse_time(cls, value: object) -> object:
        if not isinstance(value, str):
            return value
        match = _TIME_RE.match(value.strip())
        if match is None:
            raise ValueError(f"Time of day must look like HH:MM, got {value!r}")
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour > 23 or minute > 59:
            raise ValueError(f"Time of day out of range: {value!r}")
        return time(hour, minute)

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone {value!r}") from None
        return value

    @property
    def is_complete(self) -> bool:
        """A schedule can drive triggers only with weekdays, time and timezone all set."""
        return bool(self.weekdays) and self.time_of_day is not None and bool(self.timezone)

    def describe(self) -> str:
        if not self.is_complete:
            return "manual only"
        days = ", ".join(day.label for day in sorted(self.weekdays))
        return f"{self.frequency.value} on {days} at {self.time_of_day:%H:%M} ({self.timezone})"


class RotationConfig(BaseModel):
    """Persisted configuration of one rotation."""

    members: list[str] = Field(default_factory=list)
    schedule: Schedule = Field(default_factory=Schedule)
    anchor_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    timeout_minutes: int | None = Field(default=None, gt=0)
    post_summary: bool = False
    summary_only_on_anchor_weekday: bool = False

    @field_validator("anchor_date")
    @classmethod
    def _aware_anchor(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


@dataclass(slots=True)
class Rotation:
    """A named rotation in a group: its configuration plus the live queue (front = next pick)."""

    group_id: str
    name: str
    config: RotationConfig
    queue: list[str] = field(default_factory=list)

    @property
    def key(self) -> tuple[str, str]:
        return (self.group_id, self.name)

    @property
    def members(self) -> list[str]:
        return self.config.members


@dataclass(frozen=True, slots=True)
class NotificationHandle:
    """Opaque reference to a sent message, used to edit or retract it later."""

    target: str
    timestamp: int | None
    is_group: bool = False


class PickState(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"


class PickOutcome(str, Enum):
    """Terminal resolutions of a pending pick."""

    ACCEPTED = "accepted"
    DECLINED = "declined"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"

    @property
    def state(self) -> PickState:
        return PickState(self.value)


@dataclass(slots=True)
class PendingPick:
    """One in-flight assignment awaiting the participant's answer."""

    group_id: str
    rotation_name: str
    participant_id: str
    started_at: datetime
    handle: NotificationHandle | None = None
    timer: asyncio.Task[None] | None = None
    state: PickState = PickState.PENDING
    token: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def key(self) -> tuple[str, str]:
        return (self.group_id, self.rotation_name)
