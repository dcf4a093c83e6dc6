"""Recurring pick and summary triggers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Iterable
from zoneinfo import ZoneInfo

from rotabot.errors import ScheduleComputationError
from rotabot.models import Rotation, Schedule, Weekday
from rotabot.recurrence import cron_expression, is_qualifying, next_fire, zone_for

LOGGER = logging.getLogger(__name__)


class TriggerKind(str, Enum):
    PICK = "pick"
    SUMMARY = "summary"


TriggerKey = tuple[str, str, TriggerKind]


@dataclass(slots=True)
class ScheduledTrigger:
    """One recurring cron trigger for a rotation."""

    group_id: str
    rotation_name: str
    kind: TriggerKind
    cron_expr: str
    tz: ZoneInfo
    schedule: Schedule
    anchor: datetime
    task: asyncio.Task[None] | None = None

    @property
    def key(self) -> TriggerKey:
        return (self.group_id, self.rotation_name, self.kind)


class RotationScheduler:
    """Runs one asyncio task per trigger and dispatches fires via callback.

    The trigger set is never patched: ``rebuild_all`` throws everything away and
    derives it again from the rotations it is given.
    """

    def __init__(
        self,
        handler: Callable[[TriggerKind, str, str], Awaitable[None]],
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._handler = handler
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._triggers: dict[TriggerKey, ScheduledTrigger] = {}
        self._in_flight: set[asyncio.Task[bool]] = set()

    @property
    def triggers(self) -> dict[TriggerKey, ScheduledTrigger]:
        return dict(self._triggers)

    @property
    def in_flight(self) -> int:
        """Number of fires whose handler is still running."""

        return len(self._in_flight)

    def rebuild_all(self, rotations: Iterable[Rotation]) -> None:
        """Stop every trigger and recreate them from the given rotations."""

        self.stop()
        for rotation in rotations:
            if not rotation.config.schedule.is_complete:
                continue
            try:
                triggers = build_triggers(rotation)
            except ScheduleComputationError as exc:
                LOGGER.warning("Skipping schedule for %s/%s: %s", rotation.group_id, rotation.name, exc)
                continue
            for trigger in triggers:
                self._install(trigger)
        LOGGER.info("Scheduler rebuilt with %d trigger(s)", len(self._triggers))

    def stop(self) -> None:
        """Cancel every trigger task. Handlers already running are left to finish."""

        for trigger in self._triggers.values():
            if trigger.task is not None:
                trigger.task.cancel()
        self._triggers.clear()

    def _install(self, trigger: ScheduledTrigger) -> None:
        old = self._triggers.pop(trigger.key, None)
        if old is not None and old.task is not None:
            old.task.cancel()
        trigger.task = asyncio.create_task(
            self._run(trigger),
            name=f"trigger-{trigger.kind.value}-{trigger.group_id}-{trigger.rotation_name}",
        )
        self._triggers[trigger.key] = trigger

    async def _run(self, trigger: ScheduledTrigger) -> None:
        cursor = self._clock()
        while True:
            fire_at = next_fire(trigger.cron_expr, trigger.tz, cursor)
            delay = (fire_at - self._clock()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            await self.fire(trigger, fire_at)
            cursor = fire_at

    async def fire(self, trigger: ScheduledTrigger, fired_at: datetime) -> bool:
        """Run one calendar fire; pick triggers only proceed in qualifying weeks.

        The handler runs in its own task, so cancelling the trigger mid-fire
        (as a rebuild does) stops the loop but lets the fire finish.
        """

        try:
            qualifying = trigger.kind is not TriggerKind.PICK or is_qualifying(
                trigger.schedule, trigger.anchor, fired_at
            )
        except ScheduleComputationError as exc:
            LOGGER.warning("Cannot evaluate %s/%s: %s", trigger.group_id, trigger.rotation_name, exc)
            return False
        if not qualifying:
            LOGGER.info(
                "Skipping %s/%s at %s: not a %s week",
                trigger.group_id,
                trigger.rotation_name,
                fired_at.isoformat(),
                trigger.schedule.frequency.value,
            )
            return False

        task = asyncio.create_task(
            self._dispatch(trigger),
            name=f"fire-{trigger.kind.value}-{trigger.group_id}-{trigger.rotation_name}",
        )
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return await asyncio.shield(task)

    async def _dispatch(self, trigger: ScheduledTrigger) -> bool:
        try:
            await self._handler(trigger.kind, trigger.group_id, trigger.rotation_name)
        except Exception:  # noqa: BLE001
            LOGGER.exception(
                "Trigger %s for %s/%s failed",
                trigger.kind.value,
                trigger.group_id,
                trigger.rotation_name,
            )
            return False
        return True


def build_triggers(rotation: Rotation) -> list[ScheduledTrigger]:
    """Derive the pick trigger and, if enabled, the summary trigger of a rotation."""

    config = rotation.config
    schedule = config.schedule
    tz = zone_for(schedule)
    triggers = [
        ScheduledTrigger(
            group_id=rotation.group_id,
            rotation_name=rotation.name,
            kind=TriggerKind.PICK,
            cron_expr=cron_expression(schedule),
            tz=tz,
            schedule=schedule,
            anchor=config.anchor_date,
        )
    ]
    if config.post_summary:
        weekdays: Iterable[Weekday] = schedule.weekdays
        if config.summary_only_on_anchor_weekday:
            weekdays = [Weekday(config.anchor_date.astimezone(tz).weekday())]
        triggers.append(
            ScheduledTrigger(
                group_id=rotation.group_id,
                rotation_name=rotation.name,
                kind=TriggerKind.SUMMARY,
                cron_expr=cron_expression(schedule, weekdays),
                tz=tz,
                schedule=schedule,
                anchor=config.anchor_date,
            )
        )
    return triggers
