"""Rotation operations exposed to the command layer and the scheduler."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import ValidationError

from rotabot.errors import ScheduleComputationError, UserInputError
from rotabot.messaging.base import Notifier
from rotabot.models import PendingPick, PickOutcome, Rotation, RotationConfig
from rotabot.picks import PickStateMachine
from rotabot.queue import QueueEngine
from rotabot.recurrence import next_occurrences
from rotabot.scheduler import RotationScheduler, TriggerKind
from rotabot.store import RotationStore

LOGGER = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[\w.-]{1,64}$")


def make_config(fields: dict[str, Any]) -> RotationConfig:
    """Validate raw rotation settings, reporting problems as UserInputError."""

    try:
        return RotationConfig.model_validate(fields)
    except ValidationError as exc:
        problems = "; ".join(str(error["msg"]) for error in exc.errors())
        raise UserInputError(f"Invalid rotation settings: {problems}") from exc


class RotationService:
    """Entry points for starting picks, answering them and managing rotations."""

    def __init__(
        self,
        store: RotationStore,
        queue: QueueEngine,
        picks: PickStateMachine,
        scheduler: RotationScheduler,
        notifier: Notifier,
        summary_occurrences: int = 4,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._picks = picks
        self._scheduler = scheduler
        self._notifier = notifier
        self._summary_occurrences = summary_occurrences
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _require(self, group_id: str, name: str) -> Rotation:
        rotation = self._store.get_rotation(group_id, name)
        if rotation is None:
            raise UserInputError(f"No rotation named {name!r} here.")
        return rotation

    def pending(self, group_id: str, name: str) -> PendingPick | None:
        return self._picks.pending(group_id, name)

    async def start_pick(self, group_id: str, name: str) -> PendingPick | None:
        self._require(group_id, name)
        return await self._picks.start(group_id, name)

    async def shuffle(self, group_id: str, name: str) -> list[str]:
        self._require(group_id, name)
        return self._queue.shuffle_now(group_id, name)

    def list_rotations(self, group_id: str) -> list[str]:
        return [self.render_summary(rotation) for rotation in self._store.list_rotations(group_id)]

    async def save_rotation(
        self,
        group_id: str,
        name: str,
        config: RotationConfig | dict[str, Any],
        members: list[str],
    ) -> Rotation:
        """Create or replace a rotation.

        Its queue restarts from ``members``, its anchor moves to now, and any
        pending pick for it is withdrawn.
        """

        if not _NAME_RE.match(name):
            raise UserInputError(f"Invalid rotation name {name!r}.")
        members = list(dict.fromkeys(member.strip() for member in members if member.strip()))
        if not members:
            raise UserInputError("Please mention at least one member.")
        if isinstance(config, dict):
            config = make_config(config)

        config = config.model_copy(update={"members": members, "anchor_date": self._clock()})
        rotation = Rotation(group_id=group_id, name=name, config=config, queue=list(members))
        if await self._picks.cancel(group_id, name) is not None:
            LOGGER.info("Withdrew pending pick for %s/%s before saving", group_id, name)
        self._store.save_rotation(rotation)
        LOGGER.info("Saved rotation %s/%s with %d members", group_id, name, len(members))
        self.rebuild_schedule()
        return rotation

    async def delete_rotation(self, group_id: str, name: str) -> bool:
        await self._picks.cancel(group_id, name)
        deleted = self._store.delete_rotation(group_id, name)
        if deleted:
            LOGGER.info("Deleted rotation %s/%s", group_id, name)
        self.rebuild_schedule()
        return deleted

    async def respond(self, participant_id: str, outcome: PickOutcome, name: str | None = None) -> str:
        """Resolve the caller's own pending pick, narrowed by rotation name if given."""

        picks = self._picks.pending_for(participant_id)
        if name is not None:
            picks = [pick for pick in picks if pick.rotation_name == name]
        if not picks:
            return "You have no pending picks."
        if len(picks) > 1:
            names = ", ".join(sorted(pick.rotation_name for pick in picks))
            return f"You have several pending picks ({names}); add the rotation name."

        pick = picks[0]
        resolved = await self._picks.resolve(
            pick.group_id, pick.rotation_name, participant_id, outcome, token=pick.token
        )
        if not resolved:
            return "That pick is no longer pending."
        return f"Recorded: {outcome.value.replace('_', ' ')} for {pick.rotation_name}."

    async def skip(self, group_id: str, name: str) -> bool:
        """Skip the current pending pick of a rotation on the participant's behalf."""

        self._require(group_id, name)
        pick = self._picks.pending(group_id, name)
        if pick is None:
            return False
        return await self._picks.resolve(
            group_id, name, pick.participant_id, PickOutcome.SKIPPED, token=pick.token
        )

    async def handle_trigger(self, kind: TriggerKind, group_id: str, name: str) -> None:
        """Scheduler callback."""

        if not await self._notifier.ensure_presence(group_id):
            LOGGER.warning(
                "Not a member of group %s, skipping %s trigger for %s", group_id, kind.value, name
            )
            return
        if kind is TriggerKind.PICK:
            await self._picks.start(group_id, name)
        else:
            await self.post_summary(group_id, name)

    async def post_summary(self, group_id: str, name: str) -> None:
        rotation = self._store.get_rotation(group_id, name)
        if rotation is None:
            LOGGER.warning("Summary for unknown rotation %s/%s", group_id, name)
            return
        await self._notifier.open_notification(group_id, self.render_summary(rotation), is_group=True)

    def render_summary(self, rotation: Rotation, count: int | None = None) -> str:
        """Upcoming occurrences paired with the predicted assignee. Read-only."""

        count = self._summary_occurrences if count is None else count
        config = rotation.config
        lines = [f"{rotation.name}: {config.schedule.describe()}"]

        pick = self._picks.pending(rotation.group_id, rotation.name)
        if pick is not None:
            lines.append(f"Waiting on {pick.participant_id}")
        if rotation.queue:
            lines.append(f"Queue: {', '.join(rotation.queue)}")
        else:
            lines.append(f"Queue: empty, reshuffles from {len(config.members)} member(s)")

        try:
            upcoming = list(
                next_occurrences(config.schedule, config.anchor_date, count, now=self._clock())
            )
        except ScheduleComputationError as exc:
            LOGGER.warning("Cannot project %s/%s: %s", rotation.group_id, rotation.name, exc)
            lines.append("Upcoming: schedule unavailable")
            return "\n".join(lines)

        for index, when in enumerate(upcoming):
            who = rotation.queue[index] if index < len(rotation.queue) else "next shuffle"
            lines.append(f"- {when:%a %d %b %H:%M}: {who}")
        return "\n".join(lines)

    def rebuild_schedule(self) -> None:
        self._scheduler.rebuild_all(self._store.list_rotations())
