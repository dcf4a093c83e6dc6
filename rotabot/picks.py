"""Lifecycle of in-flight picks: start, timeout, resolution."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable

from rotabot.errors import UnreachableParticipant
from rotabot.messaging.base import Notifier
from rotabot.models import PendingPick, PickOutcome, PickState
from rotabot.queue import QueueEngine
from rotabot.store import RotationStore

LOGGER = logging.getLogger(__name__)

RotationKey = tuple[str, str]

_OUTCOME_DM = {
    PickOutcome.ACCEPTED: "Thanks, you're on {name}!",
    PickOutcome.DECLINED: "You declined {name}. You're back at the end of the line.",
    PickOutcome.SKIPPED: "You were skipped for {name}. You're back at the end of the line.",
    PickOutcome.TIMED_OUT: "No answer in time for {name}. You're back at the end of the line.",
}

_OUTCOME_ANNOUNCEMENT = {
    PickOutcome.ACCEPTED: "{who} accepted {name}!",
    PickOutcome.DECLINED: "{who} declined {name}, trying next...",
    PickOutcome.SKIPPED: "{who} was skipped for {name}, trying next...",
    PickOutcome.TIMED_OUT: "{who} did not answer for {name} in time, trying next...",
}


class PickStateMachine:
    """Owns every pending pick, the per-rotation locks and the timeout timers.

    At most one pick is pending per rotation. Starting, resolving and cancelling
    all take the rotation's lock, so a manual trigger racing a scheduled one, or
    a timer racing an answer, is serialized. A resolution that does not match the
    current pending pick is ignored.
    """

    def __init__(
        self,
        store: RotationStore,
        queue: QueueEngine,
        notifier: Notifier,
        clock: Callable[[], datetime] | None = None,
        seconds_per_minute: float = 60.0,
    ) -> None:
        self._store = store
        self._queue = queue
        self._notifier = notifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._seconds_per_minute = seconds_per_minute
        self._picks: dict[RotationKey, PendingPick] = {}
        self._locks: dict[RotationKey, asyncio.Lock] = {}

    def pending(self, group_id: str, name: str) -> PendingPick | None:
        return self._picks.get((group_id, name))

    def pending_for(self, participant_id: str) -> list[PendingPick]:
        return [pick for pick in self._picks.values() if pick.participant_id == participant_id]

    def _lock(self, key: RotationKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def start(self, group_id: str, name: str) -> PendingPick | None:
        """Pick the next participant and ask them.

        Returns the new pending pick, the already pending one if the rotation
        is still waiting on someone, or None when nobody is left to ask.
        """
        key = (group_id, name)
        async with self._lock(key):
            existing = self._picks.get(key)
            if existing is not None:
                LOGGER.info("Rotation %s/%s still waiting on %s", group_id, name, existing.participant_id)
                return existing
            return await self._advance(group_id, name)

    async def resolve(
        self,
        group_id: str,
        name: str,
        participant_id: str,
        outcome: PickOutcome,
        token: str | None = None,
    ) -> bool:
        """Apply an outcome to the pending pick; returns False if there was nothing to resolve.

        Anything but acceptance sends the participant to the back of the queue
        and asks the next one.
        """
        key = (group_id, name)
        async with self._lock(key):
            pick = self._picks.get(key)
            if (
                pick is None
                or pick.state is not PickState.PENDING
                or pick.participant_id != participant_id
                or (token is not None and pick.token != token)
            ):
                LOGGER.info(
                    "Ignoring %s for %s in %s/%s: no matching pending pick",
                    outcome.value,
                    participant_id,
                    group_id,
                    name,
                )
                return False

            if outcome is not PickOutcome.ACCEPTED:
                # Storage first: if this raises, the pick stays pending.
                self._queue.requeue(group_id, name, participant_id)
            del self._picks[key]
            pick.state = outcome.state
            self._disarm(pick)
            LOGGER.info("Pick %s/%s for %s resolved: %s", group_id, name, participant_id, outcome.value)

            if pick.handle is not None:
                try:
                    await self._notifier.update_notification(
                        pick.handle, _OUTCOME_DM[outcome].format(name=name)
                    )
                except (UnreachableParticipant, RuntimeError, OSError) as exc:
                    LOGGER.warning("Could not update pick message for %s: %s", participant_id, exc)
            announcement = _OUTCOME_ANNOUNCEMENT[outcome].format(who=participant_id, name=name)
            await self._announce(group_id, announcement)

            if outcome is not PickOutcome.ACCEPTED:
                await self._advance(group_id, name)
            return True

    async def cancel(self, group_id: str, name: str) -> PendingPick | None:
        """Drop the pending pick of a rotation without touching its queue."""

        key = (group_id, name)
        async with self._lock(key):
            pick = self._picks.pop(key, None)
            if pick is None:
                return None
            self._disarm(pick)
            if pick.handle is not None:
                try:
                    await self._notifier.delete_notification(pick.handle)
                except (UnreachableParticipant, RuntimeError, OSError) as exc:
                    LOGGER.warning("Could not retract pick message for %s: %s", pick.participant_id, exc)
            LOGGER.info("Cancelled pick %s/%s for %s", group_id, name, pick.participant_id)
            return pick

    def shutdown(self) -> None:
        """Disarm every timer. Pending picks are not persisted and are lost."""

        for pick in self._picks.values():
            self._disarm(pick)
        if self._picks:
            LOGGER.warning("Discarding %d pending pick(s) on shutdown", len(self._picks))
        self._picks.clear()

    async def _advance(self, group_id: str, name: str) -> PendingPick | None:
        """Pop participants until one is reachable. Caller holds the rotation lock."""

        unreachable = 0
        while True:
            participant = self._queue.pop_next(group_id, name)
            if participant is None:
                await self._announce(group_id, f"No one left to try for {name}!")
                return None

            try:
                handle = await self._notifier.open_notification(
                    participant,
                    f"You've been picked for {name}! Reply @accept or @decline.",
                    is_group=False,
                )
            except Exception as exc:  # noqa: BLE001
                # Any delivery failure counts as unreachable, including a missing signal-cli.
                LOGGER.warning(
                    "Treating unreachable %s as skipped for %s/%s: %s", participant, group_id, name, exc
                )
                self._queue.requeue(group_id, name, participant)
                unreachable += 1
                # Everyone in the queue has now failed once; stop instead of cycling.
                if unreachable >= self._queue.size(group_id, name):
                    await self._announce(group_id, f"Could not reach anyone for {name}.")
                    return None
                continue
            except BaseException:
                self._queue.restore(group_id, name, participant)
                raise

            pick = PendingPick(
                group_id=group_id,
                rotation_name=name,
                participant_id=participant,
                started_at=self._clock(),
                handle=handle,
            )
            self._picks[(group_id, name)] = pick
            rotation = self._store.get_rotation(group_id, name)
            if rotation is not None and rotation.config.timeout_minutes:
                self._arm(pick, rotation.config.timeout_minutes * self._seconds_per_minute)
            LOGGER.info("Started pick %s/%s for %s", group_id, name, participant)
            await self._announce(group_id, f"Asking {participant} for {name}...")
            return pick

    def _arm(self, pick: PendingPick, delay_seconds: float) -> None:
        pick.timer = asyncio.create_task(
            self._expire(pick, delay_seconds),
            name=f"pick-timeout-{pick.group_id}-{pick.rotation_name}",
        )

    def _disarm(self, pick: PendingPick) -> None:
        timer, pick.timer = pick.timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _expire(self, pick: PendingPick, delay_seconds: float) -> None:
        await asyncio.sleep(delay_seconds)
        try:
            await self.resolve(
                pick.group_id,
                pick.rotation_name,
                pick.participant_id,
                PickOutcome.TIMED_OUT,
                token=pick.token,
            )
        except Exception:  # noqa: BLE001
            LOGGER.exception("Timeout handling failed for %s/%s", pick.group_id, pick.rotation_name)

    async def _announce(self, group_id: str, text: str) -> None:
        try:
            await self._notifier.open_notification(group_id, text, is_group=True)
        except (UnreachableParticipant, RuntimeError, OSError) as exc:
            LOGGER.warning("Could not post to %s: %s", group_id, exc)
