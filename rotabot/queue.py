"""Recirculating participant queue."""

from __future__ import annotations

import logging
import random

from rotabot.errors import UserInputError
from rotabot.store import RotationStore

LOGGER = logging.getLogger(__name__)


class QueueEngine:
    """Pop, requeue and reshuffle a rotation's queue.

    Every mutation is written to the store before the method returns. The queue
    is re-read on each call, so there is no in-memory copy to drift from storage.
    """

    def __init__(self, store: RotationStore, rng: random.Random | None = None) -> None:
        self._store = store
        self._rng = rng or random.Random()

    def pop_next(self, group_id: str, name: str) -> str | None:
        """Remove and return the front of the queue, refilling from members when exhausted.

        Returns None when the rotation has no members at all.
        """
        rotation = self._store.get_rotation(group_id, name)
        if rotation is None:
            LOGGER.warning("pop_next on unknown rotation %s/%s", group_id, name)
            return None

        queue = list(rotation.queue)
        if not queue:
            if not rotation.members:
                LOGGER.info("Rotation %s/%s has no members", group_id, name)
                return None
            queue = list(rotation.members)
            self._rng.shuffle(queue)
            LOGGER.info("Refilled queue for %s/%s with %d members", group_id, name, len(queue))

        participant = queue.pop(0)
        self._store.save_queue(group_id, name, queue)
        return participant

    def requeue(self, group_id: str, name: str, participant_id: str) -> None:
        """Send a participant to the back of the line."""

        queue = self._store.get_queue(group_id, name)
        queue.append(participant_id)
        self._store.save_queue(group_id, name, queue)

    def restore(self, group_id: str, name: str, participant_id: str) -> None:
        """Put a popped participant back at the front, as if never popped."""

        rotation = self._store.get_rotation(group_id, name)
        if rotation is None or participant_id not in rotation.members:
            LOGGER.info("Not restoring %s to %s/%s: no longer a member", participant_id, group_id, name)
            return
        self._store.save_queue(group_id, name, [participant_id, *rotation.queue])

    def shuffle_now(self, group_id: str, name: str) -> list[str]:
        """Reshuffle the current queue contents in place and return the new order."""

        queue = self._store.get_queue(group_id, name)
        if len(queue) < 2:
            raise UserInputError(f"Too few members in {name} to shuffle.")
        self._rng.shuffle(queue)
        self._store.save_queue(group_id, name, queue)
        return queue

    def size(self, group_id: str, name: str) -> int:
        return len(self._store.get_queue(group_id, name))
