from __future__ import annotations

import asyncio
import random
from datetime import datetime, timezone

import pytest

from rotabot.errors import UnreachableParticipant
from rotabot.messaging.base import Notifier
from rotabot.models import NotificationHandle, Rotation, RotationConfig
from rotabot.picks import PickStateMachine
from rotabot.queue import QueueEngine
from rotabot.store import RotationStore

FIXED_NOW = datetime(2024, 1, 3, 8, 0, tzinfo=timezone.utc)


class FakeNotifier(Notifier):
    """Records every message; participants in ``unreachable`` cannot be DMed.

    ``failures`` maps a DM target to the exception its delivery raises. When
    ``hold`` is set, DMs wait on it after setting ``delivering``.
    """

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, bool]] = []
        self.updated: list[tuple[NotificationHandle, str]] = []
        self.deleted: list[NotificationHandle] = []
        self.unreachable: set[str] = set()
        self.failures: dict[str, BaseException] = {}
        self.hold: asyncio.Event | None = None
        self.delivering = asyncio.Event()
        self.present = True
        self._next_timestamp = 1000

    async def open_notification(self, target: str, content: str, is_group: bool = False) -> NotificationHandle:
        await asyncio.sleep(0)
        if not is_group and self.hold is not None:
            self.delivering.set()
            await self.hold.wait()
        if not is_group and target in self.failures:
            raise self.failures[target]
        if not is_group and target in self.unreachable:
            raise UnreachableParticipant(target, "no such user")
        self.sent.append((target, content, is_group))
        self._next_timestamp += 1
        return NotificationHandle(target=target, timestamp=self._next_timestamp, is_group=is_group)

    async def update_notification(self, handle: NotificationHandle, content: str) -> None:
        self.updated.append((handle, content))

    async def delete_notification(self, handle: NotificationHandle) -> None:
        self.deleted.append(handle)

    async def ensure_presence(self, channel: str) -> bool:
        return self.present

    def group_messages(self, group_id: str) -> list[str]:
        return [text for target, text, is_group in self.sent if is_group and target == group_id]

    def direct_recipients(self) -> list[str]:
        return [target for target, _, is_group in self.sent if not is_group]


@pytest.fixture
def store(tmp_path) -> RotationStore:
    store = RotationStore(tmp_path / "rotabot.db")
    store.initialize()
    return store


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def queue(store) -> QueueEngine:
    return QueueEngine(store, rng=random.Random(7))


@pytest.fixture
def picks(store, queue, notifier) -> PickStateMachine:
    return PickStateMachine(store=store, queue=queue, notifier=notifier, clock=lambda: FIXED_NOW)


def save(store: RotationStore, queue: list[str], members: list[str] | None = None, **config: object) -> Rotation:
    rotation = Rotation(
        group_id="group-1",
        name="standup",
        config=RotationConfig(members=members if members is not None else list(queue), **config),
        queue=list(queue),
    )
    store.save_rotation(rotation)
    return rotation
