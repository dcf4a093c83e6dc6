"""Messaging collaborator interface."""

from __future__ import annotations

from abc import ABC, abstractmethod

from rotabot.models import NotificationHandle


class Notifier(ABC):
    """Channel used to reach participants and post to rotation groups."""

    @abstractmethod
    async def open_notification(
        self, target: str, content: str, is_group: bool = False
    ) -> NotificationHandle:
        """Send a message to a participant or group and return a handle to it.

        Raises UnreachableParticipant when a direct message cannot be delivered.
        """

    @abstractmethod
    async def update_notification(self, handle: NotificationHandle, content: str) -> None:
        """Replace the text of a previously sent message."""

    @abstractmethod
    async def delete_notification(self, handle: NotificationHandle) -> None:
        """Retract a previously sent message."""

    @abstractmethod
    async def ensure_presence(self, channel: str) -> bool:
        """Return True if the bot can post to the given group."""
