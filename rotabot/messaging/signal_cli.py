"""Signal CLI notifier."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Callable

from rotabot.errors import UnreachableParticipant
from rotabot.messaging.base import Notifier
from rotabot.models import Message, NotificationHandle

LOGGER = logging.getLogger(__name__)


class SignalNotifier(Notifier):
    """Notifier and inbound message source around signal-cli JSON commands."""

    def __init__(
        self,
        signal_cli_path: str,
        account: str,
        poll_interval_seconds: float,
        is_allowed_sender: Callable[[str], bool] | None = None,
    ) -> None:
        self._signal_cli_path = signal_cli_path
        self._account = account
        self._poll_interval_seconds = poll_interval_seconds
        self._is_allowed_sender = is_allowed_sender

    async def _run(self, *args: str) -> tuple[int, str, str]:
        process = await asyncio.create_subprocess_exec(
            self._signal_cli_path,
            "-o",
            "json",
            "-a",
            self._account,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        return process.returncode or 0, stdout.decode(), stderr.decode()

    async def poll_messages(self) -> AsyncIterator[Message]:
        """Poll receive endpoint and yield normalized message objects.

        Group messages are always yielded; direct messages only from allowed senders.
        """

        while True:
            returncode, stdout, stderr = await self._run(
                "receive", "-t", str(int(self._poll_interval_seconds))
            )
            if returncode != 0:
                LOGGER.warning("signal-cli receive failed: %s", stderr.strip())
                await asyncio.sleep(self._poll_interval_seconds)
                continue

            for line in stdout.splitlines():
                line = line.strip()
                if not line:
                    continue
                try:
                    message = _to_message(json.loads(line))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                    continue
                if message is None:
                    continue
                if not message.sender_id.startswith("+"):
                    message.sender_id = await self.resolve_number(message.sender_id)
                    if not message.is_group:
                        message.group_id = message.sender_id
                if (
                    not message.is_group
                    and self._is_allowed_sender is not None
                    and not self._is_allowed_sender(message.sender_id)
                ):
                    LOGGER.warning("Dropping direct message from unauthorized sender %s", message.sender_id)
                    continue
                yield message

    async def resolve_number(self, uuid: str) -> str:
        """Return the phone number for a UUID by scanning the contacts list.

        Falls back to the UUID itself if not found.
        """
        _, stdout, _ = await self._run("listContacts")
        for line in stdout.splitlines():
            try:
                contact = json.loads(line)
                if contact.get("uuid") == uuid and contact.get("number"):
                    return contact["number"]
            except (json.JSONDecodeError, AttributeError):
                continue
        LOGGER.warning("Could not resolve UUID %s via contacts", uuid)
        return uuid

    async def open_notification(
        self, target: str, content: str, is_group: bool = False
    ) -> NotificationHandle:
        if not is_group and not target.startswith("+"):
            target = await self.resolve_number(target)

        returncode, stdout, stderr = await self._run("send", "-m", content, *_recipient_args(target, is_group))
        if returncode != 0:
            if is_group:
                raise RuntimeError(f"signal-cli send failed: {stderr.strip()}")
            raise UnreachableParticipant(target, stderr.strip())
        return NotificationHandle(target=target, timestamp=_parse_timestamp(stdout), is_group=is_group)

    async def update_notification(self, handle: NotificationHandle, content: str) -> None:
        if handle.timestamp is None:
            LOGGER.warning("Cannot edit message to %s without a timestamp", handle.target)
            return
        returncode, _, stderr = await self._run(
            "send",
            "--edit-timestamp",
            str(handle.timestamp),
            "-m",
            content,
            *_recipient_args(handle.target, handle.is_group),
        )
        if returncode != 0:
            raise RuntimeError(f"signal-cli edit failed: {stderr.strip()}")

    async def delete_notification(self, handle: NotificationHandle) -> None:
        if handle.timestamp is None:
            LOGGER.warning("Cannot delete message to %s without a timestamp", handle.target)
            return
        returncode, _, stderr = await self._run(
            "remoteDelete",
            "-t",
            str(handle.timestamp),
            *_recipient_args(handle.target, handle.is_group),
        )
        if returncode != 0:
            raise RuntimeError(f"signal-cli remoteDelete failed: {stderr.strip()}")

    async def ensure_presence(self, channel: str) -> bool:
        returncode, stdout, stderr = await self._run("listGroups")
        if returncode != 0:
            LOGGER.warning("signal-cli listGroups failed: %s", stderr.strip())
            return False
        return channel in _group_ids(stdout)


def _recipient_args(target: str, is_group: bool) -> list[str]:
    return ["-g", target] if is_group else [target]


def _parse_timestamp(raw: str) -> int | None:
    for line in raw.splitlines():
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict) and isinstance(payload.get("timestamp"), int):
            return payload["timestamp"]
    return None


def _group_ids(raw: str) -> set[str]:
    ids: set[str] = set()
    for line in raw.splitlines():
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        # Either one JSON array or one object per line, depending on version.
        groups = payload if isinstance(payload, list) else [payload]
        for group in groups:
            if isinstance(group, dict) and isinstance(group.get("id"), str):
                ids.add(group["id"])
    return ids


def _to_message(payload: dict[str, object]) -> Message | None:
    envelope = payload.get("envelope")
    if not isinstance(envelope, dict):
        return None
    data_message = envelope.get("dataMessage")
    if not isinstance(data_message, dict):
        return None

    text = data_message.get("message")
    text = text.strip() if isinstance(text, str) else ""
    if not text:
        return None

    source = str(envelope.get("source") or "unknown")
    timestamp_ms = int(envelope.get("timestamp") or 0)
    timestamp = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)

    group_info = data_message.get("groupInfo")
    if isinstance(group_info, dict) and isinstance(group_info.get("groupId"), str):
        group_id = group_info["groupId"]
        is_group = True
    else:
        group_id = source
        is_group = False

    return Message(
        group_id=group_id,
        sender_id=source,
        text=text,
        timestamp=timestamp,
        message_id=str(envelope.get("timestamp") or ""),
        is_group=is_group,
    )
