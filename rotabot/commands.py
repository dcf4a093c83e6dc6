"""Command dispatcher for @-prefixed messages.

Group chats manage rotations with ``@rotation ...``; participants answer their
picks with ``@accept`` or ``@decline``. An unrecognised @command returns None.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from rotabot.errors import UserInputError
from rotabot.models import Message, PickOutcome
from rotabot.service import RotationService

LOGGER = logging.getLogger(__name__)

_MEMBER_RE = re.compile(r"^\+\d{6,15}$")

ROTATION_USAGE = (
    "Usage:\n"
    "@rotation save <name> <+number...> [days=mon,wed] [time=09:30] [tz=Europe/Berlin] "
    "[every=weekly|fortnightly|monthly] [timeout=30] [summary=off|all|anchor]\n"
    "@rotation list\n"
    "@rotation start <name>\n"
    "@rotation shuffle <name>\n"
    "@rotation skip <name>\n"
    "@rotation delete <name>\n"
    "Picked? Reply @accept or @decline [name]."
)


def parse_command(text: str) -> tuple[str, list[str]] | None:
    """Split an @-prefixed message into (command, args).

    Returns:
        A (command, args) tuple where command is lowercased, or None if text
        is not a valid @command.
    """
    text = text.strip()
    if not text.startswith("@"):
        return None
    parts = text[1:].split()
    if not parts:
        return None
    return parts[0].lower(), parts[1:]


def parse_rotation_args(args: list[str], default_timezone: str) -> tuple[str, list[str], dict[str, Any]]:
    """Turn ``<name> <members...> [key=value...]`` into (name, members, config fields)."""

    if not args:
        raise UserInputError(ROTATION_USAGE)
    name, rest = args[0], args[1:]
    members: list[str] = []
    fields: dict[str, Any] = {}
    schedule: dict[str, Any] = {}

    for token in rest:
        if "=" in token:
            key, value = token.split("=", 1)
            key = key.lower()
            if key == "days":
                schedule["weekdays"] = value
            elif key == "time":
                schedule["time_of_day"] = value
            elif key == "tz":
                schedule["timezone"] = value
            elif key == "every":
                schedule["frequency"] = value.lower()
            elif key == "timeout":
                fields["timeout_minutes"] = value
            elif key == "summary":
                mode = value.lower()
                if mode not in ("off", "all", "anchor"):
                    raise UserInputError("summary must be off, all or anchor.")
                fields["post_summary"] = mode != "off"
                fields["summary_only_on_anchor_weekday"] = mode == "anchor"
            else:
                raise UserInputError(f"Unknown option {key!r}.\n{ROTATION_USAGE}")
        elif _MEMBER_RE.match(token):
            members.append(token)
        else:
            raise UserInputError(f"{token!r} is not a phone number like +15551234567.")

    if schedule.get("weekdays") and schedule.get("time_of_day") and not schedule.get("timezone"):
        schedule["timezone"] = default_timezone
    fields["schedule"] = schedule
    return name, members, fields


class CommandDispatcher:
    """Routes @-prefixed messages to rotation operations."""

    def __init__(self, service: RotationService, default_timezone: str = "UTC") -> None:
        self._service = service
        self._default_timezone = default_timezone

    async def dispatch(self, message: Message) -> str | None:
        """Dispatch a message to a command handler.

        Returns:
            A reply string for recognised commands (empty when the outcome was
            already announced to the group), or None for unknown ones.
        """
        parsed = parse_command(message.text)
        if parsed is None:
            return None
        command, args = parsed
        LOGGER.info("Command dispatch: command=%r args=%r", command, args)
        try:
            if command == "rotation":
                return await self._handle_rotation(args, message)
            if command == "accept":
                return await self._service.respond(message.sender_id, PickOutcome.ACCEPTED, _first(args))
            if command == "decline":
                return await self._service.respond(message.sender_id, PickOutcome.DECLINED, _first(args))
        except UserInputError as exc:
            return str(exc)
        return None

    async def _handle_rotation(self, args: list[str], message: Message) -> str:
        if not message.is_group:
            return "Rotation commands work in a group chat."
        if not args:
            return ROTATION_USAGE
        sub, rest = args[0].lower(), args[1:]
        group_id = message.group_id

        if sub == "list":
            summaries = self._service.list_rotations(group_id)
            return "\n\n".join(summaries) if summaries else "No rotations yet."
        if sub == "save":
            return await self._handle_save(group_id, rest)
        if sub not in ("start", "shuffle", "skip", "delete"):
            return ROTATION_USAGE
        if not rest:
            return f"Usage: @rotation {sub} <name>"

        name = rest[0]
        if sub == "start":
            pending = self._service.pending(group_id, name)
            if pending is not None:
                return f"Still waiting on {pending.participant_id} for {name}."
            await self._service.start_pick(group_id, name)
            return ""
        if sub == "shuffle":
            order = await self._service.shuffle(group_id, name)
            return f"New order for {name}: {', '.join(order)}"
        if sub == "skip":
            if not await self._service.skip(group_id, name):
                return f"Nobody is pending for {name}."
            return ""
        if await self._service.delete_rotation(group_id, name):
            return f"Deleted {name}."
        return f"No rotation named {name!r} here."

    async def _handle_save(self, group_id: str, args: list[str]) -> str:
        name, members, fields = parse_rotation_args(args, self._default_timezone)
        rotation = await self._service.save_rotation(group_id, name, fields, members)
        return (
            f"Saved {rotation.name}: {rotation.config.schedule.describe()}. "
            f"Queue: {', '.join(rotation.queue)}"
        )


def _first(args: list[str]) -> str | None:
    return args[0] if args else None
