"""Error taxonomy for rotation handling.

An empty rotation is deliberately absent: it is a normal, reportable state and
is returned as ``None`` rather than raised.
"""

from __future__ import annotations


class RotabotError(Exception):
    """Base class for all rotabot errors."""


class UserInputError(RotabotError):
    """Malformed input from the person configuring a rotation. Never mutates state."""


class UnreachableParticipant(RotabotError):
    """A participant could not be notified. Handled like a skip."""

    def __init__(self, participant_id: str, reason: str = "") -> None:
        message = f"Could not reach {participant_id}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.participant_id = participant_id


class ScheduleComputationError(RotabotError):
    """Stored schedule data cannot be turned into occurrences or triggers."""


class StorageFailure(RotabotError):
    """A persistence read or write failed; the in-progress mutation is abandoned."""
