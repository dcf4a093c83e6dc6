"""Application entrypoint."""

from __future__ import annotations

import asyncio
import logging

from rotabot.commands import CommandDispatcher
from rotabot.config import allowed_senders, load_settings
from rotabot.errors import StorageFailure, UnreachableParticipant
from rotabot.messaging.base import Notifier
from rotabot.messaging.signal_cli import SignalNotifier
from rotabot.models import Message
from rotabot.picks import PickStateMachine
from rotabot.queue import QueueEngine
from rotabot.scheduler import RotationScheduler, TriggerKind
from rotabot.service import RotationService
from rotabot.store import RotationStore

LOGGER = logging.getLogger(__name__)


async def handle_message(dispatcher: CommandDispatcher, notifier: Notifier, message: Message) -> None:
    """Dispatch one inbound message and send the reply, if any. Never raises on command errors."""

    try:
        reply = await dispatcher.dispatch(message)
    except StorageFailure as exc:
        LOGGER.error("Storage failure while handling %r: %s", message.text, exc)
        reply = "Could not save that change, nothing was modified. Please try again later."
    except Exception:  # noqa: BLE001
        LOGGER.exception("Unexpected error while handling %r", message.text)
        reply = "Something went wrong handling that command."
    if not reply:
        return
    try:
        await notifier.open_notification(message.group_id, reply, is_group=message.is_group)
    except (UnreachableParticipant, RuntimeError, OSError) as exc:
        LOGGER.warning("Could not reply to %s: %s", message.group_id, exc)


async def run() -> None:
    """Initialize app layers and start processing loop."""

    settings = load_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    store = RotationStore(settings.database_path)
    store.initialize()

    static_senders = allowed_senders(settings)
    notifier = SignalNotifier(
        signal_cli_path=settings.signal_cli_path,
        account=settings.signal_account,
        poll_interval_seconds=settings.signal_poll_interval_seconds,
        is_allowed_sender=lambda sender: sender in static_senders or store.is_member(sender),
    )

    queue = QueueEngine(store)
    picks = PickStateMachine(store=store, queue=queue, notifier=notifier)

    async def handle_trigger(kind: TriggerKind, group_id: str, name: str) -> None:
        await service.handle_trigger(kind, group_id, name)

    scheduler = RotationScheduler(handler=handle_trigger)
    service = RotationService(
        store=store,
        queue=queue,
        picks=picks,
        scheduler=scheduler,
        notifier=notifier,
        summary_occurrences=settings.summary_occurrences,
    )
    dispatcher = CommandDispatcher(service, default_timezone=settings.default_timezone)

    LOGGER.info("Pending picks from a previous run are not restored; queues and schedules are.")
    service.rebuild_schedule()

    try:
        async for message in notifier.poll_messages():
            await handle_message(dispatcher, notifier, message)
    except asyncio.CancelledError:
        raise
    finally:
        scheduler.stop()
        picks.shutdown()
        LOGGER.info("Rotabot shutdown complete")


def main() -> None:
    """Synchronous wrapper for asyncio entrypoint."""

    asyncio.run(run())


if __name__ == "__main__":
    main()
