import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from rotabot.errors import UserInputError
from rotabot.models import PickOutcome, RotationConfig
from rotabot.scheduler import RotationScheduler, TriggerKind
from rotabot.service import RotationService, make_config

from conftest import FIXED_NOW


@pytest_asyncio.fixture
async def scheduler():
    scheduler = RotationScheduler(handler=AsyncMock())
    yield scheduler
    scheduler.stop()


@pytest.fixture
def service(store, queue, picks, scheduler, notifier) -> RotationService:
    return RotationService(
        store=store,
        queue=queue,
        picks=picks,
        scheduler=scheduler,
        notifier=notifier,
        summary_occurrences=3,
        clock=lambda: FIXED_NOW,
    )


def _weekly_config(**extra: object) -> dict:
    return {
        "schedule": {"weekdays": "wed", "time_of_day": "09:00", "timezone": "UTC", "frequency": "weekly"},
        **extra,
    }


def test_make_config_reports_user_input_error():
    with pytest.raises(UserInputError, match="HH:MM"):
        make_config({"schedule": {"time_of_day": "9am"}})
    with pytest.raises(UserInputError):
        make_config({"schedule": {"timezone": "Nowhere/Special"}})
    with pytest.raises(UserInputError):
        make_config({"timeout_minutes": 0})


@pytest.mark.asyncio
async def test_save_rotation_sets_queue_anchor_and_triggers(service, store, scheduler):
    rotation = await service.save_rotation("group-1", "standup", _weekly_config(), ["+1", "+2", "+1"])

    assert rotation.queue == ["+1", "+2"]
    assert rotation.config.anchor_date == FIXED_NOW
    stored = store.get_rotation("group-1", "standup")
    assert stored.queue == ["+1", "+2"]
    assert set(scheduler.triggers) == {("group-1", "standup", TriggerKind.PICK)}


@pytest.mark.asyncio
async def test_save_rotation_accepts_model_config(service):
    rotation = await service.save_rotation("group-1", "review", RotationConfig(timeout_minutes=5), ["+9"])
    assert rotation.config.timeout_minutes == 5
    assert rotation.members == ["+9"]


@pytest.mark.asyncio
async def test_save_rotation_rejects_bad_input_without_writing(service, store):
    with pytest.raises(UserInputError, match="at least one member"):
        await service.save_rotation("group-1", "standup", _weekly_config(), [])
    with pytest.raises(UserInputError):
        await service.save_rotation("group-1", "bad name", _weekly_config(), ["+1"])
    with pytest.raises(UserInputError):
        await service.save_rotation("group-1", "standup", {"schedule": {"time_of_day": "25:00"}}, ["+1"])
    assert store.list_rotations() == []


@pytest.mark.asyncio
async def test_editing_replaces_queue(service, store):
    await service.save_rotation("group-1", "standup", _weekly_config(), ["+1", "+2"])
    await service.start_pick("group-1", "standup")

    await service.save_rotation("group-1", "standup", _weekly_config(), ["+3", "+4"])

    assert store.get_queue("group-1", "standup") == ["+3", "+4"]


@pytest.mark.asyncio
async def test_editing_withdraws_pending_pick_of_removed_member(service, store, notifier):
    await service.save_rotation(
        "group-1", "standup", _weekly_config(timeout_minutes=5), ["+111111", "+222222"]
    )
    pick = await service.start_pick("group-1", "standup")
    assert pick.participant_id == "+111111"
    timer = pick.timer

    await service.save_rotation("group-1", "standup", _weekly_config(), ["+222222", "+333333"])
    await asyncio.sleep(0)

    assert service.pending("group-1", "standup") is None
    assert notifier.deleted == [pick.handle]
    assert timer.cancelled()
    assert await service.respond("+111111", PickOutcome.DECLINED) == "You have no pending picks."
    assert store.get_queue("group-1", "standup") == ["+222222", "+333333"]


@pytest.mark.asyncio
async def test_delete_rotation_cancels_pick_and_triggers(service, store, scheduler, notifier):
    await service.save_rotation("group-1", "standup", _weekly_config(), ["+1", "+2"])
    await service.start_pick("group-1", "standup")

    assert await service.delete_rotation("group-1", "standup")

    assert service.pending("group-1", "standup") is None
    assert len(notifier.deleted) == 1
    assert store.get_rotation("group-1", "standup") is None
    assert scheduler.triggers == {}
    assert not await service.delete_rotation("group-1", "standup")


@pytest.mark.asyncio
async def test_start_pick_on_unknown_rotation(service):
    with pytest.raises(UserInputError, match="No rotation"):
        await service.start_pick("group-1", "ghost")


@pytest.mark.asyncio
async def test_respond_resolves_own_pick(service, store):
    await service.save_rotation("group-1", "standup", _weekly_config(), ["+1", "+2"])
    await service.start_pick("group-1", "standup")

    assert await service.respond("+2", PickOutcome.ACCEPTED) == "You have no pending picks."
    reply = await service.respond("+1", PickOutcome.DECLINED)

    assert reply == "Recorded: declined for standup."
    assert service.pending("group-1", "standup").participant_id == "+2"
    assert store.get_queue("group-1", "standup") == ["+1"]


@pytest.mark.asyncio
async def test_respond_needs_name_when_ambiguous(service):
    await service.save_rotation("group-1", "standup", _weekly_config(), ["+1"])
    await service.save_rotation("group-1", "review", _weekly_config(), ["+1"])
    await service.start_pick("group-1", "standup")
    await service.start_pick("group-1", "review")

    assert "several pending picks" in await service.respond("+1", PickOutcome.ACCEPTED)
    assert await service.respond("+1", PickOutcome.ACCEPTED, "review") == "Recorded: accepted for review."
    assert service.pending("group-1", "standup") is not None


@pytest.mark.asyncio
async def test_skip_advances_to_next(service):
    await service.save_rotation("group-1", "standup", _weekly_config(), ["+1", "+2"])
    assert not await service.skip("group-1", "standup")
    await service.start_pick("group-1", "standup")

    assert await service.skip("group-1", "standup")
    assert service.pending("group-1", "standup").participant_id == "+2"


@pytest.mark.asyncio
async def test_shuffle_requires_two_members(service):
    await service.save_rotation("group-1", "standup", _weekly_config(), ["+1"])
    with pytest.raises(UserInputError, match="Too few"):
        await service.shuffle("group-1", "standup")


@pytest.mark.asyncio
async def test_render_summary_pairs_occurrences_with_queue(service, store):
    await service.save_rotation("group-1", "standup", _weekly_config(), ["+1", "+2"])

    summary = service.render_summary(store.get_rotation("group-1", "standup"))

    assert summary.splitlines() == [
        "standup: weekly on Wed at 09:00 (UTC)",
        "Queue: +1, +2",
        "- Wed 03 Jan 09:00: +1",
        "- Wed 10 Jan 09:00: +2",
        "- Wed 17 Jan 09:00: next shuffle",
    ]


@pytest.mark.asyncio
async def test_list_rotations_mentions_pending_pick(service):
    await service.save_rotation("group-1", "standup", {}, ["+1", "+2"])
    await service.start_pick("group-1", "standup")

    (summary,) = service.list_rotations("group-1")

    assert summary.splitlines()[:3] == ["standup: manual only", "Waiting on +1", "Queue: +2"]
    assert service.list_rotations("group-2") == []


@pytest.mark.asyncio
async def test_handle_trigger_posts_summary(service, notifier):
    await service.save_rotation("group-1", "standup", _weekly_config(post_summary=True), ["+1", "+2"])

    await service.handle_trigger(TriggerKind.SUMMARY, "group-1", "standup")

    (posted,) = notifier.group_messages("group-1")
    assert posted.startswith("standup: weekly on Wed")
    assert service.pending("group-1", "standup") is None


@pytest.mark.asyncio
async def test_handle_trigger_starts_pick(service):
    await service.save_rotation("group-1", "standup", _weekly_config(), ["+1", "+2"])
    await service.handle_trigger(TriggerKind.PICK, "group-1", "standup")
    assert service.pending("group-1", "standup").participant_id == "+1"


@pytest.mark.asyncio
async def test_handle_trigger_skips_when_bot_not_in_group(service, notifier):
    await service.save_rotation("group-1", "standup", _weekly_config(), ["+1"])
    notifier.present = False
    await service.handle_trigger(TriggerKind.PICK, "group-1", "standup")
    assert service.pending("group-1", "standup") is None
