import random

import pytest

from rotabot.errors import UserInputError
from rotabot.queue import QueueEngine

from conftest import save


def test_pop_next_takes_front_and_persists(store, queue):
    save(store, ["A", "B", "C"])

    assert queue.pop_next("group-1", "standup") == "A"
    assert store.get_queue("group-1", "standup") == ["B", "C"]


def test_pop_next_refills_from_members_when_exhausted(store, queue):
    save(store, [], members=["A", "B"])

    picked = queue.pop_next("group-1", "standup")

    assert picked in {"A", "B"}
    remaining = store.get_queue("group-1", "standup")
    assert len(remaining) == 1
    assert sorted([picked, *remaining]) == ["A", "B"]


def test_refill_is_a_permutation_of_members(store):
    members = [f"+{n}" for n in range(10)]
    save(store, [], members=members)
    engine = QueueEngine(store, rng=random.Random(3))

    first = engine.pop_next("group-1", "standup")

    assert sorted([first, *store.get_queue("group-1", "standup")]) == sorted(members)


def test_pop_next_on_rotation_without_members_returns_none(store, queue):
    save(store, [], members=[])

    assert queue.pop_next("group-1", "standup") is None
    assert store.get_queue("group-1", "standup") == []


def test_pop_next_on_unknown_rotation_returns_none(queue):
    assert queue.pop_next("group-1", "ghost") is None


def test_requeue_appends_to_back(store, queue):
    save(store, ["A", "B"])
    queue.requeue("group-1", "standup", "C")
    assert store.get_queue("group-1", "standup") == ["A", "B", "C"]


def test_restore_puts_participant_in_front(store, queue):
    save(store, ["A", "B", "C"])
    popped = queue.pop_next("group-1", "standup")

    queue.restore("group-1", "standup", popped)

    assert store.get_queue("group-1", "standup") == ["A", "B", "C"]


def test_restore_ignores_former_members(store, queue):
    save(store, ["B"], members=["B", "C"])

    queue.restore("group-1", "standup", "A")
    queue.restore("group-1", "ghost", "A")

    assert store.get_queue("group-1", "standup") == ["B"]
    assert store.get_queue("group-1", "ghost") == []


def test_every_member_visited_before_any_repeat(store, queue):
    members = ["A", "B", "C", "D"]
    save(store, members)

    seen = []
    for _ in range(len(members)):
        participant = queue.pop_next("group-1", "standup")
        queue.requeue("group-1", "standup", participant)
        seen.append(participant)

    assert seen == members
    assert store.get_queue("group-1", "standup") == members


def test_shuffle_now_keeps_contents(store, queue):
    save(store, ["A", "B", "C", "D", "E"])

    order = queue.shuffle_now("group-1", "standup")

    assert sorted(order) == ["A", "B", "C", "D", "E"]
    assert store.get_queue("group-1", "standup") == order


def test_shuffle_now_with_one_member_fails_and_leaves_queue(store, queue):
    save(store, ["A"], members=["A", "B"])

    with pytest.raises(UserInputError, match="Too few members"):
        queue.shuffle_now("group-1", "standup")
    assert store.get_queue("group-1", "standup") == ["A"]
