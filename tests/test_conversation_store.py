import pytest

from conversation_store import ConversationStore
from data_models import ConversationItem, MessageAppended, Role, SessionEvent
from event_bus import EventBus
from sequence_clock import SequenceClock


def _store(max_items=3):
    bus = EventBus("s1")
    events = []
    bus.subscribe(SessionEvent, events.append)
    return ConversationStore(max_items, SequenceClock(), bus, "s1"), events


def test_store_keeps_only_the_most_recent_items():
    store, _ = _store(max_items=3)

    for i in range(5):
        store.append(ConversationItem(role=Role.USER if i % 2 == 0 else Role.ASSISTANT, content=f"m{i}"))

    assert [item.content for item in store.snapshot()] == ["m2", "m3", "m4"]


def test_system_items_are_neither_counted_nor_evicted():
    store, _ = _store(max_items=2)
    store.append(ConversationItem(role=Role.SYSTEM, content="boot"))

    for i in range(4):
        store.append(ConversationItem(role=Role.USER, content=f"u{i}"))

    assert [item.content for item in store.snapshot()] == ["boot", "u2", "u3"]


def test_append_stamps_seq_and_publishes_same_seq():
    store, events = _store()

    first = store.append(ConversationItem(role=Role.USER, content="a"))
    second = store.append(ConversationItem(role=Role.ASSISTANT, content="b"))

    assert (first.seq, second.seq) == (1, 2)
    assert all(isinstance(e, MessageAppended) for e in events)
    assert [e.seq for e in events] == [1, 2]
    assert events[1].item == second


def test_snapshot_is_an_immutable_copy():
    store, _ = _store()
    store.append(ConversationItem(role=Role.USER, content="a"))

    snapshot = store.snapshot()
    store.append(ConversationItem(role=Role.USER, content="b"))

    assert isinstance(snapshot, tuple)
    assert len(snapshot) == 1


def test_estimated_token_count_uses_ceiling_of_length():
    store, _ = _store(max_items=10)
    store.append(ConversationItem(role=Role.USER, content="abcde"))  # 2
    store.append(ConversationItem(role=Role.USER, content="abc"))  # 2
    store.append(ConversationItem(role=Role.USER, content=""))  # 0

    assert store.estimated_token_count() == 4


def test_max_items_must_be_positive():
    with pytest.raises(ValueError):
        ConversationStore(0, SequenceClock())
