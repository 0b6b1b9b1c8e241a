from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

import pytest

from roomchat.database import Base
from roomchat.errors import PersistenceError, ValidationError
from roomchat.schemas import MessageType
from roomchat.store import MessageStore


def test_append_returns_stored_record(store):
    msg = store.append("r1", "u1", "hello")
    assert msg.id is not None
    assert msg.room_id == "r1"
    assert msg.sender_id == "u1"
    assert msg.content == "hello"
    assert msg.type == MessageType.TEXT
    assert isinstance(msg.created_at, datetime)


def test_append_accepts_other_type(store):
    msg = store.append("r1", "u1", "<file>", "other")
    assert msg.type == MessageType.OTHER


@pytest.mark.parametrize(
    "room_id, sender_id, content",
    [("", "u1", "hi"), ("r1", "", "hi"), ("r1", "u1", ""), (None, "u1", "hi"), ("r1", "u1", None)],
)
def test_append_rejects_missing_fields(store, room_id, sender_id, content):
    with pytest.raises(ValidationError):
        store.append(room_id, sender_id, content)
    assert store.history("r1") == []


def test_append_rejects_unknown_type(store):
    with pytest.raises(ValidationError):
        store.append("r1", "u1", "hi", "sticker")


def test_append_rejects_non_string_ids(store):
    with pytest.raises(ValidationError):
        store.append(5, "u1", "hello")
    with pytest.raises(ValidationError):
        store.append("5", 2, "hello")
    assert store.history("5") == []


def test_append_then_history_returns_it_last(store):
    store.append("r1", "u1", "first")
    store.append("r1", "u2", "second")
    latest = store.append("r1", "u1", "third")

    history = store.history("r1")
    assert [m.content for m in history] == ["first", "second", "third"]
    assert history[-1] == latest


def test_history_is_per_room(store):
    store.append("r1", "u1", "in r1")
    store.append("r2", "u1", "in r2")
    assert [m.content for m in store.history("r1")] == ["in r1"]
    assert [m.content for m in store.history("r2")] == ["in r2"]
    assert store.history("nobody-here") == []


def test_timestamps_strictly_increase_when_clock_stalls(store, monkeypatch):
    frozen = datetime(2025, 1, 1, 12, 0, 0)
    monkeypatch.setattr("roomchat.store.utcnow", lambda: frozen)

    msgs = [store.append("r1", "u1", f"m{i}") for i in range(3)]
    stamps = [m.created_at for m in msgs]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == 3
    assert [m.id for m in store.history("r1")] == [m.id for m in msgs]


def test_history_pages_backwards(store):
    ids = [store.append("r1", "u1", f"m{i}").id for i in range(5)]

    newest = store.history("r1", limit=2)
    assert [m.id for m in newest] == ids[3:]

    older = store.history("r1", limit=2, before=newest[0].id)
    assert [m.id for m in older] == ids[1:3]

    oldest = store.history("r1", limit=2, before=older[0].id)
    assert [m.id for m in oldest] == ids[:1]

    assert store.history("r1", limit=2, before=oldest[0].id) == []


def test_history_limit_is_capped(session_factory):
    capped = MessageStore(session_factory, page_size=2, max_page_size=3)
    for i in range(5):
        capped.append("r1", "u1", f"m{i}")
    assert len(capped.history("r1")) == 2
    assert len(capped.history("r1", limit=100)) == 3


def test_history_rejects_bad_paging(store):
    msg = store.append("r1", "u1", "hi")
    store.append("r2", "u1", "elsewhere")
    with pytest.raises(ValidationError):
        store.history("r1", limit=0)
    with pytest.raises(ValidationError):
        store.history("r1", before=9999)
    with pytest.raises(ValidationError):
        # cursor from another room
        store.history("r2", before=msg.id)


def test_concurrent_appends_keep_history_monotonic(store):
    def writer(n):
        return [store.append("r1", f"u{n}", f"{n}-{i}").id for i in range(10)]

    with ThreadPoolExecutor(max_workers=4) as pool:
        written = [i for ids in pool.map(writer, range(4)) for i in ids]

    history = store.history("r1", limit=200)
    assert sorted(m.id for m in history) == sorted(written)
    keys = [(m.created_at, m.id) for m in history]
    assert keys == sorted(keys)
    assert len({m.created_at for m in history}) == len(history)


def test_storage_failure_raises_persistence_error(store, engine):
    store.append("r1", "u1", "before the outage")
    Base.metadata.drop_all(bind=engine)

    with pytest.raises(PersistenceError):
        store.append("r1", "u1", "lost")
    with pytest.raises(PersistenceError):
        store.history("r1")
