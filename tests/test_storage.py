import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session

from chatroom.errors import (
    IdentifierRetrievalFailed,
    InsertFailed,
    NotFound,
    QueryFailed,
    StorageUnavailable,
    UpdateFailed,
)
from chatroom.metrics import collection_operation_count
from chatroom.schemas import Message
from chatroom.storage import MessageCollection

from .conftest import T1, T2


def test_scenario_alice_and_bob(collection):
    alice = collection.create(Message(sender="alice", sent_time=T1, text="hi"))
    bob = collection.create(Message(sender="bob", sent_time=T2, text="yo"))
    assert alice.id == 1
    assert bob.id == 2

    everything = collection.read_all()
    assert {m.id for m in everything} == {1, 2}
    assert {m.sender for m in everything} == {"alice", "bob"}

    collection.update(Message(id=1, text="hi!"))
    assert collection.read_one(1).text == "hi!"

    collection.delete(2)
    remaining = collection.read_all()
    assert len(remaining) == 1
    assert remaining[0].id == 1


def test_ids_are_unique(collection, make_message):
    ids = [collection.create(make_message(text=f"m{i}")).id for i in range(25)]
    assert len(set(ids)) == len(ids)
    assert all(isinstance(i, int) and i > 0 for i in ids)


def test_create_then_read_matches_candidate(collection, make_message):
    candidate = make_message(sender="carol", text="hello there", sent_time=T2)
    created = collection.create(candidate)

    assert candidate.id is None
    assert created.id is not None
    stored = collection.read_one(created.id)
    assert stored.model_dump() == {**candidate.model_dump(), "id": created.id}
    assert stored.sent_time == T2
    assert stored.sent_time.tzinfo is not None


def test_create_ignores_candidate_id(collection, make_message):
    first = collection.create(make_message())
    second = collection.create(make_message().model_copy(update={"id": first.id}))
    assert second.id != first.id
    assert len(collection.read_all()) == 2


def test_naive_sent_time_is_treated_as_utc(collection):
    naive = datetime(2025, 3, 1, 8, 30)
    created = collection.create(Message(sender="dave", sent_time=naive, text="x"))
    assert collection.read_one(created.id).sent_time == naive.replace(tzinfo=timezone.utc)


def test_offset_sent_time_round_trips_as_same_instant(collection):
    plus_two = datetime(2025, 3, 1, 10, 30, tzinfo=timezone(timedelta(hours=2)))
    created = collection.create(Message(sender="erin", sent_time=plus_two, text="x"))
    stored = collection.read_one(created.id)
    assert stored.sent_time == plus_two
    assert stored.sent_time.utcoffset() == timedelta(0)


def test_update_twice_is_same_as_once(collection, make_message):
    created = collection.create(make_message())
    collection.update(Message(id=created.id, text="edited"))
    once = collection.read_one(created.id)
    collection.update(Message(id=created.id, text="edited"))
    assert collection.read_one(created.id) == once


def test_update_only_touches_text(collection, make_message):
    created = collection.create(make_message(sender="alice", sent_time=T1))
    collection.update(Message(id=created.id, sender="mallory", sent_time=T2, text="changed"))
    stored = collection.read_one(created.id)
    assert stored.sender == "alice"
    assert stored.sent_time == T1
    assert stored.text == "changed"


def test_update_without_id_fails(collection):
    with pytest.raises(UpdateFailed):
        collection.update(Message(text="orphan"))


def test_delete_then_read(collection, make_message):
    created = collection.create(make_message())
    collection.delete(created.id)

    with pytest.raises(NotFound) as excinfo:
        collection.read_one(created.id)
    assert excinfo.value.message_id == created.id
    assert created.id not in {m.id for m in collection.read_all()}


def test_not_found_is_a_query_failure(collection):
    with pytest.raises(QueryFailed):
        collection.read_one(404)


def test_missing_ids_are_noops(collection, make_message):
    collection.create(make_message(text="a"))
    collection.create(make_message(text="b"))
    before = collection.read_all()

    collection.update(Message(id=999, text="ghost"))
    collection.delete(999)

    assert collection.read_all() == before


def test_ids_are_not_reused_after_delete(collection, make_message):
    first = collection.create(make_message())
    second = collection.create(make_message())
    collection.delete(second.id)
    third = collection.create(make_message())
    assert third.id not in (first.id, second.id)
    assert third.id > second.id


def test_read_all_empty(collection):
    assert collection.read_all() == []


def test_data_survives_reopen(db_url, make_message):
    with MessageCollection(db_url) as store:
        created = store.create(make_message(text="durable"))

    with MessageCollection(db_url) as store:
        assert store.read_one(created.id).text == "durable"


def test_ensure_schema_is_idempotent(collection, make_message):
    created = collection.create(make_message())
    collection.ensure_schema()
    collection.ensure_schema()
    assert collection.read_one(created.id).text == "hi"


def test_open_creates_parent_directory(tmp_path):
    url = f"sqlite:///{tmp_path / 'nested' / 'dir' / 'chat.db'}"
    with MessageCollection(url) as store:
        assert store.read_all() == []
    assert (tmp_path / "nested" / "dir" / "chat.db").exists()


def test_unopenable_store_is_unavailable(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    store = MessageCollection(f"sqlite:///{blocker / 'chat.db'}")
    with pytest.raises(StorageUnavailable) as excinfo:
        store.open()
    assert excinfo.value.operation == "open"


def test_mismatched_schema_is_unavailable(db_url):
    engine = create_engine(db_url)
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE messages (id INTEGER PRIMARY KEY, body TEXT)"))
    engine.dispose()

    store = MessageCollection(db_url)
    with pytest.raises(StorageUnavailable) as excinfo:
        store.open()
    assert excinfo.value.operation == "ensure_schema"
    assert "body" in excinfo.value.detail


def test_operations_on_closed_collection_fail(db_url):
    store = MessageCollection(db_url)
    with pytest.raises(StorageUnavailable):
        store.read_all()


def test_insert_failure_leaves_no_row(collection):
    with pytest.raises(InsertFailed):
        collection.create(Message(sender="nobody", text="no timestamp"))
    assert collection.read_all() == []


def test_identifier_retrieval_failure_rolls_back(collection, make_message, monkeypatch):
    # without a flush the row never receives its id
    with monkeypatch.context() as m:
        m.setattr(Session, "flush", lambda self, objects=None: None)
        with pytest.raises(IdentifierRetrievalFailed):
            collection.create(make_message())

    assert collection.read_all() == []
    assert collection.create(make_message()).id == 1


def test_unmappable_row_is_query_failed(collection, db_url):
    engine = create_engine(db_url)
    with engine.begin() as conn:
        conn.execute(
            text("INSERT INTO messages (sender, sent_time, text) VALUES (:s, :t, :x)"),
            {"s": "ok", "t": "not a timestamp", "x": "broken"},
        )
    engine.dispose()

    with pytest.raises(QueryFailed):
        collection.read_all()
    with pytest.raises(QueryFailed) as excinfo:
        collection.read_one(1)
    assert not isinstance(excinfo.value, NotFound)


def test_concurrent_creates_get_distinct_ids(collection, make_message):
    ids = []
    errors = []
    lock = threading.Lock()

    def worker(n):
        try:
            for i in range(10):
                created = collection.create(make_message(sender=f"w{n}", text=str(i)))
                with lock:
                    ids.append(created.id)
        except Exception as e:  # surfaced below
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(ids) == 60
    assert len(set(ids)) == 60
    assert len(collection.read_all()) == 60


def test_noops_are_counted_separately(collection):
    before_update = collection_operation_count("update", "noop")
    before_delete = collection_operation_count("delete", "noop")
    collection.update(Message(id=12345, text="ghost"))
    collection.delete(12345)
    assert collection_operation_count("update", "noop") == before_update + 1
    assert collection_operation_count("delete", "noop") == before_delete + 1
