import json
import sys
import time

import pytest

from app.batch import BatchDriver, Source, directory_sources
from app.engine import UpsertEngine
from app.models import Message
from app.notifier import MESSAGE_CREATED, MESSAGE_STATUS, ChangeNotifier
from app.storage import Database, MessageStore

from .conftest import FailingSink, RecordingSink


def _ids(db):
    return sorted(m.message_id for m in db.query(Message).all())


def test_ingest_applies_messages_before_statuses(driver, store, sink, flat_payload, wa_message):
    # the status arrives in the same payload ahead of its message
    payload = flat_payload(
        messages=[wa_message("wamid.1")],
        statuses=[{"id": "wamid.1", "status": "read"}],
    )

    summary = driver.ingest_payload(json.dumps(payload))

    assert summary.messages_created == 1
    assert summary.statuses_applied == 1
    assert store.find_by_message_id("wamid.1").status == "read"
    assert [name for name, _ in sink.events] == [MESSAGE_CREATED, MESSAGE_STATUS]


def test_reingest_counts_duplicates_and_unmatched(driver, flat_payload, wa_message):
    payload = flat_payload(messages=[wa_message()], statuses=[{"id": "ghost", "status": "read"}])

    driver.ingest_payload(payload)
    summary = driver.ingest_payload(payload)

    assert summary.messages_created == 0
    assert summary.messages_duplicate == 1
    assert summary.statuses_unmatched == 1


def test_message_without_conversation_is_rejected(driver, db, wa_message):
    summary = driver.ingest_payload({"messages": [wa_message(**{"from": None})]})
    assert summary.messages_rejected == 1
    assert _ids(db) == []


def test_notification_failure_does_not_undo_upsert(engine, db, flat_payload, wa_message):
    driver = BatchDriver(engine, ChangeNotifier(FailingSink()))

    summary = driver.ingest_payload(flat_payload(messages=[wa_message()]))

    assert summary.messages_created == 1
    assert summary.notifications_failed == 1
    assert _ids(db) == ["wamid.1"]


def test_batch_isolates_failing_source(driver, db, flat_payload, wa_message):
    sources = [
        Source.from_text("a.json", json.dumps(flat_payload(messages=[wa_message("wamid.a")]))),
        Source.from_text("b.json", '{"messages": ['),
        Source.from_text("c.json", json.dumps(flat_payload(messages=[wa_message("wamid.c")]))),
    ]

    report = driver.run_batch(sources)

    assert report.sources_total == 3
    assert report.sources_succeeded == 2
    assert report.sources_failed == 1
    assert report.errors[0].source == "b.json"
    assert report.messages_created == 2
    assert _ids(db) == ["wamid.a", "wamid.c"]


def test_unreadable_source_is_recorded(driver):
    def broken():
        raise OSError("disk gone")

    report = driver.run_batch([Source("missing.json", broken)])

    assert report.sources_failed == 1
    assert "disk gone" in report.errors[0].error


def test_slow_source_times_out(engine, notifier, flat_payload, wa_message):
    payload = json.dumps(flat_payload(messages=[wa_message()]))

    def slow():
        time.sleep(0.05)
        return payload

    driver = BatchDriver(engine, notifier, source_timeout=0.01)
    report = driver.run_batch([Source("slow.json", slow), Source.from_text("fast.json", "{}")])

    assert report.sources_failed == 1
    assert report.errors[0].source == "slow.json"
    assert "timed out" in report.errors[0].error
    assert report.sources_succeeded == 1


def test_directory_sources_reads_json_files_by_name(tmp_path):
    (tmp_path / "b.json").write_text("{}")
    (tmp_path / "a.JSON").write_text("{}")
    (tmp_path / "notes.txt").write_text("skip")
    (tmp_path / "nested.json").mkdir()

    assert [s.identifier for s in directory_sources(tmp_path)] == ["a.JSON", "b.json"]


def test_nested_and_flat_shapes_produce_same_store(tmp_path, nested_payload, flat_payload, wa_message):
    messages = [wa_message("wamid.1"), wa_message("wamid.2", body="again")]
    statuses = [{"id": "wamid.1", "status": "delivered"}]

    def load(name, payload):
        database = Database(f"sqlite:///{tmp_path / name}")
        database.open()
        try:
            with database.session() as db:
                driver = BatchDriver(UpsertEngine(MessageStore(db)), ChangeNotifier(RecordingSink()))
                driver.ingest_payload(payload)
                return [
                    (m.message_id, m.conversation_id, m.body, m.status, m.sender_display_name)
                    for m in MessageStore(db).list_by_conversation("15550001111")
                ]
        finally:
            database.close()

    nested = load("nested.db", nested_payload(messages=messages, statuses=statuses))
    flat = load("flat.db", flat_payload(messages=messages, statuses=statuses))

    assert nested == flat
    assert [row[3] for row in nested] == ["delivered", "sent"]


def _boom():
    raise RuntimeError("parser exploded")


@pytest.mark.parametrize(
    "bad",
    [
        Source.from_text("deep.json", "[" * 200000 + "]" * 200000),
        Source("boom.json", _boom),
    ],
    ids=["deep-nesting", "unexpected-error"],
)
def test_failing_source_in_the_middle_does_not_stop_later_ones(
    driver, db, bad, flat_payload, wa_message
):
    sources = [
        Source.from_text("a.json", json.dumps(flat_payload(messages=[wa_message("wamid.a")]))),
        bad,
        Source.from_text("c.json", json.dumps(flat_payload(messages=[wa_message("wamid.c")]))),
    ]

    report = driver.run_batch(sources)

    assert report.sources_total == 3
    assert report.sources_succeeded == 2
    assert [e.source for e in report.errors] == [bad.identifier]
    assert _ids(db) == ["wamid.a", "wamid.c"]


def test_oversized_integer_source_is_recorded(driver, db, flat_payload, wa_message):
    if not hasattr(sys, "get_int_max_str_digits"):
        pytest.skip("no integer string length limit")
    good = Source.from_text("good.json", json.dumps(flat_payload(messages=[wa_message()])))

    report = driver.run_batch([Source.from_text("digits.json", '{"n": ' + "1" * 5000 + "}"), good])

    assert report.errors[0].source == "digits.json"
    assert report.sources_succeeded == 1
    assert _ids(db) == ["wamid.1"]


def test_huge_timestamp_source_succeeds(driver, db):
    raw = '{"messages": [{"id": "m1", "from": "c1", "timestamp": ' + "9" * 400 + "}]}"

    report = driver.run_batch([Source.from_text("huge-ts.json", raw)])

    assert report.sources_failed == 0
    assert report.messages_created == 1


def test_slow_read_without_items_times_out(engine, notifier):
    def slow():
        time.sleep(0.05)
        return "{}"

    driver = BatchDriver(engine, notifier, source_timeout=0.01)
    report = driver.run_batch([Source("slow-empty.json", slow)])

    assert report.sources_succeeded == 0
    assert "timed out" in report.errors[0].error
