from __future__ import annotations

import threading

import pytest

from wahub.models import Direction, EventKind, NormalizedEvent
from wahub.store import MessageStore


def _ev(
    i: int,
    *,
    conversation_id: str = "551187654321@s.whatsapp.net",
    session_id: str = "s1",
    ts: int | None = None,
    text: str | None = None,
) -> NormalizedEvent:
    return NormalizedEvent(
        session_id=session_id,
        event_id=f"M{i}",
        conversation_id=conversation_id,
        direction=Direction.INBOUND,
        timestamp=1_700_000_000 + i if ts is None else ts,
        kind=EventKind.TEXT,
        text=text if text is not None else f"msg {i}",
    )


def test_query_returns_most_recent_in_insertion_order() -> None:
    store = MessageStore(retention=5000)
    for i in range(200):
        store.append(_ev(i))

    got = store.query("s1", limit=50)
    assert [e.event_id for e in got] == [f"M{i}" for i in range(150, 200)]


def test_retention_evicts_oldest_first() -> None:
    store = MessageStore(retention=10)
    for i in range(25):
        store.append(_ev(i))

    assert store.count("s1") == 10
    assert [e.event_id for e in store.query("s1", limit=100)] == [f"M{i}" for i in range(15, 25)]
    assert store.get("s1", "M14") is None
    assert store.get("s1", "M15") is not None


def test_limit_zero_and_unknown_session() -> None:
    store = MessageStore()
    store.append(_ev(1))
    assert store.query("s1", limit=0) == []
    assert store.query("other") == []
    assert store.conversations("other") == []


def test_before_cursor_pages_backwards() -> None:
    store = MessageStore()
    for i in range(10):
        store.append(_ev(i, ts=100 + i))

    page = store.query("s1", limit=3, before=105)
    assert [e.timestamp for e in page] == [102, 103, 104]


def test_conversation_filter_accepts_id_or_number() -> None:
    store = MessageStore()
    store.append(_ev(1, conversation_id="551187654321@s.whatsapp.net"))
    store.append(_ev(2, conversation_id="551133334444@s.whatsapp.net"))
    store.append(_ev(3, conversation_id="120363000000000000@g.us"))

    by_id = store.query("s1", conversation_id="551133334444@s.whatsapp.net")
    assert [e.event_id for e in by_id] == ["M2"]

    by_number = store.query("s1", conversation_id="87654321")
    assert [e.event_id for e in by_number] == ["M1"]


def test_sessions_are_isolated() -> None:
    store = MessageStore()
    store.append(_ev(1, session_id="a"))
    store.append(_ev(2, session_id="b"))

    assert [e.event_id for e in store.query("a")] == ["M1"]
    assert [e.event_id for e in store.query("b")] == ["M2"]
    assert store.get("a", "M2") is None


def test_summaries_track_latest_event_per_conversation() -> None:
    store = MessageStore()
    store.append(_ev(1, conversation_id="a@s.whatsapp.net", ts=10, text="first"))
    store.append(_ev(2, conversation_id="b@s.whatsapp.net", ts=30))
    store.append(_ev(3, conversation_id="a@s.whatsapp.net", ts=20, text="second"))
    # Older than the current summary: logged but does not replace it.
    store.append(_ev(4, conversation_id="a@s.whatsapp.net", ts=5, text="late"))

    summaries = store.conversations("s1")
    assert [s.conversation_id for s in summaries] == ["b@s.whatsapp.net", "a@s.whatsapp.net"]
    assert summaries[1].last_event.text == "second"
    assert summaries[1].to_dict()["last_message"] == "second"
    assert store.count("s1") == 4


def test_summary_ties_prefer_latest_insert() -> None:
    store = MessageStore()
    store.append(_ev(1, ts=50, text="one"))
    store.append(_ev(2, ts=50, text="two"))
    assert store.conversations("s1")[0].last_event.text == "two"


def test_summaries_survive_log_eviction() -> None:
    store = MessageStore(retention=2)
    store.append(_ev(1, conversation_id="old@s.whatsapp.net"))
    store.append(_ev(2))
    store.append(_ev(3))

    ids = {s.conversation_id for s in store.conversations("s1")}
    assert "old@s.whatsapp.net" in ids


def test_concurrent_appends_keep_counts_consistent() -> None:
    store = MessageStore(retention=1000)

    def _writer(base: int) -> None:
        for i in range(200):
            store.append(_ev(base + i))

    threads = [threading.Thread(target=_writer, args=(n * 1000,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    events = store.query("s1", limit=1000)
    assert len(events) == 800
    assert all(store.get("s1", e.event_id) is e for e in events)


def test_retention_must_be_positive() -> None:
    with pytest.raises(ValueError):
        MessageStore(retention=0)
