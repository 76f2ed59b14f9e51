from __future__ import annotations

import asyncio

import pytest
from conftest import FakeObserver

from wahub.broadcaster import Broadcaster


@pytest.mark.asyncio
async def test_publish_without_observers_is_a_noop() -> None:
    b = Broadcaster()
    assert b.publish("message", {"id": "1"}) == 0


@pytest.mark.asyncio
async def test_publish_reaches_every_observer(until) -> None:
    b = Broadcaster()
    o1, o2 = FakeObserver(), FakeObserver()
    b.subscribe(o1)
    b.subscribe(o2)

    assert b.publish("status", {"id": "s1", "status": "connected"}) == 2
    await until(lambda: o1.received and o2.received)
    assert o1.received == [{"event": "status", "payload": {"id": "s1", "status": "connected"}}]
    assert o2.received == o1.received


@pytest.mark.asyncio
async def test_failed_send_evicts_only_that_observer(until) -> None:
    b = Broadcaster()
    bad, good = FakeObserver(fail=True), FakeObserver()
    h_bad = b.subscribe(bad)
    h_good = b.subscribe(good)

    b.publish("message", {"id": "m1"})
    await until(lambda: h_bad.is_closed and good.received)

    assert "send failed" in (h_bad.close_reason or "")
    assert not h_good.is_closed
    assert len(b) == 1
    await until(lambda: bad.closed_with is not None)
    assert bad.closed_with[0] == 1001

    b.publish("message", {"id": "m2"})
    await until(lambda: len(good.received) == 2)


@pytest.mark.asyncio
async def test_back_to_back_publishes_arrive_in_order(until) -> None:
    b = Broadcaster()
    o = FakeObserver()
    b.subscribe(o)

    assert b.publish("status", {"status": "awaiting_pairing"}) == 1
    assert b.publish("qr", {"qr": "2@abc"}) == 1
    assert b.publish("message", {"id": "m1"}) == 1

    await until(lambda: len(o.received) == 3)
    assert [m["event"] for m in o.received] == ["status", "qr", "message"]


@pytest.mark.asyncio
async def test_stalled_observer_drops_only_when_its_queue_is_full(until) -> None:
    b = Broadcaster(queue_size=1)
    slow, fast = FakeObserver(), FakeObserver()
    slow.gate = asyncio.Event()
    h = b.subscribe(slow)
    b.subscribe(fast)

    assert b.publish("message", {"id": "m1"}) == 2
    # The writer has taken m1 and is stuck sending it.
    await until(lambda: h.queue.empty() and len(fast.received) == 1)

    assert b.publish("message", {"id": "m2"}) == 2
    await until(lambda: len(fast.received) == 2)
    assert b.publish("message", {"id": "m3"}) == 1
    assert h.dropped == 1

    slow.gate.set()
    await until(lambda: len(slow.received) == 2 and len(fast.received) == 3)
    assert [m["payload"]["id"] for m in slow.received] == ["m1", "m2"]

    assert b.publish("message", {"id": "m4"}) == 2
    await until(lambda: len(slow.received) == 3)


@pytest.mark.asyncio
async def test_unresponsive_observer_is_evicted_within_two_probes(until) -> None:
    b = Broadcaster()
    alive, dead = FakeObserver(), FakeObserver(answer_pings=False)
    h_alive = b.subscribe(alive)
    h_dead = b.subscribe(dead)

    await b.probe()
    await until(lambda: not h_alive.awaiting_pong)
    assert h_dead.awaiting_pong
    assert not h_dead.is_closed

    await b.probe()
    assert h_dead.is_closed
    assert h_dead.close_reason == "liveness probe timed out"
    assert not h_alive.is_closed
    assert b.observers == [h_alive]
    await until(lambda: alive.pings == 2)


@pytest.mark.asyncio
async def test_probe_loop_runs_on_interval(until) -> None:
    b = Broadcaster(probe_interval_s=0.01)
    dead = FakeObserver(answer_pings=False)
    h = b.subscribe(dead)
    b.start()
    try:
        await until(lambda: h.is_closed)
    finally:
        await b.close()


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent() -> None:
    b = Broadcaster()
    h = b.subscribe(FakeObserver())
    b.unsubscribe(h, "bye")
    b.unsubscribe(h, "again")
    assert await h.wait_closed() == "bye"
    assert len(b) == 0


@pytest.mark.asyncio
async def test_close_evicts_everyone(until) -> None:
    b = Broadcaster()
    observers = [FakeObserver(), FakeObserver(answer_pings=False)]
    handles = [b.subscribe(o) for o in observers]
    b.start()
    await b.probe()

    await b.close()
    assert all(h.close_reason == "shutdown" for h in handles)
    assert all(o.closed_with == (1001, "shutdown") for o in observers)
