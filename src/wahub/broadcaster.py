from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any, Protocol

from .constants import DEFAULT_OBSERVER_QUEUE_SIZE, DEFAULT_PROBE_INTERVAL_S
from .util import json as wjson
from .util.asyncio import cancel_suppress, ensure_task

log = logging.getLogger(__name__)


class ObserverConnection(Protocol):
    """The subset of a `websockets` server connection the broadcaster needs."""

    async def send(self, message: str) -> None: ...

    async def ping(self) -> Awaitable[Any]: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


@dataclass(eq=False, slots=True)
class ObserverHandle:
    id: int
    connection: ObserverConnection
    queue: asyncio.Queue[str]
    awaiting_pong: bool = False
    dropped: int = 0
    closed: asyncio.Event = field(default_factory=asyncio.Event)
    close_reason: str | None = None
    _writer_task: asyncio.Task[None] | None = None
    _ping_task: asyncio.Task[None] | None = None

    @property
    def is_closed(self) -> bool:
        return self.closed.is_set()

    async def wait_closed(self) -> str | None:
        await self.closed.wait()
        return self.close_reason


def envelope(event: str, payload: Any) -> str:
    return wjson.dumps({"event": event, "payload": payload})


class Broadcaster:
    """
    Best-effort fan-out to every connected observer.

    - Each observer has a small bounded queue drained in order by one writer
      task. Events are dropped for an observer only while its queue is full,
      so back-to-back publishes reach every healthy observer.
    - A failed send evicts only that observer.
    - Liveness: every `probe_interval_s` each observer is pinged; one whose
      previous ping is still unanswered is closed and removed.
    """

    def __init__(
        self,
        *,
        probe_interval_s: float = DEFAULT_PROBE_INTERVAL_S,
        queue_size: int = DEFAULT_OBSERVER_QUEUE_SIZE,
    ) -> None:
        self.probe_interval_s = probe_interval_s
        self.queue_size = queue_size
        self._observers: dict[int, ObserverHandle] = {}
        self._ids = itertools.count(1)
        self._probe_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._observers)

    @property
    def observers(self) -> list[ObserverHandle]:
        return list(self._observers.values())

    def start(self) -> None:
        if self._probe_task is None or self._probe_task.done():
            self._probe_task = ensure_task(self._probe_loop(), name="wahub.broadcaster.probe")

    async def close(self) -> None:
        await cancel_suppress(self._probe_task)
        self._probe_task = None
        for handle in list(self._observers.values()):
            self._evict(handle, "shutdown")
        if self._tasks:
            _done, pending = await asyncio.wait(list(self._tasks), timeout=1.0)
            for task in pending:
                await cancel_suppress(task)

    def subscribe(self, connection: ObserverConnection) -> ObserverHandle:
        handle = ObserverHandle(
            id=next(self._ids),
            connection=connection,
            queue=asyncio.Queue(maxsize=self.queue_size),
        )
        self._observers[handle.id] = handle
        handle._writer_task = self._spawn(
            self._writer(handle), name=f"wahub.observer.{handle.id}.writer"
        )
        log.debug("observer %d subscribed (%d total)", handle.id, len(self._observers))
        return handle

    def unsubscribe(self, handle: ObserverHandle, reason: str = "unsubscribed") -> None:
        if self._observers.pop(handle.id, None) is None:
            return
        handle.close_reason = reason
        handle.closed.set()
        current = asyncio.current_task()
        for task in (handle._writer_task, handle._ping_task):
            if task is not None and not task.done() and task is not current:
                task.cancel()
        log.debug("observer %d removed: %s", handle.id, reason)

    def publish(self, event: str, payload: Any) -> int:
        """
        Queue `{"event", "payload"}` for every live observer without waiting.

        Returns how many observers the event was queued for.
        """

        if not self._observers:
            return 0
        message = envelope(event, payload)
        queued = 0
        for handle in list(self._observers.values()):
            try:
                handle.queue.put_nowait(message)
            except asyncio.QueueFull:
                handle.dropped += 1
                log.debug("observer %d queue full; dropped %r", handle.id, event)
                continue
            queued += 1
        return queued

    def _spawn(self, coro: Any, *, name: str) -> asyncio.Task[Any]:
        task = ensure_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _writer(self, handle: ObserverHandle) -> None:
        while True:
            message = await handle.queue.get()
            try:
                await handle.connection.send(message)
            except Exception as e:
                log.debug("observer %d send failed: %s", handle.id, e)
                self._evict(handle, f"send failed: {e}")
                return

    def _evict(self, handle: ObserverHandle, reason: str) -> None:
        if handle.id not in self._observers:
            return
        self.unsubscribe(handle, reason)
        self._spawn(self._close_connection(handle), name=f"wahub.observer.{handle.id}.close")

    async def _close_connection(self, handle: ObserverHandle) -> None:
        with contextlib.suppress(Exception):
            await handle.connection.close(1001, handle.close_reason or "")

    async def probe(self) -> None:
        """Run one liveness cycle."""

        for handle in list(self._observers.values()):
            if handle.awaiting_pong:
                log.info("observer %d missed a liveness probe; removing", handle.id)
                self._evict(handle, "liveness probe timed out")
                continue
            handle.awaiting_pong = True
            handle._ping_task = self._spawn(
                self._ping(handle), name=f"wahub.observer.{handle.id}.ping"
            )

    async def _ping(self, handle: ObserverHandle) -> None:
        try:
            waiter = await handle.connection.ping()
            await waiter
        except Exception as e:
            self._evict(handle, f"ping failed: {e}")
            return
        handle.awaiting_pong = False

    async def _probe_loop(self) -> None:
        while True:
            await asyncio.sleep(self.probe_interval_s)
            await self.probe()
