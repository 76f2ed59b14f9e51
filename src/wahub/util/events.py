from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

Listener = Callable[..., Awaitable[None]] | Callable[..., None]
Predicate = Callable[..., bool]

log = logging.getLogger(__name__)


@dataclass(eq=False, slots=True)
class _Waiter:
    predicate: Predicate | None
    future: asyncio.Future[Any]

    def matches(self, args: tuple[Any, ...]) -> bool:
        return self.predicate is None or bool(self.predicate(*args))


class AsyncEventEmitter:
    """
    Named, in-process event bus.

    Listeners (sync or async) run in registration order and are awaited one at
    a time, so events from one source are handled in the order they were
    emitted. A listener that raises is logged under the emitter's name and the
    remaining listeners still run: `emit` itself never raises.
    """

    def __init__(self, *, name: str = "events") -> None:
        self.name = name
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._waiters: dict[str, list[_Waiter]] = {}

    def on(self, event: str, listener: Listener) -> None:
        self._listeners[event].append(listener)

    async def emit(self, event: str, *args: Any) -> bool:
        """Deliver `args` to waiters and listeners; True if anything received it."""

        woke = self._wake(event, args)
        listeners = list(self._listeners.get(event, ()))
        for listener in listeners:
            try:
                res = listener(*args)
                if asyncio.iscoroutine(res):
                    await res
            except Exception:
                log.exception("%s: %r listener %r failed", self.name, event, listener)
        return woke or bool(listeners)

    def _wake(self, event: str, args: tuple[Any, ...]) -> bool:
        waiters = self._waiters.pop(event, None)
        if not waiters:
            return False

        woke = False
        pending: list[_Waiter] = []
        for w in waiters:
            if w.future.done():
                continue
            try:
                hit = w.matches(args)
            except Exception:
                log.exception("%s: %r wait predicate failed", self.name, event)
                hit = False
            if hit:
                w.future.set_result(args[0] if len(args) == 1 else args)
                woke = True
            else:
                pending.append(w)
        if pending:
            self._waiters[event] = pending
        return woke

    async def wait_for(
        self,
        event: str,
        *,
        predicate: Predicate | None = None,
        timeout_s: float | None = None,
    ) -> Any:
        """
        Wait for the next emission of `event` that satisfies `predicate`.

        The waiter is registered before this coroutine first suspends, so an
        emission racing with the call is not missed.
        """

        waiter = _Waiter(predicate, asyncio.get_running_loop().create_future())
        self._waiters.setdefault(event, []).append(waiter)
        try:
            return await asyncio.wait_for(waiter.future, timeout=timeout_s)
        finally:
            remaining = [w for w in self._waiters.get(event, ()) if w is not waiter]
            if remaining:
                self._waiters[event] = remaining
            else:
                self._waiters.pop(event, None)
