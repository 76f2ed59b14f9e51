from __future__ import annotations

import asyncio
import contextlib
import logging
import urllib.error
import urllib.request
from typing import Any

from .constants import DEFAULT_WEBHOOK_QUEUE_SIZE, DEFAULT_WEBHOOK_TIMEOUT_S
from .util import json as wjson
from .util.asyncio import cancel_suppress, ensure_task

log = logging.getLogger(__name__)


def _post_json(url: str, body: bytes, *, timeout_s: float) -> int:
    req = urllib.request.Request(
        url,
        data=body,
        headers={"Content-Type": "application/json", "User-Agent": "wahub/0.1"},
        method="POST",
    )
    with urllib.request.urlopen(req, timeout=timeout_s) as resp:
        return int(resp.status)


class WebhookDispatcher:
    """
    Best-effort outbound webhook.

    Events are queued and posted by a single worker so ingestion never waits on
    the remote end. A full queue drops the event; a failed POST is logged and
    forgotten. No retries, no ordering guarantees across restarts.
    """

    def __init__(
        self,
        url: str | None,
        *,
        timeout_s: float = DEFAULT_WEBHOOK_TIMEOUT_S,
        queue_size: int = DEFAULT_WEBHOOK_QUEUE_SIZE,
    ) -> None:
        self.url = url or None
        self.timeout_s = timeout_s
        self._queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=queue_size)
        self._worker: asyncio.Task[None] | None = None
        self.sent = 0
        self.failed = 0
        self.dropped = 0

    @property
    def enabled(self) -> bool:
        return self.url is not None

    def start(self) -> None:
        if not self.enabled:
            return
        if self._worker is None or self._worker.done():
            self._worker = ensure_task(self._run(), name="wahub.webhook")

    async def close(self, *, drain_timeout_s: float = 2.0) -> None:
        if self._worker is None:
            return
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._queue.join(), timeout=drain_timeout_s)
        await cancel_suppress(self._worker)
        self._worker = None

    def enqueue(self, event: str, payload: Any) -> bool:
        if not self.enabled:
            return False
        body = wjson.dumps({"event": event, "payload": payload}).encode("utf-8")
        try:
            self._queue.put_nowait(body)
        except asyncio.QueueFull:
            self.dropped += 1
            log.warning("webhook queue full; dropping %r event", event)
            return False
        return True

    async def _run(self) -> None:
        assert self.url is not None
        while True:
            body = await self._queue.get()
            try:
                status = await asyncio.to_thread(
                    _post_json, self.url, body, timeout_s=self.timeout_s
                )
                self.sent += 1
                log.debug("webhook delivered (%d)", status)
            except urllib.error.HTTPError as e:
                self.failed += 1
                log.warning("webhook rejected with http %d", e.code)
            except Exception as e:
                self.failed += 1
                log.warning("webhook delivery failed: %s", e)
            finally:
                self._queue.task_done()
