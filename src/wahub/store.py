from __future__ import annotations

import threading
from collections import deque

from .constants import DEFAULT_RETENTION
from .jid import digits_only
from .models import ConversationSummary, NormalizedEvent


class _SessionLog:
    __slots__ = ("by_id", "events", "summaries")

    def __init__(self, retention: int) -> None:
        self.events: deque[NormalizedEvent] = deque(maxlen=retention)
        self.by_id: dict[str, NormalizedEvent] = {}
        self.summaries: dict[str, ConversationSummary] = {}


class MessageStore:
    """
    Bounded in-memory history per session.

    Holds an append-only log (FIFO eviction by insertion order once `retention`
    is exceeded) and a "most recent event per conversation" index. Both are
    updated under one lock, so readers never see one without the other.

    This is intentionally lossy and process-local; nothing survives a restart.
    """

    def __init__(self, *, retention: int = DEFAULT_RETENTION) -> None:
        if retention < 1:
            raise ValueError("retention must be >= 1")
        self.retention = retention
        self._logs: dict[str, _SessionLog] = {}
        self._lock = threading.Lock()

    def _log_for(self, session_id: str) -> _SessionLog:
        log = self._logs.get(session_id)
        if log is None:
            log = _SessionLog(self.retention)
            self._logs[session_id] = log
        return log

    def append(self, event: NormalizedEvent) -> None:
        with self._lock:
            log = self._log_for(event.session_id)
            if len(log.events) == log.events.maxlen:
                evicted = log.events[0]
                if log.by_id.get(evicted.event_id) is evicted:
                    del log.by_id[evicted.event_id]
            log.events.append(event)
            log.by_id[event.event_id] = event
            current = log.summaries.get(event.conversation_id)
            if current is None or event.timestamp >= current.timestamp:
                log.summaries[event.conversation_id] = ConversationSummary(
                    session_id=event.session_id,
                    conversation_id=event.conversation_id,
                    last_event=event,
                )

    def query(
        self,
        session_id: str,
        *,
        limit: int = 50,
        before: int | None = None,
        conversation_id: str | None = None,
    ) -> list[NormalizedEvent]:
        """
        Return up to `limit` of the most recently appended events, oldest first.

        `before` keeps only events with `timestamp < before` (backward paging).
        `conversation_id` keeps events whose conversation id equals it or, for a
        bare number, whose digits contain it.
        """

        if limit <= 0:
            return []
        with self._lock:
            log = self._logs.get(session_id)
            if log is None:
                return []
            events = list(log.events)

        needle = digits_only(conversation_id) if conversation_id else ""
        out: list[NormalizedEvent] = []
        for ev in reversed(events):
            if before is not None and ev.timestamp >= before:
                continue
            if conversation_id is not None and ev.conversation_id != conversation_id:
                if "@" in conversation_id or not needle:
                    continue
                if needle not in digits_only(ev.conversation_id):
                    continue
            out.append(ev)
            if len(out) >= limit:
                break
        out.reverse()
        return out

    def conversations(self, session_id: str) -> list[ConversationSummary]:
        with self._lock:
            log = self._logs.get(session_id)
            if log is None:
                return []
            summaries = list(log.summaries.values())
        return sorted(summaries, key=lambda s: s.timestamp, reverse=True)

    def get(self, session_id: str, event_id: str) -> NormalizedEvent | None:
        if not event_id:
            return None
        with self._lock:
            log = self._logs.get(session_id)
            return log.by_id.get(event_id) if log else None

    def count(self, session_id: str) -> int:
        with self._lock:
            log = self._logs.get(session_id)
            return len(log.events) if log else 0
