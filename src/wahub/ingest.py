from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .broadcaster import Broadcaster
from .config import HubConfig
from .jid import is_group, is_status_broadcast
from .media import MediaStore, media_filename
from .models import Attachment, Direction, EventKind, NormalizedEvent
from .registry import SessionRegistry
from .store import MessageStore
from .transport import PresenceUpdate, ReceiptUpdate, TransportMessage
from .util.asyncio import ensure_task
from .webhook import WebhookDispatcher

log = logging.getLogger(__name__)

# Content keys that wrap another message under `message`.
_WRAPPERS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
    "editedMessage",
)

# Bookkeeping keys that carry no user-visible content.
_IGNORED = frozenset(
    {
        "messageContextInfo",
        "protocolMessage",
        "senderKeyDistributionMessage",
        "fastRatchetKeySenderKeyDistributionMessage",
    }
)

_MEDIA_KEYS: dict[str, EventKind] = {
    "imageMessage": EventKind.IMAGE,
    "videoMessage": EventKind.VIDEO,
    "audioMessage": EventKind.AUDIO,
    "documentMessage": EventKind.DOCUMENT,
}


@dataclass(frozen=True, slots=True)
class Classified:
    kind: EventKind
    text: str | None = None
    mimetype: str | None = None


def unwrap(content: Mapping[str, Any] | None) -> Mapping[str, Any]:
    """Strip ephemeral/view-once/caption wrappers down to the real message content."""

    current: Mapping[str, Any] = content or {}
    for _ in range(4):
        for key in _WRAPPERS:
            inner = current.get(key)
            if isinstance(inner, Mapping) and isinstance(inner.get("message"), Mapping):
                current = inner["message"]
                break
        else:
            return current
    return current


def classify(content: Mapping[str, Any] | None) -> Classified | None:
    """
    Decide the event kind once, from the transport's content shape.

    Returns None for messages with nothing to show (empty or bookkeeping only).
    """

    msg = unwrap(content)
    keys = [k for k, v in msg.items() if k not in _IGNORED and v not in (None, "", {})]
    if not keys:
        return None

    conversation = msg.get("conversation")
    if isinstance(conversation, str) and conversation:
        return Classified(kind=EventKind.TEXT, text=conversation)

    ext = msg.get("extendedTextMessage")
    if isinstance(ext, Mapping):
        return Classified(kind=EventKind.TEXT, text=str(ext.get("text") or ""))

    for key, kind in _MEDIA_KEYS.items():
        media = msg.get(key)
        if isinstance(media, Mapping):
            return Classified(
                kind=kind,
                text=media.get("caption") or None,
                mimetype=media.get("mimetype") or None,
            )

    return Classified(kind=EventKind.OTHER)


class Ingestor:
    """
    Turns transport events into stored, broadcast events.

    Runs in transport delivery order for each session. A failure while handling
    one message is logged and the next message is still processed.
    """

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        store: MessageStore,
        media: MediaStore,
        broadcaster: Broadcaster,
        webhook: WebhookDispatcher,
        config: HubConfig,
    ) -> None:
        self.registry = registry
        self.store = store
        self.media = media
        self.broadcaster = broadcaster
        self.webhook = webhook
        self.config = config

    def attach(self) -> None:
        ev = self.registry.events
        ev.on("messages.upsert", self.on_messages)
        ev.on("receipt", self.on_receipt)
        ev.on("presence", self.on_presence)

    async def on_messages(self, session_id: str, messages: list[TransportMessage]) -> None:
        for message in messages:
            try:
                await self.ingest(session_id, message)
            except Exception:
                log.exception("session %s: failed to ingest message %s", session_id, message.id)

    async def ingest(self, session_id: str, message: TransportMessage) -> NormalizedEvent | None:
        if not message.id or not message.conversation_id:
            return None
        if is_status_broadcast(message.conversation_id):
            return None
        if self.store.get(session_id, message.id) is not None:
            return None

        classified = classify(message.content)
        if classified is None:
            return None

        attachment = None
        if classified.kind.is_media:
            attachment = await self._persist_media(session_id, message, classified)

        event = NormalizedEvent(
            session_id=session_id,
            event_id=message.id,
            conversation_id=message.conversation_id,
            direction=Direction.OUTBOUND if message.from_me else Direction.INBOUND,
            timestamp=int(message.timestamp or time.time()),
            kind=classified.kind,
            text=classified.text,
            sender_display_name=message.push_name or None,
            attachment=attachment,
            author_participant=message.participant if is_group(message.conversation_id) else None,
        )
        self.record(event)

        if event.direction is Direction.INBOUND:
            self._auto_actions(event)
        return event

    def record(self, event: NormalizedEvent) -> None:
        """Store an event, then publish it to observers and the webhook."""

        self.store.append(event)
        payload = event.to_dict()
        self.broadcaster.publish("message", payload)
        self.webhook.enqueue("message", payload)

    async def _persist_media(
        self, session_id: str, message: TransportMessage, classified: Classified
    ) -> Attachment:
        transport = self.registry.transport(session_id)
        if transport is None:
            return Attachment(mimetype=classified.mimetype, error="session has no live transport")
        try:
            data = await transport.download_media(message)
            filename = media_filename(message.id, classified.kind.value, classified.mimetype)
            await self.media.save(filename, data)
        except Exception as e:
            log.warning("session %s: media for %s not stored: %s", session_id, message.id, e)
            return Attachment(mimetype=classified.mimetype, error=str(e) or type(e).__name__)
        return Attachment(mimetype=classified.mimetype, filename=filename)

    def _auto_actions(self, event: NormalizedEvent) -> None:
        if self.config.auto_read:
            ensure_task(self._mark_read(event), name=f"wahub.auto_read.{event.event_id}")
        if (
            self.config.bot_enabled
            and event.kind is EventKind.TEXT
            and not is_group(event.conversation_id)
        ):
            ensure_task(self._auto_reply(event), name=f"wahub.bot.{event.event_id}")

    async def _mark_read(self, event: NormalizedEvent) -> None:
        transport = self.registry.transport(event.session_id)
        if transport is None:
            return
        try:
            await transport.mark_read(
                event.conversation_id, [event.event_id], event.author_participant
            )
        except Exception as e:
            log.warning("session %s: auto mark-read failed: %s", event.session_id, e)

    async def _auto_reply(self, event: NormalizedEvent) -> None:
        transport = self.registry.transport(event.session_id)
        if transport is None or not self.config.bot_reply:
            return
        try:
            message_id = await transport.send_text(event.conversation_id, self.config.bot_reply)
        except Exception as e:
            log.warning("session %s: bot reply failed: %s", event.session_id, e)
            return
        if message_id and self.store.get(event.session_id, message_id) is None:
            self.record(
                NormalizedEvent(
                    session_id=event.session_id,
                    event_id=message_id,
                    conversation_id=event.conversation_id,
                    direction=Direction.OUTBOUND,
                    timestamp=int(time.time()),
                    kind=EventKind.TEXT,
                    text=self.config.bot_reply,
                )
            )

    async def on_receipt(self, session_id: str, update: ReceiptUpdate) -> None:
        payload = {
            "session_id": session_id,
            "conversation_id": update.conversation_id,
            "ids": list(update.message_ids),
            "type": update.type,
            "participant": update.participant,
            "timestamp": update.timestamp,
        }
        self.broadcaster.publish("receipt", payload)
        self.webhook.enqueue("receipt", payload)

    async def on_presence(self, session_id: str, update: PresenceUpdate) -> None:
        payload = {
            "session_id": session_id,
            "conversation_id": update.conversation_id,
            "participant": update.participant,
            "state": update.state,
            "last_seen": update.last_seen,
        }
        self.broadcaster.publish("presence", payload)
        self.webhook.enqueue("presence", payload)
