"""
Default transport: `pyaileys.WhatsAppClient` behind the `TransportClient` protocol.

`pyaileys` is an optional dependency (`pip install wahub[pyaileys]`) and is only
imported when a session actually connects.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from .exceptions import TransportError
from .jid import is_group, jid_normalized_user
from .transport import (
    ConnectionUpdate,
    DisconnectReason,
    GroupInfo,
    MediaKind,
    MediaPayload,
    PresenceState,
    PresenceUpdate,
    ReceiptUpdate,
    TransportFactory,
    TransportMessage,
)
from .util.events import AsyncEventEmitter, Listener

log = logging.getLogger(__name__)

_CONFLICT_REASONS = {
    "replaced": DisconnectReason.CONNECTION_REPLACED,
    "device_removed": DisconnectReason.LOGGED_OUT,
}

_CHATSTATES = ("composing", "paused", "recording")


def _children(node: Any, tag: str | None = None) -> list[Any]:
    content = getattr(node, "content", None)
    if not isinstance(content, list):
        return []
    return [c for c in content if hasattr(c, "tag") and (tag is None or c.tag == tag)]


def _int_attr(attrs: Mapping[str, str], key: str) -> int | None:
    raw = attrs.get(key)
    if raw and raw.isdigit():
        return int(raw)
    return None


def stream_error_reason(node: Any) -> DisconnectReason:
    """Classify a `<stream:error>` stanza."""

    attrs = getattr(node, "attrs", {}) or {}
    code = attrs.get("code")
    if code:
        return DisconnectReason.parse(code)
    for child in _children(node):
        if child.tag == "conflict":
            return _CONFLICT_REASONS.get(
                (child.attrs or {}).get("type", ""), DisconnectReason.CONNECTION_REPLACED
            )
    return DisconnectReason.BAD_SESSION


def receipt_from_node(node: Any) -> ReceiptUpdate | None:
    attrs = getattr(node, "attrs", {}) or {}
    chat = attrs.get("from")
    first = attrs.get("id")
    if not chat or not first:
        return None
    ids = [first]
    for lst in _children(node, "list"):
        for item in _children(lst, "item"):
            item_id = (item.attrs or {}).get("id")
            if item_id:
                ids.append(item_id)
    return ReceiptUpdate(
        conversation_id=chat,
        message_ids=ids,
        type=attrs.get("type") or "delivery",
        participant=attrs.get("participant"),
        timestamp=_int_attr(attrs, "t"),
    )


def presence_from_node(node: Any) -> PresenceUpdate | None:
    attrs = getattr(node, "attrs", {}) or {}
    chat = attrs.get("from")
    if not chat:
        return None
    if node.tag == "chatstate":
        states = _children(node)
        if not states:
            return None
        state = states[0].tag
        if state == "composing" and (states[0].attrs or {}).get("media") == "audio":
            state = "recording"
        return PresenceUpdate(conversation_id=chat, state=state, participant=attrs.get("participant"))
    return PresenceUpdate(
        conversation_id=chat,
        state=attrs.get("type") or "available",
        participant=attrs.get("participant"),
        last_seen=_int_attr(attrs, "last"),
    )


class PyaileysTransport:
    def __init__(self, session_id: str, folder: Path) -> None:
        self.session_id = session_id
        self.folder = folder
        self.events = AsyncEventEmitter(name=f"pyaileys[{session_id}]")
        self._client: Any | None = None
        self._auth: Any | None = None
        self._stream_reason: DisconnectReason | None = None
        self._restarting = False

    def on(self, event: str, listener: Listener) -> None:
        self.events.on(event, listener)

    @property
    def client(self) -> Any:
        if self._client is None:
            raise TransportError("transport is not connected")
        return self._client

    async def connect(self) -> None:
        from pyaileys import WhatsAppClient

        if self._client is None:
            self._client, self._auth = await WhatsAppClient.from_auth_folder(str(self.folder))
            c = self._client
            c.on("connection.update", self._on_connection_update)
            c.on("creds.update", self._on_creds_update)
            c.on("message.decrypted", self._on_decrypted)
            c.on("cb:stream:error", self._on_stream_error)
            c.on("stanza.receipt", self._on_receipt)
            c.on("presence", self._on_presence)
            c.on("stanza.chatstate", self._on_presence)
        await self._client.connect()

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.disconnect()

    async def save_credentials(self) -> None:
        if self._auth is not None:
            await self._auth.save_creds()

    # -- incoming ------------------------------------------------------------

    def _identity(self) -> dict[str, Any] | None:
        me = self.client.socket.auth.creds.me
        if me is None:
            return None
        return {"id": me.id, "name": me.name, "lid": me.lid}

    async def _on_stream_error(self, node: Any) -> None:
        reason = stream_error_reason(node)
        self._stream_reason = reason
        # pyaileys restarts by itself after pairing; hide the intermediate close.
        self._restarting = reason is DisconnectReason.RESTART_REQUIRED

    async def _on_connection_update(self, update: Any) -> None:
        if update.connection == "close" and self._restarting:
            self._restarting = False
            self._stream_reason = None
            return

        reason = None
        if update.connection == "close":
            reason = self._stream_reason
            if reason is None:
                reason = (
                    DisconnectReason.CONNECTION_LOST
                    if update.last_disconnect is not None
                    else DisconnectReason.CONNECTION_CLOSED
                )
            self._stream_reason = None

        await self.events.emit(
            "connection.update",
            ConnectionUpdate(
                connection=update.connection,
                qr=update.qr,
                identity=self._identity() if update.connection == "open" else None,
                reason=reason,
                last_disconnect=update.last_disconnect,
            ),
        )

    async def _on_creds_update(self, _creds: Any) -> None:
        await self.events.emit("creds.update")

    async def _on_decrypted(self, ev: Mapping[str, Any]) -> None:
        from google.protobuf.json_format import MessageToDict

        chat = ev.get("chat_jid") or ""
        sender = ev.get("sender_jid") or ""
        inner = ev.get("message")
        content = MessageToDict(inner) if inner is not None else {}

        me = self.client.socket.auth.creds.me
        mine = {jid_normalized_user(j) for j in (me.id, me.lid) if j} if me else set()
        from_me = bool(sender) and jid_normalized_user(sender) in mine

        message = TransportMessage(
            id=str(ev.get("id") or ""),
            conversation_id=chat,
            from_me=from_me,
            timestamp=int(ev.get("timestamp_s") or 0) or None,
            push_name=None if from_me else self.client.get_display_name(sender),
            participant=sender if is_group(chat) else None,
            content=content,
            raw=inner,
        )
        await self.events.emit("messages.upsert", [message])

    async def _on_receipt(self, node: Any) -> None:
        update = receipt_from_node(node)
        if update is not None:
            await self.events.emit("receipt", update)

    async def _on_presence(self, node: Any) -> None:
        update = presence_from_node(node)
        if update is not None:
            await self.events.emit("presence", update)

    # -- outgoing ------------------------------------------------------------

    async def send_text(self, conversation_id: str, text: str) -> str | None:
        return await self.client.send_text(conversation_id, text, wait_ack=True)

    async def send_media(
        self, conversation_id: str, kind: MediaKind, media: MediaPayload
    ) -> str | None:
        c = self.client
        if kind == "image":
            return await c.send_image(
                conversation_id, media.data, mimetype=media.mimetype, caption=media.caption,
                wait_ack=True,
            )
        if kind == "video":
            return await c.send_video(
                conversation_id, media.data, mimetype=media.mimetype, caption=media.caption,
                wait_ack=True,
            )
        if kind == "audio":
            return await c.send_voice_note(
                conversation_id, media.data, mimetype=media.mimetype, wait_ack=True
            )
        if kind == "document":
            return await c.send_document(
                conversation_id,
                media.data,
                mimetype=media.mimetype,
                filename=media.filename,
                caption=media.caption,
                wait_ack=True,
            )
        raise TransportError(f"unsupported media kind: {kind!r}")

    async def mark_read(
        self, conversation_id: str, message_ids: Sequence[str], participant: str | None = None
    ) -> None:
        from pyaileys.wabinary.types import BinaryNode

        ids = [m for m in message_ids if m]
        if not ids:
            return
        attrs = {"id": ids[0], "to": conversation_id, "type": "read", "t": str(int(time.time()))}
        if participant:
            attrs["participant"] = participant
        content = None
        if len(ids) > 1:
            content = [
                BinaryNode(
                    tag="list",
                    attrs={},
                    content=[BinaryNode(tag="item", attrs={"id": m}) for m in ids[1:]],
                )
            ]
        await self.client.socket.send_node(BinaryNode(tag="receipt", attrs=attrs, content=content))

    async def send_presence(self, conversation_id: str | None, state: PresenceState) -> None:
        if state in ("available", "unavailable"):
            await self.client.set_presence(state == "available")
            return
        if state not in _CHATSTATES or not conversation_id:
            raise TransportError(f"chat state {state!r} needs a conversation")
        await self.client.send_chatstate(conversation_id, state)

    async def group_metadata(self, conversation_id: str) -> GroupInfo:
        meta = await self.client.socket.group_metadata(conversation_id)
        return GroupInfo(
            id=meta.id,
            participants=[
                {
                    "id": p.id,
                    "admin": p.admin,
                    "phone_number": p.phone_number,
                    "lid": p.lid,
                }
                for p in meta.participants
            ],
        )

    async def profile_picture_url(self, conversation_id: str) -> str | None:
        return await self.client.profile_picture_url(conversation_id, picture_type="image")

    async def download_media(self, message: TransportMessage) -> bytes:
        if message.raw is None:
            raise TransportError(f"message {message.id} has no media payload")
        return await self.client.download_message_media(message.raw)


def pyaileys_factory() -> TransportFactory:
    def _create(session_id: str, folder: Path) -> PyaileysTransport:
        return PyaileysTransport(session_id, folder)

    return _create
