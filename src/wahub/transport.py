"""
The seam between wahub and the chat-transport client.

wahub never speaks the chat protocol itself. It drives one `TransportClient`
per session, listens to its events and delegates sends/queries to it. Any
object implementing the `TransportClient` protocol works; the default one is
`wahub.pyaileys_transport.PyaileysTransport`.

Events a transport emits (through the listener registered with `on`):

- `connection.update` -> `ConnectionUpdate`
- `creds.update` -> no payload requirement (credentials changed, persist them)
- `messages.upsert` -> `list[TransportMessage]`
- `receipt` -> `ReceiptUpdate`
- `presence` -> `PresenceUpdate`
"""

from __future__ import annotations

import enum
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Protocol

from .util.events import Listener

Connection = Literal["connecting", "open", "close"]
PresenceState = Literal["available", "unavailable", "composing", "recording", "paused"]
MediaKind = Literal["image", "video", "audio", "document"]


class DisconnectReason(enum.IntEnum):
    """Stream/close status codes reported by the transport."""

    UNKNOWN = 0
    LOGGED_OUT = 401
    FORBIDDEN = 403
    CONNECTION_LOST = 408
    TIMED_OUT = 408
    MULTIDEVICE_MISMATCH = 411
    CONNECTION_CLOSED = 428
    CONNECTION_REPLACED = 440
    BAD_SESSION = 500
    UNAVAILABLE_SERVICE = 503
    RESTART_REQUIRED = 515

    @classmethod
    def parse(cls, code: int | str | None) -> DisconnectReason:
        try:
            return cls(int(code))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return cls.UNKNOWN


@dataclass(slots=True)
class ConnectionUpdate:
    connection: Connection | None = None
    qr: str | None = None
    identity: dict[str, Any] | None = None
    reason: DisconnectReason | None = None
    last_disconnect: Exception | None = None


@dataclass(slots=True)
class TransportMessage:
    """
    A message as delivered by the transport.

    `content` uses the transport's message-content shape (`conversation`,
    `extendedTextMessage`, `imageMessage`, ...). `raw` is kept opaque and handed
    back to the transport for media download.
    """

    id: str
    conversation_id: str
    from_me: bool = False
    timestamp: int | None = None
    push_name: str | None = None
    participant: str | None = None
    content: Mapping[str, Any] | None = None
    raw: Any | None = None


@dataclass(slots=True)
class ReceiptUpdate:
    conversation_id: str
    message_ids: list[str]
    type: str = "delivery"
    participant: str | None = None
    timestamp: int | None = None


@dataclass(slots=True)
class PresenceUpdate:
    conversation_id: str
    state: str
    participant: str | None = None
    last_seen: int | None = None


@dataclass(frozen=True, slots=True)
class MediaPayload:
    data: bytes
    mimetype: str
    caption: str | None = None
    filename: str | None = None
    ptt: bool = False


@dataclass(slots=True)
class GroupInfo:
    id: str
    subject: str | None = None
    owner: str | None = None
    participants: list[dict[str, Any]] = field(default_factory=list)


class TransportClient(Protocol):
    def on(self, event: str, listener: Listener) -> None: ...

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def save_credentials(self) -> None: ...

    async def send_text(self, conversation_id: str, text: str) -> str | None: ...

    async def send_media(
        self, conversation_id: str, kind: MediaKind, media: MediaPayload
    ) -> str | None: ...

    async def mark_read(
        self, conversation_id: str, message_ids: Sequence[str], participant: str | None = None
    ) -> None: ...

    async def send_presence(self, conversation_id: str | None, state: PresenceState) -> None: ...

    async def group_metadata(self, conversation_id: str) -> GroupInfo: ...

    async def profile_picture_url(self, conversation_id: str) -> str | None: ...

    async def download_media(self, message: TransportMessage) -> bytes: ...


# (session_id, credential folder) -> new, not yet connected transport.
TransportFactory = Callable[[str, Path], TransportClient]
