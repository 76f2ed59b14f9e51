from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any


class SessionStatus(str, enum.Enum):
    INITIALIZING = "initializing"
    AWAITING_PAIRING = "awaiting_pairing"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class Direction(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class EventKind(str, enum.Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    OTHER = "other"

    @property
    def is_media(self) -> bool:
        return self in (EventKind.IMAGE, EventKind.VIDEO, EventKind.AUDIO, EventKind.DOCUMENT)


@dataclass(slots=True)
class Session:
    """
    Latest known state of one transport session.

    Reconnection mutates this record in place; it is never replaced.
    """

    id: str
    status: SessionStatus = SessionStatus.INITIALIZING
    pairing_challenge: str | None = None
    identity: dict[str, Any] | None = None
    last_event_at: float = field(default_factory=time.monotonic)
    reconnect_pending: bool = False
    logged_out: bool = False
    last_disconnect_reason: str | None = None
    credentials_error: str | None = None

    def touch(self) -> None:
        self.last_event_at = time.monotonic()

    def snapshot(self) -> Session:
        return Session(
            id=self.id,
            status=self.status,
            pairing_challenge=self.pairing_challenge,
            identity=dict(self.identity) if self.identity is not None else None,
            last_event_at=self.last_event_at,
            reconnect_pending=self.reconnect_pending,
            logged_out=self.logged_out,
            last_disconnect_reason=self.last_disconnect_reason,
            credentials_error=self.credentials_error,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "qr": self.pairing_challenge,
            "identity": self.identity,
            "reconnect_pending": self.reconnect_pending,
            "logged_out": self.logged_out,
            "last_disconnect_reason": self.last_disconnect_reason,
            "credentials_error": self.credentials_error,
        }


@dataclass(frozen=True, slots=True)
class Attachment:
    """
    Reference to a locally persisted media file.

    `filename` is None and `error` is set when persisting the media failed.
    """

    mimetype: str | None = None
    filename: str | None = None
    error: str | None = None

    @property
    def url(self) -> str | None:
        return f"/media/{self.filename}" if self.filename else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "mimetype": self.mimetype,
            "filename": self.filename,
            "url": self.url,
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class NormalizedEvent:
    session_id: str
    event_id: str
    conversation_id: str
    direction: Direction
    timestamp: int
    kind: EventKind
    text: str | None = None
    sender_display_name: str | None = None
    attachment: Attachment | None = None
    author_participant: str | None = None

    @property
    def from_me(self) -> bool:
        return self.direction is Direction.OUTBOUND

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "id": self.event_id,
            "conversation_id": self.conversation_id,
            "direction": self.direction.value,
            "from_me": self.from_me,
            "timestamp": self.timestamp,
            "type": self.kind.value,
            "text": self.text,
            "name": self.sender_display_name,
            "attachment": self.attachment.to_dict() if self.attachment else None,
            "participant": self.author_participant,
        }


@dataclass(frozen=True, slots=True)
class ConversationSummary:
    session_id: str
    conversation_id: str
    last_event: NormalizedEvent

    @property
    def timestamp(self) -> int:
        return self.last_event.timestamp

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.conversation_id,
            "name": self.last_event.sender_display_name,
            "last_message": self.last_event.text,
            "last_timestamp": self.last_event.timestamp,
            "last_event": self.last_event.to_dict(),
        }
