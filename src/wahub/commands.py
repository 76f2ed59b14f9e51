from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, cast

from .config import HubConfig
from .exceptions import TransportError, ValidationError, WahubError
from .ingest import Ingestor
from .jid import Target, resolve_target
from .media import MediaStore, fetch_url
from .models import ConversationSummary, Direction, EventKind, NormalizedEvent, Session
from .registry import SessionRegistry
from .store import MessageStore
from .transport import GroupInfo, MediaKind, MediaPayload, PresenceState, TransportClient

log = logging.getLogger(__name__)

_PRESENCE_STATES = ("available", "unavailable", "composing", "recording", "paused")

_DEFAULT_MIMETYPES: dict[str, str] = {
    "image": "image/jpeg",
    "video": "video/mp4",
    "audio": "audio/ogg; codecs=opus",
    "document": "application/octet-stream",
}


@dataclass(frozen=True, slots=True)
class SendResult:
    session_id: str
    conversation_id: str
    message_id: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "conversation_id": self.conversation_id,
            "message_id": self.message_id,
        }


class CommandSurface:
    """
    Request/response operations over sessions.

    Sends validate their input first, then resolve (or lazily start) the
    session, wait for it to be connected and delegate to its transport. Any
    transport failure surfaces as `TransportError`; nothing is retried here.
    """

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        store: MessageStore,
        media: MediaStore,
        ingestor: Ingestor,
        config: HubConfig,
    ) -> None:
        self.registry = registry
        self.store = store
        self.media = media
        self.ingestor = ingestor
        self.config = config

    # -- session control ---------------------------------------------------

    async def start_session(self, session_id: str) -> Session:
        _require(session_id, "session_id")
        return await self.registry.start(session_id)

    def session_status(self, session_id: str) -> Session:
        return self.registry.status(session_id)

    def list_sessions(self) -> list[Session]:
        return self.registry.list()

    # -- history -------------------------------------------------------------

    def history(
        self,
        session_id: str,
        *,
        limit: int = 50,
        before: int | None = None,
        conversation_id: str | None = None,
    ) -> list[NormalizedEvent]:
        if limit < 0:
            raise ValidationError("limit must be >= 0")
        return self.store.query(
            session_id, limit=limit, before=before, conversation_id=conversation_id
        )

    def conversations(self, session_id: str) -> list[ConversationSummary]:
        return self.store.conversations(session_id)

    async def media_file(self, filename: str) -> tuple[bytes, str]:
        return await self.media.read(filename)

    # -- sends ---------------------------------------------------------------

    async def send_text(self, session_id: str, target: Target, text: str) -> SendResult:
        _require(session_id, "session_id")
        conversation_id = resolve_target(target, self.config.numbers)
        if not text or not text.strip():
            raise ValidationError("text is required")

        transport = await self._connected(session_id)
        message_id = await _call(transport.send_text(conversation_id, text), "send text")
        self._record_outbound(session_id, conversation_id, message_id, EventKind.TEXT, text)
        return SendResult(session_id, conversation_id, message_id)

    async def send_media(
        self,
        session_id: str,
        target: Target,
        kind: MediaKind,
        url: str,
        *,
        caption: str | None = None,
        filename: str | None = None,
        mimetype: str | None = None,
        ptt: bool = False,
    ) -> SendResult:
        _require(session_id, "session_id")
        if kind not in _DEFAULT_MIMETYPES:
            raise ValidationError(f"unsupported media kind: {kind!r}")
        conversation_id = resolve_target(target, self.config.numbers)
        if not url or not url.strip():
            raise ValidationError("url is required")

        remote = await fetch_url(url.strip(), timeout_s=self.config.connect_timeout_s)
        payload = MediaPayload(
            data=remote.data,
            mimetype=mimetype or _pick_mimetype(kind, remote.mimetype),
            caption=caption or None,
            filename=filename or remote.filename,
            ptt=ptt,
        )

        transport = await self._connected(session_id)
        message_id = await _call(
            transport.send_media(conversation_id, kind, payload), f"send {kind}"
        )
        self._record_outbound(
            session_id, conversation_id, message_id, EventKind(kind), caption or None
        )
        return SendResult(session_id, conversation_id, message_id)

    async def send_image(
        self, session_id: str, target: Target, url: str, *, caption: str | None = None
    ) -> SendResult:
        return await self.send_media(session_id, target, "image", url, caption=caption)

    async def send_video(
        self, session_id: str, target: Target, url: str, *, caption: str | None = None
    ) -> SendResult:
        return await self.send_media(session_id, target, "video", url, caption=caption)

    async def send_audio(
        self, session_id: str, target: Target, url: str, *, ptt: bool = False
    ) -> SendResult:
        return await self.send_media(session_id, target, "audio", url, ptt=ptt)

    async def send_document(
        self,
        session_id: str,
        target: Target,
        url: str,
        *,
        caption: str | None = None,
        filename: str | None = None,
        mimetype: str | None = None,
    ) -> SendResult:
        return await self.send_media(
            session_id,
            target,
            "document",
            url,
            caption=caption,
            filename=filename,
            mimetype=mimetype,
        )

    # -- receipts / presence / metadata ----------------------------------------

    async def mark_read(
        self,
        session_id: str,
        target: Target,
        message_ids: Sequence[str],
        *,
        participant: str | None = None,
    ) -> None:
        _require(session_id, "session_id")
        conversation_id = resolve_target(target, self.config.numbers)
        ids = [str(m) for m in message_ids or [] if m]
        if not ids:
            raise ValidationError("at least one message id is required")

        transport = await self._connected(session_id)
        await _call(transport.mark_read(conversation_id, ids, participant), "mark read")

    async def send_presence(
        self, session_id: str, state: str, target: Target | None = None
    ) -> None:
        _require(session_id, "session_id")
        if state not in _PRESENCE_STATES:
            raise ValidationError(f"presence must be one of {', '.join(_PRESENCE_STATES)}")
        conversation_id = None
        if state not in ("available", "unavailable"):
            conversation_id = resolve_target(target or Target(), self.config.numbers)

        transport = await self._connected(session_id)
        await _call(
            transport.send_presence(conversation_id, cast(PresenceState, state)), "presence"
        )

    async def group_metadata(self, session_id: str, conversation_id: str) -> GroupInfo:
        _require(session_id, "session_id")
        _require(conversation_id, "conversation_id")
        transport = await self._connected(session_id)
        return await _call(transport.group_metadata(conversation_id), "group metadata")

    async def profile_picture_url(self, session_id: str, target: Target) -> str | None:
        _require(session_id, "session_id")
        conversation_id = resolve_target(target, self.config.numbers)
        transport = await self._connected(session_id)
        return await _call(transport.profile_picture_url(conversation_id), "profile picture")

    # -- helpers -------------------------------------------------------------

    async def _connected(self, session_id: str) -> TransportClient:
        transport = await self.registry.ensure(session_id)
        await self.registry.wait_connected(session_id, timeout_s=self.config.connect_timeout_s)
        # A reconnect may have replaced the transport while we waited.
        return self.registry.transport(session_id) or transport

    def _record_outbound(
        self,
        session_id: str,
        conversation_id: str,
        message_id: str | None,
        kind: EventKind,
        text: str | None,
    ) -> None:
        if not message_id or self.store.get(session_id, message_id) is not None:
            return
        self.ingestor.record(
            NormalizedEvent(
                session_id=session_id,
                event_id=message_id,
                conversation_id=conversation_id,
                direction=Direction.OUTBOUND,
                timestamp=int(time.time()),
                kind=kind,
                text=text,
            )
        )


def _require(value: str | None, name: str) -> None:
    if not value or not str(value).strip():
        raise ValidationError(f"{name} is required")


def _pick_mimetype(kind: str, detected: str | None) -> str:
    if detected and detected.split("/")[0] == kind:
        return detected
    if kind == "document" and detected and detected != "text/plain":
        return detected
    return _DEFAULT_MIMETYPES[kind]


async def _call(coro: Any, what: str) -> Any:
    try:
        return await coro
    except WahubError:
        raise
    except Exception as e:
        log.warning("%s failed: %s", what, e)
        raise TransportError(f"{what} failed: {e}") from e
