from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from dataclasses import dataclass
from typing import Any

from .broadcaster import Broadcaster
from .constants import DEFAULT_CONNECT_TIMEOUT_S, DEFAULT_RECONNECT_DELAY_S
from .credentials import CredentialStore
from .exceptions import (
    CredentialError,
    SessionNotFoundError,
    SessionNotReadyError,
    TransportError,
)
from .models import Session, SessionStatus
from .qr import render_svg
from .transport import (
    ConnectionUpdate,
    DisconnectReason,
    PresenceUpdate,
    ReceiptUpdate,
    TransportClient,
    TransportFactory,
    TransportMessage,
)
from .util.asyncio import cancel_suppress, ensure_task
from .util.events import AsyncEventEmitter

log = logging.getLogger(__name__)

# Reasons after which the stored credentials cannot be used again.
CREDENTIAL_INVALID = frozenset(
    {
        DisconnectReason.BAD_SESSION,
        DisconnectReason.FORBIDDEN,
        DisconnectReason.MULTIDEVICE_MISMATCH,
    }
)


@dataclass(eq=False, slots=True)
class _Handle:
    generation: int
    transport: TransportClient


class SessionRegistry:
    """
    Owns one state machine and at most one live transport per session id.

    States: initializing -> awaiting_pairing -> connected, and any -> disconnected.
    A disconnect schedules a single reconnect after `reconnect_delay_s` unless
    the transport reported `LOGGED_OUT`. Credential-invalid reasons wipe the
    session's credential folder first so the next attempt asks for pairing.

    Events emitted on `registry.events` (all awaited in transport order):

    - `session.status` -> `Session` (after every status change)
    - `session.qr` -> `Session` (every new pairing challenge)
    - `messages.upsert` -> `(session_id, list[TransportMessage])`
    - `receipt` -> `(session_id, ReceiptUpdate)`
    - `presence` -> `(session_id, PresenceUpdate)`
    """

    def __init__(
        self,
        *,
        factory: TransportFactory,
        credentials: CredentialStore,
        broadcaster: Broadcaster,
        reconnect_delay_s: float = DEFAULT_RECONNECT_DELAY_S,
        connect_timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S,
    ) -> None:
        self.factory = factory
        self.credentials = credentials
        self.broadcaster = broadcaster
        self.reconnect_delay_s = reconnect_delay_s
        self.connect_timeout_s = connect_timeout_s
        self.events = AsyncEventEmitter(name="registry")

        self._sessions: dict[str, Session] = {}
        self._handles: dict[str, _Handle] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._reconnects: dict[str, asyncio.Task[None]] = {}
        self._clear_on_retry: set[str] = set()
        self._generations = itertools.count(1)

    # -- reads -----------------------------------------------------------

    def status(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session.snapshot()

    def list(self) -> list[Session]:
        return [s.snapshot() for s in sorted(self._sessions.values(), key=lambda s: s.id)]

    def transport(self, session_id: str) -> TransportClient | None:
        handle = self._handles.get(session_id)
        return handle.transport if handle else None

    # -- lifecycle -------------------------------------------------------

    def _session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            session = Session(id=session_id)
            self._sessions[session_id] = session
        return session

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    async def ensure(self, session_id: str) -> TransportClient:
        """
        Return the live transport for `session_id`, creating and connecting it if absent.

        Concurrent callers share one creation. If a reconnect is already
        scheduled, this waits for it instead of starting a second transport.
        A logged-out session is not revived here; use `start()`.
        """

        if not session_id:
            raise SessionNotFoundError(session_id)
        session = self._session(session_id)

        handle = self._handles.get(session_id)
        if handle is not None:
            return handle.transport

        if session.logged_out:
            raise SessionNotReadyError(session_id, session.status.value)

        pending = self._reconnects.get(session_id)
        if pending is not None and not pending.done():
            await asyncio.wait({pending}, timeout=self.connect_timeout_s)
            handle = self._handles.get(session_id)
            if handle is None:
                raise SessionNotReadyError(session_id, session.status.value)
            return handle.transport

        return await self._spawn(session)

    async def start(self, session_id: str) -> Session:
        """
        Explicitly (re)start a session.

        This is the only way out of a logged-out `disconnected` state.
        """

        session = self._session(session_id)
        if session.logged_out:
            session.logged_out = False
            await cancel_suppress(self._reconnects.pop(session_id, None))
            session.reconnect_pending = False
        await self.ensure(session_id)
        return session.snapshot()

    async def wait_connected(self, session_id: str, *, timeout_s: float | None = None) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.status is SessionStatus.CONNECTED:
            return session.snapshot()
        if session.logged_out:
            raise SessionNotReadyError(session_id, session.status.value)

        timeout = self.connect_timeout_s if timeout_s is None else timeout_s
        try:
            await self.events.wait_for(
                "session.status",
                predicate=lambda s: s.id == session_id
                and (s.status is SessionStatus.CONNECTED or s.logged_out),
                timeout_s=timeout,
            )
        except asyncio.TimeoutError:
            raise SessionNotReadyError(session_id, session.status.value) from None

        if session.status is not SessionStatus.CONNECTED:
            raise SessionNotReadyError(session_id, session.status.value)
        return session.snapshot()

    async def stop(self, session_id: str) -> None:
        """Disconnect a session's transport and cancel any pending reconnect."""

        session = self._sessions.get(session_id)
        if session is None:
            return
        await cancel_suppress(self._reconnects.pop(session_id, None))
        session.reconnect_pending = False
        handle = self._handles.pop(session_id, None)
        if handle is not None:
            with contextlib.suppress(Exception):
                await handle.transport.disconnect()
        await self._set_status(session, SessionStatus.DISCONNECTED)

    async def close(self) -> None:
        for session_id in list(self._sessions):
            await self.stop(session_id)

    async def _spawn(self, session: Session) -> TransportClient:
        async with self._lock_for(session.id):
            existing = self._handles.get(session.id)
            if existing is not None:
                return existing.transport

            try:
                folder = await self.credentials.prepare(session.id)
            except CredentialError as e:
                raise TransportError(str(e)) from e

            try:
                transport = self.factory(session.id, folder)
            except Exception as e:
                raise TransportError(f"cannot create transport for {session.id!r}: {e}") from e
            handle = _Handle(generation=next(self._generations), transport=transport)
            self._handles[session.id] = handle
            self._bind(session, handle)

            session.pairing_challenge = None
            await self._set_status(session, SessionStatus.INITIALIZING, force=True)
            log.info("session %s: connecting (generation %d)", session.id, handle.generation)

            try:
                await transport.connect()
            except Exception as e:
                log.warning("session %s: connect failed: %s", session.id, e)
                await self._on_closed(session, handle, DisconnectReason.CONNECTION_LOST)
                raise TransportError(f"session {session.id!r} failed to connect: {e}") from e
            return transport

    # -- transport events --------------------------------------------------

    def _bind(self, session: Session, handle: _Handle) -> None:
        def current() -> bool:
            return self._handles.get(session.id) is handle

        async def on_update(update: ConnectionUpdate) -> None:
            if current():
                await self._on_connection_update(session, handle, update)

        async def on_creds(*_args: Any) -> None:
            if current():
                await self._save_credentials(session, handle)

        async def on_messages(messages: list[TransportMessage]) -> None:
            if current():
                session.touch()
                await self.events.emit("messages.upsert", session.id, messages)

        async def on_receipt(update: ReceiptUpdate) -> None:
            if current():
                session.touch()
                await self.events.emit("receipt", session.id, update)

        async def on_presence(update: PresenceUpdate) -> None:
            if current():
                session.touch()
                await self.events.emit("presence", session.id, update)

        t = handle.transport
        t.on("connection.update", on_update)
        t.on("creds.update", on_creds)
        t.on("messages.upsert", on_messages)
        t.on("receipt", on_receipt)
        t.on("presence", on_presence)

    async def _on_connection_update(
        self, session: Session, handle: _Handle, update: ConnectionUpdate
    ) -> None:
        session.touch()

        if update.qr:
            session.pairing_challenge = update.qr
            await self._set_status(session, SessionStatus.AWAITING_PAIRING)
            log.info("session %s: pairing challenge issued", session.id)
            self.broadcaster.publish(
                "qr", {"session_id": session.id, "qr": update.qr, "svg": render_svg(update.qr)}
            )
            await self.events.emit("session.qr", session)

        if update.connection == "open":
            session.pairing_challenge = None
            session.identity = dict(update.identity) if update.identity else session.identity
            session.last_disconnect_reason = None
            log.info("session %s: connected", session.id)
            await self._set_status(session, SessionStatus.CONNECTED)
        elif update.connection == "close":
            reason = update.reason
            if reason is None:
                reason = DisconnectReason.UNKNOWN
            log.info(
                "session %s: closed (%s%s)",
                session.id,
                reason.name,
                f": {update.last_disconnect}" if update.last_disconnect else "",
            )
            await self._on_closed(session, handle, reason)

    async def _on_closed(self, session: Session, handle: _Handle, reason: DisconnectReason) -> None:
        if self._handles.get(session.id) is not handle:
            return
        was_pairing = session.status is SessionStatus.AWAITING_PAIRING
        del self._handles[session.id]
        ensure_task(self._dispose(handle), name=f"wahub.session.{session.id}.dispose")

        session.pairing_challenge = None
        session.last_disconnect_reason = reason.name.lower()

        if reason is DisconnectReason.LOGGED_OUT:
            session.logged_out = True
            await self._set_status(session, SessionStatus.DISCONNECTED)
            log.warning("session %s: logged out; waiting for an explicit restart", session.id)
            await self._clear_credentials(session)
            return

        clear = reason in CREDENTIAL_INVALID or (
            reason is DisconnectReason.TIMED_OUT and was_pairing
        )
        await self._set_status(session, SessionStatus.DISCONNECTED)

        if session.reconnect_pending:
            if clear:
                self._clear_on_retry.add(session.id)
            return

        delay = 0.0 if reason is DisconnectReason.RESTART_REQUIRED else self.reconnect_delay_s
        session.reconnect_pending = True
        self._reconnects[session.id] = ensure_task(
            self._reconnect(session, delay=delay, clear=clear),
            name=f"wahub.session.{session.id}.reconnect",
        )

    async def _dispose(self, handle: _Handle) -> None:
        with contextlib.suppress(Exception):
            await handle.transport.disconnect()

    async def _reconnect(self, session: Session, *, delay: float, clear: bool) -> None:
        try:
            while True:
                log.info("session %s: reconnecting in %.1fs", session.id, delay)
                await asyncio.sleep(delay)
                if clear or session.id in self._clear_on_retry:
                    self._clear_on_retry.discard(session.id)
                    await self._clear_credentials(session)

                with contextlib.suppress(TransportError):
                    await self._spawn(session)
                if session.id in self._handles or session.logged_out:
                    return

                # Closed again while connecting.
                delay = self.reconnect_delay_s
                clear = False
        finally:
            session.reconnect_pending = False
            task = self._reconnects.get(session.id)
            if task is asyncio.current_task():
                del self._reconnects[session.id]

    async def _save_credentials(self, session: Session, handle: _Handle) -> None:
        try:
            await handle.transport.save_credentials()
        except Exception as e:
            # The session keeps working in memory; only a restart would need re-pairing.
            log.warning("session %s: failed to persist credentials: %s", session.id, e)
            await self._set_credentials_error(session, str(e) or type(e).__name__)
            return
        await self._set_credentials_error(session, None)

    async def _clear_credentials(self, session: Session) -> None:
        try:
            await self.credentials.clear(session.id)
        except CredentialError as e:
            log.warning("session %s: %s", session.id, e)
            await self._set_credentials_error(session, str(e))
            return
        log.info("session %s: credentials cleared", session.id)

    async def _set_credentials_error(self, session: Session, error: str | None) -> None:
        if session.credentials_error == error:
            return
        session.credentials_error = error
        await self._set_status(session, session.status, force=True)

    async def _set_status(
        self, session: Session, status: SessionStatus, *, force: bool = False
    ) -> None:
        if session.status is status and not force:
            return
        session.status = status
        session.touch()
        self.broadcaster.publish("status", session.to_dict())
        await self.events.emit("session.status", session)
