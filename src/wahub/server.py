"""
Real-time endpoint.

Every websocket client is an observer: it receives `{"event", "payload"}`
envelopes for `qr`, `status`, `message`, `receipt` and `presence`. Clients can
also send JSON requests on the same connection:

    {"id": 1, "op": "send.text", "args": {"number": "11987654321", "text": "hi"}}

and get back

    {"event": "result", "payload": {"id": 1, "ok": true, "data": {...}}}

or `{"ok": false, "error": {"kind": "validation", "message": "..."}}`.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import websockets

from .broadcaster import envelope
from .constants import DEFAULT_SESSION_ID
from .exceptions import (
    SessionNotFoundError,
    TransportError,
    ValidationError,
)
from .hub import Hub
from .jid import Target
from .qr import render_svg
from .util import json as wjson
from .util.asyncio import ensure_task

log = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[Any]]


class BadRequest(Exception):
    pass


def _target(args: dict[str, Any]) -> Target:
    return Target(
        conversation_id=args.get("conversation_id") or args.get("jid"),
        number=None if args.get("number") is None else str(args.get("number")),
    )


def _opt_int(args: dict[str, Any], key: str) -> int | None:
    raw = args.get(key)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise BadRequest(f"{key} must be an integer") from None


class Router:
    """Maps request ops onto the hub's command surface."""

    def __init__(self, hub: Hub) -> None:
        self.hub = hub
        self.commands = hub.commands
        self._ops: dict[str, Handler] = {
            "sessions.list": self._sessions_list,
            "sessions.start": self._sessions_start,
            "sessions.status": self._sessions_status,
            "history": self._history,
            "chats": self._chats,
            "send.text": self._send_text,
            "send.image": self._send_media("image"),
            "send.video": self._send_media("video"),
            "send.audio": self._send_media("audio"),
            "send.document": self._send_media("document"),
            "read": self._read,
            "presence": self._presence,
            "group.metadata": self._group_metadata,
            "profile.picture": self._profile_picture,
            "media.get": self._media_get,
        }

    @property
    def ops(self) -> list[str]:
        return sorted(self._ops)

    def _session_id(self, args: dict[str, Any]) -> str:
        sid = args.get("session_id")
        if sid:
            return str(sid)
        defaults = self.hub.config.default_sessions
        return defaults[0] if defaults else DEFAULT_SESSION_ID

    async def handle(self, raw: str | bytes) -> str:
        request_id: Any = None
        try:
            try:
                req = wjson.loads(raw)
            except ValueError:
                raise BadRequest("request is not valid JSON") from None
            if not isinstance(req, dict):
                raise BadRequest("request must be a JSON object")
            request_id = req.get("id")
            op = req.get("op")
            args = req.get("args") or {}
            if not isinstance(args, dict):
                raise BadRequest("args must be an object")
            handler = self._ops.get(str(op))
            if handler is None:
                raise BadRequest(f"unknown op: {op!r}")
            data = await handler(args)
        except BadRequest as e:
            return self._error(request_id, "bad_request", str(e))
        except ValidationError as e:
            return self._error(request_id, "validation", str(e))
        except (SessionNotFoundError, FileNotFoundError) as e:
            return self._error(request_id, "not_found", str(e))
        except TransportError as e:
            return self._error(request_id, "transport", str(e))
        except Exception as e:
            log.exception("request %r failed", request_id)
            return self._error(request_id, "internal", str(e) or type(e).__name__)
        return envelope("result", {"id": request_id, "ok": True, "data": data})

    @staticmethod
    def _error(request_id: Any, kind: str, message: str) -> str:
        return envelope(
            "result",
            {"id": request_id, "ok": False, "error": {"kind": kind, "message": message}},
        )

    # -- ops -----------------------------------------------------------------

    async def _sessions_list(self, _args: dict[str, Any]) -> Any:
        return {"sessions": self.commands.list_sessions()}

    async def _sessions_start(self, args: dict[str, Any]) -> Any:
        return await self.commands.start_session(self._session_id(args))

    async def _sessions_status(self, args: dict[str, Any]) -> Any:
        session = self.commands.session_status(self._session_id(args))
        out = session.to_dict()
        if args.get("svg") and session.pairing_challenge:
            out["svg"] = render_svg(session.pairing_challenge)
        return out

    async def _history(self, args: dict[str, Any]) -> Any:
        limit = _opt_int(args, "limit")
        messages = self.commands.history(
            self._session_id(args),
            limit=50 if limit is None else limit,
            before=_opt_int(args, "before"),
            conversation_id=args.get("conversation_id"),
        )
        return {"total": len(messages), "messages": messages}

    async def _chats(self, args: dict[str, Any]) -> Any:
        return {"chats": self.commands.conversations(self._session_id(args))}

    async def _send_text(self, args: dict[str, Any]) -> Any:
        return await self.commands.send_text(
            self._session_id(args), _target(args), str(args.get("text") or args.get("message") or "")
        )

    def _send_media(self, kind: str) -> Handler:
        async def _op(args: dict[str, Any]) -> Any:
            return await self.commands.send_media(
                self._session_id(args),
                _target(args),
                kind,  # type: ignore[arg-type]
                str(args.get("url") or ""),
                caption=args.get("caption"),
                filename=args.get("filename"),
                mimetype=args.get("mimetype"),
                ptt=bool(args.get("ptt", False)),
            )

        return _op

    async def _read(self, args: dict[str, Any]) -> Any:
        ids = args.get("ids") or []
        if not isinstance(ids, list):
            raise BadRequest("ids must be a list")
        await self.commands.mark_read(
            self._session_id(args), _target(args), ids, participant=args.get("participant")
        )
        return None

    async def _presence(self, args: dict[str, Any]) -> Any:
        target = _target(args)
        await self.commands.send_presence(
            self._session_id(args),
            str(args.get("state") or ""),
            target if (target.conversation_id or target.number) else None,
        )
        return None

    async def _group_metadata(self, args: dict[str, Any]) -> Any:
        return await self.commands.group_metadata(
            self._session_id(args), str(args.get("conversation_id") or "")
        )

    async def _profile_picture(self, args: dict[str, Any]) -> Any:
        url = await self.commands.profile_picture_url(self._session_id(args), _target(args))
        return {"url": url}

    async def _media_get(self, args: dict[str, Any]) -> Any:
        filename = str(args.get("filename") or "")
        if not filename:
            raise ValidationError("filename is required")
        data, mimetype = await self.commands.media_file(filename)
        return {
            "filename": filename,
            "mimetype": mimetype,
            "data": base64.b64encode(data).decode("ascii"),
        }


class HubServer:
    def __init__(self, hub: Hub) -> None:
        self.hub = hub
        self.router = Router(hub)
        self._tasks: set[asyncio.Task[Any]] = set()

    async def handler(self, ws: Any) -> None:
        observer = self.hub.broadcaster.subscribe(ws)
        log.info("observer %d connected", observer.id)
        try:
            await ws.send(
                envelope("hello", {"sessions": self.hub.registry.list(), "ops": self.router.ops})
            )
            async for raw in ws:
                task = ensure_task(self._reply(ws, raw), name=f"wahub.request.{observer.id}")
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        except websockets.ConnectionClosed:
            pass
        finally:
            self.hub.broadcaster.unsubscribe(observer, "disconnected")
            log.info("observer %d disconnected", observer.id)

    async def _reply(self, ws: Any, raw: str | bytes) -> None:
        reply = await self.router.handle(raw)
        try:
            await ws.send(reply)
        except websockets.ConnectionClosed:
            return

    async def serve_forever(self, host: str, port: int) -> None:
        # Liveness is driven by the broadcaster's probe loop.
        async with websockets.serve(
            self.handler, host, port, ping_interval=None, ping_timeout=None
        ):
            log.info("listening on ws://%s:%d", host, port)
            await asyncio.Future()
