from __future__ import annotations

import asyncio
import itertools
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from wahub.broadcaster import Broadcaster
from wahub.config import HubConfig
from wahub.credentials import CredentialStore
from wahub.hub import Hub
from wahub.registry import SessionRegistry
from wahub.transport import ConnectionUpdate, GroupInfo, MediaPayload, TransportMessage
from wahub.util import json as wjson
from wahub.util.events import AsyncEventEmitter, Listener


class FakeTransport:
    """In-memory `TransportClient` that records every call."""

    _ids = itertools.count(1)

    def __init__(self, session_id: str, folder: Path, *, auto_open: bool = False) -> None:
        self.session_id = session_id
        self.folder = folder
        self.auto_open = auto_open
        self.events = AsyncEventEmitter(name=f"fake[{session_id}]")
        self.calls: list[tuple[Any, ...]] = []
        self.fail: dict[str, Exception] = {}
        self.connect_error: Exception | None = None
        self.media = b"media-bytes"
        self.connected = False
        self.disconnected = False

    def on(self, event: str, listener: Listener) -> None:
        self.events.on(event, listener)

    async def emit(self, event: str, *args: Any) -> None:
        await self.events.emit(event, *args)

    def _check(self, op: str) -> None:
        err = self.fail.get(op)
        if err is not None:
            raise err

    async def connect(self) -> None:
        self.calls.append(("connect",))
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True
        if self.auto_open:
            await self.emit(
                "connection.update",
                ConnectionUpdate(connection="open", identity={"id": "5511999999999@s.whatsapp.net"}),
            )

    async def disconnect(self) -> None:
        self.disconnected = True

    async def save_credentials(self) -> None:
        self.calls.append(("save_credentials",))
        self._check("save_credentials")

    async def send_text(self, conversation_id: str, text: str) -> str | None:
        self._check("send_text")
        self.calls.append(("send_text", conversation_id, text))
        return f"OUT{next(self._ids)}"

    async def send_media(self, conversation_id: str, kind: str, media: MediaPayload) -> str | None:
        self._check("send_media")
        self.calls.append(("send_media", conversation_id, kind, media))
        return f"OUT{next(self._ids)}"

    async def mark_read(
        self, conversation_id: str, message_ids: Sequence[str], participant: str | None = None
    ) -> None:
        self._check("mark_read")
        self.calls.append(("mark_read", conversation_id, list(message_ids), participant))

    async def send_presence(self, conversation_id: str | None, state: str) -> None:
        self._check("send_presence")
        self.calls.append(("send_presence", conversation_id, state))

    async def group_metadata(self, conversation_id: str) -> GroupInfo:
        self._check("group_metadata")
        return GroupInfo(id=conversation_id, subject="Team", participants=[{"id": "1@s.whatsapp.net"}])

    async def profile_picture_url(self, conversation_id: str) -> str | None:
        self._check("profile_picture_url")
        return f"https://pps.example/{conversation_id}.jpg"

    async def download_media(self, message: TransportMessage) -> bytes:
        self._check("download_media")
        return self.media

    def sent(self, op: str) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == op]


class FakeFactory:
    def __init__(self, *, auto_open: bool = False) -> None:
        self.auto_open = auto_open
        self.transports: list[FakeTransport] = []
        self.connect_error: Exception | None = None

    def __call__(self, session_id: str, folder: Path) -> FakeTransport:
        t = FakeTransport(session_id, folder, auto_open=self.auto_open)
        t.connect_error = self.connect_error
        self.transports.append(t)
        return t

    @property
    def last(self) -> FakeTransport:
        return self.transports[-1]


class FakeObserver:
    """Stand-in for a websocket server connection."""

    def __init__(self, *, fail: bool = False, answer_pings: bool = True) -> None:
        self.fail = fail
        self.answer_pings = answer_pings
        self.gate: asyncio.Event | None = None
        self.received: list[dict[str, Any]] = []
        self.pings = 0
        self.closed_with: tuple[int, str] | None = None

    async def send(self, message: str) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise ConnectionError("peer went away")
        self.received.append(wjson.loads(message))

    async def ping(self) -> asyncio.Future[float]:
        self.pings += 1
        fut: asyncio.Future[float] = asyncio.get_running_loop().create_future()
        if self.answer_pings:
            fut.set_result(0.001)
        return fut

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = (code, reason)


async def wait_until(predicate: Callable[[], bool], *, timeout_s: float = 1.0) -> None:
    deadline = time.monotonic() + timeout_s
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def until() -> Callable[..., Any]:
    return wait_until


@pytest.fixture
def factory() -> FakeFactory:
    return FakeFactory()


@pytest_asyncio.fixture
async def registry(tmp_path: Path, factory: FakeFactory):
    reg = SessionRegistry(
        factory=factory,
        credentials=CredentialStore(tmp_path / "sessions"),
        broadcaster=Broadcaster(probe_interval_s=60),
        reconnect_delay_s=0.02,
        connect_timeout_s=1.0,
    )
    yield reg
    await reg.close()


def hub_config(tmp_path: Path, **overrides: Any) -> HubConfig:
    values: dict[str, Any] = {
        "sessions_dir": tmp_path / "sessions",
        "media_dir": tmp_path / "media",
        "default_sessions": (),
        "reconnect_delay_s": 0.02,
        "connect_timeout_s": 0.5,
        "probe_interval_s": 60.0,
    }
    values.update(overrides)
    return HubConfig(**values)


@pytest_asyncio.fixture
async def make_hub(tmp_path: Path):
    hubs: list[Hub] = []

    async def _make(*, auto_open: bool = True, **overrides: Any) -> tuple[Hub, FakeFactory]:
        fac = FakeFactory(auto_open=auto_open)
        hub = Hub(config=hub_config(tmp_path, **overrides), factory=fac)
        await hub.start()
        hubs.append(hub)
        return hub, fac

    yield _make
    for hub in hubs:
        await hub.close()
