from __future__ import annotations

import pytest

from wahub import commands as commands_mod
from wahub.exceptions import SessionNotReadyError, TransportError, ValidationError
from wahub.jid import Target
from wahub.media import RemoteMedia
from wahub.models import Direction, EventKind

PEER = "551187654321@s.whatsapp.net"


@pytest.mark.asyncio
async def test_send_text_normalizes_number_and_records_outbound(make_hub) -> None:
    hub, fac = await make_hub()

    res = await hub.commands.send_text("s1", Target(number="+55 (11) 98765-4321"), "oi")

    assert res.conversation_id == PEER
    assert fac.last.sent("send_text") == [("send_text", PEER, "oi")]
    [ev] = hub.store.query("s1")
    assert ev.event_id == res.message_id
    assert ev.direction is Direction.OUTBOUND
    assert ev.text == "oi"


@pytest.mark.asyncio
async def test_send_text_to_explicit_conversation(make_hub) -> None:
    hub, fac = await make_hub()
    group = "120363000000000000@g.us"

    res = await hub.commands.send_text("s1", Target(conversation_id=group), "all")
    assert res.conversation_id == group


@pytest.mark.asyncio
async def test_validation_happens_before_any_transport_work(make_hub) -> None:
    hub, fac = await make_hub()

    with pytest.raises(ValidationError):
        await hub.commands.send_text("s1", Target(), "hello")
    with pytest.raises(ValidationError):
        await hub.commands.send_text("s1", Target(number="abc"), "hello")
    with pytest.raises(ValidationError):
        await hub.commands.send_text("s1", Target(number="11987654321"), "   ")
    with pytest.raises(ValidationError):
        await hub.commands.send_text("s1", Target(conversation_id="11987654321"), "hi")
    with pytest.raises(ValidationError):
        await hub.commands.send_text("", Target(number="11987654321"), "hi")

    assert fac.transports == []


@pytest.mark.asyncio
async def test_transport_failure_is_wrapped_and_not_recorded(make_hub) -> None:
    hub, fac = await make_hub()
    await hub.registry.ensure("s1")
    fac.last.fail["send_text"] = RuntimeError("ack timeout")

    with pytest.raises(TransportError, match="ack timeout"):
        await hub.commands.send_text("s1", Target(number="11987654321"), "hi")
    assert hub.store.count("s1") == 0


@pytest.mark.asyncio
async def test_send_to_session_that_never_connects(make_hub) -> None:
    hub, fac = await make_hub(auto_open=False, connect_timeout_s=0.05)

    with pytest.raises(SessionNotReadyError):
        await hub.commands.send_text("s1", Target(number="11987654321"), "hi")
    assert len(fac.transports) == 1
    assert fac.last.sent("send_text") == []


@pytest.mark.asyncio
async def test_send_image_fetches_url_and_delegates(make_hub, monkeypatch) -> None:
    hub, fac = await make_hub()
    fetched = []

    async def fake_fetch(url: str, *, timeout_s: float = 30.0) -> RemoteMedia:
        fetched.append(url)
        return RemoteMedia(data=b"png", mimetype="image/png", filename="cat.png")

    monkeypatch.setattr(commands_mod, "fetch_url", fake_fetch)

    res = await hub.commands.send_image(
        "s1", Target(number="11987654321"), " https://cdn.example/cat.png ", caption="meow"
    )

    assert fetched == ["https://cdn.example/cat.png"]
    [(_, conv, kind, payload)] = fac.last.sent("send_media")
    assert (conv, kind) == (PEER, "image")
    assert payload.data == b"png"
    assert payload.mimetype == "image/png"
    assert payload.caption == "meow"

    ev = hub.store.get("s1", res.message_id)
    assert ev.kind is EventKind.IMAGE
    assert ev.text == "meow"


@pytest.mark.asyncio
async def test_send_document_keeps_detected_mimetype(make_hub, monkeypatch) -> None:
    hub, fac = await make_hub()

    async def fake_fetch(url: str, *, timeout_s: float = 30.0) -> RemoteMedia:
        return RemoteMedia(data=b"%PDF", mimetype="application/pdf", filename="report.pdf")

    monkeypatch.setattr(commands_mod, "fetch_url", fake_fetch)

    await hub.commands.send_document("s1", Target(number="11987654321"), "https://x/report.pdf")
    [(_, _, kind, payload)] = fac.last.sent("send_media")
    assert kind == "document"
    assert payload.mimetype == "application/pdf"
    assert payload.filename == "report.pdf"


@pytest.mark.asyncio
async def test_send_audio_falls_back_to_default_mimetype(make_hub, monkeypatch) -> None:
    hub, fac = await make_hub()

    async def fake_fetch(url: str, *, timeout_s: float = 30.0) -> RemoteMedia:
        return RemoteMedia(data=b"OggS", mimetype="application/octet-stream", filename=None)

    monkeypatch.setattr(commands_mod, "fetch_url", fake_fetch)

    await hub.commands.send_audio("s1", Target(number="11987654321"), "https://x/a", ptt=True)
    [(_, _, _, payload)] = fac.last.sent("send_media")
    assert payload.mimetype == "audio/ogg; codecs=opus"
    assert payload.ptt


@pytest.mark.asyncio
async def test_send_media_rejects_non_http_urls(make_hub) -> None:
    hub, fac = await make_hub()
    with pytest.raises(ValidationError):
        await hub.commands.send_video("s1", Target(number="11987654321"), "file:///etc/passwd")
    with pytest.raises(ValidationError):
        await hub.commands.send_media("s1", Target(number="11987654321"), "sticker", "https://x")
    assert fac.transports == []


@pytest.mark.asyncio
async def test_mark_read_and_presence(make_hub) -> None:
    hub, fac = await make_hub()

    await hub.commands.mark_read("s1", Target(number="11987654321"), ["A", "", "B"])
    await hub.commands.send_presence("s1", "composing", Target(number="11987654321"))
    await hub.commands.send_presence("s1", "available")

    t = fac.last
    assert t.sent("mark_read") == [("mark_read", PEER, ["A", "B"], None)]
    assert t.sent("send_presence") == [
        ("send_presence", PEER, "composing"),
        ("send_presence", None, "available"),
    ]


@pytest.mark.asyncio
async def test_mark_read_and_presence_validation(make_hub) -> None:
    hub, fac = await make_hub()
    with pytest.raises(ValidationError):
        await hub.commands.mark_read("s1", Target(number="11987654321"), [])
    with pytest.raises(ValidationError):
        await hub.commands.send_presence("s1", "dancing")
    with pytest.raises(ValidationError):
        await hub.commands.send_presence("s1", "composing")
    assert fac.transports == []


@pytest.mark.asyncio
async def test_group_metadata_and_profile_picture(make_hub) -> None:
    hub, _ = await make_hub()

    info = await hub.commands.group_metadata("s1", "120363000000000000@g.us")
    assert info.subject == "Team"

    url = await hub.commands.profile_picture_url("s1", Target(number="11987654321"))
    assert url == f"https://pps.example/{PEER}.jpg"


@pytest.mark.asyncio
async def test_history_and_conversations(make_hub) -> None:
    hub, _ = await make_hub()
    await hub.commands.send_text("s1", Target(number="11987654321"), "one")
    await hub.commands.send_text("s1", Target(number="11933334444"), "two")

    assert [e.text for e in hub.commands.history("s1", limit=1)] == ["two"]
    assert [e.text for e in hub.commands.history("s1", conversation_id="87654321")] == ["one"]
    assert len(hub.commands.conversations("s1")) == 2
    with pytest.raises(ValidationError):
        hub.commands.history("s1", limit=-1)


@pytest.mark.asyncio
async def test_start_session_and_status(make_hub) -> None:
    hub, _ = await make_hub()

    s = await hub.commands.start_session("s1")
    assert s.id == "s1"
    assert hub.commands.session_status("s1").status.value == "connected"
    assert [x.id for x in hub.commands.list_sessions()] == ["s1"]
