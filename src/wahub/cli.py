from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path

from .config import HubConfig
from .exceptions import ConfigError
from .hub import Hub
from .models import Session
from .qr import render_ascii, render_svg
from .server import HubServer
from .transport import TransportFactory

log = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )
    # The websockets library is chatty at DEBUG.
    logging.getLogger("websockets").setLevel(max(logging.INFO, logging.getLogger().level))


def _parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="wahub", description="Multi-session chat hub with a real-time websocket feed."
    )
    ap.add_argument("--host", help="listen host (env WAHUB_HOST)")
    ap.add_argument("--port", type=int, help="listen port (env PORT / WAHUB_PORT)")
    ap.add_argument("--sessions-dir", help="credential folders root (env WAHUB_SESSIONS_DIR)")
    ap.add_argument("--media-dir", help="downloaded media folder (env WAHUB_MEDIA_DIR)")
    ap.add_argument(
        "--session",
        action="append",
        dest="sessions",
        help="session id to start at boot (repeatable; env WAHUB_SESSIONS)",
    )
    ap.add_argument("--webhook", help="best-effort webhook URL (env WAHUB_WEBHOOK_URL)")
    ap.add_argument("--log-level", help="DEBUG, INFO, WARNING, ... (env WAHUB_LOG_LEVEL)")
    ap.add_argument(
        "--qr-file",
        action="store_true",
        help="write each pairing challenge to <sessions-dir>/<id>/qr.svg",
    )
    ap.add_argument(
        "--no-qr-terminal", action="store_true", help="don't print pairing QR codes"
    )
    return ap


def build_config(args: argparse.Namespace, environ: dict[str, str] | None = None) -> HubConfig:
    cfg = HubConfig.from_env(os.environ if environ is None else environ)
    overrides: dict[str, object] = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    if args.sessions_dir:
        overrides["sessions_dir"] = Path(args.sessions_dir).expanduser()
    if args.media_dir:
        overrides["media_dir"] = Path(args.media_dir).expanduser()
    if args.sessions:
        overrides["default_sessions"] = tuple(args.sessions)
    if args.webhook:
        overrides["webhook_url"] = args.webhook
    if args.log_level:
        overrides["log_level"] = args.log_level.upper()
    return replace(cfg, **overrides) if overrides else cfg


def _install_qr_output(hub: Hub, *, terminal: bool, to_file: bool) -> None:
    async def on_qr(session: Session) -> None:
        challenge = session.pairing_challenge
        if not challenge:
            return
        if to_file:
            svg = render_svg(challenge)
            if svg:
                path = hub.credentials.folder_for(session.id) / "qr.svg"
                with contextlib.suppress(OSError):
                    await asyncio.to_thread(path.write_text, svg, "utf-8")
                    log.info("session %s: wrote %s", session.id, path)
        if terminal:
            art = render_ascii(challenge)
            print(f"\n[{session.id}] scan in WhatsApp -> Linked devices -> Link a device\n")
            print(art if art else f"QR string: {challenge}")

    hub.registry.events.on("session.qr", on_qr)


async def run(config: HubConfig, factory: TransportFactory, *, qr_terminal: bool, qr_file: bool) -> None:
    hub = Hub(config=config, factory=factory)
    _install_qr_output(hub, terminal=qr_terminal, to_file=qr_file)
    server = HubServer(hub)
    try:
        await hub.start()
        await server.serve_forever(config.host, config.port)
    finally:
        await hub.close()


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    try:
        config = build_config(args)
    except ConfigError as e:
        print(f"wahub: {e}", file=sys.stderr)
        return 2

    configure_logging(config.log_level)

    from .pyaileys_transport import pyaileys_factory

    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(
            run(
                config,
                pyaileys_factory(),
                qr_terminal=not args.no_qr_terminal,
                qr_file=args.qr_file,
            )
        )
    return 0
