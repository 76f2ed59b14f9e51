from __future__ import annotations

import asyncio
import logging

from .broadcaster import Broadcaster
from .commands import CommandSurface
from .config import HubConfig
from .credentials import CredentialStore
from .exceptions import TransportError
from .ingest import Ingestor
from .media import MediaStore
from .models import Session
from .registry import SessionRegistry
from .store import MessageStore
from .transport import TransportFactory
from .webhook import WebhookDispatcher

log = logging.getLogger(__name__)


class Hub:
    """
    Wires the registry, store, broadcaster, webhook and command surface together.

    Everything is owned by this object; nothing lives at module level.
    """

    def __init__(self, *, config: HubConfig, factory: TransportFactory) -> None:
        self.config = config
        self.broadcaster = Broadcaster(probe_interval_s=config.probe_interval_s)
        self.store = MessageStore(retention=config.retention)
        self.media = MediaStore(config.media_dir)
        self.credentials = CredentialStore(config.sessions_dir)
        self.webhook = WebhookDispatcher(
            config.webhook_url,
            timeout_s=config.webhook_timeout_s,
            queue_size=config.webhook_queue_size,
        )
        self.registry = SessionRegistry(
            factory=factory,
            credentials=self.credentials,
            broadcaster=self.broadcaster,
            reconnect_delay_s=config.reconnect_delay_s,
            connect_timeout_s=config.connect_timeout_s,
        )
        self.ingestor = Ingestor(
            registry=self.registry,
            store=self.store,
            media=self.media,
            broadcaster=self.broadcaster,
            webhook=self.webhook,
            config=config,
        )
        self.ingestor.attach()
        self.registry.events.on("session.status", self._forward_status)
        self.commands = CommandSurface(
            registry=self.registry,
            store=self.store,
            media=self.media,
            ingestor=self.ingestor,
            config=config,
        )

    async def _forward_status(self, session: Session) -> None:
        self.webhook.enqueue("status", session.to_dict())

    async def start(self, session_ids: list[str] | tuple[str, ...] | None = None) -> None:
        """
        Start background work and bring sessions up.

        Without explicit `session_ids` this starts the configured defaults plus,
        when `resume_sessions` is on, every session paired in an earlier run.
        """

        await self.media.ensure_folder()
        self.broadcaster.start()
        self.webhook.start()

        ids = list(self.config.default_sessions if session_ids is None else session_ids)
        if session_ids is None and self.config.resume_sessions:
            for session_id in await asyncio.to_thread(self.credentials.known_sessions):
                if session_id not in ids:
                    ids.append(session_id)
        for session_id in ids:
            try:
                await self.registry.ensure(session_id)
            except TransportError as e:
                # The registry keeps retrying in the background.
                log.warning("session %s did not start: %s", session_id, e)

    async def close(self) -> None:
        await self.registry.close()
        await self.webhook.close()
        await self.broadcaster.close()
