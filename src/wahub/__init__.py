"""
wahub: multiplex chat-transport sessions behind one asyncio process.

Each session gets a lifecycle state machine with automatic reconnects, a
bounded in-memory message history, and a real-time websocket feed of
pairing/status/message/receipt/presence events.
"""

from __future__ import annotations

from .config import HubConfig, NumberPolicy
from .exceptions import WahubError
from .hub import Hub
from .jid import Target, normalize_number

__all__ = [
    "Hub",
    "HubConfig",
    "NumberPolicy",
    "Target",
    "WahubError",
    "normalize_number",
]

__version__ = "0.1.0"
