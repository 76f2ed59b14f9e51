from __future__ import annotations

import asyncio
import re
import shutil
from pathlib import Path

from .exceptions import CredentialError

_LOCKS: dict[Path, asyncio.Lock] = {}

# Anything outside this set, `_` included, is written as `_<hex>_`, so
# distinct session ids never share a folder.
_UNSAFE = re.compile(r"[^A-Za-z0-9.-]")
_ESCAPED = re.compile(r"_([0-9a-f]+)_")


def _fix_dirname(session_id: str) -> str:
    return _UNSAFE.sub(lambda m: f"_{ord(m.group()):x}_", session_id)


def _session_from_dirname(name: str) -> str | None:
    try:
        session_id = _ESCAPED.sub(lambda m: chr(int(m.group(1), 16)), name)
    except (ValueError, OverflowError):
        return None
    return session_id if _fix_dirname(session_id) == name else None


def _lock_for(path: Path) -> asyncio.Lock:
    lock = _LOCKS.get(path)
    if lock is None:
        lock = asyncio.Lock()
        _LOCKS[path] = lock
    return lock


class CredentialStore:
    """
    One credential folder per session under a common root.

    The folder contents belong to the transport (for pyaileys: `creds.json` plus
    `{type}-{id}.json` key files). This class only hands out folders and wipes
    them when a session's credentials become invalid.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser()

    def folder_for(self, session_id: str) -> Path:
        name = _fix_dirname(session_id)
        if not name or name in (".", ".."):
            raise CredentialError(f"invalid session id for credential folder: {session_id!r}")
        return self.root / name

    async def prepare(self, session_id: str) -> Path:
        folder = self.folder_for(session_id)
        try:
            await asyncio.to_thread(folder.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            raise CredentialError(f"failed to create {folder}: {e}") from e
        return folder

    def has_credentials(self, session_id: str) -> bool:
        folder = self.folder_for(session_id)
        return folder.is_dir() and any(p.suffix == ".json" for p in folder.iterdir())

    async def clear(self, session_id: str) -> None:
        """Delete all persisted credential material for a session."""

        folder = self.folder_for(session_id)
        async with _lock_for(folder):
            if not folder.exists():
                return
            try:
                await asyncio.to_thread(shutil.rmtree, folder)
            except OSError as e:
                raise CredentialError(f"failed to remove {folder}: {e}") from e

    def known_sessions(self) -> list[str]:
        """Sessions whose credential folders from earlier runs still hold files."""

        if not self.root.is_dir():
            return []
        found = []
        for path in self.root.iterdir():
            session_id = _session_from_dirname(path.name)
            if session_id is not None and self.has_credentials(session_id):
                found.append(session_id)
        return sorted(found)
