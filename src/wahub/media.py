from __future__ import annotations

import asyncio
import contextlib
import mimetypes
import re
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import cast

from .constants import MEDIA_EXTENSIONS
from .exceptions import StorageError, TransportError, ValidationError

_SAFE_NAME = re.compile(r"^[A-Za-z0-9._-]+$")
_USER_AGENT = "wahub/0.1"


@dataclass(frozen=True, slots=True)
class RemoteMedia:
    data: bytes
    mimetype: str | None
    filename: str | None


def extension_for(kind: str, mimetype: str | None) -> str:
    """
    File extension for a downloaded attachment.

    Image/video/audio use fixed extensions; documents (and anything else) are
    guessed from the mime type, falling back to `bin`.
    """

    fixed = MEDIA_EXTENSIONS.get(kind)
    if fixed:
        return fixed
    if mimetype:
        guessed = mimetypes.guess_extension(mimetype.split(";")[0].strip())
        if guessed:
            return guessed.lstrip(".")
    return "bin"


def media_filename(event_id: str, kind: str, mimetype: str | None) -> str:
    base = re.sub(r"[^A-Za-z0-9_-]", "_", event_id) or "media"
    return f"{base}.{extension_for(kind, mimetype)}"


class MediaStore:
    """Downloaded attachments, stored flat under one directory."""

    def __init__(self, folder: str | Path) -> None:
        self.folder = Path(folder).expanduser()

    async def ensure_folder(self) -> None:
        await asyncio.to_thread(self.folder.mkdir, parents=True, exist_ok=True)

    def path_for(self, filename: str) -> Path:
        if not filename or not _SAFE_NAME.match(filename) or filename.startswith("."):
            raise ValidationError(f"invalid media filename: {filename!r}")
        return self.folder / filename

    async def save(self, filename: str, data: bytes) -> str:
        path = self.path_for(filename)
        try:
            await self.ensure_folder()
            await asyncio.to_thread(path.write_bytes, bytes(data))
        except OSError as e:
            raise StorageError(f"failed to write {path}: {e}") from e
        return filename

    async def read(self, filename: str) -> tuple[bytes, str]:
        """
        Return `(data, mimetype)` for a stored file.

        Raises `FileNotFoundError` when the file does not exist.
        """

        path = self.path_for(filename)
        data = await asyncio.to_thread(path.read_bytes)
        mimetype = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return data, mimetype


def _download(url: str, *, timeout_s: float) -> RemoteMedia:
    req = urllib.request.Request(url, headers={"User-Agent": _USER_AGENT}, method="GET")
    try:
        with urllib.request.urlopen(req, timeout=timeout_s) as resp:
            data = cast(bytes, resp.read())
            ctype = resp.headers.get_content_type() if resp.headers else None
    except urllib.error.HTTPError as e:
        body = b""
        with contextlib.suppress(Exception):
            body = e.read()
        raise TransportError(f"media fetch http error {e.code}: {body[:200]!r}") from e
    except Exception as e:
        raise TransportError(f"media fetch failed: {e}") from e

    name = Path(urllib.parse.urlparse(url).path).name or None
    if ctype in (None, "application/octet-stream") and name:
        ctype = mimetypes.guess_type(name)[0] or ctype
    return RemoteMedia(data=data, mimetype=ctype, filename=name)


async def fetch_url(url: str, *, timeout_s: float = 30.0) -> RemoteMedia:
    """Download remote media for an outbound send (http/https only)."""

    scheme = urllib.parse.urlparse(url or "").scheme.lower()
    if scheme not in ("http", "https"):
        raise ValidationError(f"media url must be http(s): {url!r}")
    return await asyncio.to_thread(_download, url, timeout_s=timeout_s)
