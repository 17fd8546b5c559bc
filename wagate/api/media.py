"""Turn the ``media`` field of a send request into a MediaPayload.

Accepted forms, checked in order: http(s) URL, data URI, ``file://`` or
plain local path (only inside ``media.local_root``), raw base64.
"""

import asyncio
import base64
import binascii
import mimetypes
import re
from pathlib import Path, PurePosixPath
from urllib.parse import unquote, urlsplit

import httpx
from loguru import logger

from wagate.backend.base import MediaPayload
from wagate.config import Config
from wagate.errors import ValidationError
from wagate.guard import guard
from wagate.utils.security import resolve_media_path

DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[^,;]*?)*;base64,(?P<data>.*)$", re.DOTALL)
DEFAULT_MIMETYPE = "application/octet-stream"

# Leading bytes of the formats people actually send.
_MAGIC = [
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF8", "image/gif"),
    (b"%PDF", "application/pdf"),
    (b"OggS", "audio/ogg"),
    (b"ID3", "audio/mpeg"),
]


def sniff_mimetype(data: bytes) -> str | None:
    for magic, mime in _MAGIC:
        if data.startswith(magic):
            return mime
    if data[4:8] == b"ftyp":
        return "video/mp4"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def _guess(filename: str | None) -> str | None:
    return mimetypes.guess_type(filename)[0] if filename else None


def _payload(raw: bytes, mimetype: str | None, filename: str | None, max_bytes: int) -> MediaPayload:
    if not raw:
        raise ValidationError("Validation error", details=["media is empty"])
    if len(raw) > max_bytes:
        raise ValidationError("Validation error", details=[f"media exceeds {max_bytes} bytes"])
    mimetype = mimetype or _guess(filename) or sniff_mimetype(raw) or DEFAULT_MIMETYPE
    if not filename:
        ext = mimetypes.guess_extension(mimetype) or ""
        filename = f"file{ext}"
    return MediaPayload(mimetype=mimetype, data=base64.b64encode(raw).decode("ascii"), filename=filename)


def _decode_base64(data: str) -> bytes:
    try:
        return base64.b64decode(re.sub(r"\s+", "", data), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("Validation error", details=["media is not a URL, data URI, allowed path or base64"]) from e


async def _fetch(url: str, client: httpx.AsyncClient, max_bytes: int) -> tuple[bytes, str | None]:
    response = await client.get(url, follow_redirects=True)
    response.raise_for_status()
    if len(response.content) > max_bytes:
        raise ValidationError("Validation error", details=[f"media exceeds {max_bytes} bytes"])
    content_type = response.headers.get("content-type", "").split(";")[0].strip() or None
    return response.content, content_type


def _local_candidate(value: str, root: Path | None) -> Path | None:
    if value.startswith("file://"):
        return Path(unquote(urlsplit(value).path))
    if root is None or len(value) > 4096 or "\n" in value:
        return None
    candidate = Path(value).expanduser()
    if not candidate.is_absolute():
        candidate = root / candidate
    try:
        return candidate if candidate.is_file() else None
    except OSError:
        return None


def _read_local(candidate: Path, root: Path | None, max_bytes: int) -> tuple[bytes, str]:
    try:
        path = resolve_media_path(str(candidate), root)
    except (PermissionError, FileNotFoundError) as e:
        raise ValidationError("Validation error", details=[str(e)]) from e
    if path.stat().st_size > max_bytes:
        raise ValidationError("Validation error", details=[f"media exceeds {max_bytes} bytes"])
    return path.read_bytes(), path.name


async def resolve_media(
    value: str,
    config: Config,
    client: httpx.AsyncClient,
    filename: str | None = None,
    mimetype: str | None = None,
) -> MediaPayload:
    max_bytes = config.media.max_bytes

    if value.startswith(("http://", "https://")):
        logger.debug(f"Media: fetching {value}")
        raw, content_type = await guard(_fetch(value, client, max_bytes), config.timeouts.media_fetch, "media fetch")
        name = filename or PurePosixPath(urlsplit(value).path).name or None
        return _payload(raw, mimetype or content_type, name, max_bytes)

    match = DATA_URI_RE.match(value)
    if match:
        return _payload(_decode_base64(match.group("data")), mimetype or match.group("mime"), filename, max_bytes)

    root = config.resolve_path(config.media.local_root) if config.media.local_root else None
    # Filesystem checks and reads (up to max_bytes) stay off the event loop.
    candidate = await asyncio.to_thread(_local_candidate, value, root)
    if candidate is not None:
        raw, name = await asyncio.to_thread(_read_local, candidate, root, max_bytes)
        return _payload(raw, mimetype, filename or name, max_bytes)

    return _payload(_decode_base64(value), mimetype, filename, max_bytes)
