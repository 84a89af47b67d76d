# Media server upload used by the gateway before relaying file attachments.
#
# Files are stored content-addressed: the first 8 hex chars of the SHA-1 of
# the bytes form a directory, so the same avatar uploaded twice maps to the
# same URL.
#
# Usage:
#   from services import media
#   ok = await media.upload(att, general)
#   if ok:
#       att.url, att.content_hash  # now populated

import hashlib
import re

import aiohttp

import services.logger as log
from services.config_schema import GeneralConfig
from services.message import FileAttachment

l = log.get_logger()

_session: aiohttp.ClientSession | None = None


def _get_session() -> aiohttp.ClientSession:
    global _session
    if _session is None or _session.closed:
        _session = aiohttp.ClientSession()
    return _session


async def close() -> None:
    global _session
    if _session is not None and not _session.closed:
        await _session.close()
    _session = None


def content_hash(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()[:8]


def safe_name(name: str) -> str:
    """Strip path separators and other characters a media server may reject."""
    cleaned = re.sub(r"[^\w.\-]", "_", name.rsplit("/", 1)[-1])
    return cleaned or "attachment.bin"


async def upload(att: FileAttachment, general: GeneralConfig) -> bool:
    """
    PUT the bytes of *att* to the configured media server.

    On success ``att.url`` points at the download location and
    ``att.content_hash`` holds the content hash.  Returns ``False`` when no
    upload server is configured, the attachment has no bytes, or the request
    fails.
    """
    if not general.media_server_upload or att.data is None:
        return False

    sha = content_hash(att.data)
    name = safe_name(att.name)
    target = f"{general.media_server_upload.rstrip('/')}/{sha}/{name}"

    try:
        async with _get_session().put(
            target,
            data=att.data,
            timeout=aiohttp.ClientTimeout(total=60),
        ) as resp:
            if resp.status not in (200, 201, 204):
                body = await resp.text()
                l.error(f"media.upload: {name!r} HTTP {resp.status}: {body[:200]}")
                return False
    except aiohttp.ClientError as e:
        l.error(f"media.upload failed for {name!r}: {e}")
        return False

    download = general.media_server_download or general.media_server_upload
    att.url = f"{download.rstrip('/')}/{sha}/{name}"
    att.content_hash = sha
    l.debug(f"media.upload: {name!r} stored as {att.url}")
    return True
