# Asset resolution shared by every driver that sends images or videos.
#
# For each outgoing asset segment the strategy decides between forwarding
# its URL as-is and uploading the bytes:
#
#   file://    → read from disk, always uploaded
#   base64://  → decoded inline, always uploaded
#   direct     → URL forwarded, never fetched
#   download   → bytes fetched and uploaded
#   auto       → HEAD probe; forward the URL when the server reports the
#                expected media kind, otherwise download.  A failed probe
#                silently selects the download path.
#
# Usage:
#   from services import media
#   asset = await media.resolve(session, seg, "auto")
#   if isinstance(asset, media.DirectUrl): ...

from __future__ import annotations

import asyncio
import base64
import binascii
import json
from dataclasses import dataclass
from pathlib import Path

import aiohttp
import filetype

import services.logger as log
from services.error import InvalidMessageError, TransportError
from services.segment import Segment

l = log.get_logger()

MODES = ("auto", "download", "direct")

_DEFAULT_MAX = 10 * 1024 * 1024  # 10 MB
_PROBE_TIMEOUT = aiohttp.ClientTimeout(total=10)
_FETCH_TIMEOUT = aiohttp.ClientTimeout(total=60)


@dataclass
class AssetUpload:
    data: bytes
    filename: str
    content_type: str


@dataclass
class DirectUrl:
    url: str


def pick_mode(seg: Segment, configured: str | None = None) -> str:
    """Segment override, then adapter config, then ``auto``."""
    mode = seg.get("mode") or configured or "auto"
    if mode not in MODES:
        raise InvalidMessageError(f"unknown asset mode {mode!r}, expected one of {MODES}")
    return mode


async def resolve(
    session: aiohttp.ClientSession,
    seg: Segment,
    configured_mode: str | None = None,
    max_bytes: int = _DEFAULT_MAX,
    self_id: str = "",
) -> AssetUpload | DirectUrl:
    url = seg.get("url")
    if not url:
        raise InvalidMessageError(f"invalid {seg.kind} segment: url expected")

    if url.startswith("file://"):
        path = Path(url[len("file://"):])
        try:
            data = path.read_bytes()
        except OSError as e:
            raise InvalidMessageError(f"cannot read local asset {path}: {e}") from e
        return _upload(data, max_bytes, url)

    if url.startswith("base64://"):
        try:
            # line-wrapped payloads are accepted, any other stray character is not
            data = base64.b64decode("".join(url[len("base64://"):].split()), validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidMessageError(f"invalid base64 asset: {e}") from e
        return _upload(data, max_bytes, "base64://…")

    mode = pick_mode(seg, configured_mode)
    accept = f"{seg.kind}/*"

    if mode == "direct":
        return DirectUrl(url)

    if mode == "auto":
        content_type = await probe(session, url, accept)
        if content_type and content_type.split("/")[0].strip().lower() == seg.kind:
            return DirectUrl(url)
        l.debug(f"media.resolve: {url!r} probed as {content_type!r}, downloading instead")

    data = await fetch(session, url, accept, max_bytes, self_id)
    return _upload(data, max_bytes, url)


async def probe(session: aiohttp.ClientSession, url: str, accept: str) -> str | None:
    """Return the Content-Type a HEAD request reports, or ``None`` on any failure."""
    try:
        async with session.head(
            url,
            headers={"Accept": accept},
            allow_redirects=True,
            timeout=_PROBE_TIMEOUT,
        ) as resp:
            if resp.status >= 400:
                return None
            return resp.headers.get("Content-Type")
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        l.debug(f"media.probe failed for {url!r}: {e}")
        return None


async def fetch(
    session: aiohttp.ClientSession,
    url: str,
    accept: str = "*/*",
    max_bytes: int = _DEFAULT_MAX,
    self_id: str = "",
) -> bytes:
    """Download *url* up to *max_bytes*, raising ``TransportError`` on failure."""
    try:
        async with session.get(url, headers={"Accept": accept}, timeout=_FETCH_TIMEOUT) as resp:
            if resp.status >= 400:
                raise TransportError(url, None, self_id, status=resp.status)
            chunks: list[bytes] = []
            total = 0
            async for chunk in resp.content.iter_chunked(65536):
                total += len(chunk)
                if total > max_bytes:
                    raise InvalidMessageError(f"asset {url!r} exceeds {max_bytes} bytes")
                chunks.append(chunk)
            return b"".join(chunks)
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        l.error(f"media.fetch failed for {url!r}: {e}")
        raise TransportError(url, None, self_id) from e


def _upload(data: bytes, max_bytes: int, origin: str) -> AssetUpload:
    if len(data) > max_bytes:
        raise InvalidMessageError(f"asset {origin!r} is {len(data)} bytes, limit {max_bytes}")
    ext, mime = sniff(data)
    return AssetUpload(data=data, filename=f"file.{ext}", content_type=mime)


def sniff(data: bytes) -> tuple[str, str]:
    """Return ``(extension, mime)`` detected from the bytes themselves."""
    kind = filetype.guess(data)
    if kind is None:
        return "bin", "application/octet-stream"
    return kind.extension, kind.mime


def build_multipart(upload: AssetUpload, payload: dict) -> aiohttp.FormData:
    """Binary part plus a ``payload_json`` sidecar carrying the message fields."""
    form = aiohttp.FormData()
    form.add_field("payload_json", json.dumps(payload), content_type="application/json")
    form.add_field("files[0]", upload.data, filename=upload.filename, content_type=upload.content_type)
    return form
