"""
relaycord/media/attachments.py

Attachment handling for inbound messages.

- Non-image files become Markdown bullets for the prompt; text-like files
  under the size cap get an inline excerpt.
- The first image is downloaded (bounded) and handed to the backend as
  base64 media, optionally recompressed by an ImageCompressor.

Downloads only go to Discord's CDN over HTTPS.
"""

from __future__ import annotations

import asyncio
import io
import logging
from base64 import b64encode
from typing import Optional, Protocol, Sequence
from urllib.parse import urlparse

import httpx
from PIL import Image

from relaycord.relay.models import Attachment

ALLOWED_ATTACHMENT_DOMAINS = (
    "cdn.discordapp.com",
    "media.discordapp.net",
    "images.discordapp.net",
)
DOWNLOAD_TIMEOUT_SECONDS = 30.0
MAX_FILE_BYTES = 10 * 1024 * 1024
MAX_IMAGE_BYTES = 25 * 1024 * 1024
EXCERPT_CHARS = 4000

TEXT_CONTENT_TYPES = ("text/", "application/json", "application/xml", "application/x-yaml", "application/yaml")

# Pillow compression targets
SAFE_TARGET_BYTES = 4 * 1024 * 1024
MAX_DIMENSION = 2000


class AttachmentError(Exception):
    pass


class AttachmentTooLarge(AttachmentError):
    pass


def format_size(size: int) -> str:
    if size > 1024 * 1024:
        return f"{size / 1024 / 1024:.1f}MB"
    return f"{size / 1024:.0f}KB"


def is_trusted_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme != "https" or not parsed.hostname:
        return False
    host = parsed.hostname
    return any(host == d or host.endswith("." + d) for d in ALLOWED_ATTACHMENT_DOMAINS)


async def download_bounded(
    http: httpx.AsyncClient,
    url: str,
    max_bytes: int,
    timeout: float = DOWNLOAD_TIMEOUT_SECONDS,
) -> tuple[bytes, str]:
    """
    Stream a download and stop as soon as it exceeds `max_bytes`.
    Returns (body, content_type).
    """
    if not is_trusted_url(url):
        raise AttachmentError(f"Refusing to download from untrusted URL: {url}")

    buf = bytearray()
    try:
        async with http.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()
            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > max_bytes:
                raise AttachmentTooLarge(f"{format_size(int(declared))} exceeds {format_size(max_bytes)}")
            async for part in response.aiter_bytes():
                buf.extend(part)
                if len(buf) > max_bytes:
                    raise AttachmentTooLarge(f"download exceeds {format_size(max_bytes)}")
            content_type = response.headers.get("content-type", "")
    except httpx.HTTPError as e:
        raise AttachmentError(f"Download failed: {e}") from e
    return bytes(buf), content_type


class ImageCompressor(Protocol):
    def compress(self, data: bytes, media_type: str) -> tuple[bytes, str]: ...


class PillowCompressor:
    """
    Downscale and re-encode images until they fit under `target_bytes`.

    Starts with WebP at quality 70 and steps quality down; below 40 it switches
    to JPEG. Small images inside the dimension limit are returned untouched.
    """

    def __init__(self, target_bytes: int = SAFE_TARGET_BYTES, max_dimension: int = MAX_DIMENSION, max_attempts: int = 6):
        self.target_bytes = target_bytes
        self.max_dimension = max_dimension
        self.max_attempts = max_attempts

    def compress(self, data: bytes, media_type: str) -> tuple[bytes, str]:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            width, height = img.size
            if len(data) <= self.target_bytes and max(width, height) <= self.max_dimension:
                return data, media_type

            if img.mode not in ("RGB", "RGBA"):
                img = img.convert("RGBA" if "transparency" in img.info else "RGB")
            img.thumbnail((self.max_dimension, self.max_dimension))

            fmt, quality = "WEBP", 70
            out = data
            for attempt in range(self.max_attempts):
                frame = img if fmt == "WEBP" or img.mode == "RGB" else img.convert("RGB")
                buf = io.BytesIO()
                frame.save(buf, format=fmt, quality=quality)
                out = buf.getvalue()
                logging.info(
                    "🗜️ Compression attempt %d: %s %dpx q%d → %s",
                    attempt + 1, fmt, max(img.size), quality, format_size(len(out)),
                )
                if len(out) <= self.target_bytes:
                    break
                if fmt == "WEBP" and quality <= 40:
                    fmt, quality = "JPEG", 55
                else:
                    quality = max(30, quality - 10)
            return out, "image/webp" if fmt == "WEBP" else "image/jpeg"


class AttachmentProcessor:
    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        compressor: ImageCompressor | None = None,
        max_file_bytes: int = MAX_FILE_BYTES,
        max_image_bytes: int = MAX_IMAGE_BYTES,
        timeout: float = DOWNLOAD_TIMEOUT_SECONDS,
    ):
        self._http = http_client or httpx.AsyncClient(follow_redirects=True)
        self._owns_client = http_client is None
        self.compressor = compressor
        self.max_file_bytes = max_file_bytes
        self.max_image_bytes = max_image_bytes
        self.timeout = timeout

    @staticmethod
    def placeholder(att: Attachment) -> str:
        return (
            f"- `{att.name}` ({att.content_type or 'unknown'}, {format_size(att.size)})\n"
            f"  URL: {att.url}\n"
            "  ⚠️ Auto-processing failed"
        )

    async def summarize(self, att: Attachment) -> str:
        header = f"- `{att.name}` ({att.content_type or 'unknown'}, {format_size(att.size)})"
        if not att.content_type.startswith(TEXT_CONTENT_TYPES):
            return f"{header}\n  URL: {att.url}"
        if att.size > self.max_file_bytes:
            return f"{header}\n  URL: {att.url}\n  (too large to inline, limit {format_size(self.max_file_bytes)})"

        body, _ = await download_bounded(self._http, att.url, self.max_file_bytes, self.timeout)
        text = body.decode("utf-8", errors="replace")
        truncated = len(text) > EXCERPT_CHARS
        excerpt = text[:EXCERPT_CHARS]
        suffix = f"\n  … truncated ({len(text)} chars total)" if truncated else ""
        return f"{header}\n```\n{excerpt}\n```{suffix}"

    async def summarize_all(self, attachments: Sequence[Attachment]) -> str:
        """
        Summaries for every non-image attachment, as one Markdown block.
        Empty string when there is nothing to summarize.
        """
        files = [a for a in attachments if a.content_type and not a.is_image]
        if not files:
            return ""

        logging.info("📎 Processing %d non-image attachment(s)...", len(files))

        async def _one(att: Attachment) -> str:
            try:
                return await self.summarize(att)
            except Exception as e:  # noqa: BLE001
                logging.warning("⚠️ Failed to process attachment %s: %s", att.name, e)
                return self.placeholder(att)

        parts = await asyncio.gather(*(_one(a) for a in files))
        return "\n\n📎 **Attachments:**\n" + "\n".join(parts)

    async def load_image(self, attachments: Sequence[Attachment]) -> Optional[tuple[str, str]]:
        """
        Download the first image attachment and return (base64 data, media type).
        Any failure drops the image and returns None.
        """
        image = next((a for a in attachments if a.is_image), None)
        if image is None:
            return None
        try:
            data, header_type = await download_bounded(self._http, image.url, self.max_image_bytes, self.timeout)
            media_type = image.content_type or header_type or "image/jpeg"
            if self.compressor is not None:
                data, media_type = await asyncio.to_thread(self.compressor.compress, data, media_type)
            logging.info("🖼️ Image %s ready (%s, %s)", image.name, media_type, format_size(len(data)))
            return b64encode(data).decode(), media_type
        except Exception as e:  # noqa: BLE001
            logging.warning("⚠️ Dropping image %s: %s", image.name, e)
            return None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
