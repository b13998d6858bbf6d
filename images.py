"""
images.py — decoding inbound images and fetching them over HTTP.

Decoding failures raise ImageDecodeError: an inbound image that cannot be
decoded leaves nothing to match against, so callers treat it as fatal.
"""
from __future__ import annotations

import io
import logging
from typing import Union

import aiohttp
from PIL import Image, UnidentifiedImageError

import config

logger = logging.getLogger(__name__)

# Refuse absurdly large downloads (product photos are well under this)
MAX_IMAGE_BYTES = 15 * 1024 * 1024

ImageInput = Union[bytes, Image.Image]


class ImageDecodeError(ValueError):
    """The inbound image could not be decoded."""


def load_image(data: ImageInput) -> Image.Image:
    """Return an RGB PIL image from raw bytes (or pass an image through)."""
    if isinstance(data, Image.Image):
        return data.convert("RGB") if data.mode != "RGB" else data
    if not data:
        raise ImageDecodeError("empty image payload")
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageDecodeError(f"cannot decode image: {exc}") from exc
    return img.convert("RGB")


async def download(url: str) -> tuple[bytes, str]:
    """
    Fetch an image URL. Returns (bytes, content_type).
    Raises aiohttp.ClientError (or ValueError for oversize/empty bodies).
    """
    timeout = aiohttp.ClientTimeout(total=config.HTTP_TIMEOUT_SECS)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        async with session.get(url) as resp:
            resp.raise_for_status()
            body = await resp.read()
            content_type = resp.headers.get("Content-Type", "image/jpeg").split(";")[0]
    if not body:
        raise ValueError(f"empty body from {url[:80]}")
    if len(body) > MAX_IMAGE_BYTES:
        raise ValueError(f"image too large ({len(body)} bytes)")
    logger.debug("Downloaded %d KB from %s", len(body) // 1024, url[:80])
    return body, content_type
