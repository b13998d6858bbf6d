"""
Tests for images.py — decoding and downloading inbound photos.
"""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from PIL import Image

import images
from conftest import to_bytes
from images import ImageDecodeError, load_image


class TestLoadImage:
    def test_bytes(self, red_image):
        img = load_image(to_bytes(red_image))
        assert img.mode == "RGB"
        assert img.size == red_image.size

    def test_jpeg_bytes(self, red_image):
        assert load_image(to_bytes(red_image, "JPEG")).size == (200, 300)

    def test_image_passthrough(self, red_image):
        assert load_image(red_image) is red_image

    def test_palette_image_converted(self):
        img = Image.new("P", (10, 10))
        assert load_image(img).mode == "RGB"

    def test_rgba_bytes_converted(self):
        img = Image.new("RGBA", (10, 10), (255, 0, 0, 128))
        assert load_image(to_bytes(img)).mode == "RGB"

    def test_garbage(self):
        with pytest.raises(ImageDecodeError):
            load_image(b"\x00\x01 definitely not an image")

    def test_empty(self):
        with pytest.raises(ImageDecodeError, match="empty"):
            load_image(b"")

    def test_truncated(self, red_image):
        data = to_bytes(red_image)
        with pytest.raises(ImageDecodeError):
            load_image(data[: len(data) // 3])


def _fake_response(body: bytes, content_type: str = "image/png; charset=binary"):
    mock_resp = MagicMock()
    mock_resp.raise_for_status = MagicMock()
    mock_resp.read = AsyncMock(return_value=body)
    mock_resp.headers = {"Content-Type": content_type}
    mock_resp.__aenter__ = AsyncMock(return_value=mock_resp)
    mock_resp.__aexit__ = AsyncMock(return_value=False)
    return mock_resp


def _session(resp) -> MagicMock:
    mock_session = MagicMock()
    mock_session.get = MagicMock(return_value=resp)
    mock_session.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session.__aexit__ = AsyncMock(return_value=False)
    return mock_session


@pytest.mark.asyncio
class TestDownload:
    async def test_returns_body_and_type(self):
        with patch("images.aiohttp.ClientSession", return_value=_session(_fake_response(b"PNGDATA"))):
            body, content_type = await images.download("https://cdn.example/a.png")
        assert body == b"PNGDATA"
        assert content_type == "image/png"

    async def test_empty_body(self):
        with patch("images.aiohttp.ClientSession", return_value=_session(_fake_response(b""))):
            with pytest.raises(ValueError, match="empty body"):
                await images.download("https://cdn.example/a.png")

    async def test_oversize(self, monkeypatch):
        monkeypatch.setattr(images, "MAX_IMAGE_BYTES", 4)
        with patch("images.aiohttp.ClientSession", return_value=_session(_fake_response(b"12345"))):
            with pytest.raises(ValueError, match="too large"):
                await images.download("https://cdn.example/a.png")
