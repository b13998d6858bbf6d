"""
Shared pytest fixtures.

Every test that touches the database or config gets a clean
temporary DATA_DIR via the `tmp_data_dir` fixture so tests
are fully isolated from each other and from the real shopbot.db.

Images are synthetic Pillow drawings: deterministic, tiny and distinct
enough that their perceptual hashes and palettes differ.
"""
from __future__ import annotations

import io
import os
import sys
from pathlib import Path
from typing import Optional

import pytest
import pytest_asyncio
from PIL import Image, ImageDraw

# ── Make the project root importable without installing the package ────────────
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))


@pytest.fixture(autouse=True)
def tmp_data_dir(tmp_path, monkeypatch):
    """
    Redirect DATA_DIR to a fresh tmp directory for every test.
    This gives each test a clean SQLite file and prevents cross-test pollution.
    """
    data = tmp_path / "data"
    data.mkdir()
    monkeypatch.setenv("DATA_DIR", str(data))

    # Patch the module-level DB_PATH that was already computed at import time
    import database
    monkeypatch.setattr(database, "DB_PATH", str(data / "shopbot.db"))
    monkeypatch.setattr(database, "_DATA_DIR", data)

    # Also reset the internal lock so tests don't share state
    import asyncio
    monkeypatch.setattr(database, "_lock", asyncio.Lock())

    # Never pick up a developer's real key
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    import providers.manager
    providers.manager.reset_providers()

    yield data


# ── Synthetic images ───────────────────────────────────────────────────────────

def make_image(
    size: tuple[int, int] = (200, 300),
    background: tuple[int, int, int] = (200, 30, 40),
    accent: Optional[tuple[int, int, int]] = (250, 250, 250),
    stripe: Optional[tuple[int, int, int]] = (40, 160, 60),
) -> Image.Image:
    """
    Background, a block of *accent* over the upper-left quarter and a
    *stripe* along the bottom eighth: three colours in a fixed proportion.
    """
    img = Image.new("RGB", size, background)
    w, h = size
    draw = ImageDraw.Draw(img)
    if accent is not None:
        draw.rectangle((0, 0, w // 2 - 1, h // 2 - 1), fill=accent)
    if stripe is not None:
        draw.rectangle((0, h - h // 8, w - 1, h - 1), fill=stripe)
    return img


def to_bytes(img: Image.Image, fmt: str = "PNG") -> bytes:
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def flip_bits(hex_hash: str, count: int) -> str:
    """Return *hex_hash* with its lowest *count* bits inverted."""
    value = int(hex_hash, 16) ^ ((1 << count) - 1)
    return f"{value:0{len(hex_hash)}x}"


@pytest.fixture
def red_image() -> Image.Image:
    return make_image()


@pytest.fixture
def red_image_bytes(red_image) -> bytes:
    return to_bytes(red_image)


@pytest.fixture
def blue_image() -> Image.Image:
    return make_image(size=(300, 200), background=(20, 40, 210), accent=(10, 10, 10))


# ── Fake model provider ────────────────────────────────────────────────────────

class FakeProvider:
    """
    Stands in for the OpenAI provider. Counts calls so tests can assert that
    the paid lane ran (or did not).
    """

    name = "fake"
    model_id = "fake-vision"
    full_name = "fake/fake-vision"

    def __init__(
        self, analysis=None, intent=None, usage=None, delay: float = 0.0, error=None, decision=None,
    ):
        from providers.base import TokenUsage
        self.analysis = analysis
        self.intent = intent
        self.decision = decision
        self.usage = usage or TokenUsage(prompt_tokens=1000, completion_tokens=500)
        self.delay = delay
        self.error = error
        self.vision_calls = 0
        self.intent_calls = 0
        self.decide_calls = 0
        self.prompts: list[tuple[str, str]] = []

    async def analyse_image(self, image_url: str):
        import asyncio
        from providers.base import VisionResult
        self.vision_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return VisionResult(
            provider_name=self.full_name, analysis=self.analysis, usage=self.usage, cost_usd=0.0,
        )

    async def classify_intent(self, text: str):
        self.intent_calls += 1
        if self.error is not None:
            raise self.error
        return self.intent, self.usage

    def estimate_cost(self, usage) -> float:
        return usage.prompt_tokens / 1_000_000 * 0.15 + usage.completion_tokens / 1_000_000 * 0.60

    async def decide(self, system_prompt: str, user_prompt: str):
        from providers.base import InvalidResponse
        self.decide_calls += 1
        self.prompts.append((system_prompt, user_prompt))
        if self.error is not None:
            raise self.error
        if self.decision is None:
            return InvalidResponse(reason="no decision scripted"), self.usage
        return self.decision, self.usage


@pytest.fixture
def vision_dress():
    from providers.base import VisionAnalysis
    return VisionAnalysis(
        category="clothing",
        color="red",
        material="cotton",
        visual_description_keywords=["kurti", "embroidered", "long sleeve"],
        brand_text=None,
    )
