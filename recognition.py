"""
recognition.py — the product-identification waterfall.

  Tier 1  perceptual hash        (free, ~1ms)
  Tier 2  visual features        (free, ~10ms)
  Cache   prior Tier 3 verdicts  (one DB read)
  Tier 3  AI vision              (paid, seconds)

The coordinator stops at the first step that yields a product. Whatever the
outcome, the result carries the terminal tier plus the diagnostics of every
tier that ran (Tier 1 distance, Tier 2 scores) so callers can log without
re-running anything.

Failure rules:
  - the inbound image failing to decode is fatal: ImageDecodeError propagates
  - anything going wrong in Tier 3 degrades to tier "none" with `error` set
  - cache lookups and Tier 3 are bounded by timeouts; the Tier 3 unit of work
    (model call → cost ledger → cache write) is shielded, so a request that
    gives up waiting never loses the cost record
"""
from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from PIL import Image

import config
import database as db
import image_hash
import recognition_cache
import vision_fallback
import visual_features
from images import ImageInput, load_image
from providers.base import ModelProvider

logger = logging.getLogger(__name__)

TIERS = ("tier1", "tier2", "cache", "tier3", "none")

# Turns image bytes into a publicly fetchable URL (CDN upload)
Uploader = Callable[[bytes], Awaitable[str]]


@dataclass
class MatchResult:
    tier: str
    product: Optional[db.Product] = None
    confidence: float = 0.0
    distance: Optional[int] = None          # tier1
    scores: Optional[dict] = None           # tier2
    ai_analysis: Optional[dict] = None      # cache / tier3
    cost_usd: float = 0.0                   # tier3
    error: Optional[str] = None
    image_hash: str = ""
    tier1_distance: Optional[int] = None
    tier2_scores: Optional[dict] = None

    @property
    def matched(self) -> bool:
        return self.product is not None

    def to_dict(self) -> dict:
        return {
            "tier": self.tier,
            "product_id": self.product.id if self.product else None,
            "confidence": self.confidence,
            "distance": self.distance,
            "scores": self.scores,
            "ai_analysis": self.ai_analysis,
            "cost_usd": self.cost_usd,
            "error": self.error,
            "image_hash": self.image_hash,
            "tier1_distance": self.tier1_distance,
            "tier2_scores": self.tier2_scores,
        }


@dataclass
class _Tier3Outcome:
    product: Optional[db.Product]
    confidence: float
    ai_analysis: Optional[dict]
    cost_usd: float
    error: Optional[str] = None


def _to_jpeg(image: ImageInput) -> bytes:
    if isinstance(image, bytes):
        return image
    buf = io.BytesIO()
    image.convert("RGB").save(buf, format="JPEG", quality=90)
    return buf.getvalue()


class RecognitionCoordinator:
    """Runs Tier 1 → Tier 2 → Cache → Tier 3 for one inbound image."""

    def __init__(
        self,
        provider: Optional[ModelProvider] = None,
        uploader: Optional[Uploader] = None,
        cache_timeout: Optional[float] = None,
        tier3_timeout: Optional[float] = None,
    ):
        self._provider = provider
        self._uploader = uploader
        self._cache_timeout = config.CACHE_TIMEOUT_SECS if cache_timeout is None else cache_timeout
        self._tier3_timeout = config.TIER3_TIMEOUT_SECS if tier3_timeout is None else tier3_timeout
        # Strong references keep shielded Tier 3 tasks alive after a timeout
        self._background: set[asyncio.Task] = set()

    async def recognize(
        self,
        image: ImageInput,
        workspace_id: str,
        public_url: Optional[str] = None,
    ) -> MatchResult:
        img: Image.Image = load_image(image)
        query_hash = image_hash.generate_hash(img)
        products = await db.get_products(workspace_id)

        # ── Tier 1 ────────────────────────────────────────────────────────────
        t1 = image_hash.find_match(query_hash, products, config.TIER1_MAX_DISTANCE)
        if t1.product is not None:
            return MatchResult(
                tier="tier1",
                product=t1.product,
                confidence=t1.confidence,
                distance=t1.distance,
                image_hash=query_hash,
                tier1_distance=t1.distance,
            )

        # ── Tier 2 ────────────────────────────────────────────────────────────
        features = visual_features.extract_features(img)
        t2 = visual_features.find_match(
            features,
            products,
            threshold=config.TIER2_THRESHOLD,
            color_weight=config.TIER2_COLOR_WEIGHT,
            aspect_weight=config.TIER2_ASPECT_WEIGHT,
            penalty=config.TIER2_COLOR_PENALTY,
        )
        base = dict(image_hash=query_hash, tier1_distance=t1.distance, tier2_scores=t2.scores)
        if t2.product is not None:
            return MatchResult(
                tier="tier2", product=t2.product, confidence=t2.confidence,
                scores=t2.scores, **base,
            )

        # ── Cache ─────────────────────────────────────────────────────────────
        entry = await self._check_cache(query_hash)
        if entry is not None:
            if entry.is_negative:
                logger.info("Cache: %s is a known miss, skipping Tier 3", query_hash)
                return MatchResult(tier="none", ai_analysis=entry.ai_response, **base)
            product = next((p for p in products if p.id == entry.matched_product_id), None)
            if product is not None:
                logger.info("Cache hit: %s → product %s", query_hash, product.id)
                return MatchResult(
                    tier="cache", product=product, confidence=entry.confidence_score,
                    ai_analysis=entry.ai_response, **base,
                )
            logger.info("Cache entry for %s points at a removed product", query_hash)

        # ── Tier 3 ────────────────────────────────────────────────────────────
        url = public_url
        if not url and self._uploader is not None:
            try:
                url = await self._uploader(_to_jpeg(image))
            except Exception as exc:
                logger.warning("Image upload failed, skipping Tier 3: %s", exc)
                return MatchResult(tier="none", error=f"upload failed: {exc}", **base)
        if not url:
            logger.info("No public URL for %s, skipping Tier 3", query_hash)
            return MatchResult(tier="none", **base)

        outcome = await self._run_tier3(url, query_hash, workspace_id, products)
        return MatchResult(
            tier="tier3" if outcome.product is not None else "none",
            product=outcome.product,
            confidence=outcome.confidence,
            ai_analysis=outcome.ai_analysis,
            cost_usd=outcome.cost_usd,
            error=outcome.error,
            **base,
        )

    async def _check_cache(self, query_hash: str) -> Optional[recognition_cache.CacheEntry]:
        try:
            return await asyncio.wait_for(
                recognition_cache.check_cache(query_hash), timeout=self._cache_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Cache lookup for %s timed out; treating as a miss", query_hash)
        except Exception as exc:
            logger.warning("Cache lookup for %s failed: %s", query_hash, exc)
        return None

    async def _run_tier3(
        self,
        url: str,
        query_hash: str,
        workspace_id: str,
        products: list[db.Product],
    ) -> _Tier3Outcome:
        task = asyncio.ensure_future(self._tier3_unit(url, query_hash, workspace_id, products))
        self._background.add(task)
        task.add_done_callback(self._tier3_done)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self._tier3_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Tier 3 for %s exceeded %.0fs; continuing without it", query_hash, self._tier3_timeout
            )
            return _Tier3Outcome(None, 0.0, None, 0.0, error="tier 3 timed out")
        except Exception as exc:
            logger.warning("Tier 3 failed for %s: %s", query_hash, exc, exc_info=True)
            return _Tier3Outcome(None, 0.0, None, 0.0, error=str(exc) or type(exc).__name__)

    async def _tier3_unit(
        self,
        url: str,
        query_hash: str,
        workspace_id: str,
        products: list[db.Product],
    ) -> _Tier3Outcome:
        result = await vision_fallback.analyze_image_with_ai(url, self._provider)

        # Tokens were spent either way; record before matching
        cost = vision_fallback.calculate_cost(result.usage)
        await vision_fallback.track_api_usage(workspace_id, query_hash, cost, result.usage)

        if not result.ok:
            return _Tier3Outcome(
                None, 0.0, None, cost, error=f"invalid model response: {result.analysis.reason}"
            )

        analysis = result.analysis.to_dict()
        match = await vision_fallback.find_tier3_match(result.analysis, workspace_id, products)
        await recognition_cache.save_to_cache(
            query_hash,
            match.confidence,
            match.product.id if match.product is not None else None,
            analysis,
        )
        return _Tier3Outcome(match.product, match.confidence, analysis, cost)

    def _tier3_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("Background Tier 3 task ended with %r", exc)

    async def drain(self) -> None:
        """Wait for Tier 3 work still running after its request gave up."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
