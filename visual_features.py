"""
visual_features.py — Tier 2: coarse visual-feature matching.

Used when Tier 1 misses because an incoming screenshot was re-compressed,
watermarked or cropped beyond the three hash variants. The feature vector is
deliberately small:

  aspect_ratio     width / height of the image
  dominant_colors  up to 3 RGB colours from a median-cut palette, most
                   frequent first

Similarity is a weighted sum of a palette score and an aspect-ratio score
(0–100 each), minus a fixed penalty when the primary colours are far apart.
Weights, penalty and acceptance threshold are configurable (config.TIER2_*).
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence

import numpy as np
from PIL import Image

from images import ImageInput, load_image

logger = logging.getLogger(__name__)

RGB = tuple[int, int, int]

PALETTE_SIZE = 3
PALETTE_WEIGHTS = (0.5, 0.3, 0.2)        # primary colour dominates
MAX_RGB_DISTANCE = math.sqrt(3 * 255 ** 2)   # ≈ 441.67
PRIMARY_PENALTY_DISTANCE = 50.0

# Palette extraction works on a thumbnail; colour statistics barely change
_THUMBNAIL = (128, 128)


@dataclass
class FeatureVector:
    aspect_ratio: float
    dominant_colors: list[RGB] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "aspect_ratio": self.aspect_ratio,
            "dominant_colors": [list(c) for c in self.dominant_colors],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FeatureVector":
        colors = [tuple(int(v) for v in c[:3]) for c in data.get("dominant_colors", [])]
        return cls(aspect_ratio=float(data["aspect_ratio"]), dominant_colors=colors)


class FeatureProduct(Protocol):
    id: int
    visual_features: Optional[dict]


@dataclass
class Tier2Match:
    product: Optional[FeatureProduct]
    confidence: float
    scores: dict        # color_score, aspect_ratio_score, total_score


def _empty_scores() -> dict:
    return {"color_score": 0.0, "aspect_ratio_score": 0.0, "total_score": 0.0}


# ── Extraction ────────────────────────────────────────────────────────────────

def extract_features(image: ImageInput) -> FeatureVector:
    img = load_image(image)
    width, height = img.size
    aspect_ratio = width / height if height else 1.0

    thumb = img.copy()
    thumb.thumbnail(_THUMBNAIL)
    quantized = thumb.quantize(colors=PALETTE_SIZE, method=Image.Quantize.MEDIANCUT)
    palette = quantized.getpalette() or []
    counts = quantized.getcolors() or []

    colors: list[RGB] = []
    for _count, idx in sorted(counts, key=lambda c: (-c[0], c[1]))[:PALETTE_SIZE]:
        r, g, b = palette[idx * 3: idx * 3 + 3]
        colors.append((r, g, b))

    return FeatureVector(aspect_ratio=aspect_ratio, dominant_colors=colors)


# ── Scoring ───────────────────────────────────────────────────────────────────

def color_distance(a: Sequence[int], b: Sequence[int]) -> float:
    return float(np.linalg.norm(np.asarray(a, dtype=np.float64) - np.asarray(b, dtype=np.float64)))


def color_score(query: Sequence[RGB], candidate: Sequence[RGB]) -> float:
    """
    For each query colour take the nearest candidate colour; similarity is
    (1 - distance / max distance) * 100, weighted by palette rank.
    """
    if not query or not candidate:
        return 0.0
    cand = np.asarray(candidate, dtype=np.float64)
    total = 0.0
    for i, qc in enumerate(query[:PALETTE_SIZE]):
        nearest = float(np.min(np.linalg.norm(cand - np.asarray(qc, dtype=np.float64), axis=1)))
        total += (1 - nearest / MAX_RGB_DISTANCE) * 100 * PALETTE_WEIGHTS[i]
    return total / sum(PALETTE_WEIGHTS)


def aspect_ratio_score(a: float, b: float) -> float:
    diff = abs(a - b)
    if diff > 1:
        return 0.0
    return (1 - diff) * 100


def score(
    query: FeatureVector,
    candidate: FeatureVector,
    color_weight: float = 0.6,
    aspect_weight: float = 0.4,
    penalty: float = 30.0,
) -> dict:
    c = color_score(query.dominant_colors, candidate.dominant_colors)
    a = aspect_ratio_score(query.aspect_ratio, candidate.aspect_ratio)
    total = color_weight * c + aspect_weight * a
    if query.dominant_colors and candidate.dominant_colors:
        if color_distance(query.dominant_colors[0], candidate.dominant_colors[0]) > PRIMARY_PENALTY_DISTANCE:
            total -= penalty
    return {
        "color_score": round(c, 2),
        "aspect_ratio_score": round(a, 2),
        "total_score": round(max(0.0, total), 2),
    }


def find_match(
    query: FeatureVector,
    products: Sequence[FeatureProduct],
    threshold: float = 92.0,
    color_weight: float = 0.6,
    aspect_weight: float = 0.4,
    penalty: float = 30.0,
) -> Tier2Match:
    """Best-scoring product whose total score is strictly above *threshold*."""
    best_product: Optional[FeatureProduct] = None
    best_scores = _empty_scores()

    for product in sorted(products, key=lambda p: p.id):
        if not product.visual_features:
            continue
        try:
            candidate = FeatureVector.from_dict(product.visual_features)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Product %s has unusable visual features: %s", product.id, exc)
            continue
        s = score(query, candidate, color_weight, aspect_weight, penalty)
        if best_product is None or s["total_score"] > best_scores["total_score"]:
            best_product, best_scores = product, s

    if best_product is not None and best_scores["total_score"] > threshold:
        logger.info("Tier 2 match: product %s (score %.2f)", best_product.id, best_scores["total_score"])
        return Tier2Match(product=best_product, confidence=best_scores["total_score"], scores=best_scores)

    return Tier2Match(product=None, confidence=0.0, scores=best_scores)
