"""
image_hash.py — Tier 1: perceptual (average) hashing and Hamming matching.

An image is reduced to an 8×8 grayscale grid; each of the 64 bits is 1 iff
its pixel is at or above the grid's mean luminance. Bits are packed
most-significant first into 16 lowercase hex characters.

Catalog products keep three hashes so screenshots that were cropped or carry
phone UI chrome still land close to the canonical photo:
  0 full    — the whole image
  1 center  — 10% cut from top and bottom (status / navigation bars)
  2 square  — centred square crop (feed posts)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

import numpy as np
from PIL import Image

from images import ImageInput, load_image

logger = logging.getLogger(__name__)

HASH_BITS = 64
HASH_HEX_LEN = HASH_BITS // 4
VARIANT_NAMES = ("full", "center", "square")

# Distance strictly below this counts as a match (≈ 84% similarity)
DEFAULT_MAX_DISTANCE = 10


class HashedProduct(Protocol):
    id: int
    image_hashes: list[str]


@dataclass
class Tier1Match:
    product: Optional[HashedProduct]
    distance: int                       # best distance seen, 64 when nothing to compare
    confidence: float                   # 0 when no match
    matched_variant: Optional[int] = None

    @property
    def variant_name(self) -> Optional[str]:
        if self.matched_variant is None:
            return None
        return VARIANT_NAMES[self.matched_variant] if self.matched_variant < 3 else str(self.matched_variant)


# ── Hashing ───────────────────────────────────────────────────────────────────

def _average_hash(img: Image.Image) -> str:
    small = img.resize((8, 8), Image.Resampling.NEAREST).convert("L")
    pixels = np.asarray(small, dtype=np.float64).flatten()
    bits = pixels >= pixels.mean()
    value = 0
    for bit in bits:
        value = (value << 1) | int(bit)
    return f"{value:0{HASH_HEX_LEN}x}"


def generate_hash(image: ImageInput) -> str:
    """16-char hex average hash of the whole image."""
    return _average_hash(load_image(image))


def generate_multi_hash(image: ImageInput) -> list[str]:
    """[full, center, square] hashes for one image."""
    img = load_image(image)
    width, height = img.size

    crop = int(height * 0.1)
    center = img.crop((0, crop, width, height - crop))

    side = min(width, height)
    left = (width - side) // 2
    top = (height - side) // 2
    square = img.crop((left, top, left + side, top + side))

    return [_average_hash(img), _average_hash(center), _average_hash(square)]


# ── Comparison ────────────────────────────────────────────────────────────────

def hamming_distance(a: str, b: str) -> int:
    """Number of differing bits between two equal-length hex hashes."""
    if len(a) != len(b):
        raise ValueError(f"Hashes must be the same length ({len(a)} != {len(b)})")
    distance = 0
    for x, y in zip(a, b):
        distance += bin(int(x, 16) ^ int(y, 16)).count("1")
    return distance


def confidence_from_distance(distance: int) -> float:
    return round((HASH_BITS - distance) / HASH_BITS * 100, 2)


def find_match(
    query_hash: str,
    products: Sequence[HashedProduct],
    max_distance: int = DEFAULT_MAX_DISTANCE,
) -> Tier1Match:
    """
    Scan every (product, hash variant) pair for the global minimum distance.

    Ties are broken by lowest product id, then lowest variant index, so the
    same catalog always yields the same answer.
    """
    best_product: Optional[HashedProduct] = None
    best_distance = HASH_BITS + 1
    best_variant: Optional[int] = None

    for product in sorted(products, key=lambda p: p.id):
        for idx, candidate in enumerate(product.image_hashes or []):
            if not candidate or len(candidate) != len(query_hash):
                continue
            d = hamming_distance(query_hash, candidate)
            if d < best_distance:
                best_product, best_distance, best_variant = product, d, idx

    if best_product is None:
        return Tier1Match(product=None, distance=HASH_BITS, confidence=0.0)

    if best_distance < max_distance:
        logger.info(
            "Tier 1 match: product %s via %s hash (distance %d)",
            best_product.id, VARIANT_NAMES[best_variant] if best_variant < 3 else best_variant,
            best_distance,
        )
        return Tier1Match(
            product=best_product,
            distance=best_distance,
            confidence=confidence_from_distance(best_distance),
            matched_variant=best_variant,
        )

    return Tier1Match(product=None, distance=best_distance, confidence=0.0)
