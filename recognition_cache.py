"""
recognition_cache.py — Tier 3 verdicts keyed by image hash.

Both outcomes are cached: a hash that already went through the vision model
without finding a product is stored as a negative entry so the same photo is
never billed twice. Entries expire CACHE_TTL_DAYS after they were written.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

import config
import database as db

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    image_hash: str
    matched_product_id: Optional[int]     # None = negative verdict
    confidence_score: float
    ai_response: dict = field(default_factory=dict)
    expires_at: Optional[datetime] = None

    @property
    def is_negative(self) -> bool:
        return self.matched_product_id is None


async def check_cache(image_hash: str) -> Optional[CacheEntry]:
    """Return the live entry for *image_hash*, or None (missing or expired)."""
    row = await db.get_cache_row(image_hash, db.utcnow_iso())
    if row is None:
        return None
    product_id, confidence, raw_response, expires_at = row
    try:
        ai_response = json.loads(raw_response) if raw_response else {}
    except json.JSONDecodeError:
        logger.warning("Cache entry %s has corrupt ai_response, ignoring it", image_hash)
        ai_response = {}
    return CacheEntry(
        image_hash=image_hash,
        matched_product_id=product_id,
        confidence_score=confidence,
        ai_response=ai_response,
        expires_at=datetime.fromisoformat(expires_at),
    )


async def save_to_cache(
    image_hash: str,
    confidence: float,
    product_id: Optional[int],
    ai_response: Optional[dict] = None,
) -> bool:
    """
    Upsert the verdict for *image_hash* with a fresh TTL.
    Best-effort: a failed write is logged and reported as False.
    """
    expires_at = datetime.now(timezone.utc) + timedelta(days=config.CACHE_TTL_DAYS)
    try:
        await db.upsert_cache_row(
            image_hash,
            product_id,
            confidence,
            json.dumps(ai_response or {}, ensure_ascii=False),
            db._iso(expires_at),
        )
    except Exception as exc:
        logger.warning("Cache write failed for %s: %s", image_hash, exc)
        return False
    logger.debug(
        "Cached %s verdict for %s (product=%s)",
        "negative" if product_id is None else "positive", image_hash, product_id,
    )
    return True


async def clear_expired_cache() -> int:
    """Delete expired rows; returns how many were removed."""
    removed = await db.delete_expired_cache(db.utcnow_iso())
    if removed:
        logger.info("Swept %d expired recognition cache entries", removed)
    return removed
