"""
vision_fallback.py — Tier 3: AI vision analysis, keyword scoring and cost
accounting.

Flow for one image:
  analyze_image_with_ai(url)   → structured description + token usage
  calculate_cost(usage)        → USD at fixed per-million-token rates
  track_api_usage(...)         → append to the usage ledger
  find_tier3_match(analysis)   → best catalog product by keyword overlap

Cost is tracked for every call that reached the model, matched or not.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import config
import database as db
from providers.base import ModelProvider, TokenUsage, VisionAnalysis, VisionResult

logger = logging.getLogger(__name__)

# gpt-4o-mini, USD per 1M tokens
INPUT_COST_PER_1M = 0.15
OUTPUT_COST_PER_1M = 0.60

API_TYPE_VISION = "openai_vision"

# Points a single analysis term earns per product field it overlaps
FIELD_WEIGHTS = {
    "search_keywords": 12,
    "name": 8,
    "description": 5,
    "category": 3,
}


@dataclass
class Tier3Match:
    product: Optional[db.Product]
    confidence: float
    score: float = 0.0


# ── Model call ────────────────────────────────────────────────────────────────

async def analyze_image_with_ai(
    public_url: str,
    provider: Optional[ModelProvider] = None,
) -> VisionResult:
    """
    Ask the vision model to describe the product at *public_url*.
    Raises on transport errors; an unusable reply comes back as
    VisionResult.analysis = InvalidResponse (tokens were still spent).
    """
    if provider is None:
        from providers.manager import get_vision_provider
        provider = await get_vision_provider()
    if provider is None:
        raise RuntimeError("Vision provider unavailable (no OpenAI API key)")
    return await provider.analyse_image(public_url)


# ── Cost ──────────────────────────────────────────────────────────────────────

def calculate_cost(usage: TokenUsage) -> float:
    cost = (
        usage.prompt_tokens / 1_000_000 * INPUT_COST_PER_1M
        + usage.completion_tokens / 1_000_000 * OUTPUT_COST_PER_1M
    )
    return round(cost, 8)


async def track_api_usage(
    workspace_id: str,
    image_hash: str,
    cost: float,
    usage: Optional[TokenUsage] = None,
) -> bool:
    """Append one ledger row. Failures are logged and reported as False."""
    usage = usage or TokenUsage()
    try:
        await db.log_api_usage(
            workspace_id,
            API_TYPE_VISION,
            cost,
            image_hash=image_hash,
            input_tokens=usage.prompt_tokens,
            output_tokens=usage.completion_tokens,
        )
    except Exception as exc:
        logger.warning("Usage ledger write failed (%s, $%.6f): %s", workspace_id, cost, exc)
        return False
    logger.info("Tier 3 cost $%.6f recorded for workspace %s", cost, workspace_id)
    return True


# ── Matching ──────────────────────────────────────────────────────────────────

def _overlaps(term: str, value: str) -> bool:
    return bool(term) and bool(value) and (term in value or value in term)


def _terms(analysis: VisionAnalysis) -> list[str]:
    raw: list[Optional[str]] = list(analysis.visual_description_keywords)
    raw += [analysis.color, analysis.brand_text, analysis.material]
    seen: list[str] = []
    for term in raw:
        t = (term or "").strip().lower()
        if t and t not in seen:
            seen.append(t)
    return seen


def _lower_all(values: Optional[Iterable[str]]) -> list[str]:
    return [v.strip().lower() for v in (values or []) if v and v.strip()]


def score_product(analysis: VisionAnalysis, product: db.Product) -> float:
    keywords = _lower_all(product.search_keywords)
    name = (product.name or "").lower()
    description = (product.description or "").lower()
    category = (product.category or "").lower()

    total = 0.0
    for term in _terms(analysis):
        if any(_overlaps(term, kw) for kw in keywords):
            total += FIELD_WEIGHTS["search_keywords"]
        if _overlaps(term, name):
            total += FIELD_WEIGHTS["name"]
        if _overlaps(term, description):
            total += FIELD_WEIGHTS["description"]
        if _overlaps(term, category):
            total += FIELD_WEIGHTS["category"]

    if analysis.category and _overlaps(analysis.category.lower(), category):
        total += FIELD_WEIGHTS["category"]
    return total


async def find_tier3_match(
    analysis: VisionAnalysis,
    workspace_id: str,
    products: Optional[Sequence[db.Product]] = None,
    min_score: Optional[float] = None,
) -> Tier3Match:
    """Highest keyword-overlap score strictly above *min_score*; lowest id wins ties."""
    if products is None:
        products = await db.get_products(workspace_id)
    min_score = config.TIER3_MIN_SCORE if min_score is None else min_score

    best: Optional[db.Product] = None
    best_score = 0.0
    for product in sorted(products, key=lambda p: p.id):
        s = score_product(analysis, product)
        if s > best_score:
            best, best_score = product, s

    if best is not None and best_score > min_score:
        logger.info("Tier 3 match: product %s (score %.0f)", best.id, best_score)
        return Tier3Match(product=best, confidence=min(best_score, 100.0), score=best_score)

    logger.info("Tier 3: no product above %.0f (best %.0f)", min_score, best_score)
    return Tier3Match(product=None, confidence=0.0, score=best_score)
