"""
intent_detector.py — hybrid free-text classifier.

Fast lane: nlu.detect_intent (keyword rules, no cost). Anything it cannot
place (UNKNOWN) goes to the smart lane, a small chat model constrained to a
fixed intent set. Every answer carries `source` so callers and analytics can
tell a deterministic classification from a probabilistic one.

The detector never raises: a missing key, a transport error or a reply
outside the allowed set all come back as intent "unknown" with confidence 0.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import nlu
from providers.base import AI_INTENTS, InvalidResponse, ModelProvider

logger = logging.getLogger(__name__)

LOCAL_CONFIDENCE = 0.9

SOURCE_LOCAL = "local"
SOURCE_AI = "ai"

# Filler stripped before a free-text catalog search
_STOPWORDS = {
    "i", "want", "a", "an", "the", "show", "me", "do", "you", "have", "any",
    "is", "there", "please", "need", "looking", "for", "some", "buy", "to",
    "ache", "ase", "ki", "dekhan", "dekhao", "chai", "lagbe", "kinbo",
    "আছে", "কি", "চাই", "দেখান", "দেখাও", "লাগবে",
}


@dataclass
class Intent:
    intent: str
    source: str
    entities: dict = field(default_factory=dict)
    confidence: float = 0.0

    @property
    def is_product_search(self) -> bool:
        return self.intent == "product_search"

    @property
    def is_greeting(self) -> bool:
        return self.intent == "greeting"


def _unknown() -> Intent:
    return Intent(intent="unknown", source=SOURCE_AI, confidence=0.0)


class IntentDetector:
    """
    Two-lane classifier. The provider is looked up lazily through
    providers.manager unless one is injected (tests, sandbox).
    """

    def __init__(self, provider: Optional[ModelProvider] = None, use_ai: bool = True):
        self._provider = provider
        self._use_ai = use_ai

    def detect_local(self, text: str) -> Intent:
        """Fast lane only; UNKNOWN comes back with confidence 0."""
        local = nlu.detect_intent(text)
        logger.debug("Local NLU: %r → %s", text[:50], local)
        if local == nlu.UNKNOWN:
            return Intent(intent=local, source=SOURCE_LOCAL, confidence=0.0)
        return Intent(intent=local, source=SOURCE_LOCAL, confidence=LOCAL_CONFIDENCE)

    async def detect(self, text: str) -> Intent:
        local = self.detect_local(text)
        if local.intent != nlu.UNKNOWN:
            return local

        if not self._use_ai:
            return _unknown()
        return await self._detect_ai(text)

    async def _detect_ai(self, text: str) -> Intent:
        provider = self._provider
        if provider is None:
            from providers.manager import get_intent_provider
            provider = await get_intent_provider()
        if provider is None:
            return _unknown()

        try:
            parsed, _usage = await provider.classify_intent(text)
        except Exception as exc:
            logger.warning("Intent fallback failed: %s", exc)
            return _unknown()

        if isinstance(parsed, InvalidResponse):
            logger.warning("Intent fallback returned unusable output: %s", parsed.reason)
            return _unknown()
        if parsed.intent not in AI_INTENTS:
            return _unknown()

        logger.info("AI intent: %s (%.2f)", parsed.intent, parsed.confidence)
        return Intent(
            intent=parsed.intent,
            source=SOURCE_AI,
            entities=parsed.entities,
            confidence=parsed.confidence,
        )


def extract_product_query(entities: Optional[dict], text: str = "") -> Optional[str]:
    """
    Build a catalog search string: colour, product type, style and size from
    the model's entities, else the message with filler words removed.
    """
    parts: list[str] = []
    for key in ("color", "product_type", "style", "size"):
        value = (entities or {}).get(key)
        if isinstance(value, str) and value.strip():
            parts.append(value.strip())
    if parts:
        return " ".join(parts)

    words = [t for t in nlu.tokens(text) if t not in _STOPWORDS]
    return " ".join(words) or None
