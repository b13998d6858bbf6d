"""
Provider Manager — builds the model provider used for Tier 3 vision and the
intent fallback lane.

The OpenAI key is read from key_store (DB → .env fallback) when a provider is
first needed, so a key set at runtime takes effect after reset_providers()
without restarting the bot.
"""
from __future__ import annotations

import logging
from typing import Optional

import config
from providers.base import ModelProvider

logger = logging.getLogger(__name__)

# Keyed by model id; reset_providers() drops them when a key changes
_providers: dict[str, ModelProvider] = {}


async def get_provider(model: Optional[str] = None) -> Optional[ModelProvider]:
    """Return a provider for *model*, or None if no API key is configured."""
    import key_store

    model = model or config.VISION_MODEL
    if model in _providers:
        return _providers[model]

    api_key = await key_store.get("openai_api_key")
    if not api_key:
        logger.warning("No OpenAI API key configured; AI features are disabled")
        return None

    from providers.openai_provider import OpenAIProvider
    provider = OpenAIProvider(api_key, model)
    _providers[model] = provider
    logger.info("Loaded provider: %s", provider.full_name)
    return provider


async def get_vision_provider() -> Optional[ModelProvider]:
    return await get_provider(config.VISION_MODEL)


async def get_intent_provider() -> Optional[ModelProvider]:
    return await get_provider(config.INTENT_MODEL)


def reset_providers() -> None:
    """Forget built providers (call after changing an API key)."""
    _providers.clear()
