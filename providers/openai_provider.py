"""
OpenAI provider — gpt-4o-mini for product vision (Tier 3), the intent
fallback lane and the conversation director.

Pricing (gpt-4o-mini):
  $0.15 / 1M input tokens, $0.60 / 1M output tokens
  A low-detail product image costs a flat 85 input tokens plus the prompt.
"""
from __future__ import annotations

import base64
import logging
import time
from typing import Union

from openai import AsyncOpenAI

import images
from providers.base import (
    INTENT_PROMPT, VISION_PROMPT,
    DirectorDecision, IntentResponse, InvalidResponse, ModelProvider, TokenUsage, VisionAnalysis,
    VisionResult, parse_structured,
)

logger = logging.getLogger(__name__)

# Per 1M tokens (input, output)
_PRICING = {
    "gpt-4o":      (5.00, 15.00),
    "gpt-4o-mini": (0.15, 0.60),
}


def _usage_of(response) -> TokenUsage:
    usage = response.usage
    if usage is None:
        return TokenUsage()
    return TokenUsage(
        prompt_tokens=usage.prompt_tokens or 0,
        completion_tokens=usage.completion_tokens or 0,
    )


class OpenAIProvider(ModelProvider):

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", client: AsyncOpenAI | None = None):
        self.name = "openai"
        self.model_id = model
        self._client = client or AsyncOpenAI(api_key=api_key)
        self.cost_per_1m_input_tokens, self.cost_per_1m_output_tokens = _PRICING.get(
            model, _PRICING["gpt-4o-mini"]
        )

    async def analyse_image(self, image_url: str) -> VisionResult:
        body, content_type = await images.download(image_url)
        b64 = base64.b64encode(body).decode()
        t0 = time.monotonic()

        response = await self._client.chat.completions.create(
            model=self.model_id,
            max_tokens=300,
            temperature=0.3,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": VISION_PROMPT},
                        {
                            "type": "image_url",
                            "image_url": {
                                "url": f"data:{content_type};base64,{b64}",
                                "detail": "low",
                            },
                        },
                    ],
                },
            ],
        )

        latency_ms = int((time.monotonic() - t0) * 1000)
        raw = response.choices[0].message.content or ""
        usage = _usage_of(response)
        analysis = parse_structured(raw, self.full_name, VisionAnalysis.from_dict)

        logger.info(
            "[%s] vision call %dms, %d/%d tokens",
            self.full_name, latency_ms, usage.prompt_tokens, usage.completion_tokens,
        )
        return VisionResult(
            provider_name=self.full_name,
            analysis=analysis,
            usage=usage,
            cost_usd=self.estimate_cost(usage),
            latency_ms=latency_ms,
        )

    async def classify_intent(self, text: str) -> tuple[Union[IntentResponse, InvalidResponse], TokenUsage]:
        response = await self._client.chat.completions.create(
            model=self.model_id,
            max_tokens=150,
            temperature=0.3,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": INTENT_PROMPT},
                {"role": "user", "content": text},
            ],
        )
        raw = response.choices[0].message.content or ""
        return parse_structured(raw, self.full_name, IntentResponse.from_dict), _usage_of(response)

    async def decide(
        self, system_prompt: str, user_prompt: str
    ) -> tuple[Union[DirectorDecision, InvalidResponse], TokenUsage]:
        response = await self._client.chat.completions.create(
            model=self.model_id,
            max_tokens=1000,
            temperature=0.7,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        )
        raw = response.choices[0].message.content or ""
        return parse_structured(raw, self.full_name, DirectorDecision.from_dict), _usage_of(response)
