"""
Shared types and base class for model providers (vision, intent and the
conversation director).

Model output is never trusted as-is: every JSON reply goes through a strict
parser and comes back either as a typed value or as an InvalidResponse, the
typed failure variant. Callers branch on the type instead of catching
exceptions around json.loads.
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ── Prompts ───────────────────────────────────────────────────────────────────

VISION_PROMPT = """Analyze this product image and extract key information. Return ONLY valid JSON in this exact format:
{
  "category": "product category (e.g., clothing, electronics, furniture)",
  "color": "dominant color name",
  "material": "material type if visible",
  "visual_description_keywords": ["keyword1", "keyword2", "keyword3"],
  "brand_text": "any visible brand/text on product"
}"""

INTENT_PROMPT = """You are a specialized NLU engine for a Bangladeshi clothing store chatbot.
Customers write in English, Bangla (Bengali script) or Banglish (Bangla in Latin letters), often mixed.
Analyze the user's text and return a JSON object with three keys:

1. "intent": one of
   - "product_search": looking for a specific product ("I want a red saree", "polo shirt ache?")
   - "greeting": greeting or starting a conversation ("hello", "assalamu alaikum")
   - "general_query": a general question ("do you deliver?", "return policy ki?")
   - "order_status": asking about an existing order ("where is my order?", "order kothay?")
   - "price_query": asking about pricing ("how much?", "dam koto?")
   - "unknown": if you cannot confidently classify the intent
2. "entities": key information as an object, e.g. {"product_type": "saree", "color": "red"}
3. "confidence": a number between 0 and 1

If unsure, return "intent": "unknown". Always return valid JSON.

Examples:
{"intent": "product_search", "entities": {"product_type": "saree", "color": "red"}, "confidence": 0.95}
{"intent": "greeting", "entities": {}, "confidence": 0.99}
{"intent": "unknown", "entities": {}, "confidence": 0.3}"""

AI_INTENTS = (
    "product_search",
    "greeting",
    "general_query",
    "order_status",
    "price_query",
    "unknown",
)

# What the conversation director may ask for. The state machine decides which
# of these it carries out in the current state.
DIRECTOR_ACTIONS = (
    "SEND_RESPONSE",
    "TRANSITION_STATE",
    "ADD_TO_CART",
    "REMOVE_FROM_CART",
    "UPDATE_CHECKOUT",
    "CREATE_ORDER",
    "SEARCH_PRODUCTS",
    "SHOW_HELP",
    "RESET_CONVERSATION",
)

# Actions that can stand without a reply text of their own
_SILENT_ACTIONS = ("SEARCH_PRODUCTS", "SHOW_HELP", "RESET_CONVERSATION")


# ── Shared result types ───────────────────────────────────────────────────────

@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class InvalidResponse:
    """Model replied, but not with something we can use."""
    reason: str
    raw: str = ""


def _opt_str(data: dict, key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"'{key}' must be a string")
    value = value.strip()
    return value or None


@dataclass
class VisionAnalysis:
    category: Optional[str] = None
    color: Optional[str] = None
    material: Optional[str] = None
    visual_description_keywords: list[str] = field(default_factory=list)
    brand_text: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "VisionAnalysis":
        if not isinstance(data, dict):
            raise ValueError("expected a JSON object")
        keywords = data.get("visual_description_keywords") or []
        if not isinstance(keywords, list) or not all(isinstance(k, str) for k in keywords):
            raise ValueError("'visual_description_keywords' must be a list of strings")
        return cls(
            category=_opt_str(data, "category"),
            color=_opt_str(data, "color"),
            material=_opt_str(data, "material"),
            visual_description_keywords=[k.strip() for k in keywords if k.strip()],
            brand_text=_opt_str(data, "brand_text"),
        )

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "color": self.color,
            "material": self.material,
            "visual_description_keywords": list(self.visual_description_keywords),
            "brand_text": self.brand_text,
        }


@dataclass
class IntentResponse:
    intent: str
    entities: dict = field(default_factory=dict)
    confidence: float = 0.7

    @classmethod
    def from_dict(cls, data: Any) -> "IntentResponse":
        if not isinstance(data, dict):
            raise ValueError("expected a JSON object")
        intent = data.get("intent")
        if intent not in AI_INTENTS:
            raise ValueError(f"intent {intent!r} is not one of {', '.join(AI_INTENTS)}")
        entities = data.get("entities") or {}
        if not isinstance(entities, dict):
            raise ValueError("'entities' must be an object")
        confidence = data.get("confidence", 0.7)
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            raise ValueError("'confidence' must be a number")
        return cls(intent=intent, entities=entities, confidence=min(1.0, max(0.0, float(confidence))))


@dataclass
class DirectorDecision:
    action: str
    response: str = ""
    new_state: Optional[str] = None
    action_data: dict = field(default_factory=dict)
    confidence: float = 50.0            # 0-100
    reasoning: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "DirectorDecision":
        if not isinstance(data, dict):
            raise ValueError("expected a JSON object")
        action = data.get("action")
        if action not in DIRECTOR_ACTIONS:
            raise ValueError(f"action {action!r} is not one of {', '.join(DIRECTOR_ACTIONS)}")
        response = _opt_str(data, "response") or ""
        if not response and action not in _SILENT_ACTIONS:
            raise ValueError(f"{action} needs a 'response'")
        action_data = data.get("actionData") or {}
        if not isinstance(action_data, dict):
            raise ValueError("'actionData' must be an object")
        confidence = data.get("confidence", 50)
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            raise ValueError("'confidence' must be a number")
        return cls(
            action=action,
            response=response,
            new_state=_opt_str(data, "newState"),
            action_data=action_data,
            confidence=min(100.0, max(0.0, float(confidence))),
            reasoning=_opt_str(data, "reasoning"),
        )


@dataclass
class VisionResult:
    """One vision call: analysis (or why it is unusable), tokens and cost."""
    provider_name: str
    analysis: Union[VisionAnalysis, InvalidResponse]
    usage: TokenUsage
    cost_usd: float
    latency_ms: int = 0

    @property
    def ok(self) -> bool:
        return isinstance(self.analysis, VisionAnalysis)


def parse_json_response(raw: str, provider_name: str) -> Any:
    """
    Parse JSON from a model response, handling markdown fences gracefully.
    Raises ValueError on parse failure.
    """
    text = (raw or "").strip()
    # Strip ```json ... ``` or ``` ... ``` fences if present
    if text.startswith("```"):
        lines = text.split("\n")
        text = "\n".join(lines[1:-1] if lines[-1].strip() == "```" else lines[1:])
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        logger.error("[%s] Non-JSON response: %s", provider_name, (raw or "")[:300])
        raise ValueError(f"[{provider_name}] JSON parse error: {exc}") from exc


def parse_structured(
    raw: str,
    provider_name: str,
    parser: Callable[[Any], T],
) -> Union[T, InvalidResponse]:
    """Decode *raw* and validate it with *parser*; failures become InvalidResponse."""
    try:
        return parser(parse_json_response(raw, provider_name))
    except ValueError as exc:
        logger.warning("[%s] Rejected model output: %s", provider_name, exc)
        return InvalidResponse(reason=str(exc), raw=(raw or "")[:500])


# ── Abstract base ─────────────────────────────────────────────────────────────

class ModelProvider(ABC):
    """Base class for a chat/vision model backend."""

    name: str           # e.g. "openai"
    model_id: str       # e.g. "gpt-4o-mini"
    cost_per_1m_input_tokens: float
    cost_per_1m_output_tokens: float

    @abstractmethod
    async def analyse_image(self, image_url: str) -> VisionResult:
        """Describe the product in a publicly fetchable image."""
        ...

    @abstractmethod
    async def classify_intent(self, text: str) -> tuple[Union[IntentResponse, InvalidResponse], TokenUsage]:
        """Classify one customer message into AI_INTENTS."""
        ...

    @abstractmethod
    async def decide(
        self, system_prompt: str, user_prompt: str
    ) -> tuple[Union[DirectorDecision, InvalidResponse], TokenUsage]:
        """Pick the next conversational move for a message no rule handled."""
        ...

    @property
    def full_name(self) -> str:
        return f"{self.name}/{self.model_id}"

    def estimate_cost(self, usage: TokenUsage) -> float:
        return (
            usage.prompt_tokens / 1_000_000 * self.cost_per_1m_input_tokens
            + usage.completion_tokens / 1_000_000 * self.cost_per_1m_output_tokens
        )
