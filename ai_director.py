"""
ai_director.py — model-backed fallback for messages no rule understood.

The fast lane (nlu keyword rules, the intent detector, per-step validation)
handles almost every message. When it has nothing to say beyond a re-prompt,
the state machine asks the director instead. The director sends the model the
shop's persona (name, tone, emoji use, delivery charges), the current state,
cart and checkout, and the last few messages of the conversation, and gets
back a DirectorDecision: an action, a reply and optional action data.

The director only decides. Which actions are carried out, and how, is up to
the state machine. A missing key, a transport error or unusable output all
come back as None, and the caller sends its ordinary re-prompt.
"""
from __future__ import annotations

import logging
from typing import Optional

import database as db
from conversation import ConversationContext
from providers.base import DirectorDecision, InvalidResponse, ModelProvider, TokenUsage
from replies import money
from settings_store import WorkspaceSettings

logger = logging.getLogger(__name__)

API_TYPE_DIRECTOR = "ai_director"
HISTORY_MESSAGES = 5

TONE_DESCRIPTIONS = {
    "friendly":     "friendly, warm, and conversational - like talking to a helpful friend",
    "professional": "professional, polite, and formal - like a business representative",
    "casual":       "casual, relaxed, and informal - like chatting with a peer",
}


# ── Prompts ───────────────────────────────────────────────────────────────────

def build_system_prompt(settings: WorkspaceSettings) -> str:
    tone = TONE_DESCRIPTIONS.get(settings.tone, TONE_DESCRIPTIONS["friendly"])
    emojis = (
        "Use emojis to make messages engaging and friendly."
        if settings.use_emojis else
        "Do not use emojis. Keep replies text-only."
    )
    inside = money(settings.delivery_charge_inside_dhaka)
    outside = money(settings.delivery_charge_outside_dhaka)
    return f"""You are the conversation director for {settings.business_name}'s Messenger shop assistant.
Customers write in English, Bangla (Bengali script) or Banglish, often mixed.
You receive the messages the shop's rules could not handle and decide what to do next.

CONVERSATION STATES:
- IDLE, ORDER_CONFIRMED, ORDER_CANCELLED: nothing in progress
- AWAITING_PRODUCT_CONFIRMATION: customer is deciding whether to order the product shown
- COLLECTING_NAME, COLLECTING_PHONE, COLLECTING_ADDRESS: collecting delivery details
- AWAITING_CUSTOMER_DETAILS: waiting for name, phone and address in one message
- CONFIRMING_ORDER: customer is reviewing the order summary
- AWAITING_PAYMENT_PROOF: waiting for the last 2 digits of the payment transaction

ACTIONS:
- SEND_RESPONSE: reply only
- SEARCH_PRODUCTS: search the catalog, put the query in actionData.searchQuery
- UPDATE_CHECKOUT: the message contains the detail being collected; put it in
  actionData.customerName, actionData.customerPhone or actionData.customerAddress
- SHOW_HELP: show how ordering works
- RESET_CONVERSATION: the customer wants to stop and start over
- TRANSITION_STATE, ADD_TO_CART, REMOVE_FROM_CART, CREATE_ORDER: the shop carries
  these out itself; choose them only to explain, and always include a reply

TONE AND STYLE:
- Your tone is {tone}.
- {emojis}
- Reply mainly in Bangla; common English shop words (Price, Order, Delivery, Address) are fine.
- Keep replies short. If the customer asks a question in the middle of checkout,
  answer it and ask again for the detail still needed.
- Phone numbers are Bangladeshi: 01XXXXXXXXX.
- Delivery charge: inside Dhaka {inside}, outside Dhaka {outside}.
- If unsure, ask a clarifying question.

Respond with ONLY a JSON object:
{{
  "action": "ACTION_NAME",
  "response": "message to the customer",
  "newState": "STATE" (optional),
  "actionData": {{}} (optional),
  "confidence": 0-100,
  "reasoning": "one short sentence"
}}"""


def build_user_prompt(text: str, ctx: ConversationContext, history: list[dict]) -> str:
    lines = ["CURRENT SITUATION:", f"State: {ctx.state.value}"]

    if ctx.cart:
        lines.append(f"Cart ({len(ctx.cart)} items):")
        for n, item in enumerate(ctx.cart, 1):
            lines.append(f"{n}. {item.product_name} - {money(item.product_price)} x {item.quantity}")
        lines.append(f"Subtotal: {money(ctx.calculate_cart_total())}")
    else:
        lines.append("Cart: empty")

    checkout = ctx.checkout
    known = [
        ("Name", checkout.customer_name),
        ("Phone", checkout.customer_phone),
        ("Address", checkout.customer_address),
        ("Delivery", money(checkout.delivery_charge) if checkout.delivery_charge else None),
        ("Total", money(checkout.total_amount) if checkout.total_amount else None),
    ]
    known = [(label, value) for label, value in known if value]
    if known:
        lines.append("Checkout:")
        lines.extend(f"- {label}: {value}" for label, value in known)

    recent = history[-HISTORY_MESSAGES:]
    if recent:
        lines.append(f"Recent messages (last {len(recent)}):")
        for m in recent:
            who = "Customer" if m["sender"] == "customer" else "Bot"
            lines.append(f"{who}: {m['text']}")

    lines.append("")
    lines.append(f'CUSTOMER\'S CURRENT MESSAGE: "{text}"')
    return "\n".join(lines)


# ── Director ──────────────────────────────────────────────────────────────────

class AIDirector:
    """
    The provider is looked up lazily through providers.manager unless one is
    injected (tests, sandbox). Never raises.
    """

    def __init__(self, provider: Optional[ModelProvider] = None, use_ai: bool = True):
        self._provider = provider
        self._use_ai = use_ai

    async def decide(
        self,
        text: str,
        ctx: ConversationContext,
        settings: WorkspaceSettings,
        conversation: db.Conversation,
    ) -> Optional[DirectorDecision]:
        if not self._use_ai:
            return None
        provider = self._provider
        if provider is None:
            from providers.manager import get_intent_provider
            provider = await get_intent_provider()
        if provider is None:
            return None

        try:
            history = await db.get_messages(conversation.id, limit=HISTORY_MESSAGES, latest=True)
        except Exception as exc:
            logger.warning("History for conversation %d unavailable: %s", conversation.id, exc)
            history = []

        try:
            parsed, usage = await provider.decide(
                build_system_prompt(settings), build_user_prompt(text, ctx, history)
            )
        except Exception as exc:
            logger.warning("Director call failed: %s", exc)
            return None

        await self._record_usage(provider, conversation.workspace_id, usage)

        if isinstance(parsed, InvalidResponse):
            logger.warning("Director returned unusable output: %s", parsed.reason)
            return None
        logger.info(
            "Director: %s in %s (confidence %.0f)%s",
            parsed.action, ctx.state.value, parsed.confidence,
            f" - {parsed.reasoning}" if parsed.reasoning else "",
        )
        return parsed

    async def _record_usage(self, provider: ModelProvider, workspace_id: str, usage: TokenUsage) -> None:
        cost = round(provider.estimate_cost(usage), 8)
        try:
            await db.log_api_usage(
                workspace_id,
                API_TYPE_DIRECTOR,
                cost,
                input_tokens=usage.prompt_tokens,
                output_tokens=usage.completion_tokens,
            )
        except Exception as exc:
            logger.warning("Usage ledger write failed (%s, $%.6f): %s", workspace_id, cost, exc)
