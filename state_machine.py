"""
state_machine.py — per-conversation transition logic.

One inbound event (image, text or button postback) plus the conversation's
current context yields exactly one Transition: the next state (written into
the context), one reply (text, or a product card with its text), and at most
one persisted order.

Delivery is NOT done here. The orchestrator sends the reply after the
transition is computed, which is what lets the sandbox entry point run the
identical logic with a no-op messenger.

Image  → RecognitionCoordinator → product card / "not found"
Text   → per-state handler (fast-lane rules, IntentDetector in resting states,
         AIDirector for whatever the rules leave unanswered)
Button → ORDER_NOW_<id> / VIEW_DETAILS_<id>
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable, Optional

import database as db
import nlu
import replies
from ai_director import AIDirector
from conversation import (
    COLLECTING_STATES, RESTING_STATES, CartItem, ConversationContext, State,
    generate_order_number, new_checkout_id,
)
from images import ImageInput
from intent_detector import IntentDetector, extract_product_query
from recognition import MatchResult, RecognitionCoordinator
from replies import ProductCard
from settings_store import WorkspaceSettings

logger = logging.getLogger(__name__)

EVENT_TEXT = "text"
EVENT_IMAGE = "image"
EVENT_POSTBACK = "postback"

_ORDER_NUMBER_ATTEMPTS = 3


@dataclass
class Event:
    kind: str                            # text | image | postback
    text: str = ""
    image: Optional[ImageInput] = None   # decoded by the recognition tiers
    image_url: Optional[str] = None      # publicly fetchable copy, if any
    payload: str = ""

    @classmethod
    def from_text(cls, text: str) -> "Event":
        return cls(kind=EVENT_TEXT, text=text)

    @classmethod
    def from_image(cls, image: ImageInput, image_url: Optional[str] = None) -> "Event":
        return cls(kind=EVENT_IMAGE, image=image, image_url=image_url)

    @classmethod
    def from_postback(cls, payload: str) -> "Event":
        return cls(kind=EVENT_POSTBACK, payload=payload)

    def describe(self) -> str:
        if self.kind == EVENT_IMAGE:
            return f"[image] {self.image_url or ''}".strip()
        if self.kind == EVENT_POSTBACK:
            return f"[button] {self.payload}"
        return self.text


@dataclass
class Transition:
    reply: str
    product_card: Optional[ProductCard] = None
    order: Optional[db.Order] = None
    match: Optional[MatchResult] = None


TextHandler = Callable[
    [ConversationContext, str, WorkspaceSettings, db.Conversation], Awaitable[Transition]
]


class ConversationStateMachine:

    def __init__(
        self,
        coordinator: RecognitionCoordinator,
        intents: IntentDetector,
        director: Optional[AIDirector] = None,
        orders=db,
    ):
        self._coordinator = coordinator
        self._intents = intents
        self._director = director or AIDirector()
        self._orders = orders          # order repository: create_order / get_last_order
        self._text_handlers: dict[State, TextHandler] = {
            State.IDLE: self._on_resting_text,
            State.ORDER_CONFIRMED: self._on_resting_text,
            State.ORDER_CANCELLED: self._on_resting_text,
            State.AWAITING_PRODUCT_CONFIRMATION: self._on_product_confirmation,
            State.COLLECTING_NAME: self._on_name,
            State.COLLECTING_PHONE: self._on_phone,
            State.COLLECTING_ADDRESS: self._on_address,
            State.AWAITING_CUSTOMER_DETAILS: self._on_customer_details,
            State.CONFIRMING_ORDER: self._on_order_confirmation,
            State.AWAITING_PAYMENT_PROOF: self._on_payment_proof,
        }

    async def handle(
        self,
        ctx: ConversationContext,
        event: Event,
        settings: WorkspaceSettings,
        conversation: db.Conversation,
    ) -> Transition:
        """Mutate *ctx* (state included) for one event and return the reply."""
        if event.kind == EVENT_IMAGE:
            return await self._on_image(ctx, event, settings, conversation)
        if event.kind == EVENT_POSTBACK:
            return await self._on_postback(ctx, event.payload, settings, conversation)

        text = (event.text or "").strip()
        if not text:
            return Transition(reply=replies.help_text(settings))
        if ctx.state in COLLECTING_STATES and nlu.is_cancel(text):
            return self._cancel(ctx, settings)
        return await self._text_handlers[ctx.state](ctx, text, settings, conversation)

    # ── Images ───────────────────────────────────────────────────────────────

    async def _on_image(
        self,
        ctx: ConversationContext,
        event: Event,
        settings: WorkspaceSettings,
        conversation: db.Conversation,
    ) -> Transition:
        match = await self._coordinator.recognize(
            event.image, conversation.workspace_id, public_url=event.image_url
        )
        ctx.metadata["last_match"] = {
            "tier": match.tier,
            "product_id": match.product.id if match.product else None,
            "confidence": match.confidence,
            "image_hash": match.image_hash,
        }
        logger.info(
            "Conversation %d: image resolved at %s (confidence %.2f)",
            conversation.id, match.tier, match.confidence,
        )
        if match.product is None:
            return Transition(reply=replies.product_not_found(settings), match=match)

        self._show_product(ctx, match.product)
        return Transition(
            reply=replies.product_found(match.product, match.confidence, settings),
            product_card=replies.product_card(match.product),
            match=match,
        )

    def _show_product(self, ctx: ConversationContext, product: db.Product) -> None:
        ctx.clear(State.AWAITING_PRODUCT_CONFIRMATION)
        ctx.add_to_cart(CartItem.from_product(product))

    # ── Postbacks ────────────────────────────────────────────────────────────

    async def _on_postback(
        self,
        ctx: ConversationContext,
        payload: str,
        settings: WorkspaceSettings,
        conversation: db.Conversation,
    ) -> Transition:
        for prefix in (replies.ORDER_NOW, replies.VIEW_DETAILS):
            if not payload.startswith(prefix):
                continue
            product = await self._load_product(payload[len(prefix):], conversation.workspace_id)
            if product is None:
                return Transition(reply=replies.product_not_found(settings))
            self._show_product(ctx, product)
            if prefix == replies.ORDER_NOW:
                return self._confirm_product(ctx, settings)
            return Transition(
                reply=replies.product_details(ctx.current_item, settings)
                + "\n\n" + replies.confirm_product_prompt(settings),
            )

        logger.info("Unhandled postback payload %r", payload)
        return Transition(reply=replies.welcome(settings))

    async def _load_product(self, raw_id: str, workspace_id: str) -> Optional[db.Product]:
        try:
            product_id = int(raw_id)
        except ValueError:
            return None
        product = await db.get_product(product_id)
        if product is None or product.workspace_id != workspace_id:
            return None
        return product

    # ── Resting states ───────────────────────────────────────────────────────

    async def _on_resting_text(
        self,
        ctx: ConversationContext,
        text: str,
        settings: WorkspaceSettings,
        conversation: db.Conversation,
    ) -> Transition:
        if nlu.is_greeting(text):
            return Transition(reply=replies.welcome(settings))

        intent = await self._intents.detect(text)
        ctx.metadata["last_intent"] = {
            "intent": intent.intent, "source": intent.source, "confidence": intent.confidence,
        }

        if intent.intent == "product_search":
            query = extract_product_query(intent.entities, text)
            if not query:
                return Transition(reply=replies.help_text(settings))
            return await self._search(ctx, query, settings, conversation)
        if intent.intent == "greeting":
            return Transition(reply=replies.welcome(settings))
        if intent.intent == "order_status":
            order = await self._orders.get_last_order(conversation.id)
            return Transition(reply=replies.order_status(order, settings))
        if intent.intent in ("price_query", "general_query"):
            return Transition(reply=replies.general_info(settings))
        return await self._directed(ctx, text, settings, conversation, replies.help_text(settings))

    async def _search(
        self,
        ctx: ConversationContext,
        query: str,
        settings: WorkspaceSettings,
        conversation: db.Conversation,
    ) -> Transition:
        """Best catalog hit for *query*; confidence is the share of terms it matched."""
        terms = query.split()
        hits = await db.search_products_scored(conversation.workspace_id, terms, limit=5)
        if not hits:
            return Transition(reply=replies.search_not_found(query, settings))
        best = hits[0]
        confidence = round(100.0 * best.matched_terms / len(terms), 2)
        ctx.metadata["last_search"] = {
            "query": query, "product_id": best.product.id, "score": best.score,
        }
        self._show_product(ctx, best.product)
        return Transition(
            reply=replies.product_found(best.product, confidence, settings),
            product_card=replies.product_card(best.product),
        )

    # ── Product confirmation ─────────────────────────────────────────────────

    async def _on_product_confirmation(
        self,
        ctx: ConversationContext,
        text: str,
        settings: WorkspaceSettings,
        conversation: db.Conversation,
    ) -> Transition:
        item = ctx.current_item
        prompt = replies.confirm_product_prompt(settings)

        kind = nlu.get_interruption_type(text)
        if kind:
            return Transition(reply=replies.interruption_answer(kind, item, settings) + "\n\n" + prompt)
        if nlu.is_details_request(text):
            return Transition(reply=replies.product_details(item, settings) + "\n\n" + prompt)

        if nlu.is_yes(text):
            return self._confirm_product(ctx, settings)
        if nlu.is_no(text):
            return self._decline_product(ctx, settings)

        local = self._intents.detect_local(text)
        if local.intent == nlu.POSITIVE:
            return self._confirm_product(ctx, settings)
        if local.intent == nlu.NEGATIVE:
            return self._decline_product(ctx, settings)
        return await self._directed(ctx, text, settings, conversation, replies.yes_no_prompt(settings))

    def _confirm_product(self, ctx: ConversationContext, settings: WorkspaceSettings) -> Transition:
        item = ctx.current_item
        if item.stock_quantity <= 0:
            logger.info("Product %d is out of stock", item.product_id)
            ctx.clear(State.IDLE)
            return Transition(reply=replies.out_of_stock(item.product_name, settings))

        ctx.checkout.checkout_id = new_checkout_id()

        if settings.order_collection_style == "quick_form":
            ctx.state = State.AWAITING_CUSTOMER_DETAILS
            sizes = item.sizes if len(ctx.cart) == 1 else []
            colors = item.colors if len(ctx.cart) == 1 else []
            return Transition(reply=replies.quick_form_prompt(settings, sizes, colors))

        ctx.state = State.COLLECTING_NAME
        return Transition(reply=replies.ask_name(settings))

    def _decline_product(self, ctx: ConversationContext, settings: WorkspaceSettings) -> Transition:
        ctx.clear(State.IDLE)
        return Transition(reply=replies.product_declined(settings))

    # ── Step-by-step collection ──────────────────────────────────────────────

    def _answer_question(
        self,
        ctx: ConversationContext,
        text: str,
        settings: WorkspaceSettings,
        reprompt: str,
    ) -> Optional[Transition]:
        """Answer a mid-checkout question and repeat the pending one."""
        kind = nlu.get_interruption_type(text)
        if kind:
            answer = replies.interruption_answer(kind, ctx.current_item, settings)
            return Transition(reply=f"{answer}\n\n{reprompt}")
        if nlu.is_details_request(text) and ctx.current_item is not None:
            answer = replies.product_details(ctx.current_item, settings)
            return Transition(reply=f"{answer}\n\n{reprompt}")
        return None

    async def _on_name(
        self,
        ctx: ConversationContext,
        text: str,
        settings: WorkspaceSettings,
        conversation: db.Conversation,
    ) -> Transition:
        answered = self._answer_question(ctx, text, settings, replies.reask_name(settings))
        if answered:
            return answered
        if nlu.is_order_intent(text):
            return Transition(reply=replies.already_ordering(settings))

        name = nlu.extract_name(text)
        if not nlu.looks_like_name(name):
            return await self._directed(ctx, text, settings, conversation, replies.reask_name(settings))
        return self._take_name(ctx, name, settings)

    def _take_name(self, ctx: ConversationContext, name: str, settings: WorkspaceSettings) -> Transition:
        ctx.checkout.customer_name = name
        ctx.state = State.COLLECTING_PHONE
        return Transition(reply=replies.name_collected(name, settings))

    async def _on_phone(
        self,
        ctx: ConversationContext,
        text: str,
        settings: WorkspaceSettings,
        conversation: db.Conversation,
    ) -> Transition:
        if nlu.is_valid_phone(text):
            return self._take_phone(ctx, text, settings)

        answered = self._answer_question(ctx, text, settings, replies.ask_phone(settings))
        if answered:
            return answered
        if _has_digits(text):
            return Transition(reply=replies.invalid_phone(settings))
        return await self._directed(ctx, text, settings, conversation, replies.invalid_phone(settings))

    def _take_phone(self, ctx: ConversationContext, phone: str, settings: WorkspaceSettings) -> Transition:
        ctx.checkout.customer_phone = nlu.normalize_phone(phone)
        ctx.state = State.COLLECTING_ADDRESS
        return Transition(reply=replies.phone_collected(settings))

    async def _on_address(
        self,
        ctx: ConversationContext,
        text: str,
        settings: WorkspaceSettings,
        conversation: db.Conversation,
    ) -> Transition:
        # Length first: a real address often mentions delivery-ish words
        if nlu.is_valid_address(text):
            ctx.checkout.customer_address = text
            return self._ready_for_confirmation(ctx, settings)

        answered = self._answer_question(ctx, text, settings, replies.ask_address(settings))
        if answered:
            return answered
        return await self._directed(ctx, text, settings, conversation, replies.address_too_short(settings))

    def _ready_for_confirmation(self, ctx: ConversationContext, settings: WorkspaceSettings) -> Transition:
        address = ctx.checkout.customer_address or ""
        delivery = (
            settings.delivery_charge_inside_dhaka if nlu.is_dhaka(address)
            else settings.delivery_charge_outside_dhaka
        )
        ctx.checkout.delivery_charge = delivery
        ctx.checkout.total_amount = ctx.calculate_cart_total() + delivery
        ctx.state = State.CONFIRMING_ORDER
        return Transition(reply=replies.order_summary(ctx.cart, ctx.checkout, settings))

    # ── Quick form ───────────────────────────────────────────────────────────

    async def _on_customer_details(
        self,
        ctx: ConversationContext,
        text: str,
        settings: WorkspaceSettings,
        conversation: db.Conversation,
    ) -> Transition:
        item = ctx.current_item
        single = len(ctx.cart) == 1
        sizes = item.sizes if single else []
        colors = item.colors if single else []
        requires_size = bool(sizes)
        requires_color = len(colors) > 1

        details = nlu.parse_customer_details(text, colors)
        if details.is_empty:
            answered = self._answer_question(
                ctx, text, settings, replies.quick_form_prompt(settings, sizes, colors)
            )
            if answered:
                return answered

        phone = nlu.normalize_phone(details.phone) if details.phone else None
        phone_ok = bool(phone) and nlu.is_valid_phone(phone)

        size = None
        if details.size:
            size = next((s for s in sizes if s.upper() == details.size.upper()), None)
            if not requires_size:
                size = details.size
        color = None
        if details.color:
            color = next((c for c in colors if c.lower() == details.color.lower()), None)
            if not requires_color:
                color = details.color

        if single and details.quantity > item.stock_quantity:
            return Transition(reply=replies.stock_error(item.stock_quantity, settings))

        missing: list[str] = []
        if not details.name:
            missing.append("নাম")
        if not phone_ok:
            missing.append("সঠিক ফোন নম্বর")
        if not details.address:
            missing.append("ঠিকানা")
        if requires_size and not size:
            missing.append(f"সাইজ ({'/'.join(sizes)})")
        if requires_color and not color:
            missing.append(f"কালার ({'/'.join(colors)})")
        if missing:
            error = replies.quick_form_error(missing, settings, sizes, colors)
            if details.is_empty:
                return await self._directed(ctx, text, settings, conversation, error)
            return Transition(reply=error)

        if single:
            item.quantity = details.quantity
            item.selected_size = size
            item.selected_color = color
        ctx.checkout.customer_name = nlu.capitalize_words(details.name)
        ctx.checkout.customer_phone = phone
        ctx.checkout.customer_address = details.address
        return self._ready_for_confirmation(ctx, settings)

    # ── Order confirmation and payment ───────────────────────────────────────

    async def _on_order_confirmation(
        self,
        ctx: ConversationContext,
        text: str,
        settings: WorkspaceSettings,
        conversation: db.Conversation,
    ) -> Transition:
        if nlu.is_yes(text) or self._intents.detect_local(text).intent == nlu.POSITIVE:
            ctx.state = State.AWAITING_PAYMENT_PROOF
            return Transition(reply=replies.payment_instructions(ctx.checkout.total_amount, settings))
        if nlu.is_no(text) or self._intents.detect_local(text).intent == nlu.NEGATIVE:
            return self._cancel(ctx, settings)

        answered = self._answer_question(ctx, text, settings, replies.yes_no_prompt(settings))
        if answered:
            return answered
        return await self._directed(ctx, text, settings, conversation, replies.yes_no_prompt(settings))

    async def _on_payment_proof(
        self,
        ctx: ConversationContext,
        text: str,
        settings: WorkspaceSettings,
        conversation: db.Conversation,
    ) -> Transition:
        if not nlu.is_payment_digits(text):
            error = replies.invalid_payment_digits(settings)
            if _has_digits(text):
                return Transition(reply=error)
            return await self._directed(ctx, text, settings, conversation, error)

        if not ctx.checkout.checkout_id:
            # Context saved before checkout ids existed
            ctx.checkout.checkout_id = new_checkout_id()
        digits = nlu.to_ascii_digits(text.strip())
        order = await self._create_order(ctx, digits, conversation)

        ctx.checkout.payment_last_digits = digits
        ctx.checkout.order_number = order.order_number
        ctx.cart = []
        ctx.state = State.ORDER_CONFIRMED
        return Transition(
            reply=replies.payment_review(ctx.checkout.customer_name, digits, order.order_number, settings),
            order=order,
        )

    async def _create_order(
        self,
        ctx: ConversationContext,
        digits: str,
        conversation: db.Conversation,
    ) -> db.Order:
        items = [
            {
                "product_id": i.product_id,
                "product_name": i.product_name,
                "price": i.product_price,
                "quantity": i.quantity,
                "size": i.selected_size,
                "color": i.selected_color,
            }
            for i in ctx.cart
        ]
        checkout = ctx.checkout
        last_exc: Optional[Exception] = None
        for _ in range(_ORDER_NUMBER_ATTEMPTS):
            try:
                return await self._orders.create_order(
                    workspace_id=conversation.workspace_id,
                    conversation_id=conversation.id,
                    order_number=generate_order_number(),
                    customer_name=checkout.customer_name,
                    customer_phone=checkout.customer_phone,
                    customer_address=checkout.customer_address,
                    items=items,
                    subtotal=ctx.calculate_cart_total(),
                    delivery_charge=checkout.delivery_charge,
                    total_amount=checkout.total_amount,
                    payment_last_digits=digits,
                    is_test=conversation.is_test,
                    checkout_id=checkout.checkout_id or "",
                )
            except ValueError as exc:     # order number collision
                logger.warning("Order number clash, retrying: %s", exc)
                last_exc = exc
        raise RuntimeError("Could not allocate a unique order number") from last_exc

    # ── Director fallback ────────────────────────────────────────────────────

    async def _directed(
        self,
        ctx: ConversationContext,
        text: str,
        settings: WorkspaceSettings,
        conversation: db.Conversation,
        fallback: str,
    ) -> Transition:
        """
        Hand a message the rules could not place to the AI director. Without
        a usable decision the customer gets *fallback*, the usual re-prompt.

        Searches run only in resting states. Checkout updates are accepted
        only for the detail the current step collects, and only after the
        same validation typed input gets. Cart, order and free state changes
        stay with the rules: for those the model's reply is sent and the
        state is left alone.
        """
        decision = await self._director.decide(text, ctx, settings, conversation)
        if decision is None:
            return Transition(reply=fallback)
        ctx.metadata["last_director"] = {
            "action": decision.action, "confidence": decision.confidence,
        }

        if decision.action == "SEARCH_PRODUCTS" and ctx.state in RESTING_STATES:
            query = decision.action_data.get("searchQuery")
            if isinstance(query, str) and query.strip():
                return await self._search(ctx, query.strip(), settings, conversation)
        if decision.action == "SHOW_HELP":
            return Transition(reply=replies.help_text(settings))
        if decision.action == "RESET_CONVERSATION":
            if ctx.state in RESTING_STATES:
                ctx.clear(State.IDLE)
                return Transition(reply=replies.finish(decision.response, settings) or replies.welcome(settings))
            return self._cancel(ctx, settings)
        if decision.action == "UPDATE_CHECKOUT":
            updated = self._update_checkout(ctx, decision.action_data, settings)
            if updated is not None:
                return updated

        if not decision.response:
            return Transition(reply=fallback)
        return Transition(reply=replies.finish(decision.response, settings))

    def _update_checkout(
        self, ctx: ConversationContext, data: dict, settings: WorkspaceSettings
    ) -> Optional[Transition]:
        if ctx.state == State.COLLECTING_NAME:
            name = nlu.extract_name(_text_field(data, "customerName"))
            if nlu.looks_like_name(name):
                return self._take_name(ctx, name, settings)
        elif ctx.state == State.COLLECTING_PHONE:
            phone = _text_field(data, "customerPhone")
            if nlu.is_valid_phone(phone):
                return self._take_phone(ctx, phone, settings)
        elif ctx.state == State.COLLECTING_ADDRESS:
            address = _text_field(data, "customerAddress")
            if nlu.is_valid_address(address):
                ctx.checkout.customer_address = address
                return self._ready_for_confirmation(ctx, settings)
        return None

    # ── Shared ───────────────────────────────────────────────────────────────

    async def drain(self) -> None:
        await self._coordinator.drain()

    def _cancel(self, ctx: ConversationContext, settings: WorkspaceSettings) -> Transition:
        ctx.clear(State.ORDER_CANCELLED)
        return Transition(reply=replies.order_cancelled(settings))


def _has_digits(text: str) -> bool:
    return any(ch.isdigit() for ch in text)


def _text_field(data: dict, key: str) -> str:
    value = data.get(key)
    return value.strip() if isinstance(value, str) else ""


def snapshot(ctx: ConversationContext) -> dict:
    """Context as plain data (for logs and the sandbox)."""
    return {**asdict(ctx), "state": ctx.state.value}
