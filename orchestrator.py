"""
orchestrator.py — "process one inbound event" entry point.

Shared by the live webhook and the sandbox:

  rate limit → workspace → (per-conversation lock)
    load conversation (profile lookup for new customers) + context
    → state machine → save (version-checked) → log both sides → deliver exactly one reply

Events for the same conversation are serialized by an asyncio.Lock; the
version column catches writers outside this process. Events for different
conversations run concurrently.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Hashable, Optional

import config
import database as db
import images
from ai_director import AIDirector
from conversation import ContextError, ConversationContext, State, StaleContextError
from intent_detector import IntentDetector
from messenger import DeliveryStatus, Messenger, NullMessenger
from providers.base import ModelProvider
from rate_limiter import RateLimiter
from recognition import MatchResult, RecognitionCoordinator, Uploader
from replies import ProductCard
from settings_store import SettingsService
from state_machine import EVENT_IMAGE, ConversationStateMachine, Event
from ttl_cache import TTLCache

logger = logging.getLogger(__name__)


@dataclass
class InboundEvent:
    page_id: str
    sender_id: str                 # customer PSID
    event: Event
    customer_name: str = ""
    is_test: bool = False


@dataclass
class EventResult:
    reply: str
    product_card: Optional[ProductCard]
    new_state: State
    order_created: bool
    order_number: Optional[str]
    match: Optional[MatchResult]
    delivery: DeliveryStatus


class ConversationLocks:
    """
    One asyncio.Lock per conversation key. A lock is dropped once nobody holds
    or waits on it, so the registry only grows with in-flight conversations.
    """

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class Orchestrator:

    def __init__(
        self,
        state_machine: ConversationStateMachine,
        messenger: Messenger,
        settings: Optional[SettingsService] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self._machine = state_machine
        self._messenger = messenger
        self._test_messenger = NullMessenger()
        self._settings = settings or SettingsService(TTLCache(max_size=100, ttl_seconds=300))
        self._limiter = rate_limiter or RateLimiter(
            max_events=config.RATE_MAX_EVENTS, window_secs=config.RATE_WINDOW_SECS, max_keys=500
        )
        self._locks = ConversationLocks()

    async def process_event(self, inbound: InboundEvent) -> Optional[EventResult]:
        """Run one event to completion. Returns None when the event was dropped."""
        if self._limiter.is_rate_limited(inbound.sender_id):
            logger.warning("Rate limit hit for %s; event dropped", inbound.sender_id)
            return None

        event = inbound.event
        if event.kind == EVENT_IMAGE and event.image is None and event.image_url:
            event.image, _ = await images.download(event.image_url)

        workspace_id = await db.get_workspace_for_page(inbound.page_id) or config.DEFAULT_WORKSPACE

        async with self._locks.hold((inbound.page_id, inbound.sender_id)):
            conversation = await db.get_or_create_conversation(
                workspace_id, inbound.page_id, inbound.sender_id,
                customer_name=inbound.customer_name, is_test=inbound.is_test,
            )
            if not conversation.customer_name and not conversation.is_test:
                await self._fill_profile(conversation)
            try:
                ctx = ConversationContext.from_dict(conversation.state, conversation.context)
            except ContextError as exc:
                logger.warning("Conversation %d has a bad context, starting over: %s",
                               conversation.id, exc)
                ctx = ConversationContext()

            settings = await self._settings.get(conversation.workspace_id)
            await db.log_message(conversation.id, "customer", event.describe(), event.kind)

            transition = await self._machine.handle(ctx, event, settings, conversation)

            saved = await db.save_conversation(
                conversation.id, ctx.state.value, ctx.to_dict(), conversation.version
            )
            if not saved:
                raise StaleContextError(f"conversation {conversation.id} changed underneath us")

            message_type = "product_card" if transition.product_card else "text"
            await db.log_message(conversation.id, "bot", transition.reply, message_type)

            delivery = await self._deliver(
                conversation.is_test, inbound.sender_id, transition.reply, transition.product_card
            )

        order = transition.order
        logger.info(
            "Conversation %d → %s (delivery %s%s)",
            conversation.id, ctx.state.value, delivery.value,
            f", order {order.order_number}" if order else "",
        )
        return EventResult(
            reply=transition.reply,
            product_card=transition.product_card,
            new_state=ctx.state,
            order_created=order is not None,
            order_number=order.order_number if order else None,
            match=transition.match,
            delivery=delivery,
        )

    async def _fill_profile(self, conversation: db.Conversation) -> None:
        """Best-effort name lookup; a failed lookup is retried on the next event."""
        try:
            profile = await self._messenger.fetch_profile(conversation.customer_psid)
        except Exception as exc:
            logger.warning("Profile lookup for %s failed: %s", conversation.customer_psid, exc)
            return
        if profile is None:
            return
        await db.update_customer_profile(conversation.id, profile.name, profile.profile_pic)
        conversation.customer_name = profile.name
        conversation.customer_profile_pic = profile.profile_pic

    async def _deliver(
        self,
        is_test: bool,
        recipient_id: str,
        text: str,
        card: Optional[ProductCard],
    ) -> DeliveryStatus:
        messenger = self._test_messenger if is_test else self._messenger
        try:
            if card is not None:
                return await messenger.send_product_card(recipient_id, card, text)
            return await messenger.send_text(recipient_id, text)
        except Exception as exc:
            logger.error("Delivery to %s failed: %s", recipient_id, exc)
            return DeliveryStatus.FAILED

    async def drain(self) -> None:
        """Wait for background Tier 3 work (shutdown)."""
        await self._machine.drain()


def build_orchestrator(
    messenger: Optional[Messenger] = None,
    provider: Optional[ModelProvider] = None,
    uploader: Optional[Uploader] = None,
) -> Orchestrator:
    """Wire the default collaborators."""
    coordinator = RecognitionCoordinator(provider=provider, uploader=uploader)
    machine = ConversationStateMachine(
        coordinator, IntentDetector(provider=provider), AIDirector(provider=provider)
    )
    return Orchestrator(machine, messenger or NullMessenger())
