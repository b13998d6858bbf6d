"""
Tests for orchestrator.py — one inbound event end to end.

Covers:
  - image → Tier 1 match → product card, cart saved, both sides logged
  - unmatched image: state unchanged, nothing spent
  - events for one conversation are serialized; others are not blocked
  - stale save surfaces as StaleContextError
  - a corrupt stored context starts over instead of failing
  - test mode: nothing delivered, orders flagged is_test
  - rate limiting, delivery failures, image download
  - new customers get their profile name; lookup failures are harmless
  - a payment message resent after a failed save does not create a second order
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import aiosqlite
import pytest
import pytest_asyncio

import database as db
import image_hash
import orchestrator
from conftest import FakeProvider, flip_bits, to_bytes
from conversation import State, StaleContextError
from messenger import CustomerProfile, DeliveryStatus, GraphMessenger, NullMessenger
from orchestrator import ConversationLocks, InboundEvent, Orchestrator, build_orchestrator
from rate_limiter import RateLimiter
from state_machine import Event, Transition

WS = "shop1"
PAGE = "page-1"


@pytest_asyncio.fixture(autouse=True)
async def init(tmp_data_dir):
    await db.init_db()
    await db.set_page_workspace(PAGE, WS)


@pytest.fixture
def messenger() -> NullMessenger:
    return NullMessenger()


def text(msg: str, sender: str = "psid-1", **kw) -> InboundEvent:
    return InboundEvent(page_id=PAGE, sender_id=sender, event=Event.from_text(msg), **kw)


async def _usage_calls() -> int:
    stats = await db.get_usage_since(datetime.now(timezone.utc) - timedelta(hours=1))
    return stats["calls"]


# ── Image flow ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestImageFlow:
    async def test_tier1_match_end_to_end(self, red_image, messenger):
        h = image_hash.generate_hash(red_image)
        product = await db.add_product(WS, "Red Kurti", 590, stock_quantity=4, image_hashes=[flip_bits(h, 3)])
        orch = build_orchestrator(messenger=messenger, provider=FakeProvider())

        result = await orch.process_event(
            InboundEvent(page_id=PAGE, sender_id="psid-1", event=Event.from_image(red_image))
        )

        assert result.match.tier == "tier1"
        assert result.match.confidence == 95.31
        assert result.new_state == State.AWAITING_PRODUCT_CONFIRMATION
        assert result.product_card.product_id == product.id
        assert result.delivery == DeliveryStatus.SKIPPED
        assert messenger.sent[0][2].product_id == product.id

        conv = await db.get_or_create_conversation(WS, PAGE, "psid-1")
        assert conv.state == "AWAITING_PRODUCT_CONFIRMATION"
        assert [i["product_id"] for i in conv.context["cart"]] == [product.id]
        assert conv.context["cart"][0]["quantity"] == 1

        log = await db.get_messages(conv.id)
        assert [m["sender"] for m in log] == ["customer", "bot"]
        assert log[0]["type"] == "image"
        assert log[1]["type"] == "product_card"

    async def test_unmatched_image_changes_nothing(self, red_image, messenger):
        provider = FakeProvider()
        orch = build_orchestrator(messenger=messenger, provider=provider)

        result = await orch.process_event(
            InboundEvent(page_id=PAGE, sender_id="psid-1", event=Event.from_image(red_image))
        )

        assert result.match.tier == "none"
        assert result.new_state == State.IDLE
        assert result.product_card is None
        assert provider.vision_calls == 0
        assert await _usage_calls() == 0

    async def test_image_url_is_downloaded(self, red_image, messenger):
        await db.add_product(WS, "Red Kurti", 590, stock_quantity=4,
                             image_hashes=[image_hash.generate_hash(red_image)])
        orch = build_orchestrator(messenger=messenger, provider=FakeProvider())
        download = AsyncMock(return_value=(to_bytes(red_image), "image/png"))

        with patch.object(orchestrator.images, "download", download):
            result = await orch.process_event(InboundEvent(
                page_id=PAGE, sender_id="psid-1",
                event=Event(kind="image", image_url="https://cdn.example/a.png"),
            ))

        download.assert_awaited_once_with("https://cdn.example/a.png")
        assert result.match.tier == "tier1"

    async def test_unmapped_page_uses_default_workspace(self, messenger):
        orch = build_orchestrator(messenger=messenger, provider=FakeProvider())
        await orch.process_event(InboundEvent(page_id="unknown-page", sender_id="p", event=Event.from_text("hi")))
        conv = await db.get_or_create_conversation("default", "unknown-page", "p")
        assert conv.version == 1


# ── Serialization and persistence ─────────────────────────────────────────────

class SlowMachine:
    """Records how many handle() calls overlap."""

    def __init__(self):
        self.active = 0
        self.peak = 0

    async def handle(self, ctx, event, settings, conversation):
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(0.2)
        self.active -= 1
        return Transition(reply=f"echo {event.text}")

    async def drain(self):
        pass


@pytest.mark.asyncio
class TestSerialization:
    async def test_same_conversation_serialized(self, messenger):
        machine = SlowMachine()
        orch = Orchestrator(machine, messenger)

        results = await asyncio.gather(*(orch.process_event(text(f"m{i}")) for i in range(3)))

        assert all(r is not None for r in results)
        assert machine.peak == 1
        conv = await db.get_or_create_conversation(WS, PAGE, "psid-1")
        assert conv.version == 3

    async def test_different_conversations_overlap(self, messenger):
        machine = SlowMachine()
        orch = Orchestrator(machine, messenger)
        await asyncio.gather(orch.process_event(text("a", "p1")), orch.process_event(text("b", "p2")))
        assert machine.peak == 2

    async def test_stale_save_raises(self, messenger):
        orch = build_orchestrator(messenger=messenger, provider=FakeProvider())
        with patch.object(orchestrator.db, "save_conversation", AsyncMock(return_value=False)):
            with pytest.raises(StaleContextError):
                await orch.process_event(text("hi"))
        assert messenger.sent == []

    async def test_corrupt_context_starts_over(self, messenger):
        conv = await db.get_or_create_conversation(WS, PAGE, "psid-1")
        await db.save_conversation(conv.id, "CONFIRMING_ORDER", {"cart": []}, conv.version)
        orch = build_orchestrator(messenger=messenger, provider=FakeProvider())

        result = await orch.process_event(text("hi"))
        assert result.new_state == State.IDLE

    async def test_lock_registry_empties(self):
        locks = ConversationLocks()
        async with locks.hold("a"):
            assert len(locks) == 1
        assert len(locks) == 0


# ── Test mode ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestSandboxMode:
    async def test_full_order_is_flagged(self):
        live = AsyncMock()
        product = await db.add_product(WS, "Red Kurti", 590, stock_quantity=4)
        orch = build_orchestrator(messenger=live, provider=FakeProvider())

        async def send(msg):
            return await orch.process_event(
                InboundEvent(page_id=PAGE, sender_id="test-user-1", event=msg, is_test=True)
            )

        await send(Event.from_postback(f"ORDER_NOW_{product.id}"))
        for msg in ["Rahim", "01712345678", "House 5, Road 2, Dhanmondi", "yes"]:
            await send(Event.from_text(msg))
        result = await send(Event.from_text("45"))

        assert result.order_created
        assert result.delivery == DeliveryStatus.SKIPPED
        live.send_text.assert_not_called()
        live.send_product_card.assert_not_called()
        order = await db.get_order_by_number(result.order_number)
        assert order.is_test is True
        assert order.total_amount == 650


# ── Delivery and rate limiting ────────────────────────────────────────────────

@pytest.mark.asyncio
class TestDelivery:
    async def test_send_error_reported_as_failed(self):
        live = AsyncMock()
        live.send_text.side_effect = RuntimeError("graph down")
        live.fetch_profile.return_value = None
        orch = build_orchestrator(messenger=live, provider=FakeProvider())
        result = await orch.process_event(text("hi"))
        assert result.delivery == DeliveryStatus.FAILED

    async def test_rate_limited_event_dropped(self, messenger):
        orch = Orchestrator(
            SlowMachine(), messenger, rate_limiter=RateLimiter(max_events=1, window_secs=60),
        )
        assert await orch.process_event(text("one")) is not None
        assert await orch.process_event(text("two")) is None
        assert len(messenger.sent) == 1


# ── Customer profile ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestCustomerProfile:
    async def test_name_stored_for_new_customer(self):
        live = NullMessenger()
        live.fetch_profile = AsyncMock(
            return_value=CustomerProfile("Rahim Uddin", "https://cdn.example/p.jpg")
        )
        orch = build_orchestrator(messenger=live, provider=FakeProvider())

        await orch.process_event(text("hi"))
        await orch.process_event(text("hello"))

        conv = await db.get_or_create_conversation(WS, PAGE, "psid-1")
        assert conv.customer_name == "Rahim Uddin"
        assert conv.customer_profile_pic == "https://cdn.example/p.jpg"
        live.fetch_profile.assert_awaited_once_with("psid-1")

    async def test_failing_session_is_harmless(self):
        session = MagicMock()
        session.get = MagicMock(side_effect=aiohttp.ClientConnectionError("reset"))
        session.post = MagicMock(side_effect=aiohttp.ClientConnectionError("reset"))
        orch = build_orchestrator(
            messenger=GraphMessenger(page_token="tok", session=session), provider=FakeProvider()
        )

        result = await orch.process_event(text("hi"))

        assert result.new_state == State.IDLE
        assert result.delivery == DeliveryStatus.FAILED
        conv = await db.get_or_create_conversation(WS, PAGE, "psid-1")
        assert conv.customer_name == ""
        assert conv.version == 1

    async def test_lookup_error_does_not_block_event(self, messenger):
        messenger.fetch_profile = AsyncMock(side_effect=RuntimeError("boom"))
        orch = build_orchestrator(messenger=messenger, provider=FakeProvider())
        result = await orch.process_event(text("hi"))
        assert result is not None
        assert result.delivery == DeliveryStatus.SKIPPED

    async def test_known_name_not_looked_up(self, messenger):
        messenger.fetch_profile = AsyncMock(return_value=None)
        orch = build_orchestrator(messenger=messenger, provider=FakeProvider())
        await orch.process_event(text("hi", customer_name="Karim"))
        messenger.fetch_profile.assert_not_awaited()

    async def test_test_conversations_not_looked_up(self, messenger):
        messenger.fetch_profile = AsyncMock(return_value=None)
        orch = build_orchestrator(messenger=messenger, provider=FakeProvider())
        await orch.process_event(text("hi", sender="test-user-1", is_test=True))
        messenger.fetch_profile.assert_not_awaited()


# ── Order idempotency ─────────────────────────────────────────────────────────

async def _order_count() -> int:
    async with aiosqlite.connect(db.DB_PATH) as conn:
        async with conn.execute("SELECT COUNT(*) FROM orders") as cur:
            return (await cur.fetchone())[0]


@pytest.mark.asyncio
class TestOrderIdempotency:
    async def test_resent_digits_after_failed_save(self, messenger):
        product = await db.add_product(WS, "Red Kurti", 590, stock_quantity=4)
        orch = build_orchestrator(messenger=messenger, provider=FakeProvider())

        await orch.process_event(InboundEvent(
            page_id=PAGE, sender_id="psid-1", event=Event.from_postback(f"ORDER_NOW_{product.id}"),
        ))
        for msg in ["Rahim", "01712345678", "House 5, Road 2, Dhanmondi", "yes"]:
            await orch.process_event(text(msg))

        real_save = db.save_conversation
        calls = {"n": 0}

        async def save_once_stale(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                return False
            return await real_save(*args, **kwargs)

        with patch.object(orchestrator.db, "save_conversation", save_once_stale):
            with pytest.raises(StaleContextError):
                await orch.process_event(text("45"))
            result = await orch.process_event(text("45"))

        assert await _order_count() == 1
        assert result.order_created
        assert result.new_state == State.ORDER_CONFIRMED
        conv = await db.get_or_create_conversation(WS, PAGE, "psid-1")
        assert (await db.get_last_order(conv.id)).order_number == result.order_number

    async def test_next_checkout_gets_new_order(self, messenger):
        product = await db.add_product(WS, "Red Kurti", 590, stock_quantity=4)
        orch = build_orchestrator(messenger=messenger, provider=FakeProvider())

        numbers = set()
        for _ in range(2):
            await orch.process_event(InboundEvent(
                page_id=PAGE, sender_id="psid-1", event=Event.from_postback(f"ORDER_NOW_{product.id}"),
            ))
            for msg in ["Rahim", "01712345678", "House 5, Road 2, Dhanmondi", "yes"]:
                await orch.process_event(text(msg))
            numbers.add((await orch.process_event(text("45"))).order_number)

        assert await _order_count() == 2
        assert len(numbers) == 2
