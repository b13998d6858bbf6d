"""
Tests for database.py.

Covers:
  - DB path defaults to data/ subdirectory
  - Schema creation (init_db is idempotent)
  - Products: add, get, per-workspace listing, index update, scored keyword search
  - Pages → workspace mapping
  - Conversations: get-or-create, version-checked save, reset, message log,
    customer profile
  - Recognition cache rows and the API usage ledger
  - Orders: create, unique order number, one order per checkout, lookups
  - Workspace settings and API key CRUD
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio

import database as db

WS = "shop1"


@pytest_asyncio.fixture(autouse=True)
async def init(tmp_data_dir):
    """Initialise the DB schema before every test."""
    await db.init_db()


def _hour_ago() -> datetime:
    return datetime.now(timezone.utc) - timedelta(hours=1)


# ── DB path ────────────────────────────────────────────────────────────────────

class TestDbPath:
    def test_db_path_inside_data_dir(self, tmp_data_dir):
        assert Path(db.DB_PATH).parent == tmp_data_dir


# ── init_db ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestInitDb:
    async def test_idempotent(self):
        """Calling init_db twice must not raise."""
        await db.init_db()
        await db.init_db()

    async def test_db_file_created(self, tmp_data_dir):
        assert Path(db.DB_PATH).exists()


# ── Products ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestProducts:
    async def test_add_and_get(self):
        p = await db.add_product(
            WS, "Red Kurti", 590, description="cotton", sizes=["M", "L"], colors=["Red"],
            image_hashes=["a" * 16], visual_features={"aspect_ratio": 0.67, "dominant_colors": []},
        )
        got = await db.get_product(p.id)
        assert got == p
        assert got.sizes == ["M", "L"]
        assert got.image_hashes == ["a" * 16]
        assert got.search_keywords is None

    async def test_missing_product(self):
        assert await db.get_product(404) is None

    async def test_listing_is_per_workspace_in_id_order(self):
        a = await db.add_product(WS, "A", 1)
        await db.add_product("other", "B", 1)
        c = await db.add_product(WS, "C", 1)
        assert [p.id for p in await db.get_products(WS)] == [a.id, c.id]

    async def test_update_index(self):
        p = await db.add_product(WS, "A", 1)
        assert await db.update_product_index(p.id, ["b" * 16], None) is True
        assert (await db.get_product(p.id)).image_hashes == ["b" * 16]
        assert await db.update_product_index(999, [], None) is False

    async def test_search_any_column(self):
        by_name = await db.add_product(WS, "Red Saree", 900)
        by_desc = await db.add_product(WS, "Kurti", 590, description="red embroidered")
        by_kw = await db.add_product(WS, "Panjabi", 1200, search_keywords=["eid special"])
        await db.add_product("other", "Red Saree", 900)

        found = await db.search_products(WS, ["RED"])
        assert [p.id for p in found] == [by_name.id, by_desc.id]
        assert [p.id for p in await db.search_products(WS, ["eid"])] == [by_kw.id]

    async def test_search_limit_and_blank(self):
        for i in range(4):
            await db.add_product(WS, f"Saree {i}", 900)
        assert len(await db.search_products(WS, ["saree"], limit=2)) == 2
        assert await db.search_products(WS, [" ", ""]) == []

    async def test_search_ranked_by_score_then_id(self):
        polo = await db.add_product(WS, "Red Polo Shirt", 700)
        saree = await db.add_product(WS, "Red Silk Saree", 2500, search_keywords=["saree"])
        tie = await db.add_product(WS, "Red Cotton Saree", 1800, search_keywords=["saree"])

        found = await db.search_products(WS, ["saree", "red"])
        assert [p.id for p in found] == [saree.id, tie.id, polo.id]

    async def test_search_scores_per_field(self):
        await db.add_product(WS, "Blue Saree", 900, description="silk", category="saree",
                             search_keywords=["saree", "silk"])
        hits = await db.search_products_scored(WS, ["saree", "silk", "jamdani"])
        assert len(hits) == 1
        # saree: keywords 4 + name 3 + category 1; silk: keywords 4 + description 2
        assert hits[0].score == 14
        assert hits[0].matched_terms == 2

    async def test_search_matches_category(self):
        p = await db.add_product(WS, "Eid Collection 12", 1500, category="Panjabi")
        assert [h.product.id for h in await db.search_products_scored(WS, ["panjabi"])] == [p.id]


# ── Pages ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestPages:
    async def test_mapping(self):
        assert await db.get_workspace_for_page("p1") is None
        await db.set_page_workspace("p1", WS)
        assert await db.get_workspace_for_page("p1") == WS

    async def test_remap(self):
        await db.set_page_workspace("p1", WS)
        await db.set_page_workspace("p1", "shop2", "Shop Two")
        assert await db.get_workspace_for_page("p1") == "shop2"


# ── Conversations ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestConversations:
    async def test_get_or_create_is_stable(self):
        first = await db.get_or_create_conversation(WS, "page", "psid", customer_name="Rahim")
        again = await db.get_or_create_conversation(WS, "page", "psid")
        assert first.id == again.id
        assert first.state == "IDLE"
        assert first.context == {}
        assert first.version == 0
        assert first.is_test is False

    async def test_test_flag(self):
        conv = await db.get_or_create_conversation(WS, "page", "test-user-1", is_test=True)
        assert conv.is_test is True

    async def test_version_checked_save(self):
        conv = await db.get_or_create_conversation(WS, "page", "psid")
        assert await db.save_conversation(conv.id, "COLLECTING_NAME", {"cart": [1]}, 0) is True
        # A second writer that read version 0 loses
        assert await db.save_conversation(conv.id, "IDLE", {}, 0) is False

        stored = await db.get_conversation(conv.id)
        assert stored.state == "COLLECTING_NAME"
        assert stored.context == {"cart": [1]}
        assert stored.version == 1

    async def test_bangla_context_round_trip(self):
        conv = await db.get_or_create_conversation(WS, "page", "psid")
        await db.save_conversation(conv.id, "IDLE", {"name": "করিম"}, conv.version)
        assert (await db.get_conversation(conv.id)).context == {"name": "করিম"}

    async def test_reset(self):
        conv = await db.get_or_create_conversation(WS, "page", "psid")
        await db.save_conversation(conv.id, "COLLECTING_NAME", {"cart": [1]}, 0)
        await db.reset_conversation(conv.id)
        stored = await db.get_conversation(conv.id)
        assert (stored.state, stored.context, stored.version) == ("IDLE", {}, 2)

    async def test_message_log_in_order(self):
        conv = await db.get_or_create_conversation(WS, "page", "psid")
        await db.log_message(conv.id, "customer", "hi")
        await db.log_message(conv.id, "bot", "welcome", "text")
        await db.log_message(conv.id, "customer", "[image]", "image")
        log = await db.get_messages(conv.id)
        assert [(m["sender"], m["type"]) for m in log] == [
            ("customer", "text"), ("bot", "text"), ("customer", "image"),
        ]

    async def test_latest_messages_window(self):
        conv = await db.get_or_create_conversation(WS, "page", "psid")
        for i in range(7):
            await db.log_message(conv.id, "customer", f"m{i}")
        recent = await db.get_messages(conv.id, limit=3, latest=True)
        assert [m["text"] for m in recent] == ["m4", "m5", "m6"]

    async def test_profile_update_keeps_version(self):
        conv = await db.get_or_create_conversation(WS, "page", "psid")
        await db.update_customer_profile(conv.id, "Rahim Uddin", "https://cdn.example/p.jpg")
        stored = await db.get_conversation(conv.id)
        assert stored.customer_name == "Rahim Uddin"
        assert stored.customer_profile_pic == "https://cdn.example/p.jpg"
        assert stored.version == conv.version


# ── Recognition cache rows ─────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestCacheRows:
    async def test_expiry_filter_and_sweep(self):
        now = datetime.now(timezone.utc)
        await db.upsert_cache_row("old", 1, 80.0, "{}", db._iso(now - timedelta(seconds=1)))
        await db.upsert_cache_row("new", None, 0.0, "{}", db._iso(now + timedelta(days=1)))

        assert await db.get_cache_row("old", db._iso(now)) is None
        assert await db.get_cache_row("new", db._iso(now)) is not None
        assert await db.delete_expired_cache(db._iso(now)) == 1
        assert await db.delete_expired_cache(db._iso(now)) == 0


# ── API usage ledger ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestApiUsage:
    async def test_aggregates(self):
        await db.log_api_usage(WS, "openai_vision", 0.0005, "h1", 1000, 500)
        await db.log_api_usage(WS, "openai_vision", 0.0005, "h2", 1000, 500)
        await db.log_api_usage("other", "openai_intent", 0.0001)

        all_ws = await db.get_usage_since(_hour_ago())
        assert all_ws["calls"] == 3
        assert all_ws["total_cost"] == pytest.approx(0.0011)
        assert all_ws["by_type"][0][0] == "openai_vision"

        one = await db.get_usage_since(_hour_ago(), WS)
        assert one["calls"] == 2
        assert one["by_type"] == [("openai_vision", pytest.approx(0.001), 2)]

    async def test_window(self):
        await db.log_api_usage(WS, "openai_vision", 0.0005)
        future = datetime.now(timezone.utc) + timedelta(minutes=5)
        assert (await db.get_usage_since(future))["calls"] == 0


# ── Orders ─────────────────────────────────────────────────────────────────────

async def _order(conversation_id: int, number: str = "123456789", **kw) -> db.Order:
    defaults = dict(
        workspace_id=WS, conversation_id=conversation_id, order_number=number,
        customer_name="Rahim", customer_phone="01712345678", customer_address="Dhanmondi, Dhaka",
        items=[{"product_id": 1, "product_name": "কুর্তি", "price": 590, "quantity": 1}],
        subtotal=590, delivery_charge=60, total_amount=650, payment_last_digits="45",
    )
    defaults.update(kw)
    return await db.create_order(**defaults)


@pytest.mark.asyncio
class TestOrders:
    async def test_create(self):
        order = await _order(1)
        assert order.status == "pending"
        assert order.items[0]["product_name"] == "কুর্তি"
        assert order.total_amount == 650
        assert order.is_test is False
        assert order.created_at.tzinfo is not None

    async def test_duplicate_number_rejected(self):
        await _order(1)
        with pytest.raises(ValueError, match="already exists"):
            await _order(2)

    async def test_lookup_by_number(self):
        await _order(1, is_test=True)
        found = await db.get_order_by_number("123456789")
        assert found.is_test is True
        assert await db.get_order_by_number("000000000") is None

    async def test_last_order_for_conversation(self):
        await _order(7, "111111111")
        await _order(7, "222222222")
        await _order(8, "333333333")
        assert (await db.get_last_order(7)).order_number == "222222222"
        assert await db.get_last_order(9) is None

    async def test_same_checkout_returns_existing(self):
        first = await _order(1, "111111111", checkout_id="c-1")
        again = await _order(1, "222222222", checkout_id="c-1")
        assert again.id == first.id
        assert again.order_number == "111111111"
        assert await db.get_order_by_number("222222222") is None
        assert (await db.get_order_for_checkout(1, "c-1")).id == first.id

    async def test_checkout_scoped_to_conversation(self):
        a = await _order(1, "111111111", checkout_id="c-1")
        b = await _order(2, "222222222", checkout_id="c-1")
        assert a.id != b.id

    async def test_without_checkout_not_deduplicated(self):
        await _order(1, "111111111")
        await _order(1, "222222222")
        assert await db.get_order_for_checkout(1, "") is None
        assert (await db.get_last_order(1)).order_number == "222222222"


# ── Workspace settings ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestSettings:
    async def test_set_get_delete(self):
        assert await db.get_setting(WS, "tone") is None
        await db.set_setting(WS, "tone", "casual")
        await db.set_setting(WS, "tone", "professional")
        assert await db.get_setting(WS, "tone") == "professional"
        assert await db.get_setting("other", "tone") is None
        await db.delete_setting(WS, "tone")
        assert await db.get_setting(WS, "tone") is None


# ── API keys ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestApiKeys:
    async def test_set_get_delete(self):
        await db.set_api_key("openai_api_key", "sk-1")
        assert await db.get_api_key("openai_api_key") == "sk-1"
        await db.delete_api_key("openai_api_key")
        assert await db.get_api_key("openai_api_key") is None
