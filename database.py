"""
database.py — async SQLite persistence via aiosqlite.

Tables:
  products            — catalog rows with image hashes, visual features, keywords
  pages               — messaging page → workspace mapping
  conversations       — one row per (page, customer); typed context as JSON
  messages            — transcript of customer/bot messages
  recognition_cache   — Tier 3 verdicts keyed by image hash (30-day TTL)
  api_usage           — append-only AI cost ledger
  orders              — orders persisted on confirmation
  workspace_settings  — per-workspace overrides of settings_store defaults
  api_keys            — API keys set at runtime (override .env values)

The DB file is created automatically on first run.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import aiosqlite

logger = logging.getLogger(__name__)

# Store the DB in a dedicated data/ directory so Docker volume mounts work
# correctly (mount ./data:/app/data) and the file survives container restarts.
_DATA_DIR = Path(os.getenv("DATA_DIR", "data"))
_DATA_DIR.mkdir(parents=True, exist_ok=True)

DB_PATH = str(_DATA_DIR / "shopbot.db")
_lock = asyncio.Lock()          # serialise schema migrations


def _iso(dt: datetime) -> str:
    # Fixed-width timestamps so TEXT comparison in SQL matches time order
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def utcnow_iso() -> str:
    return _iso(datetime.now(timezone.utc))


def _loads(raw: Optional[str], default: Any = None) -> Any:
    if raw is None or raw == "":
        return default
    return json.loads(raw)


# ── Data models ───────────────────────────────────────────────────────────────

@dataclass
class Product:
    id: int
    workspace_id: str
    name: str
    description: str
    price: float
    category: str
    stock_quantity: int
    image_url: str
    sizes: list[str] = field(default_factory=list)
    colors: list[str] = field(default_factory=list)
    image_hashes: list[str] = field(default_factory=list)    # [full, center, square]
    visual_features: Optional[dict] = None                   # FeatureVector.to_dict()
    search_keywords: Optional[list[str]] = None
    dominant_colors: list[str] = field(default_factory=list)  # colour names, e.g. "red"


@dataclass
class Conversation:
    id: int
    workspace_id: str
    page_id: str
    customer_psid: str
    customer_name: str
    state: str
    context: dict
    version: int                # optimistic-concurrency counter
    is_test: bool
    customer_profile_pic: str = ""


@dataclass
class Order:
    id: int
    workspace_id: str
    conversation_id: int
    order_number: str
    customer_name: str
    customer_phone: str
    customer_address: str
    items: list[dict]
    subtotal: float
    delivery_charge: float
    total_amount: float
    payment_last_digits: str
    status: str
    is_test: bool
    created_at: datetime
    checkout_id: str = ""      # one order per checkout


# ── Schema ────────────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS products (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    workspace_id    TEXT    NOT NULL,
    name            TEXT    NOT NULL,
    description     TEXT    NOT NULL DEFAULT '',
    price           REAL    NOT NULL DEFAULT 0,
    category        TEXT    NOT NULL DEFAULT '',
    stock_quantity  INTEGER NOT NULL DEFAULT 0,
    image_url       TEXT    NOT NULL DEFAULT '',
    sizes           TEXT    NOT NULL DEFAULT '[]',
    colors          TEXT    NOT NULL DEFAULT '[]',
    image_hashes    TEXT    NOT NULL DEFAULT '[]',
    visual_features TEXT,
    search_keywords TEXT,
    dominant_colors TEXT    NOT NULL DEFAULT '[]',
    created_at      TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_products_workspace ON products (workspace_id);

CREATE TABLE IF NOT EXISTS pages (
    page_id      TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL,
    page_name    TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS conversations (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    workspace_id    TEXT    NOT NULL,
    page_id         TEXT    NOT NULL,
    customer_psid   TEXT    NOT NULL,
    customer_name   TEXT    NOT NULL DEFAULT '',
    state           TEXT    NOT NULL DEFAULT 'IDLE',
    context         TEXT    NOT NULL DEFAULT '{}',
    version         INTEGER NOT NULL DEFAULT 0,
    is_test         INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT    NOT NULL,
    last_message_at TEXT    NOT NULL,
    UNIQUE (page_id, customer_psid)
);

CREATE TABLE IF NOT EXISTS messages (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id INTEGER NOT NULL,
    sender          TEXT    NOT NULL,             -- customer | bot
    message_text    TEXT    NOT NULL DEFAULT '',
    message_type    TEXT    NOT NULL DEFAULT 'text',
    created_at      TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_messages_conv ON messages (conversation_id);

-- Tier 3 verdicts; matched_product_id NULL marks a negative result
CREATE TABLE IF NOT EXISTS recognition_cache (
    image_hash         TEXT PRIMARY KEY,
    matched_product_id INTEGER,
    confidence_score   REAL NOT NULL DEFAULT 0,
    ai_response        TEXT NOT NULL DEFAULT '{}',
    created_at         TEXT NOT NULL,
    expires_at         TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_cache_expires ON recognition_cache (expires_at);

-- Per-call AI cost ledger (append-only)
CREATE TABLE IF NOT EXISTS api_usage (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    workspace_id  TEXT    NOT NULL,
    api_type      TEXT    NOT NULL,
    cost          REAL    NOT NULL DEFAULT 0,
    image_hash    TEXT    NOT NULL DEFAULT '',
    input_tokens  INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    created_at    TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_usage_created ON api_usage (created_at);

CREATE TABLE IF NOT EXISTS orders (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    workspace_id        TEXT    NOT NULL,
    conversation_id     INTEGER NOT NULL,
    order_number        TEXT    NOT NULL UNIQUE,
    customer_name       TEXT    NOT NULL,
    customer_phone      TEXT    NOT NULL,
    customer_address    TEXT    NOT NULL,
    items               TEXT    NOT NULL DEFAULT '[]',
    subtotal            REAL    NOT NULL DEFAULT 0,
    delivery_charge     REAL    NOT NULL DEFAULT 0,
    total_amount        REAL    NOT NULL DEFAULT 0,
    payment_last_digits TEXT    NOT NULL DEFAULT '',
    status              TEXT    NOT NULL DEFAULT 'pending',
    created_at          TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS workspace_settings (
    workspace_id TEXT NOT NULL,
    key          TEXT NOT NULL,
    value        TEXT NOT NULL,
    updated_at   TEXT NOT NULL,
    PRIMARY KEY (workspace_id, key)
);

-- API keys set at runtime (override .env values)
CREATE TABLE IF NOT EXISTS api_keys (
    key_name   TEXT PRIMARY KEY,
    key_value  TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

_MIGRATIONS = [
    # Sandbox orders are kept apart from real sales figures
    "ALTER TABLE orders ADD COLUMN is_test INTEGER NOT NULL DEFAULT 0",
    "ALTER TABLE conversations ADD COLUMN customer_profile_pic TEXT NOT NULL DEFAULT ''",
    # A resent payment message must not create a second order for the same checkout
    "ALTER TABLE orders ADD COLUMN checkout_id TEXT NOT NULL DEFAULT ''",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_checkout "
    "ON orders (conversation_id, checkout_id) WHERE checkout_id != ''",
]


async def init_db() -> None:
    """Create tables if they don't exist. Safe to call multiple times."""
    async with _lock:
        async with aiosqlite.connect(DB_PATH) as db:
            await db.executescript(_SCHEMA)
            # Additive migrations raise if already applied
            for sql in _MIGRATIONS:
                try:
                    await db.execute(sql)
                except aiosqlite.OperationalError:
                    pass   # already applied
            await db.commit()
    logger.info("Database initialised at %s", DB_PATH)


# ── Products ──────────────────────────────────────────────────────────────────

_PRODUCT_COLS = (
    "id, workspace_id, name, description, price, category, stock_quantity, "
    "image_url, sizes, colors, image_hashes, visual_features, search_keywords, "
    "dominant_colors"
)


def _row_to_product(r) -> Product:
    return Product(
        id=r[0], workspace_id=r[1], name=r[2], description=r[3],
        price=r[4], category=r[5], stock_quantity=r[6], image_url=r[7],
        sizes=_loads(r[8], []), colors=_loads(r[9], []),
        image_hashes=_loads(r[10], []), visual_features=_loads(r[11]),
        search_keywords=_loads(r[12]), dominant_colors=_loads(r[13], []),
    )


async def add_product(
    workspace_id: str,
    name: str,
    price: float,
    description: str = "",
    category: str = "",
    stock_quantity: int = 0,
    image_url: str = "",
    sizes: Optional[list[str]] = None,
    colors: Optional[list[str]] = None,
    search_keywords: Optional[list[str]] = None,
    dominant_colors: Optional[list[str]] = None,
    image_hashes: Optional[list[str]] = None,
    visual_features: Optional[dict] = None,
) -> Product:
    now = utcnow_iso()
    async with aiosqlite.connect(DB_PATH) as db:
        cur = await db.execute(
            """INSERT INTO products
               (workspace_id, name, description, price, category, stock_quantity,
                image_url, sizes, colors, image_hashes, visual_features,
                search_keywords, dominant_colors, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                workspace_id, name, description, price, category, stock_quantity,
                image_url,
                json.dumps(sizes or []),
                json.dumps(colors or []),
                json.dumps(image_hashes or []),
                json.dumps(visual_features) if visual_features is not None else None,
                json.dumps(search_keywords) if search_keywords is not None else None,
                json.dumps(dominant_colors or []),
                now,
            ),
        )
        await db.commit()
        product_id = cur.lastrowid
    return await get_product(product_id)


async def get_product(product_id: int) -> Optional[Product]:
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            f"SELECT {_PRODUCT_COLS} FROM products WHERE id = ?", (product_id,)
        ) as cur:
            row = await cur.fetchone()
    return _row_to_product(row) if row else None


async def get_products(workspace_id: str) -> list[Product]:
    """All products of a workspace, lowest id first (the match tie-break order)."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            f"SELECT {_PRODUCT_COLS} FROM products WHERE workspace_id = ? ORDER BY id",
            (workspace_id,),
        ) as cur:
            rows = await cur.fetchall()
    return [_row_to_product(r) for r in rows]


async def update_product_index(
    product_id: int,
    image_hashes: list[str],
    visual_features: Optional[dict],
) -> bool:
    """Store freshly computed hashes / features for a catalog product."""
    async with aiosqlite.connect(DB_PATH) as db:
        cur = await db.execute(
            "UPDATE products SET image_hashes = ?, visual_features = ? WHERE id = ?",
            (
                json.dumps(image_hashes),
                json.dumps(visual_features) if visual_features is not None else None,
                product_id,
            ),
        )
        await db.commit()
        return cur.rowcount > 0


@dataclass
class SearchHit:
    product: Product
    score: int
    matched_terms: int          # query keywords that hit at least one field


# Points per keyword found in a field
_SEARCH_WEIGHTS = {"keywords": 4, "name": 3, "description": 2, "category": 1}


def score_product(product: Product, keywords: list[str]) -> SearchHit:
    name = product.name.lower()
    description = product.description.lower()
    category = product.category.lower()
    tags = [k.lower() for k in product.search_keywords or []]

    score = matched = 0
    for kw in keywords:
        points = 0
        if any(kw in tag for tag in tags):
            points += _SEARCH_WEIGHTS["keywords"]
        if kw in name:
            points += _SEARCH_WEIGHTS["name"]
        if kw in description:
            points += _SEARCH_WEIGHTS["description"]
        if kw in category:
            points += _SEARCH_WEIGHTS["category"]
        if points:
            matched += 1
            score += points
    return SearchHit(product=product, score=score, matched_terms=matched)


async def search_products_scored(
    workspace_id: str, keywords: list[str], limit: int = 5
) -> list[SearchHit]:
    """
    Case-insensitive keyword search across name, description, category and
    search_keywords. SQL narrows the candidates to products where any keyword
    appears; each candidate is then scored per keyword and field. Best score
    first, lowest id on ties.
    """
    keywords = [k.strip().lower() for k in keywords if k.strip()]
    if not keywords:
        return []

    clauses = []
    params: list[Any] = [workspace_id]
    for kw in keywords:
        clauses.append(
            "(LOWER(name) LIKE ? OR LOWER(description) LIKE ? OR LOWER(category) LIKE ? "
            "OR LOWER(COALESCE(search_keywords, '')) LIKE ?)"
        )
        like = f"%{kw}%"
        params += [like, like, like, like]

    sql = (
        f"SELECT {_PRODUCT_COLS} FROM products WHERE workspace_id = ? "
        f"AND ({' OR '.join(clauses)}) ORDER BY id"
    )
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(sql, params) as cur:
            rows = await cur.fetchall()

    hits = [score_product(_row_to_product(r), keywords) for r in rows]
    hits = [h for h in hits if h.score > 0]
    hits.sort(key=lambda h: (-h.score, h.product.id))
    return hits[:limit]


async def search_products(workspace_id: str, keywords: list[str], limit: int = 5) -> list[Product]:
    """Products only, in search_products_scored order."""
    return [h.product for h in await search_products_scored(workspace_id, keywords, limit)]


# ── Pages ─────────────────────────────────────────────────────────────────────

async def set_page_workspace(page_id: str, workspace_id: str, page_name: str = "") -> None:
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO pages (page_id, workspace_id, page_name) VALUES (?, ?, ?)
               ON CONFLICT(page_id) DO UPDATE SET
                   workspace_id = excluded.workspace_id,
                   page_name    = excluded.page_name""",
            (page_id, workspace_id, page_name),
        )
        await db.commit()


async def get_workspace_for_page(page_id: str) -> Optional[str]:
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            "SELECT workspace_id FROM pages WHERE page_id = ?", (page_id,)
        ) as cur:
            row = await cur.fetchone()
            return row[0] if row else None


# ── Conversations ─────────────────────────────────────────────────────────────

_CONV_COLS = (
    "id, workspace_id, page_id, customer_psid, customer_name, state, context, "
    "version, is_test, customer_profile_pic"
)


def _row_to_conversation(r) -> Conversation:
    return Conversation(
        id=r[0], workspace_id=r[1], page_id=r[2], customer_psid=r[3],
        customer_name=r[4], state=r[5], context=_loads(r[6], {}),
        version=r[7], is_test=bool(r[8]), customer_profile_pic=r[9],
    )


async def get_conversation(conversation_id: int) -> Optional[Conversation]:
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            f"SELECT {_CONV_COLS} FROM conversations WHERE id = ?", (conversation_id,)
        ) as cur:
            row = await cur.fetchone()
    return _row_to_conversation(row) if row else None


async def get_or_create_conversation(
    workspace_id: str,
    page_id: str,
    customer_psid: str,
    customer_name: str = "",
    is_test: bool = False,
) -> Conversation:
    """Return the conversation for (page, customer), creating an IDLE one if new."""
    now = utcnow_iso()
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT OR IGNORE INTO conversations
               (workspace_id, page_id, customer_psid, customer_name, state,
                context, version, is_test, created_at, last_message_at)
               VALUES (?, ?, ?, ?, 'IDLE', '{}', 0, ?, ?, ?)""",
            (workspace_id, page_id, customer_psid, customer_name, int(is_test), now, now),
        )
        await db.commit()
        async with db.execute(
            f"SELECT {_CONV_COLS} FROM conversations WHERE page_id = ? AND customer_psid = ?",
            (page_id, customer_psid),
        ) as cur:
            row = await cur.fetchone()
    return _row_to_conversation(row)


async def update_customer_profile(conversation_id: int, name: str, profile_pic: str = "") -> None:
    """Store the channel profile; leaves the context version alone."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            "UPDATE conversations SET customer_name = ?, customer_profile_pic = ? WHERE id = ?",
            (name, profile_pic, conversation_id),
        )
        await db.commit()


async def save_conversation(
    conversation_id: int,
    state: str,
    context: dict,
    expected_version: int,
) -> bool:
    """
    Write state + context only if nobody else wrote since we read it.
    Returns False when the stored version moved on (stale read).
    """
    async with aiosqlite.connect(DB_PATH) as db:
        cur = await db.execute(
            """UPDATE conversations
               SET state = ?, context = ?, version = version + 1, last_message_at = ?
               WHERE id = ? AND version = ?""",
            (state, json.dumps(context, ensure_ascii=False), utcnow_iso(),
             conversation_id, expected_version),
        )
        await db.commit()
        return cur.rowcount > 0


async def reset_conversation(conversation_id: int) -> None:
    """Back to IDLE with an empty cart/checkout (used by the sandbox entry point)."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """UPDATE conversations
               SET state = 'IDLE', context = '{}', version = version + 1, last_message_at = ?
               WHERE id = ?""",
            (utcnow_iso(), conversation_id),
        )
        await db.commit()


async def log_message(
    conversation_id: int,
    sender: str,
    message_text: str,
    message_type: str = "text",
) -> None:
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO messages (conversation_id, sender, message_text, message_type, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (conversation_id, sender, message_text, message_type, utcnow_iso()),
        )
        await db.commit()


async def get_messages(conversation_id: int, limit: int = 50, latest: bool = False) -> list[dict]:
    """Oldest first. With latest=True the window is the last `limit` messages."""
    order = "DESC" if latest else "ASC"
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            f"""SELECT sender, message_text, message_type, created_at FROM messages
                WHERE conversation_id = ? ORDER BY id {order} LIMIT ?""",
            (conversation_id, limit),
        ) as cur:
            rows = await cur.fetchall()
    if latest:
        rows = list(reversed(rows))
    return [
        {"sender": r[0], "text": r[1], "type": r[2], "created_at": r[3]}
        for r in rows
    ]


# ── Recognition cache ─────────────────────────────────────────────────────────

async def get_cache_row(image_hash: str, now_iso: str) -> Optional[tuple]:
    """Return (product_id, confidence, ai_response_json, expires_at) if not expired."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            """SELECT matched_product_id, confidence_score, ai_response, expires_at
               FROM recognition_cache WHERE image_hash = ? AND expires_at > ?""",
            (image_hash, now_iso),
        ) as cur:
            return await cur.fetchone()


async def upsert_cache_row(
    image_hash: str,
    product_id: Optional[int],
    confidence: float,
    ai_response: str,
    expires_at: str,
) -> None:
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO recognition_cache
               (image_hash, matched_product_id, confidence_score, ai_response, created_at, expires_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(image_hash) DO UPDATE SET
                   matched_product_id = excluded.matched_product_id,
                   confidence_score   = excluded.confidence_score,
                   ai_response        = excluded.ai_response,
                   created_at         = excluded.created_at,
                   expires_at         = excluded.expires_at""",
            (image_hash, product_id, confidence, ai_response, utcnow_iso(), expires_at),
        )
        await db.commit()


async def delete_expired_cache(now_iso: str) -> int:
    async with aiosqlite.connect(DB_PATH) as db:
        cur = await db.execute(
            "DELETE FROM recognition_cache WHERE expires_at <= ?", (now_iso,)
        )
        await db.commit()
        return cur.rowcount


# ── API usage ledger ──────────────────────────────────────────────────────────

async def log_api_usage(
    workspace_id: str,
    api_type: str,
    cost: float,
    image_hash: str = "",
    input_tokens: int = 0,
    output_tokens: int = 0,
) -> None:
    """Append one row to the cost ledger."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO api_usage
               (workspace_id, api_type, cost, image_hash, input_tokens, output_tokens, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (workspace_id, api_type, cost, image_hash, input_tokens, output_tokens, utcnow_iso()),
        )
        await db.commit()


async def get_usage_since(since: datetime, workspace_id: Optional[str] = None) -> dict:
    """Aggregate ledger rows since *since*, optionally for one workspace."""
    where = "created_at >= ?"
    params: list[Any] = [_iso(since)]
    if workspace_id is not None:
        where += " AND workspace_id = ?"
        params.append(workspace_id)

    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            f"SELECT COUNT(*), COALESCE(SUM(cost), 0) FROM api_usage WHERE {where}", params
        ) as cur:
            calls, total = await cur.fetchone()
        async with db.execute(
            f"""SELECT api_type, SUM(cost), COUNT(*) FROM api_usage WHERE {where}
                GROUP BY api_type ORDER BY SUM(cost) DESC""",
            params,
        ) as cur:
            by_type = [(r[0], r[1], r[2]) for r in await cur.fetchall()]

    return {"calls": calls, "total_cost": total, "by_type": by_type}


# ── Orders ────────────────────────────────────────────────────────────────────

_ORDER_COLS = (
    "id, workspace_id, conversation_id, order_number, customer_name, "
    "customer_phone, customer_address, items, subtotal, delivery_charge, "
    "total_amount, payment_last_digits, status, is_test, created_at, checkout_id"
)


def _row_to_order(r) -> Order:
    return Order(
        id=r[0], workspace_id=r[1], conversation_id=r[2], order_number=r[3],
        customer_name=r[4], customer_phone=r[5], customer_address=r[6],
        items=_loads(r[7], []), subtotal=r[8], delivery_charge=r[9],
        total_amount=r[10], payment_last_digits=r[11], status=r[12],
        is_test=bool(r[13]), created_at=datetime.fromisoformat(r[14]),
        checkout_id=r[15],
    )


async def get_order_for_checkout(conversation_id: int, checkout_id: str) -> Optional[Order]:
    if not checkout_id:
        return None
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            f"SELECT {_ORDER_COLS} FROM orders WHERE conversation_id = ? AND checkout_id = ?",
            (conversation_id, checkout_id),
        ) as cur:
            row = await cur.fetchone()
    return _row_to_order(row) if row else None


async def create_order(
    workspace_id: str,
    conversation_id: int,
    order_number: str,
    customer_name: str,
    customer_phone: str,
    customer_address: str,
    items: list[dict],
    subtotal: float,
    delivery_charge: float,
    total_amount: float,
    payment_last_digits: str = "",
    is_test: bool = False,
    checkout_id: str = "",
) -> Order:
    """
    Insert an order. With a checkout_id the call is idempotent: an order
    already stored for (conversation, checkout) is returned unchanged.
    Raises ValueError when order_number is taken by another order.
    """
    existing = await get_order_for_checkout(conversation_id, checkout_id)
    if existing is not None:
        logger.info(
            "Order %s already exists for checkout %s", existing.order_number, checkout_id
        )
        return existing

    async with aiosqlite.connect(DB_PATH) as db:
        try:
            cur = await db.execute(
                """INSERT INTO orders
                   (workspace_id, conversation_id, order_number, customer_name,
                    customer_phone, customer_address, items, subtotal, delivery_charge,
                    total_amount, payment_last_digits, status, is_test, created_at,
                    checkout_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?)""",
                (
                    workspace_id, conversation_id, order_number, customer_name,
                    customer_phone, customer_address,
                    json.dumps(items, ensure_ascii=False),
                    subtotal, delivery_charge, total_amount, payment_last_digits,
                    int(is_test), utcnow_iso(), checkout_id,
                ),
            )
            await db.commit()
        except aiosqlite.IntegrityError:
            # Lost a race with a concurrent insert for the same checkout
            existing = await get_order_for_checkout(conversation_id, checkout_id)
            if existing is not None:
                return existing
            raise ValueError(f"Order number '{order_number}' already exists")
        order_id = cur.lastrowid
        async with db.execute(
            f"SELECT {_ORDER_COLS} FROM orders WHERE id = ?", (order_id,)
        ) as cur:
            row = await cur.fetchone()
    logger.info("Order %s created for conversation %d", order_number, conversation_id)
    return _row_to_order(row)


async def get_order_by_number(order_number: str) -> Optional[Order]:
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            f"SELECT {_ORDER_COLS} FROM orders WHERE order_number = ?", (order_number,)
        ) as cur:
            row = await cur.fetchone()
    return _row_to_order(row) if row else None


async def get_last_order(conversation_id: int) -> Optional[Order]:
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            f"""SELECT {_ORDER_COLS} FROM orders WHERE conversation_id = ?
                ORDER BY id DESC LIMIT 1""",
            (conversation_id,),
        ) as cur:
            row = await cur.fetchone()
    return _row_to_order(row) if row else None


# ── Workspace settings ────────────────────────────────────────────────────────

async def get_setting(workspace_id: str, key: str) -> Optional[str]:
    """Return DB-stored value for a workspace setting, or None if not set."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            "SELECT value FROM workspace_settings WHERE workspace_id = ? AND key = ?",
            (workspace_id, key),
        ) as cur:
            row = await cur.fetchone()
            return row[0] if row else None


async def set_setting(workspace_id: str, key: str, value: str) -> None:
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO workspace_settings (workspace_id, key, value, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(workspace_id, key) DO UPDATE SET
                   value      = excluded.value,
                   updated_at = excluded.updated_at""",
            (workspace_id, key, value, utcnow_iso()),
        )
        await db.commit()


async def delete_setting(workspace_id: str, key: str) -> None:
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            "DELETE FROM workspace_settings WHERE workspace_id = ? AND key = ?",
            (workspace_id, key),
        )
        await db.commit()


# ── API key operations ────────────────────────────────────────────────────────

async def get_api_key(key_name: str) -> Optional[str]:
    """Return DB-stored value for key_name, or None if not set."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            "SELECT key_value FROM api_keys WHERE key_name = ?", (key_name,)
        ) as cur:
            row = await cur.fetchone()
            return row[0] if row else None


async def set_api_key(key_name: str, key_value: str) -> None:
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO api_keys (key_name, key_value, updated_at) VALUES (?, ?, ?)
               ON CONFLICT(key_name) DO UPDATE SET
                   key_value  = excluded.key_value,
                   updated_at = excluded.updated_at""",
            (key_name, key_value, utcnow_iso()),
        )
        await db.commit()


async def delete_api_key(key_name: str) -> None:
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute("DELETE FROM api_keys WHERE key_name = ?", (key_name,))
        await db.commit()
