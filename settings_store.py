"""
settings_store.py — runtime-editable per-workspace shop settings.

Priority order (same pattern as key_store.py):
  1. Database (workspace_settings table) — takes precedence, no restart needed
  2. Environment variable / .env file    — fallback / bootstrap
  3. Built-in default

All settings are stored as strings in the DB and cast to the right type on read.
SettingsService wraps the store with an injected TTLCache because settings are
read on every inbound event.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

from ttl_cache import TTLCache

logger = logging.getLogger(__name__)

_db = None


def _get_db():
    global _db
    if _db is None:
        import database as db
        _db = db
    return _db


# ── Setting definitions ────────────────────────────────────────────────────────
# Each entry: key → env var, default, type, label, description, choices
# type: "str" | "int" | "float" | "bool"

SETTINGS_META: dict[str, dict] = {
    "business_name": {
        "env": "BUSINESS_NAME",
        "default": "Our Shop",
        "type": "str",
        "label": "Business Name",
        "desc": "Shown in greetings and order confirmations",
        "choices": [],
    },
    "greeting": {
        "env": "GREETING_MESSAGE",
        "default": "",
        "type": "str",
        "label": "Greeting",
        "desc": "Custom greeting; blank uses the built-in welcome text",
        "choices": [],
    },
    "tone": {
        "env": "BOT_TONE",
        "default": "friendly",
        "type": "str",
        "label": "Tone",
        "desc": "Conversation tone",
        "choices": ["friendly", "professional", "casual"],
    },
    "use_emojis": {
        "env": "USE_EMOJIS",
        "default": "true",
        "type": "bool",
        "label": "Use Emojis",
        "desc": "Decorate replies with emojis",
        "choices": ["true", "false"],
    },
    "confidence_threshold": {
        "env": "CONFIDENCE_THRESHOLD",
        "default": "75",
        "type": "int",
        "label": "Confidence Threshold",
        "desc": "Matches at or above this are announced as found, below as closest match",
        "choices": [],
    },
    "order_collection_style": {
        "env": "ORDER_COLLECTION_STYLE",
        "default": "conversational",
        "type": "str",
        "label": "Order Collection Style",
        "desc": "Ask name/phone/address one by one, or all at once",
        "choices": ["conversational", "quick_form"],
    },
    "delivery_charge_inside_dhaka": {
        "env": "DELIVERY_CHARGE_INSIDE_DHAKA",
        "default": "60",
        "type": "float",
        "label": "Delivery Inside Dhaka (৳)",
        "desc": "Charge when the address is inside Dhaka",
        "choices": [],
    },
    "delivery_charge_outside_dhaka": {
        "env": "DELIVERY_CHARGE_OUTSIDE_DHAKA",
        "default": "120",
        "type": "float",
        "label": "Delivery Outside Dhaka (৳)",
        "desc": "Charge for every other address",
        "choices": [],
    },
    "delivery_time": {
        "env": "DELIVERY_TIME",
        "default": "3-5 business days",
        "type": "str",
        "label": "Delivery Time",
        "desc": "Shown when customers ask about delivery",
        "choices": [],
    },
    "payment_methods": {
        "env": "PAYMENT_METHODS",
        "default": "bKash, Nagad, Cash on Delivery",
        "type": "str",
        "label": "Payment Methods",
        "desc": "Comma-separated list",
        "choices": [],
    },
    "payment_message": {
        "env": "PAYMENT_MESSAGE",
        "default": "bKash/Nagad (Personal): 01XXXXXXXXX",
        "type": "str",
        "label": "Payment Details",
        "desc": "Where to send the money; inserted into payment instructions",
        "choices": [],
    },
    "return_policy": {
        "env": "RETURN_POLICY",
        "default": "পণ্য হাতে পাওয়ার ২ দিনের মধ্যে ফেরত দেওয়া যাবে।",
        "type": "str",
        "label": "Return Policy",
        "desc": "Shown when customers ask about returns",
        "choices": [],
    },
    "quick_form_prompt": {
        "env": "QUICK_FORM_PROMPT",
        "default": (
            "দারুণ! অর্ডারটি সম্পন্ন করতে, অনুগ্রহ করে নিচের ফর্ম্যাট অনুযায়ী আপনার তথ্য দিন:"
            "\n\nনাম:\nফোন:\nসম্পূর্ণ ঠিকানা:"
        ),
        "type": "str",
        "label": "Quick Form Prompt",
        "desc": "Asked once when order_collection_style=quick_form",
        "choices": [],
    },
    "out_of_stock_message": {
        "env": "OUT_OF_STOCK_MESSAGE",
        "default": (
            "দুঃখিত! \"{product_name}\" এখন স্টকে নেই।\n\n"
            "অন্য পণ্যের ছবি বা নাম পাঠান, আমরা সাহায্য করবো।"
        ),
        "type": "str",
        "label": "Out of Stock Message",
        "desc": "{product_name} is replaced with the product name",
        "choices": [],
    },
}


@dataclass(frozen=True)
class WorkspaceSettings:
    """Typed snapshot of one workspace's settings."""
    business_name: str
    greeting: str
    tone: str
    use_emojis: bool
    confidence_threshold: int
    order_collection_style: str
    delivery_charge_inside_dhaka: float
    delivery_charge_outside_dhaka: float
    delivery_time: str
    payment_methods: str
    payment_message: str
    return_policy: str
    quick_form_prompt: str
    out_of_stock_message: str

    @classmethod
    def defaults(cls) -> "WorkspaceSettings":
        return cls(**{k: _cast(m["default"], m["type"]) for k, m in SETTINGS_META.items()})

    def replace(self, **changes: Any) -> "WorkspaceSettings":
        values = dict(self.__dict__)
        values.update(changes)
        return WorkspaceSettings(**values)


def _cast(raw: str, typ: str) -> Any:
    if typ == "bool":
        return raw.strip().lower() in ("true", "1", "yes")
    if typ == "int":
        return int(raw.strip())
    if typ == "float":
        return float(raw.strip())
    return raw.strip()


def _meta(key: str) -> dict:
    meta = SETTINGS_META.get(key)
    if meta is None:
        raise KeyError(f"Unknown setting: {key}")
    return meta


async def get_raw(workspace_id: str, key: str) -> str:
    """Return the raw string value, DB first then env/default."""
    meta = _meta(key)
    try:
        raw = await _get_db().get_setting(workspace_id, key)
        if raw is not None:
            return raw
    except Exception as exc:
        logger.warning("settings_store: DB lookup failed for %s/%s: %s", workspace_id, key, exc)
    env_val = os.getenv(meta["env"], "").strip()
    return env_val if env_val else meta["default"]


async def get(workspace_id: str, key: str) -> Any:
    """Return the current typed value for a setting."""
    meta = _meta(key)
    raw = await get_raw(workspace_id, key)
    try:
        return _cast(raw, meta["type"])
    except (TypeError, ValueError):
        logger.warning("settings_store: bad value %r for %s, using default", raw, key)
        return _cast(meta["default"], meta["type"])


async def set(workspace_id: str, key: str, value: str) -> None:
    """Validate and persist a setting for one workspace."""
    meta = _meta(key)
    _cast(value, meta["type"])  # raises ValueError/TypeError on bad input
    if meta["choices"] and value.strip() not in meta["choices"]:
        raise ValueError(f"{key} must be one of {', '.join(meta['choices'])}")
    await _get_db().set_setting(workspace_id, key, value)
    logger.info("settings_store: %s/%s updated", workspace_id, key)


async def delete(workspace_id: str, key: str) -> None:
    """Remove a DB override (falls back to .env / default)."""
    _meta(key)
    await _get_db().delete_setting(workspace_id, key)


async def get_all(workspace_id: str) -> dict[str, str]:
    """Return all settings as raw strings (source: DB or env/default)."""
    result = {}
    for key in SETTINGS_META:
        result[key] = await get_raw(workspace_id, key)
    return result


async def load(workspace_id: str) -> WorkspaceSettings:
    """Read every setting for a workspace into a typed snapshot."""
    values = {}
    for key in SETTINGS_META:
        values[key] = await get(workspace_id, key)
    return WorkspaceSettings(**values)


# ── Cached access ─────────────────────────────────────────────────────────────

class SettingsService:
    """
    Read-mostly settings access for the hot path.

    Snapshots are cached per workspace (LRU, 100 entries, 5 minutes by
    default); writes through this service invalidate the workspace's entry
    so the next event sees the change.
    """

    def __init__(self, cache: Optional[TTLCache] = None):
        self._cache: TTLCache[WorkspaceSettings] = cache or TTLCache(max_size=100, ttl_seconds=300)

    async def get(self, workspace_id: str) -> WorkspaceSettings:
        cached = self._cache.get(workspace_id)
        if cached is not None:
            return cached
        settings = await load(workspace_id)
        self._cache.set(workspace_id, settings)
        return settings

    async def update(self, workspace_id: str, key: str, value: str) -> None:
        await set(workspace_id, key, value)
        self.invalidate(workspace_id)

    async def reset(self, workspace_id: str, key: str) -> None:
        await delete(workspace_id, key)
        self.invalidate(workspace_id)

    def invalidate(self, workspace_id: str) -> None:
        self._cache.invalidate(workspace_id)

    def clear(self) -> None:
        self._cache.clear()
