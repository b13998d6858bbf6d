"""
key_store.py — credentials for the outside services the bot talks to.

Two secrets exist: the OpenAI key (Tier 3 vision and the intent fallback)
and the Messenger page access token (Send API). Each is looked up in the
api_keys table first and in its environment variable second, on every call,
so rotating a key through the DB needs no restart.

An unknown key name is a programming error and raises KeyError.
"""
from __future__ import annotations

import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)

# DB key name → environment variable
ENV_NAMES: dict[str, str] = {
    "openai_api_key": "OPENAI_API_KEY",
    "messenger_page_token": "MESSENGER_PAGE_TOKEN",
}
KNOWN_KEYS = tuple(ENV_NAMES)

_db = None


def _get_db():
    # database imports config at load time; resolve it on first use instead
    global _db
    if _db is None:
        import database as db
        _db = db
    return _db


def _check(key_name: str) -> str:
    if key_name not in ENV_NAMES:
        raise KeyError(f"unknown key {key_name!r} (known: {', '.join(KNOWN_KEYS)})")
    return ENV_NAMES[key_name]


async def get(key_name: str) -> Optional[str]:
    """Stored value, else the environment value, else None."""
    env_name = _check(key_name)
    try:
        stored = await _get_db().get_api_key(key_name)
    except Exception as exc:
        logger.warning("Key lookup for %s failed, using environment: %s", key_name, exc)
        stored = None
    if stored:
        return stored
    return os.getenv(env_name, "").strip() or None


async def set(key_name: str, value: str) -> None:
    _check(key_name)
    await _get_db().set_api_key(key_name, value.strip())
    logger.info("Stored %s (%s)", key_name, mask(value))


async def delete(key_name: str) -> None:
    """Forget the stored value; the environment value applies again."""
    _check(key_name)
    await _get_db().delete_api_key(key_name)


async def get_all_keys() -> dict[str, Optional[str]]:
    return {name: await get(name) for name in KNOWN_KEYS}


def mask(value: Optional[str]) -> str:
    """Printable form of a secret: first and last four characters only."""
    if not value:
        return "not set"
    if len(value) <= 8:
        return "****"
    hidden = "*" * (len(value) - 8)
    return value[:4] + hidden + value[-4:]
