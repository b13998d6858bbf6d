"""
Central configuration — reads from .env file.

Settings priority order:
  1. Database (per-workspace rows written by settings_store.py) — live, no restart
  2. Environment variable / .env file                          — fallback / bootstrap

API keys follow the same priority via key_store.py.
The values below are process-wide tunables for the recognition waterfall and
the messaging channel; per-shop behaviour lives in settings_store.py.
"""
import os
from dotenv import load_dotenv

load_dotenv()

# ── Storage ───────────────────────────────────────────────────────────────────
DATA_DIR: str = os.getenv("DATA_DIR", "data")

# ── OpenAI (Tier 3 vision + intent fallback) ──────────────────────────────────
OPENAI_API_KEY: str | None = os.getenv("OPENAI_API_KEY")
VISION_MODEL: str          = os.getenv("VISION_MODEL", "gpt-4o-mini")
INTENT_MODEL: str          = os.getenv("INTENT_MODEL", "gpt-4o-mini")

# ── Messenger channel ─────────────────────────────────────────────────────────
# Page access token used by the Graph Send API. Leave blank to run without
# outbound delivery (replies are still computed and logged).
MESSENGER_PAGE_TOKEN: str | None = os.getenv("MESSENGER_PAGE_TOKEN", "").strip() or None
WEBHOOK_VERIFY_TOKEN: str | None = os.getenv("WEBHOOK_VERIFY_TOKEN", "").strip() or None
WEBHOOK_PORT: int                = int(os.getenv("WEBHOOK_PORT", "8080"))
GRAPH_API_VERSION: str           = os.getenv("GRAPH_API_VERSION", "v19.0")

# Workspace used when a page id has no explicit mapping (single-shop installs)
DEFAULT_WORKSPACE: str = os.getenv("DEFAULT_WORKSPACE", "default")

# ── Recognition waterfall ─────────────────────────────────────────────────────
# Tier 1: a hash match needs distance strictly below this (10 ≈ 84% similar)
TIER1_MAX_DISTANCE: int = int(os.getenv("TIER1_MAX_DISTANCE", "10"))

# Tier 2: weighted colour/aspect similarity, accepted strictly above threshold
TIER2_THRESHOLD: float     = float(os.getenv("TIER2_THRESHOLD", "92"))
TIER2_COLOR_WEIGHT: float  = float(os.getenv("TIER2_COLOR_WEIGHT", "0.6"))
TIER2_ASPECT_WEIGHT: float = float(os.getenv("TIER2_ASPECT_WEIGHT", "0.4"))
TIER2_COLOR_PENALTY: float = float(os.getenv("TIER2_COLOR_PENALTY", "30"))

# Tier 3: keyword-overlap score a product must exceed
TIER3_MIN_SCORE: float = float(os.getenv("TIER3_MIN_SCORE", "30"))

# Cache of Tier 3 verdicts (positive and negative)
CACHE_TTL_DAYS: int = int(os.getenv("CACHE_TTL_DAYS", "30"))

# Upper bounds so a slow upstream cannot stall a conversation
CACHE_TIMEOUT_SECS: float = float(os.getenv("CACHE_TIMEOUT_SECS", "3"))
TIER3_TIMEOUT_SECS: float = float(os.getenv("TIER3_TIMEOUT_SECS", "25"))
HTTP_TIMEOUT_SECS: float  = float(os.getenv("HTTP_TIMEOUT_SECS", "10"))

# ── Maintenance ───────────────────────────────────────────────────────────────
CACHE_SWEEP_HOURS: float = float(os.getenv("CACHE_SWEEP_HOURS", "6"))

# ── Rate limiting (per customer) ──────────────────────────────────────────────
RATE_MAX_EVENTS: int    = int(os.getenv("RATE_MAX_EVENTS", "100"))
RATE_WINDOW_SECS: float = float(os.getenv("RATE_WINDOW_SECS", "60"))
