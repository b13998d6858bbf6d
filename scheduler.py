"""
scheduler.py — periodic maintenance.

Every CACHE_SWEEP_HOURS (default 6):
  → delete expired recognition cache rows
  → log the AI vision spend of the last 24 hours
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

logger = logging.getLogger(__name__)

_running = False


def _format_usage(stats: dict) -> str:
    """One log line summarising a get_usage_since() result."""
    parts = [f"{stats['calls']} calls", f"${stats['total_cost']:.4f}"]
    for api_type, cost, calls in stats["by_type"]:
        parts.append(f"{api_type}: ${cost:.4f} ({calls})")
    return " • ".join(parts)


async def run_maintenance() -> int:
    """One sweep. Returns the number of cache rows deleted."""
    import database as db
    import recognition_cache

    removed = await recognition_cache.clear_expired_cache()
    since = datetime.now(timezone.utc) - timedelta(hours=24)
    stats = await db.get_usage_since(since)
    logger.info("Maintenance: %d expired cache rows removed; last 24h: %s",
                removed, _format_usage(stats))
    return removed


async def _scheduler_loop() -> None:
    """Background coroutine — sweeps once at start-up, then every interval."""
    import config

    interval = config.CACHE_SWEEP_HOURS * 3600
    logger.info("Scheduler started (cache sweep every %.1f h)", config.CACHE_SWEEP_HOURS)

    while _running:
        try:
            await run_maintenance()
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.error("Scheduler loop error: %s", exc)
        try:
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            break


def start() -> asyncio.Task:
    """Start the scheduler as a background asyncio Task."""
    global _running
    _running = True
    return asyncio.create_task(_scheduler_loop())


def stop() -> None:
    global _running
    _running = False
