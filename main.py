"""
main.py — Single entry point.

Runs the Messenger webhook server and the maintenance scheduler in the same
asyncio event loop — no threads, no subprocesses.

Architecture:
  asyncio event loop
    ├── aiohttp web server  (GET/POST /webhook → orchestrator)
    └── scheduler           (expired cache sweep + spend log)
"""
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

import config
import database as db
import key_store
import scheduler
from messenger import GraphMessenger, Messenger, NullMessenger
from orchestrator import build_orchestrator
from webhook import start_webhook

# Log file lives in the same data/ directory as the database so that a single
# Docker volume mount (./data:/app/data) captures both.
_data_dir = Path(os.getenv("DATA_DIR", "data"))
_data_dir.mkdir(parents=True, exist_ok=True)

logging.basicConfig(
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    level=logging.INFO,
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(str(_data_dir / "shopbot.log"), encoding="utf-8"),
    ],
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def _build_messenger() -> Messenger:
    """Report which keys are configured and pick the outbound channel."""
    keys = await key_store.get_all_keys()
    for name, value in keys.items():
        logger.info("%-22s %s", name, key_store.mask(value))

    page_token = keys["messenger_page_token"]
    if not page_token:
        logger.warning("No Messenger page token: replies are computed and logged but not sent.")
        return NullMessenger()
    return GraphMessenger(page_token=page_token)


async def run() -> None:
    # Schema first; a broken database is fatal and must be visible in the log
    try:
        await db.init_db()
        logger.info("Database ready at %s", db.DB_PATH)
    except Exception as exc:
        logger.critical("FATAL: database init failed: %s", exc, exc_info=True)
        raise

    orchestrator = build_orchestrator(messenger=await _build_messenger())
    web_runner = await start_webhook(orchestrator)
    sched_task = scheduler.start()

    stop_event = asyncio.Event()

    def _stop(*_):
        logger.info("Shutdown signal received.")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _stop)
        except (NotImplementedError, RuntimeError):
            # Windows doesn't support add_signal_handler for all signals
            pass

    logger.info("✅ Shop bot is running on port %d. Press Ctrl+C to stop.", config.WEBHOOK_PORT)
    try:
        await stop_event.wait()
    except (KeyboardInterrupt, SystemExit):
        pass

    # In-flight webhook events and background Tier 3 work finish in cleanup
    logger.info("Shutting down…")
    scheduler.stop()
    sched_task.cancel()
    await web_runner.cleanup()
    logger.info("Goodbye.")


def main() -> None:
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
