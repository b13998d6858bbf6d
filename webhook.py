"""
webhook.py — Messenger webhook server (live entry point).

Runs as an aiohttp web server in the main asyncio event loop.

Endpoints:
  GET  /webhook   → subscription handshake (hub.mode / hub.verify_token / hub.challenge)
  POST /webhook   → page events; always answered 200 {"status": "ok"}
  GET  /health    → plain-text health check

Page events are parsed into InboundEvents and processed in background tasks
so the platform gets its 200 immediately; processing errors are logged, never
turned into non-200 answers (the platform would only redeliver them).
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from aiohttp import web

import config
from orchestrator import InboundEvent, Orchestrator
from state_machine import Event

logger = logging.getLogger(__name__)

ORCHESTRATOR = web.AppKey("orchestrator", Orchestrator)
TASKS = web.AppKey("tasks", set)


# ── Payload parsing ───────────────────────────────────────────────────────────

def _parse_messaging(page_id: str, item: dict) -> Optional[InboundEvent]:
    sender_id = (item.get("sender") or {}).get("id")
    if not sender_id or sender_id == page_id:
        return None

    postback = item.get("postback")
    if postback and postback.get("payload"):
        return InboundEvent(page_id, sender_id, Event.from_postback(postback["payload"]))

    message = item.get("message") or {}
    if message.get("is_echo"):
        return None
    # Quick-reply buttons carry a payload just like postbacks
    quick = message.get("quick_reply") or {}
    if quick.get("payload"):
        return InboundEvent(page_id, sender_id, Event.from_postback(quick["payload"]))

    for attachment in message.get("attachments") or []:
        url = (attachment.get("payload") or {}).get("url")
        if attachment.get("type") == "image" and url:
            return InboundEvent(page_id, sender_id, Event(kind="image", image_url=url))

    text = message.get("text")
    if text:
        return InboundEvent(page_id, sender_id, Event.from_text(text))
    return None


def parse_events(payload: dict) -> list[InboundEvent]:
    """Flatten a page webhook body into inbound events (unknown shapes skipped)."""
    if payload.get("object") != "page":
        return []
    events: list[InboundEvent] = []
    for entry in payload.get("entry") or []:
        page_id = str(entry.get("id", ""))
        for item in entry.get("messaging") or []:
            event = _parse_messaging(page_id, item)
            if event is not None:
                events.append(event)
    return events


# ── Request handlers ──────────────────────────────────────────────────────────

async def handle_verify(request: web.Request) -> web.Response:
    mode = request.query.get("hub.mode")
    token = request.query.get("hub.verify_token")
    challenge = request.query.get("hub.challenge", "")
    if mode == "subscribe" and config.WEBHOOK_VERIFY_TOKEN and token == config.WEBHOOK_VERIFY_TOKEN:
        logger.info("Webhook verified")
        return web.Response(text=challenge, content_type="text/plain")
    logger.warning("Webhook verification failed (mode=%r)", mode)
    raise web.HTTPForbidden(text="Verification failed")


async def _process(orchestrator: Orchestrator, event: InboundEvent) -> None:
    try:
        await orchestrator.process_event(event)
    except Exception:
        logger.exception("Failed to process %s event from %s", event.event.kind, event.sender_id)


async def handle_event(request: web.Request) -> web.Response:
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Webhook body is not JSON")
        return web.json_response({"status": "ok"})

    orchestrator = request.app[ORCHESTRATOR]
    tasks = request.app[TASKS]
    for event in parse_events(payload):
        task = asyncio.create_task(_process(orchestrator, event))
        tasks.add(task)
        task.add_done_callback(tasks.discard)
    return web.json_response({"status": "ok"})


async def handle_health(request: web.Request) -> web.Response:
    return web.Response(text="OK", content_type="text/plain")


# ── App factory ───────────────────────────────────────────────────────────────

async def _on_cleanup(app: web.Application) -> None:
    pending = list(app[TASKS])
    if pending:
        logger.info("Waiting for %d in-flight event(s)…", len(pending))
        await asyncio.gather(*pending, return_exceptions=True)
    await app[ORCHESTRATOR].drain()


def build_web_app(orchestrator: Orchestrator) -> web.Application:
    app = web.Application()
    app[ORCHESTRATOR] = orchestrator
    app[TASKS] = set()
    app.router.add_get("/webhook", handle_verify)
    app.router.add_post("/webhook", handle_event)
    app.router.add_get("/health", handle_health)
    app.on_cleanup.append(_on_cleanup)
    return app


async def start_webhook(orchestrator: Orchestrator) -> web.AppRunner:
    """Start the web server. Returns runner so caller can shut it down cleanly."""
    app = build_web_app(orchestrator)
    runner = web.AppRunner(app, access_log=logger)
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", config.WEBHOOK_PORT)
    await site.start()
    logger.info("Webhook listening on port %d", config.WEBHOOK_PORT)
    return runner
