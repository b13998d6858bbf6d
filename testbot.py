"""
testbot.py — interactive sandbox for the conversation flow.

Runs the exact live pipeline (orchestrator → state machine → recognition →
intent detection) from the terminal. Replies are printed instead of sent, the
conversation is flagged as a test one and any order it creates is stored with
is_test = 1.

Commands:
  /image <path|url>   — send a product photo
  /button <payload>   — press a card button (e.g. ORDER_NOW_3)
  /state              — show the current state, cart and checkout
  /reset              — back to IDLE with an empty cart
  /quit               — leave

Usage:  python testbot.py [--workspace default] [--user 1]
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path

import database as db
from conversation import ConversationContext
from messenger import NullMessenger
from orchestrator import EventResult, InboundEvent, Orchestrator, build_orchestrator
from state_machine import Event, snapshot

logger = logging.getLogger(__name__)

TEST_PAGE_ID = "test-page"


def sandbox_psid(user_id: str) -> str:
    return f"test-user-{user_id}"


class Sandbox:
    """One test customer talking to one workspace."""

    def __init__(self, workspace_id: str, user_id: str, orchestrator: Orchestrator | None = None):
        self.workspace_id = workspace_id
        self.psid = sandbox_psid(user_id)
        self.orchestrator = orchestrator or build_orchestrator(messenger=NullMessenger())

    async def start(self) -> None:
        await db.set_page_workspace(TEST_PAGE_ID, self.workspace_id, "Sandbox")
        await self.reset()

    async def reset(self) -> db.Conversation:
        conversation = await self._conversation()
        await db.reset_conversation(conversation.id)
        logger.info("Sandbox conversation %d reset", conversation.id)
        return conversation

    async def _conversation(self) -> db.Conversation:
        return await db.get_or_create_conversation(
            self.workspace_id, TEST_PAGE_ID, self.psid, customer_name="Test Customer", is_test=True
        )

    async def send(self, event: Event) -> EventResult | None:
        return await self.orchestrator.process_event(
            InboundEvent(TEST_PAGE_ID, self.psid, event, customer_name="Test Customer", is_test=True)
        )

    async def state(self) -> dict:
        conversation = await self._conversation()
        return snapshot(ConversationContext.from_dict(conversation.state, conversation.context))


def _image_event(arg: str) -> Event:
    if arg.startswith(("http://", "https://")):
        return Event(kind="image", image_url=arg)
    return Event.from_image(Path(arg).expanduser().read_bytes())


def _print_result(result: EventResult | None) -> None:
    if result is None:
        print("… (rate limited, event dropped)")
        return
    print(f"\n🤖 {result.reply}")
    if result.product_card:
        card = result.product_card
        buttons = "  ".join(f"[{b.title} → {b.payload}]" for b in card.buttons)
        print(f"   🃏 {card.title} — {card.subtitle}\n   {buttons}")
    if result.match:
        print(f"   🔎 {result.match.tier} ({result.match.confidence:.2f})"
              + (f" — {result.match.error}" if result.match.error else ""))
    if result.order_created:
        print(f"   🧾 test order #{result.order_number}")
    print(f"   ⇢ {result.new_state.value}  [{result.delivery.value}]\n")


async def _repl(sandbox: Sandbox) -> None:
    await sandbox.start()
    print(f"Sandbox for workspace '{sandbox.workspace_id}' as {sandbox.psid}. /quit to leave.")
    while True:
        try:
            line = (await asyncio.to_thread(input, "you> ")).strip()
        except EOFError:
            break
        if not line:
            continue
        if line == "/quit":
            break
        if line == "/reset":
            await sandbox.reset()
            print("↺ reset to IDLE\n")
            continue
        if line == "/state":
            print(json.dumps(await sandbox.state(), indent=2, ensure_ascii=False))
            continue

        try:
            if line.startswith("/image "):
                result = await sandbox.send(_image_event(line[len("/image "):].strip()))
            elif line.startswith("/button "):
                result = await sandbox.send(Event.from_postback(line[len("/button "):].strip()))
            else:
                result = await sandbox.send(Event.from_text(line))
        except Exception as exc:
            logger.error("Event failed: %s", exc, exc_info=True)
            print(f"⚠️  {exc}\n")
            continue
        _print_result(result)

    await sandbox.orchestrator.drain()


async def run(workspace_id: str, user_id: str) -> None:
    await db.init_db()
    await _repl(Sandbox(workspace_id, user_id))


def main() -> None:
    parser = argparse.ArgumentParser(description="Chat with the shop bot from the terminal")
    parser.add_argument("--workspace", default="default")
    parser.add_argument("--user", default="1", help="Test customer id")
    args = parser.parse_args()

    logging.basicConfig(level=logging.WARNING, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    try:
        asyncio.run(run(args.workspace, args.user))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
