"""
Tests for webhook.py.

Covers:
  - parse_events: text, image, postback, quick reply, echoes and page senders skipped
  - GET /webhook handshake
  - POST /webhook answers 200 and hands events to the orchestrator in the background
  - a failing event is logged, not turned into an error response
"""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiohttp.test_utils import TestClient, TestServer

import webhook
from webhook import build_web_app, parse_events

PAGE = "111"


def _payload(*messaging: dict, obj: str = "page") -> dict:
    return {"object": obj, "entry": [{"id": PAGE, "messaging": list(messaging)}]}


def _from(sender: str = "u1", **kw) -> dict:
    return {"sender": {"id": sender}, "recipient": {"id": PAGE}, **kw}


def _fake_orchestrator() -> MagicMock:
    orch = MagicMock()
    orch.process_event = AsyncMock(return_value=None)
    orch.drain = AsyncMock()
    return orch


# ── parse_events ──────────────────────────────────────────────────────────────

class TestParseEvents:
    def test_text(self):
        [event] = parse_events(_payload(_from(message={"mid": "m1", "text": "hi"})))
        assert (event.page_id, event.sender_id) == (PAGE, "u1")
        assert event.event.kind == "text"
        assert event.event.text == "hi"

    def test_image_attachment(self):
        msg = {"attachments": [{"type": "image", "payload": {"url": "https://cdn.example/a.jpg"}}]}
        [event] = parse_events(_payload(_from(message=msg)))
        assert event.event.kind == "image"
        assert event.event.image_url == "https://cdn.example/a.jpg"
        assert event.event.image is None

    def test_postback(self):
        [event] = parse_events(_payload(_from(postback={"title": "Order Now", "payload": "ORDER_NOW_4"})))
        assert event.event.kind == "postback"
        assert event.event.payload == "ORDER_NOW_4"

    def test_quick_reply(self):
        msg = {"text": "Yes", "quick_reply": {"payload": "ORDER_NOW_4"}}
        [event] = parse_events(_payload(_from(message=msg)))
        assert event.event.payload == "ORDER_NOW_4"

    def test_echo_and_page_sender_skipped(self):
        events = parse_events(_payload(
            _from(message={"text": "our reply", "is_echo": True}),
            _from(sender=PAGE, message={"text": "x"}),
            _from(message={"attachments": [{"type": "file", "payload": {"url": "u"}}]}),
        ))
        assert events == []

    def test_non_page_object(self):
        assert parse_events(_payload(_from(message={"text": "hi"}), obj="instagram")) == []

    def test_several_events(self):
        events = parse_events(_payload(
            _from("u1", message={"text": "a"}), _from("u2", message={"text": "b"}),
        ))
        assert [e.sender_id for e in events] == ["u1", "u2"]


# ── HTTP endpoints ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestVerify:
    async def test_handshake(self):
        with patch.object(webhook.config, "WEBHOOK_VERIFY_TOKEN", "secret"):
            async with TestClient(TestServer(build_web_app(_fake_orchestrator()))) as client:
                resp = await client.get("/webhook", params={
                    "hub.mode": "subscribe", "hub.verify_token": "secret", "hub.challenge": "42",
                })
                assert resp.status == 200
                assert await resp.text() == "42"

    async def test_wrong_token(self):
        with patch.object(webhook.config, "WEBHOOK_VERIFY_TOKEN", "secret"):
            async with TestClient(TestServer(build_web_app(_fake_orchestrator()))) as client:
                resp = await client.get("/webhook", params={
                    "hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "42",
                })
                assert resp.status == 403

    async def test_no_token_configured(self):
        with patch.object(webhook.config, "WEBHOOK_VERIFY_TOKEN", None):
            async with TestClient(TestServer(build_web_app(_fake_orchestrator()))) as client:
                resp = await client.get("/webhook", params={"hub.mode": "subscribe", "hub.challenge": "42"})
                assert resp.status == 403


@pytest.mark.asyncio
class TestEvents:
    async def test_events_processed(self):
        orch = _fake_orchestrator()
        async with TestClient(TestServer(build_web_app(orch))) as client:
            resp = await client.post("/webhook", json=_payload(
                _from("u1", message={"text": "hi"}), _from("u2", postback={"payload": "ORDER_NOW_1"}),
            ))
            assert resp.status == 200
            assert await resp.json() == {"status": "ok"}
        # cleanup waits for the background tasks
        assert orch.process_event.await_count == 2
        orch.drain.assert_awaited_once()

    async def test_failure_still_200(self):
        orch = _fake_orchestrator()
        orch.process_event.side_effect = RuntimeError("boom")
        async with TestClient(TestServer(build_web_app(orch))) as client:
            resp = await client.post("/webhook", json=_payload(_from(message={"text": "hi"})))
            assert resp.status == 200
        assert orch.process_event.await_count == 1

    async def test_bad_json_still_200(self):
        orch = _fake_orchestrator()
        async with TestClient(TestServer(build_web_app(orch))) as client:
            resp = await client.post("/webhook", data="not json", headers={"Content-Type": "application/json"})
            assert resp.status == 200
        orch.process_event.assert_not_called()

    async def test_health(self):
        async with TestClient(TestServer(build_web_app(_fake_orchestrator()))) as client:
            resp = await client.get("/health")
            assert await resp.text() == "OK"
