"""
Tests for messenger.py.

Covers:
  - NullMessenger records instead of sending
  - card_payload: generic template, truncation, postback buttons
  - GraphMessenger: request shape, non-200 and network errors → FAILED,
    missing token, text sent before the card
  - fetch_profile: name and picture, hidden profiles, failures → None
"""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from messenger import (
    CustomerProfile,
    DeliveryStatus,
    GraphMessenger,
    Messenger,
    NullMessenger,
    card_payload,
)
from replies import CardButton, ProductCard


def _card(**kw) -> ProductCard:
    defaults = dict(
        product_id=7, title="Red Kurti", subtitle="৳590 • In Stock",
        image_url="https://cdn.example/k.jpg",
        buttons=[CardButton("Order Now", "ORDER_NOW_7"), CardButton("View Details", "VIEW_DETAILS_7")],
    )
    defaults.update(kw)
    return ProductCard(**defaults)


def _fake_response(status: int = 200, body: dict | None = None):
    mock_resp = MagicMock()
    mock_resp.status = status
    mock_resp.json = AsyncMock(return_value=body if body is not None else {"message_id": "m1"})
    mock_resp.__aenter__ = AsyncMock(return_value=mock_resp)
    mock_resp.__aexit__ = AsyncMock(return_value=False)
    return mock_resp


def _session(resp) -> MagicMock:
    mock_session = MagicMock()
    mock_session.post = MagicMock(return_value=resp)
    return mock_session


# ── NullMessenger ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestNullMessenger:
    async def test_records(self):
        m = NullMessenger()
        assert await m.send_text("u1", "hi") == DeliveryStatus.SKIPPED
        card = _card()
        assert await m.send_product_card("u1", card, "look") == DeliveryStatus.SKIPPED
        assert m.sent == [("u1", "hi", None), ("u1", "look", card)]


# ── card_payload ──────────────────────────────────────────────────────────────

class TestCardPayload:
    def test_generic_template(self):
        payload = card_payload(_card())
        tpl = payload["attachment"]["payload"]
        assert tpl["template_type"] == "generic"
        element = tpl["elements"][0]
        assert element["image_url"] == "https://cdn.example/k.jpg"
        assert element["buttons"][0] == {"type": "postback", "title": "Order Now", "payload": "ORDER_NOW_7"}

    def test_title_truncated(self):
        element = card_payload(_card(title="x" * 120))["attachment"]["payload"]["elements"][0]
        assert len(element["title"]) == 80

    def test_no_image(self):
        element = card_payload(_card(image_url=""))["attachment"]["payload"]["elements"][0]
        assert "image_url" not in element


# ── GraphMessenger ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestGraphMessenger:
    async def test_send_text_request(self):
        session = _session(_fake_response())
        m = GraphMessenger(page_token="tok", api_version="v19.0", session=session)

        assert await m.send_text("u1", "hello") == DeliveryStatus.SENT

        args, kwargs = session.post.call_args
        assert args[0] == "https://graph.facebook.com/v19.0/me/messages"
        assert kwargs["params"] == {"access_token": "tok"}
        assert kwargs["json"] == {
            "recipient": {"id": "u1"},
            "messaging_type": "RESPONSE",
            "message": {"text": "hello"},
        }

    async def test_non_200_is_failed(self):
        resp = _fake_response(400, {"error": {"message": "Invalid OAuth access token"}})
        m = GraphMessenger(page_token="tok", session=_session(resp))
        assert await m.send_text("u1", "hello") == DeliveryStatus.FAILED

    async def test_network_error_is_failed(self):
        session = MagicMock()
        session.post = MagicMock(side_effect=aiohttp.ClientConnectionError("reset"))
        m = GraphMessenger(page_token="tok", session=session)
        assert await m.send_text("u1", "hello") == DeliveryStatus.FAILED

    async def test_no_token_is_failed(self):
        session = _session(_fake_response())
        with patch("messenger.config.MESSENGER_PAGE_TOKEN", ""):
            m = GraphMessenger(session=session)
            assert await m.send_text("u1", "hello") == DeliveryStatus.FAILED
        session.post.assert_not_called()

    async def test_card_sends_text_first(self):
        session = _session(_fake_response())
        m = GraphMessenger(page_token="tok", session=session)

        assert await m.send_product_card("u1", _card(), "found it") == DeliveryStatus.SENT

        bodies = [c.kwargs["json"]["message"] for c in session.post.call_args_list]
        assert bodies[0] == {"text": "found it"}
        assert "attachment" in bodies[1]

    async def test_card_skipped_when_text_fails(self):
        session = _session(_fake_response(500, {}))
        m = GraphMessenger(page_token="tok", session=session)
        assert await m.send_product_card("u1", _card(), "found it") == DeliveryStatus.FAILED
        assert session.post.call_count == 1

    async def test_own_session_when_none_given(self):
        resp = _fake_response()
        mock_session = _session(resp)
        mock_session.__aenter__ = AsyncMock(return_value=mock_session)
        mock_session.__aexit__ = AsyncMock(return_value=False)

        with patch("messenger.aiohttp.ClientSession", return_value=mock_session):
            status = await GraphMessenger(page_token="tok").send_text("u1", "hi")
        assert status == DeliveryStatus.SENT


class TestInterface:
    def test_abstract(self):
        with pytest.raises(TypeError):
            Messenger()

    def test_partial_subclass_rejected(self):
        class TextOnly(Messenger):
            async def send_text(self, recipient_id, text):
                return DeliveryStatus.SENT

        with pytest.raises(TypeError):
            TextOnly()

    @pytest.mark.asyncio
    async def test_null_has_no_profile(self):
        assert await NullMessenger().fetch_profile("u1") is None


# ── fetch_profile ─────────────────────────────────────────────────────────────

def _get_session(resp) -> MagicMock:
    mock_session = MagicMock()
    mock_session.get = MagicMock(return_value=resp)
    return mock_session


@pytest.mark.asyncio
class TestFetchProfile:
    async def test_name_and_picture(self):
        resp = _fake_response(200, {
            "name": "Rahim Uddin",
            "picture": {"data": {"url": "https://cdn.example/p.jpg"}},
            "id": "u1",
        })
        session = _get_session(resp)
        m = GraphMessenger(page_token="tok", api_version="v21.0", session=session)

        profile = await m.fetch_profile("u1")

        assert profile == CustomerProfile("Rahim Uddin", "https://cdn.example/p.jpg")
        args, kwargs = session.get.call_args
        assert args[0] == "https://graph.facebook.com/v21.0/u1"
        assert kwargs["params"] == {"fields": "name,picture", "access_token": "tok"}

    async def test_no_picture(self):
        m = GraphMessenger(page_token="tok", session=_get_session(_fake_response(200, {"name": "Karim"})))
        assert await m.fetch_profile("u1") == CustomerProfile("Karim", "")

    async def test_hidden_profile(self):
        resp = _fake_response(400, {"error": {"code": 100, "error_subcode": 33, "message": "no permission"}})
        m = GraphMessenger(page_token="tok", session=_get_session(resp))
        assert await m.fetch_profile("u1") == CustomerProfile("Facebook User", "")

    async def test_other_error_is_none(self):
        resp = _fake_response(400, {"error": {"code": 190, "message": "Invalid OAuth access token"}})
        m = GraphMessenger(page_token="tok", session=_get_session(resp))
        assert await m.fetch_profile("u1") is None

    async def test_failing_session_is_none(self):
        session = MagicMock()
        session.get = MagicMock(side_effect=aiohttp.ClientConnectionError("reset"))
        m = GraphMessenger(page_token="tok", session=session)
        assert await m.fetch_profile("u1") is None

    async def test_no_token_skips_request(self):
        session = _get_session(_fake_response())
        with patch("messenger.config.MESSENGER_PAGE_TOKEN", ""):
            assert await GraphMessenger(session=session).fetch_profile("u1") is None
        session.get.assert_not_called()
