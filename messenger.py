"""
messenger.py — outbound delivery of replies and customer profile lookup.

GraphMessenger posts to the Messenger Send API (text, or a generic template
carrying a product card with postback buttons). NullMessenger is used in test
mode and in the sandbox: it sends nothing and reports SKIPPED, so the
conversation logic runs unchanged without touching a real channel.

Delivery failures are reported, never raised: a reply that could not be sent
does not roll back the state transition that produced it. Profile lookups are
best effort in the same way and return None when the Graph API says no.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import aiohttp

import config
from replies import ProductCard

logger = logging.getLogger(__name__)

# Graph error for a PSID whose profile the page may not read
_PROFILE_HIDDEN = (100, 33)
HIDDEN_PROFILE_NAME = "Facebook User"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class CustomerProfile:
    name: str
    profile_pic: str = ""


class Messenger(ABC):
    """Channel interface."""

    @abstractmethod
    async def send_text(self, recipient_id: str, text: str) -> DeliveryStatus:
        ...

    @abstractmethod
    async def send_product_card(
        self, recipient_id: str, card: ProductCard, text: str = ""
    ) -> DeliveryStatus:
        ...

    async def fetch_profile(self, psid: str) -> Optional[CustomerProfile]:
        """Name and picture of a customer; None when the channel has none."""
        return None


class NullMessenger(Messenger):
    """Records what would have been sent (handy in the sandbox and tests)."""

    def __init__(self):
        self.sent: list[tuple[str, str, Optional[ProductCard]]] = []

    async def send_text(self, recipient_id: str, text: str) -> DeliveryStatus:
        self.sent.append((recipient_id, text, None))
        return DeliveryStatus.SKIPPED

    async def send_product_card(
        self, recipient_id: str, card: ProductCard, text: str = ""
    ) -> DeliveryStatus:
        self.sent.append((recipient_id, text, card))
        return DeliveryStatus.SKIPPED


# ── Messenger Send API ────────────────────────────────────────────────────────

def card_payload(card: ProductCard) -> dict:
    """Generic template with one element and postback buttons."""
    element = {
        "title":    card.title[:80],
        "subtitle": card.subtitle[:80],
        "buttons": [
            {"type": "postback", "title": b.title[:20], "payload": b.payload}
            for b in card.buttons[:3]
        ],
    }
    if card.image_url:
        element["image_url"] = card.image_url
    return {
        "attachment": {
            "type": "template",
            "payload": {"template_type": "generic", "elements": [element]},
        }
    }


def parse_profile(data: dict) -> Optional[CustomerProfile]:
    name = (data or {}).get("name")
    if not isinstance(name, str) or not name.strip():
        return None
    picture = ((data.get("picture") or {}).get("data") or {}).get("url") or ""
    return CustomerProfile(name=name.strip(), profile_pic=picture)


class GraphMessenger(Messenger):

    def __init__(
        self,
        page_token: Optional[str] = None,
        api_version: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._token = page_token or config.MESSENGER_PAGE_TOKEN
        self._graph = f"https://graph.facebook.com/{api_version or config.GRAPH_API_VERSION}"
        self._url = f"{self._graph}/me/messages"
        self._session = session

    async def send_text(self, recipient_id: str, text: str) -> DeliveryStatus:
        return await self._post(recipient_id, {"text": text[:2000]})

    async def send_product_card(
        self, recipient_id: str, card: ProductCard, text: str = ""
    ) -> DeliveryStatus:
        if text:
            status = await self.send_text(recipient_id, text)
            if status is not DeliveryStatus.SENT:
                return status
        return await self._post(recipient_id, card_payload(card))

    async def _post(self, recipient_id: str, message: dict) -> DeliveryStatus:
        if not self._token:
            logger.warning("No page token configured; reply to %s not sent", recipient_id)
            return DeliveryStatus.FAILED

        body = {
            "recipient":      {"id": recipient_id},
            "messaging_type": "RESPONSE",
            "message":        message,
        }
        try:
            if self._session is not None:
                return await self._send(self._session, body)
            async with aiohttp.ClientSession() as session:
                return await self._send(session, body)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("Send API request failed for %s: %s", recipient_id, exc)
            return DeliveryStatus.FAILED

    async def _send(self, session: aiohttp.ClientSession, body: dict) -> DeliveryStatus:
        async with session.post(
            self._url,
            params={"access_token": self._token},
            json=body,
            timeout=aiohttp.ClientTimeout(total=config.HTTP_TIMEOUT_SECS),
        ) as resp:
            data = await resp.json(content_type=None)
            if resp.status != 200:
                err = (data or {}).get("error", {}).get("message", str(data))
                logger.error("Send API %d: %s", resp.status, err)
                return DeliveryStatus.FAILED
        return DeliveryStatus.SENT

    # ── User Profile API ──────────────────────────────────────────────────────

    async def fetch_profile(self, psid: str) -> Optional[CustomerProfile]:
        if not self._token:
            return None
        try:
            if self._session is not None:
                return await self._get_profile(self._session, psid)
            async with aiohttp.ClientSession() as session:
                return await self._get_profile(session, psid)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.warning("Profile lookup failed for %s: %s", psid, exc)
            return None

    async def _get_profile(
        self, session: aiohttp.ClientSession, psid: str
    ) -> Optional[CustomerProfile]:
        async with session.get(
            f"{self._graph}/{psid}",
            params={"fields": "name,picture", "access_token": self._token},
            timeout=aiohttp.ClientTimeout(total=config.HTTP_TIMEOUT_SECS),
        ) as resp:
            data = await resp.json(content_type=None) or {}
            if resp.status == 200:
                return parse_profile(data)
        error = data.get("error") or {}
        if (error.get("code"), error.get("error_subcode")) == _PROFILE_HIDDEN:
            return CustomerProfile(name=HIDDEN_PROFILE_NAME)
        logger.warning("Profile API %d for %s: %s", resp.status, psid, error.get("message", data))
        return None
