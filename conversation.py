"""
conversation.py — typed per-conversation state: cart, checkout, metadata.

The context is owned by one conversation and only the state machine mutates
it. Every state declares which checkout fields must already be present; the
context is validated whenever it is read from or written to the store, so an
illegal state/field combination raises ContextError and is never persisted.
"""
from __future__ import annotations

import random
import uuid
import re
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

import database as db


class ContextError(ValueError):
    """Context data does not satisfy the requirements of its state."""


class StaleContextError(RuntimeError):
    """Someone else saved this conversation after we loaded it."""


class State(str, Enum):
    IDLE = "IDLE"
    AWAITING_PRODUCT_CONFIRMATION = "AWAITING_PRODUCT_CONFIRMATION"
    COLLECTING_NAME = "COLLECTING_NAME"
    COLLECTING_PHONE = "COLLECTING_PHONE"
    COLLECTING_ADDRESS = "COLLECTING_ADDRESS"
    AWAITING_CUSTOMER_DETAILS = "AWAITING_CUSTOMER_DETAILS"
    CONFIRMING_ORDER = "CONFIRMING_ORDER"
    AWAITING_PAYMENT_PROOF = "AWAITING_PAYMENT_PROOF"
    ORDER_CONFIRMED = "ORDER_CONFIRMED"
    ORDER_CANCELLED = "ORDER_CANCELLED"


# States where no checkout is in progress
RESTING_STATES = frozenset({State.IDLE, State.ORDER_CONFIRMED, State.ORDER_CANCELLED})

COLLECTING_STATES = frozenset({
    State.COLLECTING_NAME,
    State.COLLECTING_PHONE,
    State.COLLECTING_ADDRESS,
    State.AWAITING_CUSTOMER_DETAILS,
    State.CONFIRMING_ORDER,
    State.AWAITING_PAYMENT_PROOF,
})

_CHECKOUT_READY = ("customer_name", "customer_phone", "customer_address",
                   "delivery_charge", "total_amount")

# state → (cart required, checkout fields required)
_REQUIREMENTS: dict[State, tuple[bool, tuple[str, ...]]] = {
    State.IDLE: (False, ()),
    State.AWAITING_PRODUCT_CONFIRMATION: (True, ()),
    State.COLLECTING_NAME: (True, ()),
    State.COLLECTING_PHONE: (True, ("customer_name",)),
    State.COLLECTING_ADDRESS: (True, ("customer_name", "customer_phone")),
    State.AWAITING_CUSTOMER_DETAILS: (True, ()),
    State.CONFIRMING_ORDER: (True, _CHECKOUT_READY),
    State.AWAITING_PAYMENT_PROOF: (True, _CHECKOUT_READY),
    State.ORDER_CONFIRMED: (False, _CHECKOUT_READY + ("payment_last_digits", "order_number")),
    State.ORDER_CANCELLED: (False, ()),
}

_PHONE_RE = re.compile(r"^01[3-9]\d{8}$")
_DIGITS_RE = re.compile(r"^\d{2}$")


# ── Cart ──────────────────────────────────────────────────────────────────────

@dataclass
class CartItem:
    product_id: int
    product_name: str
    product_price: float
    quantity: int = 1
    image_url: str = ""
    description: str = ""
    category: str = ""
    sizes: list[str] = field(default_factory=list)
    colors: list[str] = field(default_factory=list)
    stock_quantity: int = 0
    selected_size: Optional[str] = None
    selected_color: Optional[str] = None

    @property
    def subtotal(self) -> float:
        return self.product_price * self.quantity

    @classmethod
    def from_product(cls, product: db.Product, quantity: int = 1) -> "CartItem":
        return cls(
            product_id=product.id,
            product_name=product.name,
            product_price=product.price,
            quantity=quantity,
            image_url=product.image_url,
            description=product.description,
            category=product.category,
            sizes=list(product.sizes),
            colors=list(product.colors),
            stock_quantity=product.stock_quantity,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "CartItem":
        try:
            return cls(**data)
        except TypeError as exc:
            raise ContextError(f"bad cart item: {exc}") from exc


@dataclass
class Checkout:
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    delivery_charge: Optional[float] = None
    total_amount: Optional[float] = None
    payment_last_digits: Optional[str] = None
    order_number: Optional[str] = None
    checkout_id: Optional[str] = None      # set when collection starts; keys the order

    @classmethod
    def from_dict(cls, data: dict) -> "Checkout":
        try:
            return cls(**data)
        except TypeError as exc:
            raise ContextError(f"bad checkout: {exc}") from exc


# ── Context ───────────────────────────────────────────────────────────────────

@dataclass
class ConversationContext:
    state: State = State.IDLE
    cart: list[CartItem] = field(default_factory=list)
    checkout: Checkout = field(default_factory=Checkout)
    metadata: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        if not isinstance(self.state, State):
            raise ContextError(f"unknown state {self.state!r}")
        needs_cart, needs_fields = _REQUIREMENTS[self.state]
        if needs_cart and not self.cart:
            raise ContextError(f"{self.state.value} requires a non-empty cart")
        missing = [f for f in needs_fields if getattr(self.checkout, f) in (None, "")]
        if missing:
            raise ContextError(f"{self.state.value} requires {', '.join(missing)}")
        for item in self.cart:
            if item.quantity < 1:
                raise ContextError(f"quantity for product {item.product_id} must be >= 1")
        phone = self.checkout.customer_phone
        if phone and not _PHONE_RE.match(phone):
            raise ContextError(f"phone {phone!r} is not in 01XXXXXXXXX form")
        digits = self.checkout.payment_last_digits
        if digits and not _DIGITS_RE.match(digits):
            raise ContextError("payment_last_digits must be exactly two digits")

    # ── (De)serialisation ────────────────────────────────────────────────────

    def to_dict(self) -> dict:
        """Validated JSON-ready body (the state itself is stored in its own column)."""
        self.validate()
        return {
            "cart": [asdict(item) for item in self.cart],
            "checkout": asdict(self.checkout),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, state: str, data: Optional[dict]) -> "ConversationContext":
        data = data or {}
        try:
            state_enum = State(state)
        except ValueError as exc:
            raise ContextError(f"unknown state {state!r}") from exc
        if not isinstance(data, dict):
            raise ContextError("context must be an object")
        ctx = cls(
            state=state_enum,
            cart=[CartItem.from_dict(i) for i in data.get("cart") or []],
            checkout=Checkout.from_dict(data.get("checkout") or {}),
            metadata=dict(data.get("metadata") or {}),
        )
        ctx.validate()
        return ctx

    # ── Cart helpers ─────────────────────────────────────────────────────────

    def add_to_cart(self, item: CartItem, replace: bool = True) -> None:
        """A recognition match replaces the cart; replace=False merges instead."""
        if replace:
            self.cart = [item]
            return
        for existing in self.cart:
            if existing.product_id == item.product_id:
                existing.quantity += item.quantity
                return
        self.cart.append(item)

    def remove_from_cart(self, product_id: int) -> bool:
        before = len(self.cart)
        self.cart = [i for i in self.cart if i.product_id != product_id]
        return len(self.cart) != before

    def calculate_cart_total(self) -> float:
        return sum(item.subtotal for item in self.cart)

    @property
    def current_item(self) -> Optional[CartItem]:
        return self.cart[0] if self.cart else None

    def clear(self, state: State = State.IDLE) -> None:
        """Empty cart and checkout; metadata survives."""
        self.state = state
        self.cart = []
        self.checkout = Checkout()


def generate_order_number() -> str:
    """Last 6 digits of the millisecond clock + 3 random digits."""
    stamp = str(int(time.time() * 1000))[-6:]
    return f"{stamp}{random.randint(0, 999):03d}"


def new_checkout_id() -> str:
    return uuid.uuid4().hex
