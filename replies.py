"""
replies.py — every customer-facing message the bot sends.

Design language:
  • Bangla first, English product terms where customers use them
  • One emoji per line as an icon, dropped entirely when the workspace
    turns emojis off
  • Unicode box-drawing dividers around summaries

All reply text should be produced through this module so tone and emoji
settings apply uniformly.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional, Sequence

import database as db
from conversation import CartItem, Checkout
from settings_store import WorkspaceSettings

DIV = "━━━━━━━━━━━━━━━━━━━━"

# Postback payload prefixes for the product card buttons
ORDER_NOW = "ORDER_NOW_"
VIEW_DETAILS = "VIEW_DETAILS_"

PAYMENT_PLACEHOLDER = "{{PAYMENT_DETAILS}}"

_EMOJI = re.compile("[\U0001F300-\U0001FAFF\u2600-\u27BF\u2B00-\u2BFF\uFE0F\u20E3]")


def finish(text: str, settings: WorkspaceSettings) -> str:
    """Apply the workspace emoji setting to a finished reply."""
    if settings.use_emojis:
        return text
    stripped = _EMOJI.sub("", text)
    return "\n".join(line.strip() for line in stripped.split("\n")).strip()


def money(amount: float) -> str:
    return f"৳{amount:,.0f}" if float(amount).is_integer() else f"৳{amount:,.2f}"


# ══════════════════════════════════════════════════════════════════════════════
# PRODUCT CARD
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class CardButton:
    title: str
    payload: str


@dataclass
class ProductCard:
    product_id: int
    title: str
    subtitle: str
    image_url: str
    buttons: list[CardButton] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "title": self.title,
            "subtitle": self.subtitle,
            "image_url": self.image_url,
            "buttons": [{"title": b.title, "payload": b.payload} for b in self.buttons],
        }


def product_card(product: db.Product) -> ProductCard:
    stock = "In Stock" if product.stock_quantity > 0 else "Out of Stock"
    return ProductCard(
        product_id=product.id,
        title=product.name,
        subtitle=f"{money(product.price)} • {stock}",
        image_url=product.image_url,
        buttons=[
            CardButton("Order Now", f"{ORDER_NOW}{product.id}"),
            CardButton("View Details", f"{VIEW_DETAILS}{product.id}"),
        ],
    )


# ══════════════════════════════════════════════════════════════════════════════
# WELCOME / HELP
# ══════════════════════════════════════════════════════════════════════════════

def welcome(settings: WorkspaceSettings) -> str:
    if settings.greeting:
        return finish(settings.greeting, settings)
    return finish(
        f"স্বাগতম! 👋 {settings.business_name} এ আপনাকে স্বাগতম!\n\n"
        "Product খুঁজতে:\n"
        "📸 Product এর ছবি পাঠান\n"
        "অথবা\n"
        "💬 Product এর নাম লিখুন\n\n"
        "শুরু করি? 😊",
        settings,
    )


def help_text(settings: WorkspaceSettings) -> str:
    return finish(
        "আমি আপনাকে সাহায্য করতে পারি! 😊\n\n"
        "কিভাবে অর্ডার করবেন:\n"
        "1️⃣ Product এর ছবি পাঠান\n"
        "2️⃣ আমি product খুঁজে দেব\n"
        "3️⃣ Confirm করুন\n"
        "4️⃣ নাম, ফোন, ঠিকানা দিন\n"
        "5️⃣ Order confirmed! 🎉\n\n"
        "এখনই শুরু করতে product এর ছবি পাঠান! 📸",
        settings,
    )


# ══════════════════════════════════════════════════════════════════════════════
# PRODUCT
# ══════════════════════════════════════════════════════════════════════════════

def product_found(product: db.Product, confidence: float, settings: WorkspaceSettings) -> str:
    if confidence >= settings.confidence_threshold:
        opener = f"দারুণ! এটা তো আমাদের {product.name}! 😊"
    else:
        opener = f"সবচেয়ে কাছাকাছি যেটা পেয়েছি: {product.name} 🔍"
    return finish(
        f"{opener}\n\n"
        f"📦 Product: {product.name}\n"
        f"💰 Price: {money(product.price)}\n"
        f"🚚 Delivery: {money(settings.delivery_charge_inside_dhaka)} (ঢাকার মধ্যে)\n"
        f"🚚 Delivery: {money(settings.delivery_charge_outside_dhaka)} (ঢাকার বাইরে)\n\n"
        "অর্ডার করতে চান? 🛒 (YES/NO)",
        settings,
    )


def product_not_found(settings: WorkspaceSettings) -> str:
    return finish(
        "দুঃখিত! 😔 এই product টা আমাদের কাছে নেই।\n\n"
        "আপনি চাইলে:\n"
        "1️⃣ অন্য product এর ছবি পাঠান\n"
        "2️⃣ অথবা product এর নাম লিখুন\n\n"
        "কিভাবে সাহায্য করতে পারি? 🤔",
        settings,
    )


def product_details(item: CartItem, settings: WorkspaceSettings) -> str:
    lines = [f"📦 {item.product_name}", ""]
    if item.description:
        lines += ["📝 Description:", item.description, ""]
    lines.append(f"💰 Price: {money(item.product_price)}")
    if item.category:
        lines.append(f"🏷️ Category: {item.category}")
    if item.colors:
        lines.append(f"🎨 Available Colors: {', '.join(item.colors)}")
    if item.sizes:
        lines.append(f"📏 Available Sizes: {', '.join(item.sizes)}")
    if item.stock_quantity > 0:
        lines.append(f"✅ In Stock ({item.stock_quantity} available)")
    else:
        lines.append("❌ Out of Stock")
    return finish("\n".join(lines), settings)


def confirm_product_prompt(settings: WorkspaceSettings) -> str:
    return finish("এই product চান? (YES/NO)", settings)


def product_declined(settings: WorkspaceSettings) -> str:
    return finish(
        "কোনো সমস্যা নেই! 😊\n\nঅন্য product এর ছবি পাঠান অথবা \"help\" লিখুন।",
        settings,
    )


def out_of_stock(product_name: str, settings: WorkspaceSettings) -> str:
    return finish(settings.out_of_stock_message.replace("{product_name}", product_name), settings)


def search_not_found(query: str, settings: WorkspaceSettings) -> str:
    return finish(
        f"দুঃখিত! \"{query}\" নামে কোনো product পাইনি। 😔\n\n"
        "Product এর ছবি পাঠালে আমরা খুঁজে দিতে পারবো। 📸",
        settings,
    )


# ══════════════════════════════════════════════════════════════════════════════
# CUSTOMER DETAILS
# ══════════════════════════════════════════════════════════════════════════════

def ask_name(settings: WorkspaceSettings) -> str:
    return finish("দারুণ! 🎉\n\nআপনার সম্পূর্ণ নামটি বলবেন?\n(Example: Zayed Bin Hamid)", settings)


def reask_name(settings: WorkspaceSettings) -> str:
    return finish("আপনার সম্পূর্ণ নামটি বলবেন? (Example: Zayed Bin Hamid)", settings)


def already_ordering(settings: WorkspaceSettings) -> str:
    return finish("আপনি ইতিমধ্যে অর্ডার করছেন! আপনার সম্পূর্ণ নামটি বলবেন?", settings)


def name_collected(name: str, settings: WorkspaceSettings) -> str:
    return finish(
        f"আপনার সাথে পরিচিত হয়ে ভালো লাগলো, {name}! 😊\n\n"
        "এখন আপনার ফোন নম্বর দিন। 📱\n(Example: 01712345678)",
        settings,
    )


def ask_phone(settings: WorkspaceSettings) -> str:
    return finish("এখন আপনার ফোন নম্বর দিন। 📱", settings)


def invalid_phone(settings: WorkspaceSettings) -> str:
    return finish(
        "⚠️ Phone number টা ঠিক মনে হচ্ছে না।\n\n"
        "সঠিক Bangladesh phone number দিন:\nExample: 01812345678\n\n"
        "আবার চেষ্টা করুন। 📱",
        settings,
    )


def phone_collected(settings: WorkspaceSettings) -> str:
    return finish(
        "পেয়েছি! 📱\n\nএখন আপনার ডেলিভারি ঠিকানাটি দিন। 📍\n"
        "(Example: House 123, Road 4, Dhanmondi, Dhaka)",
        settings,
    )


def ask_address(settings: WorkspaceSettings) -> str:
    return finish("আপনার ডেলিভারি ঠিকানাটি দিন। 📍", settings)


def address_too_short(settings: WorkspaceSettings) -> str:
    return finish(
        "⚠️ ঠিকানাটি একটু বিস্তারিত দিন (বাসা, রোড, এলাকা, জেলা)।\n"
        "Example: House 123, Road 4, Dhanmondi, Dhaka",
        settings,
    )


def quick_form_prompt(settings: WorkspaceSettings, sizes: Sequence[str], colors: Sequence[str]) -> str:
    prompt = settings.quick_form_prompt
    if sizes:
        prompt += f"\nসাইজ: ({'/'.join(sizes)})"
    if len(colors) > 1:
        prompt += f"\nকালার: ({'/'.join(colors)})"
    prompt += "\nপরিমাণ: (1 হলে লিখতে হবে না)"
    return finish(prompt, settings)


def quick_form_error(
    missing: Sequence[str],
    settings: WorkspaceSettings,
    sizes: Sequence[str] = (),
    colors: Sequence[str] = (),
) -> str:
    msg = "দুঃখিত, আমি আপনার তথ্যটি সঠিকভাবে বুঝতে পারিনি। 😔"
    if missing:
        msg += f"\n\n❌ Missing: {', '.join(missing)}"
    msg += (
        "\n\nঅনুগ্রহ করে নিচের ফর্ম্যাটে আবার দিন:\n\n"
        "নাম: আপনার নাম\nফোন: 017XXXXXXXX\nঠিকানা: আপনার সম্পূর্ণ ঠিকানা"
    )
    if sizes:
        msg += f"\nসাইজ: {'/'.join(sizes)}"
    if len(colors) > 1:
        msg += f"\nকালার: {'/'.join(colors)}"
    return finish(msg, settings)


def stock_error(available: int, settings: WorkspaceSettings) -> str:
    if available <= 0:
        text = "❌ দুঃখিত! এই প্রোডাক্ট এখন স্টকে নেই।"
    else:
        text = (
            f"❌ দুঃখিত! এই প্রোডাক্টে মাত্র {available} পিস আছে। "
            f"আপনি সর্বোচ্চ {available} পিস অর্ডার করতে পারবেন।"
        )
    return finish(text, settings)


# ══════════════════════════════════════════════════════════════════════════════
# ORDER
# ══════════════════════════════════════════════════════════════════════════════

def order_summary(cart: Sequence[CartItem], checkout: Checkout, settings: WorkspaceSettings) -> str:
    items = []
    for idx, item in enumerate(cart, 1):
        line = f"{idx}. {item.product_name}"
        if item.selected_size:
            line += f"\n   📏 Size: {item.selected_size}"
        if item.selected_color:
            line += f"\n   🎨 Color: {item.selected_color}"
        line += f"\n   {money(item.product_price)} × {item.quantity} = {money(item.subtotal)}"
        items.append(line)
    subtotal = sum(i.subtotal for i in cart)

    return finish(
        f"📦 Order Summary\n{DIV}\n\n"
        f"👤 Name: {checkout.customer_name}\n"
        f"📱 Phone: {checkout.customer_phone}\n"
        f"📍 Address: {checkout.customer_address}\n\n"
        f"🛍️ Product:\n" + "\n\n".join(items) + "\n\n"
        f"💰 Pricing:\n"
        f"• Subtotal: {money(subtotal)}\n"
        f"• Delivery: {money(checkout.delivery_charge or 0)}\n"
        f"• Total: {money(checkout.total_amount or 0)}\n\n"
        f"{DIV}\nConfirm this order? (YES/NO) ✅",
        settings,
    )


def payment_instructions(total_amount: float, settings: WorkspaceSettings) -> str:
    text = (
        "✅ অর্ডার confirm হয়েছে!\n\n"
        f"💰 Payment options ({settings.payment_methods}):\n"
        f"{money(total_amount)} টাকা পাঠান:\n"
        f"{PAYMENT_PLACEHOLDER}\n\n"
        "Payment করার পর শেষের ২ ডিজিট (last 2 digits) পাঠান। 🔢\n\n"
        "Example: যদি transaction ID হয় BKC12345678, তাহলে পাঠান: 78"
    )
    return finish(text.replace(PAYMENT_PLACEHOLDER, settings.payment_message), settings)


def invalid_payment_digits(settings: WorkspaceSettings) -> str:
    return finish(
        "⚠️ দুঃখিত! শুধু ২টা digit দিতে হবে।\n\nExample: 78 বা 45\n\nআবার চেষ্টা করুন। 🔢",
        settings,
    )


def payment_review(name: str, digits: str, order_number: str, settings: WorkspaceSettings) -> str:
    return finish(
        f"ধন্যবাদ {name}! 🙏\n\n"
        f"আপনার payment digits ({digits}) পেয়েছি। ✅\n"
        f"Order ID: #{order_number}\n\n"
        f"আমরা এখন payment verify করবো। সফল হলে {settings.delivery_time} এর মধ্যে "
        "আপনার order deliver করা হবে। 📦\n\n"
        "আমাদের সাথে কেনাকাটার জন্য ধন্যবাদ! 🎉",
        settings,
    )


def order_cancelled(settings: WorkspaceSettings) -> str:
    return finish(
        "ঠিক আছে! অর্ডার cancel করা হলো। ❌\n\nনতুন করে অর্ডার করতে চাইলে product এর ছবি পাঠান। 📸",
        settings,
    )


def order_status(order: Optional[db.Order], settings: WorkspaceSettings) -> str:
    if order is None:
        return finish(
            "আপনার কোনো অর্ডার খুঁজে পাইনি। 🤔\n\nঅর্ডার করতে product এর ছবি পাঠান! 📸",
            settings,
        )
    return finish(
        f"📦 Order #{order.order_number}\n"
        f"📊 Status: {order.status}\n"
        f"💵 Total: {money(order.total_amount)}\n"
        f"🕒 Placed: {order.created_at:%d %b %Y}",
        settings,
    )


def yes_no_prompt(settings: WorkspaceSettings) -> str:
    return finish("অনুগ্রহ করে YES অথবা NO লিখুন। 🙂", settings)


# ══════════════════════════════════════════════════════════════════════════════
# QUESTIONS (delivery / payment / return)
# ══════════════════════════════════════════════════════════════════════════════

def delivery_info(settings: WorkspaceSettings) -> str:
    return finish(
        "🚚 Delivery Information:\n"
        f"• ঢাকার মধ্যে: {money(settings.delivery_charge_inside_dhaka)}\n"
        f"• ঢাকার বাইরে: {money(settings.delivery_charge_outside_dhaka)}\n"
        f"• Delivery সময়: {settings.delivery_time}",
        settings,
    )


def payment_info(settings: WorkspaceSettings) -> str:
    methods = "\n".join(f"• {m.strip()}" for m in settings.payment_methods.split(",") if m.strip())
    return finish(f"💳 Payment Methods:\nআমরা নিম্নলিখিত payment methods গ্রহণ করি:\n\n{methods}", settings)


def return_info(settings: WorkspaceSettings) -> str:
    return finish(f"🔄 Return Policy:\n{settings.return_policy}", settings)


def interruption_answer(kind: str, item: Optional[CartItem], settings: WorkspaceSettings) -> str:
    """Answer a mid-checkout question; price/size questions show the product."""
    if kind == "delivery":
        return delivery_info(settings)
    if kind == "payment":
        return payment_info(settings)
    if kind == "return":
        return return_info(settings)
    if item is not None:
        return product_details(item, settings)
    return finish("আপনি product এর details product card এ দেখতে পাবেন। 😊", settings)


def general_info(settings: WorkspaceSettings) -> str:
    return delivery_info(settings) + "\n\n" + payment_info(settings)
