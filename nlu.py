"""
nlu.py — deterministic text understanding (the "fast lane").

Customers write English, Bangla and Banglish, often in one message. All
matching here is rule-based and free: no network, no model.

Keyword lists are matched on whole tokens, not raw substrings: a list entry
like "s" (size small) or "ha" (yes) must not fire inside "yes" or "thanks".
Multi-word entries match as a contiguous token run.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

# ── Tokenising ────────────────────────────────────────────────────────────────

# Whitespace plus ASCII and Bangla punctuation (। is the Bangla full stop)
_SPLIT = re.compile(r"[\s,.!?;:\"'()\[\]{}।]+")


def normalize(text: str) -> str:
    return (text or "").strip().lower()


def tokens(text: str) -> list[str]:
    return [t for t in _SPLIT.split(normalize(text)) if t]


def contains_phrase(text_tokens: list[str], phrase: str) -> bool:
    """True if the tokens of *phrase* appear contiguously in *text_tokens*."""
    needle = tokens(phrase)
    if not needle:
        return False
    n = len(needle)
    for i in range(len(text_tokens) - n + 1):
        if text_tokens[i:i + n] == needle:
            return True
    return False


def contains_any(text: str, keywords: list[str]) -> bool:
    toks = tokens(text)
    return any(contains_phrase(toks, kw) for kw in keywords)


# ── Local intent (POSITIVE / NEGATIVE / UNKNOWN) ──────────────────────────────

POSITIVE = "POSITIVE"
NEGATIVE = "NEGATIVE"
UNKNOWN = "UNKNOWN"

POSITIVE_KEYWORDS = [
    # English
    "yes", "yep", "yeah", "yup", "ok", "okay", "sure", "confirm", "right",
    "correct", "good", "fine", "proceed", "continue", "accept", "agree",
    # Banglish
    "ji", "jii", "hae", "haan", "ha", "hum", "humm", "thik ase", "thik",
    "ase", "hobe", "chai", "chae",
    # Bangla
    "হ্যাঁ", "জি", "ঠিক আছে", "ঠিক", "আছে", "হবে", "চাই", "সঠিক",
]

NEGATIVE_KEYWORDS = [
    # English
    "no", "nope", "nah", "cancel", "wrong", "incorrect", "stop", "decline",
    "reject", "not",
    # Banglish
    "na", "naa", "nai", "nahi", "vul", "lagbe na", "chai na",
    # Bangla
    "না", "নাই", "ভুল", "বাতিল", "লাগবে না", "চাই না",
]

# Negated phrases that contain a positive word ("chai na" contains "chai")
_NEGATED_PHRASES = ["lagbe na", "chai na", "লাগবে না", "চাই না", "not ok", "not okay"]


def detect_intent(text: str) -> str:
    toks = tokens(text)
    if not toks:
        return UNKNOWN
    if any(contains_phrase(toks, p) for p in _NEGATED_PHRASES):
        return NEGATIVE
    if any(contains_phrase(toks, kw) for kw in POSITIVE_KEYWORDS):
        return POSITIVE
    if any(contains_phrase(toks, kw) for kw in NEGATIVE_KEYWORDS):
        return NEGATIVE
    return UNKNOWN


# ── Strict confirmation patterns (whole-message) ──────────────────────────────

YES_PATTERNS = [
    re.compile(r"^(yes|yep|yeah|yup|sure|ok|okay|y)$", re.I),
    re.compile(r"^(ji|jii|hae|haan|ha|hum|humm)$", re.I),
    re.compile(r"^(হ্যাঁ|জি|ঠিক আছে|আছে|হুম|হবে)$"),
    re.compile(r"^(order korbo|order koro|order dibo|order dao|order chai)$", re.I),
    re.compile(r"^(nibo|nebo|kinbo|kinte chai)$", re.I),
    re.compile(r"^(chai|chae|lagbe|hobe)$", re.I),
    re.compile(r"^(confirm|confirmed|confirm koro|confirm korbo)$", re.I),
    re.compile(r"^(অর্ডার করব|অর্ডার করবো|অর্ডার দিব|অর্ডার দাও|অর্ডার চাই)$"),
    re.compile(r"^(নিব|নেব|নিবো|কিনব|কিনবো|কিনতে চাই)$"),
    re.compile(r"^(চাই|লাগবে)$"),
    # Contained phrases
    re.compile(r"order\s*korbo", re.I),
    re.compile(r"order\s*chai", re.I),
    re.compile(r"nite\s*chai", re.I),
    re.compile(r"kinte\s*chai", re.I),
]

NO_PATTERNS = [
    re.compile(r"^(no|nope|nah|n|cancel)$", re.I),
    re.compile(r"^(na|nai|nahi)$", re.I),
    re.compile(r"^(না|নাই|নাহ|ভুল|বাতিল)$"),
]

GREETING_PATTERNS = [
    re.compile(r"^(hi|hello|hey|greetings)$", re.I),
    re.compile(r"^(assalamualaikum|assalamu alaikum|salam|salaam)$", re.I),
    re.compile(r"^(হাই|হ্যালো|আসসালামু আলাইকুম)$"),
]

CANCEL_PATTERN = re.compile(r"^(cancel|বাতিল|order cancel|cancel order)$", re.I)

_TRAILING_PUNCT = re.compile(r"[\s.!?।]+$")


def _clean(text: str) -> str:
    return _TRAILING_PUNCT.sub("", (text or "").strip())


def is_yes(text: str) -> bool:
    t = _clean(text)
    return any(p.search(t) for p in YES_PATTERNS)


def is_no(text: str) -> bool:
    t = _clean(text)
    return any(p.search(t) for p in NO_PATTERNS)


def is_greeting(text: str) -> bool:
    t = _clean(text)
    return any(p.search(t) for p in GREETING_PATTERNS)


def is_cancel(text: str) -> bool:
    return bool(CANCEL_PATTERN.match(_clean(text)))


# ── Interruptions (questions asked mid-checkout) ──────────────────────────────

DELIVERY = "delivery"
PRICE = "price"
PAYMENT = "payment"
RETURN = "return"
SIZE = "size"

DELIVERY_KEYWORDS = [
    "delivery", "shipping", "courier", "charge", "cost",
    "when", "কখন", "কবে", "koto din", "kotdin", "কত দিন", "কতদিন",
    "arrive", "reach", "পৌঁছাবে", "পৌঁছে", "পাব", "আসবে", "পাবো",
    "পৌছাবে", "পৌছে",
    "deliver", "ডেলিভারি", "চার্জ", "খরচ",
    "কত লাগবে", "time lagbe", "সময়", "somoy",
    "receive", "পেতে",
]

PRICE_KEYWORDS = [
    "price", "how much", "rate", "budget",
    "কত", "দাম", "টাকা", "কত টাকা", "dam",
    "dam koto", "koto taka", "dam ki",
]

PAYMENT_KEYWORDS = [
    "payment", "pay", "how to pay", "paid",
    "পেমেন্ট", "কিভাবে", "পরিশোধ",
    "kivabe", "kemon kore", "কেমন করে",
    "বিকাশ", "নগদ", "bkash", "nagad", "bikash", "nogod",
]

RETURN_KEYWORDS = [
    "return", "exchange", "refund",
    "ফেরত", "বদল", "ফিরিয়ে", "পরিবর্তন", "ফেরতযোগ্য",
    "ferot", "firat", "change kora", "বদলানো",
]

SIZE_KEYWORDS = [
    "size", "small", "medium", "large", "xl", "xxl",
    "সাইজ", "মাপ", "ছোট", "বড়", "মাঝারি",
    "choto", "boro", "মিডিয়াম", "লার্জ",
    "available", "পাওয়া যায়", "stock",
]

DETAILS_KEYWORDS = [
    "details", "detail", "info", "information", "specification",
    "বিস্তারিত", "বর্ণনা", "জানতে চাই", "বলুন", "দেখাও",
    "dekhao", "bolo", "জানাও", "janao",
    "color", "colour", "রঙ", "রং", "কালার",
]

ORDER_KEYWORDS = [
    "order", "buy", "purchase", "want", "need",
    "কিনব", "কিনতে চাই", "অর্ডার", "নিব", "নিতে চাই",
    "kinbo", "nibo", "nite chai",
]

_INTERRUPTIONS = [
    (DELIVERY, DELIVERY_KEYWORDS),
    (PRICE, PRICE_KEYWORDS),
    (PAYMENT, PAYMENT_KEYWORDS),
    (RETURN, RETURN_KEYWORDS),
    (SIZE, SIZE_KEYWORDS),
]


def get_interruption_type(text: str) -> Optional[str]:
    """First matching question category, checked in a fixed order."""
    toks = tokens(text)
    for kind, keywords in _INTERRUPTIONS:
        if any(contains_phrase(toks, kw) for kw in keywords):
            return kind
    return None


def is_details_request(text: str) -> bool:
    return contains_any(text, DETAILS_KEYWORDS) or contains_any(text, PRICE_KEYWORDS)


def is_order_intent(text: str) -> bool:
    return contains_any(text, ORDER_KEYWORDS)


# ── Customer details ──────────────────────────────────────────────────────────

PHONE_PATTERNS = [
    re.compile(r"^01[3-9]\d{8}$"),
    re.compile(r"^\+8801[3-9]\d{8}$"),
    re.compile(r"^8801[3-9]\d{8}$"),
    re.compile(r"^01[3-9]\s?\d{4}\s?\d{4}$"),
]

NAME_PATTERN = re.compile(r"^[a-zA-Z\u0980-\u09FF\s.]{2,50}$")

_NAME_PREFIXES = ["my name is", "i am", "this is", "আমার নাম", "আমি"]

DHAKA_KEYWORDS = [
    "dhaka", "ঢাকা", "dhanmondi", "ধানমন্ডি", "gulshan", "গুলশান",
    "banani", "বনানী", "mirpur", "মিরপুর", "uttara", "উত্তরা",
    "mohakhali", "farmgate", "tejgaon", "তেজগাঁও", "badda", "বাড্ডা",
    "rampura", "রামপুরা", "khilgaon", "খিলগাঁও", "malibagh", "shahbag",
    "paltan", "motijheel", "মতিঝিল", "mohammadpur", "মোহাম্মদপুর",
    "kamrangirchar", "lalbagh",
]

MIN_ADDRESS_LENGTH = 10

_BANGLA_DIGITS = str.maketrans("০১২৩৪৫৬৭৮৯", "0123456789")


def to_ascii_digits(text: str) -> str:
    return text.translate(_BANGLA_DIGITS)


def is_valid_phone(phone: str) -> bool:
    cleaned = re.sub(r"[\s\-]", "", to_ascii_digits(phone or ""))
    return any(p.match(cleaned) for p in PHONE_PATTERNS)


def normalize_phone(phone: str) -> str:
    """Reduce any accepted format to 01XXXXXXXXX."""
    digits = re.sub(r"\D", "", to_ascii_digits(phone or ""))
    return digits[-11:] if len(digits) >= 11 else digits


def is_dhaka(address: str) -> bool:
    normalized = normalize(address)
    return any(kw in normalized for kw in DHAKA_KEYWORDS)


def is_valid_address(text: str) -> bool:
    return len((text or "").strip()) >= MIN_ADDRESS_LENGTH


def capitalize_words(text: str) -> str:
    return " ".join(w[:1].upper() + w[1:].lower() for w in text.split())


def extract_name(text: str) -> str:
    cleaned = (text or "").strip()
    for prefix in _NAME_PREFIXES:
        cleaned = re.sub(rf"^{re.escape(prefix)}\s*", "", cleaned, flags=re.I)
    return capitalize_words(cleaned).strip()


def looks_like_name(text: str) -> bool:
    return bool(NAME_PATTERN.match((text or "").strip()))


def is_payment_digits(text: str) -> bool:
    return bool(re.fullmatch(r"\d{2}", to_ascii_digits((text or "").strip())))


# ── Quick form (all details in one message) ───────────────────────────────────

_LABELS = r"(?:নাম|Name|ফোন|Phone|Mobile|মোবাইল|ঠিকানা|Address|সাইজ|Size|কালার|Color|রং|পরিমাণ|Quantity|Qty)"
_NAME_RE = re.compile(r"(?:নাম|Name)\s*[:\-]\s*([^\n]+)", re.I)
_PHONE_RE = re.compile(r"(?:ফোন|Phone|Mobile|মোবাইল)\s*[:\-]\s*([^\n]+)", re.I)
_ADDRESS_RE = re.compile(rf"(?:ঠিকানা|Address)\s*[:\-]\s*([\s\S]+?)(?=\n\s*{_LABELS}\s*[:\-]|$)", re.I)
_SIZE_RE = re.compile(r"(?:সাইজ|Size|Saiz)\s*[:\-]\s*([^\n]+)", re.I)
_COLOR_RE = re.compile(r"(?:কালার|Color|Colour|Kalar|রং)\s*[:\-]\s*([^\n]+)", re.I)
_QTY_RE = re.compile(r"(?:পরিমাণ|Quantity|Qty|সংখ্যা)\s*[:\-]\s*([\d০-৯]+)", re.I)

_SIZE_LINE = re.compile(r"^(xs|s|m|l|xl|xxl|xxxl)$", re.I)
_NUMERIC_SIZE = re.compile(r"^(2[8-9]|3[0-9]|4[0-8])$")
_QTY_LINE = re.compile(r"^[1-9]\d{0,2}$")
_HAS_PHONE = re.compile(r"01[3-9]\d{8}|^880")


@dataclass
class CustomerDetails:
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    size: Optional[str] = None
    color: Optional[str] = None
    quantity: int = 1

    @property
    def is_empty(self) -> bool:
        return not (self.name or self.phone or self.address)


def _is_phone_line(line: str) -> bool:
    return bool(_HAS_PHONE.search(re.sub(r"\D", "", to_ascii_digits(line))))


def parse_customer_details(text: str, colors: Optional[list[str]] = None) -> CustomerDetails:
    """
    Read name / phone / address (and size, colour, quantity) from one message.

    Labelled lines ("Name: …", "ফোন: …") are tried first; whatever is still
    missing is filled positionally: the phone line is found by pattern, the
    first line is the name and the lines after the phone are the address,
    minus trailing size / quantity / colour lines.
    """
    text = (text or "").strip()
    colors = colors or []
    details = CustomerDetails()

    m = _NAME_RE.search(text)
    if m:
        details.name = m.group(1).strip()
    m = _PHONE_RE.search(text)
    if m:
        details.phone = m.group(1).strip()
    m = _ADDRESS_RE.search(text)
    if m:
        details.address = m.group(1).strip()
    m = _SIZE_RE.search(text)
    if m:
        details.size = m.group(1).strip().upper()
    m = _COLOR_RE.search(text)
    if m:
        details.color = m.group(1).strip()
    m = _QTY_RE.search(text)
    if m:
        details.quantity = int(to_ascii_digits(m.group(1))) or 1

    if details.name and details.phone and details.address:
        return details

    lines = [line.strip() for line in text.split("\n") if line.strip()]
    phone_idx = next((i for i, line in enumerate(lines) if _is_phone_line(line)), None)

    if len(lines) >= 3:
        if phone_idx is None:
            details.name = details.name or lines[0]
            details.phone = details.phone or lines[1]
            details.address = details.address or "\n".join(lines[2:])
            return details

        details.phone = details.phone or lines[phone_idx]
        if phone_idx > 0 and not details.name:
            details.name = lines[0]
        if phone_idx < len(lines) - 1 and not details.address:
            rest = lines[phone_idx + 1:]
            # Peel size / quantity / colour off the last few lines
            for i in range(len(rest) - 1, max(len(rest) - 5, -1), -1):
                line = to_ascii_digits(rest[i])
                if not details.size and (_SIZE_LINE.match(line) or _NUMERIC_SIZE.match(line)):
                    details.size = line.upper()
                    del rest[i]
                    continue
                if details.quantity == 1 and _QTY_LINE.match(line) and int(line) > 1:
                    details.quantity = int(line)
                    del rest[i]
                    continue
                matched = next((c for c in colors if c.lower() == line.lower()), None)
                if not details.color and matched:
                    details.color = matched
                    del rest[i]
            details.address = "\n".join(rest) or None
    elif len(lines) == 2 and phone_idx is not None:
        details.phone = details.phone or lines[phone_idx]
        details.name = details.name or lines[1 - phone_idx]

    return details
