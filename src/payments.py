# payments.py
# Stripe helpers shared by the checkout, webhook, adjustment and refund handlers.

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional

import stripe

from kms_utils import mask_secret

logger = logging.getLogger(__name__)

CURRENCY = "usd"
MAX_IDEMPOTENCY_KEY_LENGTH = 255
CENT = Decimal("0.01")


def init_stripe(settings) -> None:
    """Set the module-level API key for this request."""
    key = settings.require("stripe_secret_key", "STRIPE_SECRET_KEY")
    if stripe.api_key != key:
        logger.info(f"[Stripe] using key {mask_secret(key)}")
    stripe.api_key = key


def stripe_field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a StripeObject or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    try:
        return obj[name]
    except (KeyError, TypeError):
        return getattr(obj, name, default)


def stripe_id(value: Any) -> Optional[str]:
    """Expandable fields are either an id string or the expanded object."""
    if value is None or isinstance(value, str):
        return value or None
    return stripe_field(value, "id")


# ---------------- Money -------------------------------------------------------

def num_or_none(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool) or (isinstance(value, str) and not value.strip()):
        return None
    try:
        d = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    if not d.is_finite():
        return None
    return float(d)


def quantize_cents(value: Any) -> Decimal:
    """Decimal rounded half-up to whole cents."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def round2(value: float) -> float:
    return float(quantize_cents(value))


def to_cents(amount: float) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_dollars(cents: Optional[int]) -> Optional[float]:
    if cents is None:
        return None
    return round2(cents / 100)


# ---------------- Idempotency / timestamps -----------------------------------

def short_hash(value: Any) -> str:
    """Stable 32-bit rolling hash (hex). Not cryptographic; used to vary idempotency keys."""
    h = 0
    for ch in str(value or ""):
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    return format(h, "x")


def idempotency_key(*parts: Any) -> str:
    return "_".join(str(p) for p in parts)[:MAX_IDEMPOTENCY_KEY_LENGTH]


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def iso_from_unix(ts: Optional[int]) -> str:
    if not ts:
        return iso_now()
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).isoformat()


def reservation_field(reservation: Dict[str, Any], *names: str) -> Optional[str]:
    """First non-empty value among alternate Caspio column spellings."""
    for name in names:
        v = reservation.get(name)
        if v not in (None, ""):
            return str(v).strip()
    return None


def res_id_of(reservation: Dict[str, Any]) -> str:
    return reservation_field(reservation, "RES_ID", "Res_ID", "res_id", "resId") or ""


def customer_id_of(reservation: Dict[str, Any]) -> Optional[str]:
    return reservation_field(reservation, "StripeCustomerId", "Stripe_Customer_ID", "stripeCustomerId")
