# refund.py
"""
POST /api/refund   (admin tool)

Headers: x-refund-key: <ADMIN_REFUND_KEY>
Body:    {"txn_id": "12345", "amount": 12.34 (optional, blank = full remaining), "reason": "note"}

1) looks up the original transaction by TXN_ID
2) refunds against its Stripe charge (or the PaymentIntent's latest charge)
3) inserts a NEGATIVE refund row into the transactions table

Errors are answered as plain text.
"""

import hmac
import logging
from typing import Any, Dict, Optional

import stripe

from errors import AuthError, NotFoundError, ValidationError
from http_utils import (_resp, cors_headers, empty_resp, error_resp, get_header, get_method, method_not_allowed,
                        one_line, parse_body)
from payments import (CURRENCY, cents_to_dollars, idempotency_key, init_stripe, iso_from_unix, iso_now,
                      num_or_none, stripe_field, stripe_id, to_cents)
from services import run_handler

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def dollars_to_cents(value: Any) -> Optional[int]:
    """None when blank (meaning "full refund"); rejects zero/negative amounts."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    n = num_or_none(value)
    if n is None or n <= 0:
        raise ValidationError("Invalid amount")
    return to_cents(n)


def check_refund_key(event, expected: str) -> None:
    presented = get_header(event, "x-refund-key")
    if not presented or not hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
        raise AuthError()


def locate_charge(orig: Dict[str, Any]):
    charge_id = orig.get("StripeChargeId") or orig.get("Stripe_Charge_ID")
    pi_id = orig.get("StripePaymentIntentId") or orig.get("Stripe_PaymentIntent_ID")
    if not charge_id and not pi_id:
        raise ValidationError("Transaction missing StripeChargeId / StripePaymentIntentId")

    if charge_id:
        return stripe.Charge.retrieve(str(charge_id)), pi_id

    pi = stripe.PaymentIntent.retrieve(str(pi_id), expand=["latest_charge"])
    latest = stripe_field(pi, "latest_charge")
    if isinstance(latest, str):
        latest = stripe.Charge.retrieve(latest)
    return latest, pi_id


def refund_row(orig: Dict[str, Any], refund, charge, refund_cents: int, reason: str, pi_id) -> Dict[str, Any]:
    charge_id = stripe_field(charge, "id")
    desc_base = orig.get("Description") or orig.get("Charge_Type") or "charge"
    desc = f"Refund - {desc_base} - {reason}" if reason else f"Refund - {desc_base}"
    currency = stripe_field(refund, "currency") or stripe_field(charge, "currency") or orig.get("Currency") or CURRENCY

    return {
        "IDKEY": str(orig.get("IDKEY") or ""),
        "TxnType": "refund",
        "Amount": -abs(cents_to_dollars(refund_cents)),
        "Currency": str(currency).lower(),
        "PaymentStatus": "Refunded",
        "Status": stripe_field(refund, "status") or "succeeded",
        "StripeCheckoutSessionId": orig.get("StripeCheckoutSessionId"),
        "StripePaymentIntentId": stripe_id(stripe_field(charge, "payment_intent")) or pi_id,
        "StripeChargeId": charge_id,
        "StripeRefundId": stripe_field(refund, "id"),
        "ParentStripeChargeId": charge_id,
        "StripeCustomerId": stripe_id(stripe_field(charge, "customer")) or orig.get("StripeCustomerId"),
        "StripePaymentMethodId": orig.get("StripePaymentMethodId"),
        "Charge_Type": orig.get("Charge_Type") or "refund",
        "Description": one_line(desc)[:250],
        "Confirmation_Number": orig.get("Confirmation_Number"),
        "RawEventId": f"api_refund_{stripe_field(refund, 'id')}",
        "Transaction_date": iso_from_unix(stripe_field(refund, "created")),
        "CreatedAt": iso_now(),
    }


def handle(event, services):
    settings = services.settings
    headers = cors_headers(event, settings, methods="POST,OPTIONS", allow_headers="Content-Type,x-refund-key")
    method = get_method(event)

    if method == "OPTIONS":
        return empty_resp(200, headers)
    if method != "POST":
        return method_not_allowed(headers, plain_text=True)

    try:
        init_stripe(settings)
        check_refund_key(event, settings.require("admin_refund_key", "ADMIN_REFUND_KEY"))

        body = parse_body(event)
        txn_id = one_line(body.get("txn_id"))
        reason = one_line(body.get("reason") or body.get("note") or "")
        amount_cents = dollars_to_cents(body.get("amount"))
        if not txn_id:
            raise ValidationError("Missing txn_id")

        orig = services.store.find_transaction(txn_id)
        if not orig:
            raise NotFoundError("Transaction not found")
        if str(orig.get("TxnType") or "charge").lower() == "refund":
            raise ValidationError("Cannot refund a refund transaction")

        charge, pi_id = locate_charge(orig)
        if not charge:
            raise ValidationError("Unable to locate Stripe charge for this transaction")

        charge_amount = stripe_field(charge, "amount")
        if not isinstance(charge_amount, int):
            raise ValidationError("Stripe charge has no amount")
        remaining = max(0, charge_amount - (stripe_field(charge, "amount_refunded") or 0))

        refund_cents = remaining if amount_cents is None else amount_cents
        if refund_cents <= 0:
            raise ValidationError("Nothing left to refund")
        if refund_cents > remaining:
            raise ValidationError(f"Refund exceeds remaining refundable. Remaining: ${cents_to_dollars(remaining):.2f}")

        charge_id = stripe_field(charge, "id")
        refund = stripe.Refund.create(
            charge=charge_id,
            amount=refund_cents,
            reason="requested_by_customer",
            metadata={
                "TXN_ID": txn_id,
                "IDKEY": str(orig.get("IDKEY") or ""),
                "Confirmation_Number": str(orig.get("Confirmation_Number") or ""),
                "note": reason[:450],
            },
            idempotency_key=idempotency_key("refund", txn_id, charge_id, refund_cents),
        )
        refund_id = stripe_field(refund, "id")
        logger.info(f"[Refund] {refund_id} for TXN_ID={txn_id} charge={charge_id} amount={refund_cents}c")

        services.store.insert_transaction(refund_row(orig, refund, charge, refund_cents, reason, pi_id))

        return _resp(200, {
            "ok": True,
            "refund_id": refund_id,
            "refunded_amount": cents_to_dollars(refund_cents),
            "remaining_refundable": cents_to_dollars(remaining - refund_cents),
            "charge_id": charge_id,
        }, headers)
    except Exception as e:
        return error_resp(e, headers, plain_text=True, tag="Refund")


def lambda_handler(event, context):
    return run_handler(handle, event, tag="Refund", plain_text=True)
