# charge_adjustment.py
"""
POST /api/charge-adjustment

Body: {IDKEY, baseAmount, taxPct=6.1, gratPct=15, adjustmentType, description, reason}

Charges a supplemental fee of base + tax% + gratuity%:
  - saved Stripe customer + payment method -> off-session PaymentIntent (one click)
  - otherwise -> a Checkout Session the customer completes (returns checkout_url)

Every outcome is logged to the transactions table, best effort.
"""

import time
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import stripe

from errors import ValidationError
from http_utils import (_resp, cors_headers, empty_resp, error_resp, get_method, method_not_allowed,
                        one_line, origin_allowed, parse_body)
from payments import (CURRENCY, customer_id_of, init_stripe, iso_now, num_or_none, reservation_field,
                      res_id_of, round2, stripe_field, stripe_id, to_cents)
from services import run_handler

logger = logging.getLogger()
logger.setLevel(logging.INFO)

DEFAULT_TAX_PCT = 6.1
DEFAULT_GRAT_PCT = 15
MAX_TAX_PCT = 25
MAX_GRAT_PCT = 50
MIN_CHARGE_CENTS = 50


def clamp(value: Any, limit: int) -> str:
    return one_line(value)[:limit]


def compute_breakdown(base: float, tax_pct: float, grat_pct: float) -> Dict[str, float]:
    tax_amount = round2(base * tax_pct / 100)
    grat_amount = round2(base * grat_pct / 100)
    return {
        "base": round2(base),
        "taxPct": round2(tax_pct),
        "taxAmount": tax_amount,
        "gratPct": round2(grat_pct),
        "gratAmount": grat_amount,
        "total": round2(base + tax_amount + grat_amount),
    }


def parse_request(body: Dict[str, Any]) -> Dict[str, Any]:
    idkey = one_line(body.get("IDKEY"))
    if not idkey:
        raise ValidationError("Missing IDKEY")

    base = num_or_none(body.get("baseAmount"))
    if base is None or base <= 0:
        raise ValidationError("Invalid baseAmount")

    adj_type = clamp(body.get("adjustmentType") or "Supplemental Fee", 60)
    desc = clamp(body.get("description"), 180)
    if not desc:
        raise ValidationError("Description is required")

    tax_pct = num_or_none(body.get("taxPct", DEFAULT_TAX_PCT))
    grat_pct = num_or_none(body.get("gratPct", DEFAULT_GRAT_PCT))
    if tax_pct is None or not 0 <= tax_pct <= MAX_TAX_PCT:
        raise ValidationError(f"Invalid taxPct (expected 0-{MAX_TAX_PCT})")
    if grat_pct is None or not 0 <= grat_pct <= MAX_GRAT_PCT:
        raise ValidationError(f"Invalid gratPct (expected 0-{MAX_GRAT_PCT})")

    breakdown = compute_breakdown(base, tax_pct, grat_pct)
    total_cents = to_cents(breakdown["total"])
    if total_cents < MIN_CHARGE_CENTS:
        raise ValidationError("Total too small")

    return {
        "idkey": idkey,
        "type": adj_type,
        "description": clamp(f"{adj_type} - {desc}", 250),
        "reason": clamp(body.get("reason") or "", 500),
        "breakdown": breakdown,
        "total_cents": total_cents,
    }


def derive_billing(reservation: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """Saved customer + payment method from the reservation, or from its booking-fee PaymentIntent."""
    customer = customer_id_of(reservation)
    pm = reservation_field(reservation, "StripePaymentMethodId", "Stripe_PaymentMethod_ID", "stripePaymentMethodId")
    if customer and pm:
        return {"customer": customer, "payment_method": pm, "source": "reservation"}

    pi_id = reservation_field(reservation, "StripePaymentIntentId", "Stripe_PaymentIntent_ID", "stripePaymentIntentId")
    if pi_id:
        pi = stripe.PaymentIntent.retrieve(pi_id, expand=["payment_method", "latest_charge"])
        latest_charge = stripe_field(pi, "latest_charge")
        pm_from_charge = None if isinstance(latest_charge, str) else stripe_field(latest_charge, "payment_method")
        return {
            "customer": stripe_id(stripe_field(pi, "customer")) or customer,
            "payment_method": stripe_id(stripe_field(pi, "payment_method")) or stripe_id(pm_from_charge) or pm,
            "source": "payment_intent",
        }

    return {"customer": customer, "payment_method": pm, "source": "none"}


def _metadata(req: Dict[str, Any], res_id: str, source: str) -> Dict[str, str]:
    b = req["breakdown"]
    return {
        "IDKEY": req["idkey"],
        "RES_ID": res_id,
        "purpose": "supplemental_fee",
        "Charge_Type": req["type"],
        "Description": req["description"],
        "Reason": req["reason"],
        "base_amount": str(b["base"]),
        "tax_pct": str(b["taxPct"]),
        "tax_amount": str(b["taxAmount"]),
        "grat_pct": str(b["gratPct"]),
        "grat_amount": str(b["gratAmount"]),
        "total_amount": str(b["total"]),
        "source": source,
    }


def _log_txn(services, req: Dict[str, Any], **fields) -> None:
    b = req["breakdown"]
    now = iso_now()
    txn = {
        "IDKEY": req["idkey"],
        "TxnType": "charge",
        "Amount": b["total"],
        "Currency": CURRENCY,
        "StripeCheckoutSessionId": None,
        "StripePaymentIntentId": None,
        "StripeChargeId": None,
        "StripeCustomerId": None,
        "Charge_Type": req["type"],
        "Description": req["description"],
        "Base_Amount": b["base"],
        "Gratuity_Amount": b["gratAmount"],
        "Tax_Amount": b["taxAmount"],
        "Fee_Amount": 0,
        "Transaction_date": now,
        "CreatedAt": now,
        **fields,
    }
    try:
        services.store.insert_transaction_if_missing(txn)
    except Exception as e:
        logger.warning(f"[Adjust] transaction log failed for IDKEY={req['idkey']}: {e}")


def charge_off_session(services, req, res_id, billing):
    idkey, total_cents = req["idkey"], req["total_cents"]

    try:
        services.store.update_reservation_by_idkey(idkey, {
            "StripeCustomerId": billing["customer"],
            "StripePaymentMethodId": billing["payment_method"],
        })
    except Exception as e:
        logger.warning(f"[Adjust] billing writeback failed for IDKEY={idkey}: {e}")

    # one key per click; a retried click is a new charge
    idem_key = f"supp_{idkey}_{total_cents}_{int(time.time() * 1000)}"
    try:
        pi = stripe.PaymentIntent.create(
            amount=total_cents,
            currency=CURRENCY,
            customer=billing["customer"],
            payment_method=billing["payment_method"],
            off_session=True,
            confirm=True,
            description=req["description"],
            metadata=_metadata(req, res_id, "off_session"),
            expand=["latest_charge"],
            idempotency_key=idem_key,
        )
    except stripe.StripeError as e:
        msg = getattr(e, "user_message", None) or str(e) or "Stripe error"
        logger.warning(f"[Adjust] off-session charge failed for IDKEY={idkey}: {msg}")
        _log_txn(
            services, req,
            PaymentStatus="AdjustmentFailed",
            Status="failed",
            StripeCustomerId=billing["customer"],
            RawEventId=f"supp_fail_{idkey}_{total_cents}_{int(time.time() * 1000)}",
        )
        status = 402 if isinstance(e, stripe.CardError) else 502
        return status, {"ok": False, "error": msg}

    pi_id = stripe_field(pi, "id")
    pi_status = stripe_field(pi, "status") or "unknown"
    charge_id = stripe_id(stripe_field(pi, "latest_charge"))
    logger.info(f"[Adjust] off-session PaymentIntent {pi_id} status={pi_status} for IDKEY={idkey}")

    _log_txn(
        services, req,
        PaymentStatus="AdjustmentCharged" if pi_status == "succeeded" else "AdjustmentCreated",
        Status=pi_status,
        StripePaymentIntentId=pi_id,
        StripeChargeId=charge_id,
        StripeCustomerId=billing["customer"],
        RawEventId=f"pi_{pi_id}",
    )
    return 200, {
        "ok": True,
        "mode": "off_session",
        "idkey": idkey,
        "res_id": res_id or None,
        "description": req["description"],
        "derivedStripeBillingSource": billing["source"],
        "breakdown": req["breakdown"],
        "payment_intent": {"id": pi_id, "status": pi_status},
        "charge_id": charge_id,
    }


def checkout_fallback(services, req, res_id, email, site_base_url):
    idkey = req["idkey"]
    manage_url = f"{site_base_url}/barresv5custmanage.html?idkey={quote(idkey, safe='')}"
    if res_id:
        manage_url += f"&res_id={quote(res_id, safe='')}"
    metadata = _metadata(req, res_id, "checkout_fallback")

    params = dict(
        mode="payment",
        client_reference_id=idkey,
        line_items=[{
            "quantity": 1,
            "price_data": {
                "currency": CURRENCY,
                "product_data": {"name": req["type"], "description": req["description"]},
                "unit_amount": req["total_cents"],
            },
        }],
        payment_intent_data={"setup_future_usage": "off_session", "metadata": metadata},
        metadata=metadata,
        success_url=manage_url,
        cancel_url=manage_url,
    )
    if email:
        params["customer_email"] = email

    session = stripe.checkout.Session.create(**params)
    session_id = stripe_field(session, "id")
    logger.info(f"[Adjust] checkout fallback session {session_id} for IDKEY={idkey}")

    _log_txn(
        services, req,
        PaymentStatus="AdjustmentCheckoutCreated",
        Status="pending",
        StripeCheckoutSessionId=session_id,
        RawEventId=f"checkout_{session_id}",
    )
    return 200, {
        "ok": True,
        "mode": "checkout",
        "idkey": idkey,
        "res_id": res_id or None,
        "description": req["description"],
        "checkout_session_id": session_id,
        "checkout_url": stripe_field(session, "url"),
        "breakdown": req["breakdown"],
    }


def handle(event, services):
    settings = services.settings
    headers = cors_headers(event, settings, methods="POST,OPTIONS", allow_headers="Content-Type")
    method = get_method(event)

    if method == "OPTIONS":
        return empty_resp(204, headers)
    if method != "POST":
        return method_not_allowed(headers)
    if not origin_allowed(event, settings):
        return _resp(403, {"ok": False, "error": "CORS blocked. Add this origin to ALLOWED_ORIGINS."}, headers)

    try:
        init_stripe(settings)
        site_base_url = settings.require("site_base_url", "SITE_BASE_URL")
        req = parse_request(parse_body(event))

        reservation = services.store.get_reservation_by_idkey(req["idkey"])
        res_id = one_line(res_id_of(reservation))
        email = one_line(reservation.get("Email"))

        billing = derive_billing(reservation)
        if billing["customer"] and billing["payment_method"]:
            status, body = charge_off_session(services, req, res_id, billing)
        else:
            status, body = checkout_fallback(services, req, res_id, email, site_base_url)
        return _resp(status, body, headers)
    except Exception as e:
        return error_resp(e, headers, tag="Adjust")


def lambda_handler(event, context):
    return run_handler(handle, event, tag="Adjust")
