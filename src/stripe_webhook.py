# stripe_webhook.py
# POST /api/stripe-webhook
# Verifies the Stripe signature, then on checkout.session.completed:
#   - booking fee sessions mark the reservation paid
#   - every completed session gets one ledger row, keyed by the Stripe event id

import logging
from typing import Any, Dict

import stripe

from http_utils import _resp, error_resp, get_header, get_method, get_raw_body, method_not_allowed, text_resp
from payments import CURRENCY, cents_to_dollars, iso_from_unix, iso_now, num_or_none, stripe_field, stripe_id
from services import run_handler

logger = logging.getLogger()
logger.setLevel(logging.INFO)

PURPOSE_BOOKING_FEE = "booking_fee"
PURPOSE_SUPPLEMENTAL = "supplemental_fee"


def _meta(session) -> Dict[str, Any]:
    metadata = stripe_field(session, "metadata") or {}
    if isinstance(metadata, dict):
        return metadata
    # StripeObject
    return {k: metadata[k] for k in metadata.keys()}


def ledger_row(evt_id: str, session, metadata: Dict[str, Any]) -> Dict[str, Any]:
    amount_total = stripe_field(session, "amount_total")
    amount = cents_to_dollars(amount_total) if amount_total is not None else num_or_none(metadata.get("total_amount"))
    supplemental = metadata.get("purpose") == PURPOSE_SUPPLEMENTAL

    return {
        "IDKEY": metadata.get("IDKEY") or metadata.get("reservation_id") or "",
        "TxnType": "charge",
        "Amount": amount,
        "Currency": (stripe_field(session, "currency") or CURRENCY).lower(),
        "PaymentStatus": "AdjustmentCharged" if supplemental else "BookingFeePaid",
        "Status": stripe_field(session, "payment_status") or "paid",
        "StripeCheckoutSessionId": stripe_field(session, "id"),
        "StripePaymentIntentId": stripe_id(stripe_field(session, "payment_intent")),
        "StripeCustomerId": stripe_id(stripe_field(session, "customer")),
        "Charge_Type": metadata.get("Charge_Type") or ("Supplemental Fee" if supplemental else "Booking Fee"),
        "Description": metadata.get("Description") or metadata.get("Sessions_Title") or "",
        "Base_Amount": num_or_none(metadata.get("base_amount")),
        "Gratuity_Amount": num_or_none(metadata.get("grat_amount")),
        "Tax_Amount": num_or_none(metadata.get("tax_amount")),
        "Fee_Amount": num_or_none(metadata.get("fee_amount")),
        "RawEventId": evt_id,
        "Transaction_date": iso_from_unix(stripe_field(session, "created")),
        "CreatedAt": iso_now(),
    }


def on_checkout_completed(services, evt_id: str, session) -> Dict[str, Any]:
    metadata = _meta(session)
    idkey = metadata.get("reservation_id") or metadata.get("IDKEY")
    if not idkey:
        logger.error(f"[WH] session {stripe_field(session, 'id')} has no reservation_id in metadata")
        return {"received": True, "skipped": "missing_reservation_id"}

    if metadata.get("purpose", PURPOSE_BOOKING_FEE) == PURPOSE_BOOKING_FEE:
        services.store.update_reservation_by_idkey(idkey, {
            "BookingFeePaid": 1,
            "BookingFeePaidAt": iso_from_unix(stripe_field(session, "created")),
            "StripeCheckoutSessionId": stripe_field(session, "id"),
            "StripePaymentIntentId": stripe_id(stripe_field(session, "payment_intent")),
            "StripeCustomerId": stripe_id(stripe_field(session, "customer")),
        })
        logger.info(f"[WH] ✅ marked booking fee paid for IDKEY={idkey}")

    ledger = services.store.insert_transaction_if_missing(ledger_row(evt_id, session, metadata))
    return {"received": True, "ledger": "skipped" if ledger.get("skipped") else "inserted"}


def handle(event, services):
    settings = services.settings

    if get_method(event) != "POST":
        return method_not_allowed(plain_text=True)

    try:
        secret = settings.require("stripe_webhook_secret", "STRIPE_WEBHOOK_SECRET")
        payload = get_raw_body(event)
        sig = get_header(event, "stripe-signature")
        if not sig:
            logger.error("[WH] Missing Stripe-Signature header")
            return text_resp(400, "Webhook Error: missing Stripe-Signature header")

        try:
            evt = stripe.Webhook.construct_event(payload=payload, sig_header=sig, secret=secret)
        except (stripe.SignatureVerificationError, ValueError) as e:
            logger.error(f"[WH] ❌ Signature verification failed: {e}")
            return text_resp(400, f"Webhook Error: {e}")

        etype = stripe_field(evt, "type")
        evt_id = stripe_field(evt, "id")
        logger.info(f"[WH] Processing event {evt_id} type: {etype}")

        if etype == "checkout.session.completed":
            session = stripe_field(stripe_field(evt, "data"), "object")
            return _resp(200, on_checkout_completed(services, evt_id, session))

        logger.info(f"[WH] Acknowledged event type: {etype}")
        return _resp(200, {"received": True})
    except Exception as e:
        # 500 lets Stripe retry; the ledger insert is idempotent on the event id
        return error_resp(e, tag="WH")


def lambda_handler(event, context):
    return run_handler(handle, event, tag="WH")
