# create_checkout.py
# POST /api/create-checkout-session  {"idkey": "..."}
# JSON variant of /api/paystart: creates a booking-fee Checkout Session and returns its URL.

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import stripe

from errors import ValidationError
from http_utils import _resp, cors_headers, empty_resp, error_resp, get_method, method_not_allowed, one_line, parse_body
from payments import CURRENCY, customer_id_of, init_stripe, num_or_none, stripe_field, to_cents
from services import run_handler

logger = logging.getLogger()
logger.setLevel(logging.INFO)

EMAIL_FIELD = "Email"
BOOKING_FEE_FIELD = "BookingFeeAmount"


def get_or_create_customer(email: str, metadata: Optional[Dict[str, Any]] = None) -> str:
    """
    Find the Stripe customer for an email, or create one.

    The session must be tied to a customer so the saved card can be charged off-session
    for later adjustments.
    """
    if not email:
        raise ValidationError("Email is required to create/find customer")

    existing = stripe.Customer.list(email=email, limit=1)
    data = stripe_field(existing, "data") or []
    if data:
        customer_id = stripe_field(data[0], "id")
        logger.info(f"[Checkout] found existing customer {customer_id}")
        return customer_id

    customer = stripe.Customer.create(email=email, metadata=metadata or {})
    customer_id = stripe_field(customer, "id")
    logger.info(f"[Checkout] created customer {customer_id}")
    return customer_id


def handle(event, services):
    settings = services.settings
    headers = cors_headers(event, settings, methods="GET,POST,OPTIONS")
    method = get_method(event)

    if method == "OPTIONS":
        return empty_resp(204, headers)
    if method == "GET":
        return _resp(200, {"ok": True, "route": "create-checkout-session"}, headers)
    if method != "POST":
        return method_not_allowed(headers)

    try:
        init_stripe(settings)
        site_base_url = settings.require("site_base_url", "SITE_BASE_URL")

        idkey = one_line(parse_body(event).get("idkey"))
        if not idkey:
            raise ValidationError("Missing idkey")

        reservation = services.store.get_reservation_by_idkey(idkey)

        email = one_line(reservation.get(EMAIL_FIELD))
        booking_fee = num_or_none(reservation.get(BOOKING_FEE_FIELD)) or 0.0
        if not email:
            raise ValidationError(f"Missing {EMAIL_FIELD} on reservation")
        if booking_fee <= 0:
            raise ValidationError(f"Missing/invalid {BOOKING_FEE_FIELD} on reservation")

        metadata = {"reservation_id": idkey, "purpose": "booking_fee"}
        customer_id = customer_id_of(reservation) or get_or_create_customer(email, {"IDKEY": idkey})

        encoded = quote(idkey, safe="")
        session = stripe.checkout.Session.create(
            mode="payment",
            customer=customer_id,
            line_items=[{
                "quantity": 1,
                "price_data": {
                    "currency": CURRENCY,
                    "product_data": {"name": "Booking Fee"},
                    "unit_amount": to_cents(booking_fee),
                },
            }],
            payment_intent_data={
                "setup_future_usage": "off_session",
                "metadata": metadata,
            },
            metadata=metadata,
            success_url=f"{site_base_url}/barresv5confirmed?idkey={encoded}",
            cancel_url=f"{site_base_url}/barresv5cancelled?idkey={encoded}",
        )
        session_id = stripe_field(session, "id")
        logger.info(f"[Checkout] created session {session_id} for IDKEY={idkey}")

        services.store.update_reservation_by_idkey(idkey, {
            "PaymentStatus": "PendingBookingFee",
            "StripeCheckoutSessionId": session_id,
        })

        return _resp(200, {"checkoutUrl": stripe_field(session, "url"), "sessionId": session_id}, headers)
    except Exception as e:
        return error_resp(e, headers, tag="Checkout")


def lambda_handler(event, context):
    return run_handler(handle, event, tag="Checkout")
