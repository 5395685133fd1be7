# paystart.py
"""
GET /api/paystart?idkey=<IDKEY>[&base_amount=&auto_gratuity=&tax_amount=&fee_amount=]

Linked from the Caspio confirmation page. Loads the reservation, makes sure it has a Stripe
customer, creates an idempotent Checkout Session and answers with a small HTML page that
redirects the browser to Stripe.

Without breakdown parameters the charge is fee-only: fee_amount = BookingFeeAmount.
The breakdown travels in session metadata so the webhook can write the ledger row.
"""

import json
import logging
from urllib.parse import quote

import stripe

from errors import ValidationError
from http_utils import cors_headers, error_resp, get_method, html_resp, method_not_allowed, one_line, query_value
from payments import (CURRENCY, customer_id_of, idempotency_key, init_stripe, num_or_none, res_id_of,
                      round2, short_hash, stripe_field, to_cents)
from services import run_handler

logger = logging.getLogger()
logger.setLevel(logging.INFO)

SUCCESS_PAGE = "/barresv5custmanage.html"
CANCEL_PAGE = "/barresv5cancelled.html"

REDIRECT_PAGE = """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8" />
  <title>Redirecting to secure payment…</title>
  <meta name="viewport" content="width=device-width, initial-scale=1" />
  <style>
    body {{ margin: 0; min-height: 100vh; display: flex; align-items: center; justify-content: center;
      font-family: system-ui, -apple-system, Segoe UI, Roboto, Arial, sans-serif; background: #fff; color: #111; }}
    .box {{ text-align: center; padding: 24px; }}
    .title {{ font-size: 20px; font-weight: 700; }}
    .sub {{ margin-top: 8px; opacity: .7; }}
  </style>
</head>
<body>
  <div class="box">
    <div class="title">Redirecting to secure payment…</div>
    <div class="sub">This usually takes just a moment.</div>
  </div>
  <script>
    setTimeout(function () {{ window.location.replace({url}); }}, 250);
  </script>
</body>
</html>"""


def redirect_page(url: str) -> str:
    # json.dumps gives a safe JS string literal; "</" is escaped so it cannot close the script tag
    return REDIRECT_PAGE.format(url=json.dumps(url).replace("</", "<\\/"))


def page_url(site_base_url: str, page: str, idkey: str, res_id: str) -> str:
    url = f"{site_base_url}{page}?idkey={quote(idkey, safe='')}"
    if res_id:
        url += f"&res_id={quote(res_id, safe='')}"
    return url


def breakdown_from_query(event, booking_fee: float) -> dict:
    base = num_or_none(query_value(event, "base_amount"))
    grat = num_or_none(query_value(event, "auto_gratuity"))
    tax = num_or_none(query_value(event, "tax_amount"))
    fee = num_or_none(query_value(event, "fee_amount"))

    if base is None and grat is None and tax is None and fee is None:
        return {"base": 0.0, "grat": 0.0, "tax": 0.0, "fee": round2(booking_fee)}
    return {
        "base": round2(base or 0),
        "grat": round2(grat or 0),
        "tax": round2(tax or 0),
        "fee": round2(fee or 0),
    }


def ensure_customer(services, reservation: dict, idkey: str, email: str, res_id: str) -> str:
    customer_id = customer_id_of(reservation)
    if customer_id:
        return customer_id

    customer = stripe.Customer.create(email=email, metadata={"IDKEY": idkey, "RES_ID": res_id})
    customer_id = stripe_field(customer, "id")
    logger.info(f"[Paystart] created Stripe customer {customer_id} for IDKEY={idkey}")

    try:
        services.store.update_reservation_by_idkey(idkey, {"StripeCustomerId": customer_id})
    except Exception as e:
        logger.warning(f"[Paystart] StripeCustomerId writeback failed for IDKEY={idkey}: {e}")
    return customer_id


def handle(event, services):
    settings = services.settings
    headers = cors_headers(event, settings, methods="GET,OPTIONS")

    if get_method(event) != "GET":
        return method_not_allowed(headers, plain_text=True)

    try:
        init_stripe(settings)
        site_base_url = settings.require("site_base_url", "SITE_BASE_URL")

        idkey = one_line(query_value(event, "idkey", "IDKEY", "IdKey"))
        if not idkey:
            raise ValidationError("Missing idkey")

        reservation = services.store.get_reservation_by_idkey(idkey)

        email = one_line(reservation.get("Email"))
        booking_fee = num_or_none(reservation.get("BookingFeeAmount")) or 0.0
        sessions_title = one_line(reservation.get("Sessions_Title"))
        people_text = one_line(reservation.get("People_Text"))
        charge_type = one_line(reservation.get("Charge_Type")) or "Booking Fee"
        res_id = one_line(res_id_of(reservation))

        if not email:
            raise ValidationError("Missing Email on reservation")
        if booking_fee <= 0:
            raise ValidationError("Missing/invalid BookingFeeAmount on reservation")

        parts = breakdown_from_query(event, booking_fee)
        total = round2(parts["base"] + parts["grat"] + parts["tax"] + parts["fee"])
        if total <= 0:
            raise ValidationError("Missing/invalid total charge amount")
        unit_amount = to_cents(total)

        below_amount_text = "  |  ".join(s for s in (sessions_title, people_text) if s)[:500]

        metadata = {
            "IDKEY": idkey,
            "RES_ID": res_id,
            "reservation_id": idkey,
            "purpose": "booking_fee",
            "source": "checkout",
            "Charge_Type": charge_type,
            "Sessions_Title": sessions_title,
            "People_Text": people_text,
            "base_amount": str(parts["base"]),
            "grat_amount": str(parts["grat"]),
            "tax_amount": str(parts["tax"]),
            "fee_amount": str(parts["fee"]),
            "total_amount": str(total),
        }

        idem_key = idempotency_key(
            "RES", idkey, unit_amount,
            short_hash(charge_type), short_hash(below_amount_text), short_hash(res_id),
        )

        customer_id = ensure_customer(services, reservation, idkey, email, res_id)

        product_data = {"name": charge_type}
        if below_amount_text:
            product_data["description"] = below_amount_text

        session = stripe.checkout.Session.create(
            mode="payment",
            customer=customer_id,
            client_reference_id=idkey,
            line_items=[{
                "quantity": 1,
                "price_data": {
                    "currency": CURRENCY,
                    "product_data": product_data,
                    "unit_amount": unit_amount,
                },
            }],
            payment_intent_data={
                # saves the card so adjustments can be charged off-session later
                "setup_future_usage": "off_session",
                "metadata": metadata,
            },
            metadata=metadata,
            success_url=page_url(site_base_url, SUCCESS_PAGE, idkey, res_id),
            cancel_url=page_url(site_base_url, CANCEL_PAGE, idkey, res_id),
            idempotency_key=idem_key,
        )
        session_id = stripe_field(session, "id")
        logger.info(f"[Paystart] checkout session {session_id} for IDKEY={idkey} amount={unit_amount}c")

        pending = {"PaymentStatus": "PendingBookingFee", "StripeCheckoutSessionId": session_id}
        if res_id:
            pending["RES_ID"] = res_id
        try:
            services.store.update_reservation_by_idkey(idkey, pending)
        except Exception as e:
            logger.warning(f"[Paystart] pending writeback failed for IDKEY={idkey}: {e}")

        return html_resp(200, redirect_page(stripe_field(session, "url")), headers)
    except Exception as e:
        return error_resp(e, headers, plain_text=True, tag="Paystart")


def lambda_handler(event, context):
    return run_handler(handle, event, tag="Paystart", plain_text=True)
