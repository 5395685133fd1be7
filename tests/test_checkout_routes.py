"""
Tests for /api/paystart, /api/create-checkout-session and /api/stripe-webhook.
Stripe calls are patched; nothing leaves the process.
"""

from unittest.mock import patch

import pytest
import stripe

import create_checkout
import paystart
import stripe_webhook
from conftest import api_event, json_body
from errors import DependencyError, NotFoundError
from payments import short_hash

RESERVATION = {
    "IDKEY": "K1",
    "RES_ID": "R1",
    "Email": "ann@example.com",
    "BookingFeeAmount": "25",
    "Sessions_Title": "Bowling 7pm",
    "People_Text": "4 people",
    "Charge_Type": "24 Hour Hold Fee",
}


class TestPaystart:

    @pytest.fixture
    def stripe_calls(self):
        with patch("stripe.Customer.create", return_value={"id": "cus_1"}) as customer_create, \
                patch("stripe.checkout.Session.create",
                      return_value={"id": "cs_1", "url": "https://checkout.stripe.com/c/cs_1"}) as session_create:
            yield customer_create, session_create

    def test_redirect_page_and_writebacks(self, services, mock_store, stripe_calls):
        customer_create, session_create = stripe_calls
        mock_store.get_reservation_by_idkey.return_value = dict(RESERVATION)

        resp = paystart.handle(api_event("GET", "/api/paystart", {"idkey": "K1"}), services)

        assert resp["statusCode"] == 200
        assert resp["headers"]["Content-Type"].startswith("text/html")
        assert '"https://checkout.stripe.com/c/cs_1"' in resp["body"]

        customer_create.assert_called_once_with(email="ann@example.com", metadata={"IDKEY": "K1", "RES_ID": "R1"})
        kwargs = session_create.call_args.kwargs
        assert kwargs["customer"] == "cus_1"
        assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 2500
        assert kwargs["line_items"][0]["price_data"]["product_data"] == {
            "name": "24 Hour Hold Fee", "description": "Bowling 7pm  |  4 people",
        }
        assert kwargs["metadata"]["fee_amount"] == "25.0"
        assert kwargs["metadata"]["base_amount"] == "0.0"
        assert kwargs["payment_intent_data"]["setup_future_usage"] == "off_session"
        assert kwargs["success_url"] == "https://www.reservebarsandrec.com/barresv5custmanage.html?idkey=K1&res_id=R1"
        assert kwargs["cancel_url"] == "https://www.reservebarsandrec.com/barresv5cancelled.html?idkey=K1&res_id=R1"
        assert kwargs["idempotency_key"] == "_".join([
            "RES", "K1", "2500", short_hash("24 Hour Hold Fee"),
            short_hash("Bowling 7pm  |  4 people"), short_hash("R1"),
        ])

        writebacks = [c.args[1] for c in mock_store.update_reservation_by_idkey.call_args_list]
        assert writebacks == [
            {"StripeCustomerId": "cus_1"},
            {"PaymentStatus": "PendingBookingFee", "StripeCheckoutSessionId": "cs_1", "RES_ID": "R1"},
        ]

    def test_breakdown_params_set_total(self, services, mock_store, stripe_calls):
        _, session_create = stripe_calls
        mock_store.get_reservation_by_idkey.return_value = {**RESERVATION, "StripeCustomerId": "cus_saved"}
        query = {"idkey": "K1", "base_amount": "100", "auto_gratuity": "18", "tax_amount": "6.10", "fee_amount": "5"}

        paystart.handle(api_event("GET", "/api/paystart", query), services)

        kwargs = session_create.call_args.kwargs
        assert kwargs["customer"] == "cus_saved"
        assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 12910
        assert kwargs["metadata"]["total_amount"] == "129.1"

    def test_writeback_failures_do_not_block_redirect(self, services, mock_store, stripe_calls):
        mock_store.get_reservation_by_idkey.return_value = dict(RESERVATION)
        mock_store.update_reservation_by_idkey.side_effect = DependencyError("Caspio PUT error 500")

        resp = paystart.handle(api_event("GET", "/api/paystart", {"idkey": "K1"}), services)

        assert resp["statusCode"] == 200

    def test_missing_idkey_is_plain_text_400(self, services):
        resp = paystart.handle(api_event("GET", "/api/paystart"), services)
        assert resp["statusCode"] == 400
        assert resp["body"] == "Missing idkey"

    def test_invalid_booking_fee(self, services, mock_store):
        mock_store.get_reservation_by_idkey.return_value = {**RESERVATION, "BookingFeeAmount": "0"}
        resp = paystart.handle(api_event("GET", "/api/paystart", {"idkey": "K1"}), services)
        assert resp["statusCode"] == 400

    def test_unknown_reservation_is_404(self, services, mock_store):
        mock_store.get_reservation_by_idkey.side_effect = NotFoundError("No reservation found for IDKEY='K0'")
        resp = paystart.handle(api_event("GET", "/api/paystart", {"idkey": "K0"}), services)
        assert resp["statusCode"] == 404

    def test_missing_site_base_url(self, services):
        services.settings.site_base_url = ""
        resp = paystart.handle(api_event("GET", "/api/paystart", {"idkey": "K1"}), services)
        assert resp["statusCode"] == 500
        assert resp["body"] == "Missing SITE_BASE_URL"

    def test_redirect_page_escapes_script_close(self):
        page = paystart.redirect_page("https://x/</script><b>")
        assert page.count("</script>") == 1
        assert '"https://x/<\\/script><b>"' in page


class TestCreateCheckoutSession:

    def test_creates_session_and_marks_pending(self, services, mock_store):
        mock_store.get_reservation_by_idkey.return_value = dict(RESERVATION)
        with patch("stripe.Customer.list", return_value={"data": [{"id": "cus_found"}]}), \
                patch("stripe.checkout.Session.create", return_value={"id": "cs_2", "url": "https://pay/cs_2"}) as create:
            resp = create_checkout.handle(api_event("POST", "/api/create-checkout-session", body={"idkey": "K1"}), services)

        assert json_body(resp) == {"checkoutUrl": "https://pay/cs_2", "sessionId": "cs_2"}
        kwargs = create.call_args.kwargs
        assert kwargs["customer"] == "cus_found"
        assert kwargs["line_items"][0]["price_data"]["product_data"] == {"name": "Booking Fee"}
        assert kwargs["metadata"] == {"reservation_id": "K1", "purpose": "booking_fee"}
        mock_store.update_reservation_by_idkey.assert_called_once_with(
            "K1", {"PaymentStatus": "PendingBookingFee", "StripeCheckoutSessionId": "cs_2"}
        )

    def test_creates_customer_when_none_found(self, services, mock_store):
        mock_store.get_reservation_by_idkey.return_value = dict(RESERVATION)
        with patch("stripe.Customer.list", return_value={"data": []}), \
                patch("stripe.Customer.create", return_value={"id": "cus_new"}) as customer_create, \
                patch("stripe.checkout.Session.create", return_value={"id": "cs_3", "url": "u"}) as create:
            create_checkout.handle(api_event("POST", "/api/create-checkout-session", body={"idkey": "K1"}), services)

        customer_create.assert_called_once()
        assert create.call_args.kwargs["customer"] == "cus_new"

    def test_missing_idkey(self, services):
        resp = create_checkout.handle(api_event("POST", "/api/create-checkout-session", body={}), services)
        assert resp["statusCode"] == 400
        assert json_body(resp)["error"] == "Missing idkey"

    def test_stripe_error_is_500(self, services, mock_store):
        mock_store.get_reservation_by_idkey.return_value = {**RESERVATION, "StripeCustomerId": "cus_1"}
        with patch("stripe.checkout.Session.create", side_effect=stripe.StripeError("boom")):
            resp = create_checkout.handle(api_event("POST", "/api/create-checkout-session", body={"idkey": "K1"}), services)
        assert resp["statusCode"] == 500


def completed_event(metadata, event_id="evt_1"):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": "cs_1",
            "created": 1717236000,
            "amount_total": 2500,
            "currency": "usd",
            "payment_status": "paid",
            "payment_intent": "pi_1",
            "customer": "cus_1",
            "metadata": metadata,
        }},
    }


def webhook_request(sig="t=1,v1=abc"):
    headers = {"Stripe-Signature": sig} if sig else {}
    return api_event("POST", "/api/stripe-webhook", body='{"id": "evt_1"}', headers=headers)


class TestStripeWebhook:

    def test_booking_fee_marks_paid_and_records_ledger(self, services, mock_store):
        metadata = {"reservation_id": "K1", "IDKEY": "K1", "purpose": "booking_fee",
                    "base_amount": "0", "grat_amount": "0", "tax_amount": "0", "fee_amount": "25"}
        mock_store.insert_transaction_if_missing.return_value = {"ok": True, "inserted": {}}

        with patch("stripe.Webhook.construct_event", return_value=completed_event(metadata)) as construct:
            resp = stripe_webhook.handle(webhook_request(), services)

        assert json_body(resp) == {"received": True, "ledger": "inserted"}
        construct.assert_called_once_with(payload='{"id": "evt_1"}', sig_header="t=1,v1=abc", secret="whsec_test")

        idkey, update = mock_store.update_reservation_by_idkey.call_args.args
        assert idkey == "K1"
        assert update["BookingFeePaid"] == 1
        assert update["StripePaymentIntentId"] == "pi_1"
        assert update["BookingFeePaidAt"].startswith("2024-06-01")

        txn = mock_store.insert_transaction_if_missing.call_args.args[0]
        assert txn["RawEventId"] == "evt_1"
        assert txn["Amount"] == 25
        assert txn["Fee_Amount"] == 25
        assert txn["PaymentStatus"] == "BookingFeePaid"

    def test_supplemental_checkout_only_records_ledger(self, services, mock_store):
        metadata = {"IDKEY": "K1", "purpose": "supplemental_fee", "Charge_Type": "Damage"}
        mock_store.insert_transaction_if_missing.return_value = {"ok": True, "skipped": True}

        with patch("stripe.Webhook.construct_event", return_value=completed_event(metadata)):
            resp = stripe_webhook.handle(webhook_request(), services)

        assert json_body(resp)["ledger"] == "skipped"
        mock_store.update_reservation_by_idkey.assert_not_called()
        assert mock_store.insert_transaction_if_missing.call_args.args[0]["PaymentStatus"] == "AdjustmentCharged"

    def test_missing_reservation_id_is_acknowledged(self, services, mock_store):
        with patch("stripe.Webhook.construct_event", return_value=completed_event({})):
            resp = stripe_webhook.handle(webhook_request(), services)

        assert resp["statusCode"] == 200
        assert json_body(resp)["skipped"] == "missing_reservation_id"
        mock_store.insert_transaction_if_missing.assert_not_called()

    def test_bad_signature_is_400(self, services):
        err = stripe.SignatureVerificationError("No signatures found", "t=1,v1=abc")
        with patch("stripe.Webhook.construct_event", side_effect=err):
            resp = stripe_webhook.handle(webhook_request(), services)
        assert resp["statusCode"] == 400
        assert resp["body"].startswith("Webhook Error")

    def test_missing_signature_header(self, services):
        assert stripe_webhook.handle(webhook_request(sig=None), services)["statusCode"] == 400

    def test_other_events_acknowledged(self, services, mock_store):
        with patch("stripe.Webhook.construct_event", return_value={"id": "evt_2", "type": "charge.refunded"}):
            resp = stripe_webhook.handle(webhook_request(), services)
        assert json_body(resp) == {"received": True}
        mock_store.update_reservation_by_idkey.assert_not_called()

    def test_caspio_failure_is_500_so_stripe_retries(self, services, mock_store):
        mock_store.update_reservation_by_idkey.side_effect = DependencyError("Caspio PUT error 500")
        with patch("stripe.Webhook.construct_event",
                   return_value=completed_event({"reservation_id": "K1", "purpose": "booking_fee"})):
            resp = stripe_webhook.handle(webhook_request(), services)
        assert resp["statusCode"] == 500
