# router.py
# Single-function deployment: one Lambda behind an API Gateway {proxy+} route serves every /api/* path.

import logging

import catalog_api
import charge_adjustment
import create_checkout
import health
import paystart
import refund
import reserve
import rollup_webhook
import sessions_api
import stripe_webhook
import transactions_api
from http_utils import _resp, get_path
from services import run_handler

logger = logging.getLogger()
logger.setLevel(logging.INFO)

# (path suffix, handle(event, services), plain-text errors)
ROUTES = [
    ("/api/sessions", sessions_api.handle, False),
    ("/api/businesses", catalog_api.handle_businesses, False),
    ("/api/pricing", catalog_api.handle_pricing, False),
    ("/api/sigma-rollup-total-res", rollup_webhook.handle, False),
    ("/api/reserve", reserve.handle, False),
    ("/api/paystart", paystart.handle, True),
    ("/api/create-checkout-session", create_checkout.handle, False),
    ("/api/stripe-webhook", stripe_webhook.handle, False),
    ("/api/charge-adjustment", charge_adjustment.handle, False),
    ("/api/refund", refund.handle, True),
    ("/api/txns", transactions_api.handle_txns, True),
    ("/api/receipt", transactions_api.handle_receipt, True),
    ("/api/caspio-health", health.handle_caspio_health, False),
    ("/api/env-check", health.handle_env_check, False),
]


def resolve(path: str):
    """Match on the path suffix so stage prefixes (/prod/api/...) and trailing slashes are ignored."""
    p = (path or "").rstrip("/")
    for suffix, handle, plain_text in ROUTES:
        if p.endswith(suffix):
            return handle, plain_text
    return None, False


def lambda_handler(event, context):
    path = get_path(event)
    handle, plain_text = resolve(path)
    if handle is None:
        logger.warning(f"[Router] No route for {path}")
        return _resp(404, {"ok": False, "error": "Not found"})
    return run_handler(handle, event, tag="Router", plain_text=plain_text)
