# catalog_api.py
# GET /api/businesses?date=YYYY-MM-DD   -> distinct {bu, dba} pairs for the date
# GET /api/pricing?price_status=<status> -> pricing rows for a price status
# Both are cached with soft/hard TTL tiers, like /api/sessions.

import logging

from catalog import businesses_key, pricing_key
from errors import ValidationError
from http_utils import _resp, cors_headers, empty_resp, error_resp, get_method, method_not_allowed, query_value
from services import run_handler

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def _cached_payload(result, field: str):
    return {
        "ok": True,
        "cached": result.cached,
        "freshness": result.freshness,
        "age_ms": result.age_ms,
        field: result.data,
    }


def handle_businesses(event, services):
    headers = cors_headers(event, services.settings, methods="GET,OPTIONS")
    method = get_method(event)

    if method == "OPTIONS":
        return empty_resp(204, headers)
    if method != "GET":
        return method_not_allowed(headers, plain_text=True)

    try:
        date = query_value(event, "date")
        if not date:
            raise ValidationError("Missing date")

        result = services.businesses_cache.get(businesses_key(date), date)
        return _resp(200, _cached_payload(result, "pairs"), headers)
    except Exception as e:
        return error_resp(e, headers, tag="Businesses")


def handle_pricing(event, services):
    headers = cors_headers(event, services.settings, methods="GET,OPTIONS")
    method = get_method(event)

    if method == "OPTIONS":
        return empty_resp(204, headers)
    if method != "GET":
        return method_not_allowed(headers, plain_text=True)

    try:
        price_status = query_value(event, "price_status")
        if not price_status:
            raise ValidationError("Missing price_status")

        result = services.pricing_cache.get(pricing_key(price_status), price_status)
        return _resp(200, _cached_payload(result, "rows"), headers)
    except Exception as e:
        return error_resp(e, headers, tag="Pricing")


def businesses_handler(event, context):
    return run_handler(handle_businesses, event, tag="Businesses")


def pricing_handler(event, context):
    return run_handler(handle_pricing, event, tag="Pricing")
