# sessions_api.py
# GET /api/sessions?date=YYYY-MM-DD&bu=<business unit>
# Availability rows from the sessions view, served through the freshness-tiered cache.

import logging

from catalog import sessions_key
from errors import ValidationError
from http_utils import _resp, cors_headers, empty_resp, error_resp, get_method, method_not_allowed, query_value
from services import run_handler

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def handle(event, services):
    headers = cors_headers(event, services.settings, methods="GET,OPTIONS")
    method = get_method(event)

    if method == "OPTIONS":
        return empty_resp(204, headers)
    if method != "GET":
        return method_not_allowed(headers, plain_text=True)

    try:
        date = query_value(event, "date")
        bu = query_value(event, "bu")
        if not date:
            raise ValidationError("Missing date")

        result = services.sessions_cache.get(sessions_key(date, bu), date, bu)
        logger.info(f"[Sessions] date={date} bu={bu or '*'} -> {result.freshness} ({len(result.data)} rows)")

        return _resp(200, {
            "ok": True,
            "cached": result.cached,
            "freshness": result.freshness,
            "age_ms": result.age_ms,
            "rows": result.data,
        }, headers)
    except Exception as e:
        return error_resp(e, headers, tag="Sessions")


def lambda_handler(event, context):
    return run_handler(handle, event, tag="Sessions")
