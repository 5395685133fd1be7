# health.py
# GET /api/caspio-health -> smallest possible read against the reservations table
# GET /api/env-check     -> non-secret configuration report

import logging

from http_utils import _resp, cors_headers, empty_resp, error_resp, get_method, method_not_allowed
from services import run_handler

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def _preflight_or_reject(event, headers):
    method = get_method(event)
    if method == "OPTIONS":
        return empty_resp(204, headers)
    if method != "GET":
        return method_not_allowed(headers)
    return None


def handle_caspio_health(event, services):
    settings = services.settings
    headers = cors_headers(event, settings, methods="GET,OPTIONS")
    early = _preflight_or_reject(event, headers)
    if early:
        return early

    try:
        rows = services.caspio.list_records(settings.reservations_table, f"{settings.key_field}<>''", 1)
        # row contents are never echoed back
        return _resp(200, {"ok": True, "table": settings.reservations_table, "rows": len(rows)}, headers)
    except Exception as e:
        return error_resp(e, headers, tag="Health")


def handle_env_check(event, services):
    settings = services.settings
    headers = cors_headers(event, settings, methods="GET,OPTIONS")
    early = _preflight_or_reject(event, headers)
    if early:
        return early

    key = settings.stripe_secret_key
    return _resp(200, {
        **settings.resolved_source(),
        "stripe_secret_key_length": len(key),
        "stripe_secret_key_prefix": key[:7] if key else None,
    }, headers)


def caspio_health_handler(event, context):
    return run_handler(handle_caspio_health, event, tag="Health")


def env_check_handler(event, context):
    return run_handler(handle_env_check, event, tag="Health")
