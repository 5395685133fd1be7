# http_utils.py
# API Gateway proxy event helpers: request parsing, CORS headers and response builders.

import json
import base64
import logging
from typing import Any, Dict, Optional
from urllib.parse import parse_qs

from errors import MiddlewareError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_ALLOW_HEADERS = "Content-Type, Authorization"


# ════════════════════════════════════════════════════════════════════════════
# Request helpers (REST API v1 and HTTP API v2 proxy events)
# ════════════════════════════════════════════════════════════════════════════
def get_method(event) -> str:
    method = (event or {}).get("httpMethod") or ((event or {}).get("requestContext") or {}).get("http", {}).get("method")
    return (method or "").upper()


def get_path(event) -> str:
    event = event or {}
    return (event.get("path") or event.get("rawPath")
            or (event.get("requestContext") or {}).get("http", {}).get("path") or "")


def get_header(event, name: str) -> str:
    headers = (event or {}).get("headers") or {}
    # case-insensitive lookup
    for k, v in headers.items():
        if k.lower() == name.lower():
            return v or ""
    return ""


def get_query(event) -> Dict[str, str]:
    return dict((event or {}).get("queryStringParameters") or {})


def query_value(event, *names: str) -> str:
    """First non-blank query parameter among names, trimmed."""
    params = get_query(event)
    for name in names:
        v = params.get(name)
        if v is not None and str(v).strip():
            return str(v).strip()
    return ""


def get_raw_body(event) -> str:
    body = (event or {}).get("body") or ""
    if (event or {}).get("isBase64Encoded"):
        body = base64.b64decode(body).decode("utf-8")
    return body


def parse_body(event) -> Dict[str, Any]:
    """JSON or form-encoded body as a dict. Empty body -> {}."""
    raw = get_raw_body(event)
    if not raw.strip():
        return {}

    content_type = get_header(event, "content-type").lower()
    if "application/x-www-form-urlencoded" in content_type:
        return {k: v[0] if len(v) == 1 else v for k, v in parse_qs(raw, keep_blank_values=True).items()}

    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        raise ValidationError("Invalid JSON body")
    if not isinstance(data, dict):
        raise ValidationError("JSON body must be an object")
    return data


def one_line(value: Any) -> str:
    """Collapse whitespace runs; None -> ''."""
    if value is None:
        return ""
    return " ".join(str(value).split())


# ════════════════════════════════════════════════════════════════════════════
# CORS
# ════════════════════════════════════════════════════════════════════════════
def cors_headers(event, settings, methods: str = "GET,OPTIONS",
                 allow_headers: str = DEFAULT_ALLOW_HEADERS) -> Dict[str, str]:
    """Echo the Origin when it is allowed, otherwise answer with the first allowed origin."""
    headers = {
        "Access-Control-Allow-Methods": methods,
        "Access-Control-Allow-Headers": allow_headers,
        "Access-Control-Max-Age": "600",
    }
    if settings.cors_allow_any:
        headers["Access-Control-Allow-Origin"] = "*"
        return headers

    origin = get_header(event, "origin")
    allowed = settings.allowed_origins
    if origin and origin in allowed:
        headers["Access-Control-Allow-Origin"] = origin
    elif allowed:
        headers["Access-Control-Allow-Origin"] = allowed[0]
    headers["Vary"] = "Origin"
    return headers


def origin_allowed(event, settings) -> bool:
    """Strict origin check for routes that move money. Requests without an Origin header pass."""
    if settings.cors_allow_any:
        return True
    origin = get_header(event, "origin")
    return not origin or origin in settings.allowed_origins


# ════════════════════════════════════════════════════════════════════════════
# Response helpers
# ════════════════════════════════════════════════════════════════════════════
def _resp(status: int, body: Any, headers: Optional[Dict[str, str]] = None):
    return {
        "statusCode": status,
        "headers": {"Content-Type": "application/json", **(headers or {})},
        "body": json.dumps(body, default=str),
    }


def text_resp(status: int, text: str, headers: Optional[Dict[str, str]] = None):
    return {
        "statusCode": status,
        "headers": {"Content-Type": "text/plain; charset=utf-8", "Cache-Control": "no-store", **(headers or {})},
        "body": text,
    }


def html_resp(status: int, html: str, headers: Optional[Dict[str, str]] = None):
    return {
        "statusCode": status,
        "headers": {"Content-Type": "text/html; charset=utf-8", "Cache-Control": "no-store", **(headers or {})},
        "body": html,
    }


def empty_resp(status: int = 204, headers: Optional[Dict[str, str]] = None):
    return {"statusCode": status, "headers": dict(headers or {}), "body": ""}


def error_resp(err: Exception, headers: Optional[Dict[str, str]] = None, plain_text: bool = False, tag: str = "API"):
    """Map an exception to a response. MiddlewareError keeps its status; anything else is a 500."""
    if isinstance(err, MiddlewareError):
        status, message = err.status_code, err.message
        if status >= 500:
            logger.error(f"[{tag}] {err.__class__.__name__}: {message}")
        else:
            logger.warning(f"[{tag}] {status} {message}")
    else:
        logger.exception(f"[{tag}] Unexpected error: {err}")
        status, message = 500, str(err) or "Server error"

    if plain_text:
        return text_resp(status, message, headers)
    return _resp(status, {"ok": False, "error": message}, headers)


def method_not_allowed(headers: Optional[Dict[str, str]] = None, plain_text: bool = False):
    if plain_text:
        return text_resp(405, "Method not allowed", headers)
    return _resp(405, {"ok": False, "error": "Method not allowed"}, headers)
