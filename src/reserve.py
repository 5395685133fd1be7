# reserve.py
"""
POST /api/reserve

Receives the booking form fields, inserts a row into the reservations table and returns
{ok: true, idkey} so the page can continue to /api/paystart?idkey=...

Caspio rejects inserts that touch read-only (formula/autonumber) columns, so the insert is
retried with progressively smaller payloads: full -> safe allowlist -> minimal. Columns that
Caspio reports as missing are trimmed and the same attempt is retried once.
"""

import re
import logging
from typing import Any, Dict, List, Optional

from errors import DependencyError
from http_utils import _resp, cors_headers, empty_resp, error_resp, get_method, method_not_allowed, parse_body
from services import run_handler

logger = logging.getLogger()
logger.setLevel(logging.INFO)

FORM_FIELDS = [
    # contact
    "First_Name", "Last_Name", "Email", "Phone_Number", "Cust_Notes",
    # booking choice
    "Cancelation_Policy", "Charge_Type",
    # session selection
    "Business_Unit", "Session_Date", "Session_ID", "Item", "Price_Class", "Sessions_Title",
    # pricing selection
    "C_Quant", "Units", "Unit_Price",
    "People_Text",
]

SAFE_FIELDS = [
    "First_Name", "Last_Name", "Email", "Phone_Number", "Cust_Notes",
    "Cancelation_Policy", "Charge_Type",
    "Business_Unit", "Session_Date", "Session_ID", "Item", "Price_Class", "Sessions_Title",
    "C_Quant", "Units", "Unit_Price", "Status", "Type",
    "People_Text", "BookingFeeAmount",
]

MINIMAL_FIELDS = [
    "First_Name", "Last_Name", "Email", "Phone_Number",
    "Business_Unit", "Session_Date", "Session_ID", "Charge_Type", "Status", "Type",
]

DEFAULT_STATUS = "In Process"
DEFAULT_TYPE = "Reservation"

_QUOTED = re.compile(r"'([^']+)'")


def _clean(value: Any) -> str:
    return "" if value is None else str(value).strip()


def normalize_body(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only the fields the booking form is expected to send."""
    raw = raw if isinstance(raw, dict) else {}
    body = {name: _clean(raw.get(name)) for name in FORM_FIELDS}
    # used later by paystart; passed through untouched
    body["BookingFeeAmount"] = raw.get("BookingFeeAmount")
    body["Status"] = _clean(raw.get("Status")) or DEFAULT_STATUS
    body["Type"] = _clean(raw.get("Type")) or DEFAULT_TYPE
    return body


def _pick(body: Dict[str, Any], keys: List[str]) -> Dict[str, Any]:
    return {k: body[k] for k in keys if k in body}


def looks_read_only(message: str) -> bool:
    s = (message or "").lower()
    return "read-only" in s or "read only" in s


def looks_column_missing(message: str) -> bool:
    s = (message or "").lower()
    return "columnnotfound" in s or "do not exist" in s


def drop_missing_columns(payload: Dict[str, Any], message: str) -> Dict[str, Any]:
    """Caspio says: "... the following field(s) do not exist: 'X','Y'" -> drop X and Y."""
    parts = (message or "").split("do not exist:", 1)
    if len(parts) < 2:
        return payload
    missing = set(_QUOTED.findall(parts[1]))
    return {k: v for k, v in payload.items() if k not in missing}


def extract_idkey(response: Any) -> Optional[str]:
    """Caspio insert responses vary: {Result: [{IDKEY}]}, {Result: {IDKEY}}, or {IDKEY}."""
    if not isinstance(response, dict):
        return None
    result = response.get("Result")
    if isinstance(result, list) and result and isinstance(result[0], dict) and result[0].get("IDKEY"):
        return str(result[0]["IDKEY"])
    if isinstance(result, dict) and result.get("IDKEY"):
        return str(result["IDKEY"])
    if response.get("IDKEY"):
        return str(response["IDKEY"])
    return None


def insert_with_fallbacks(store, body: Dict[str, Any]) -> Any:
    attempts = [
        ("full", dict(body)),
        ("safe", _pick(body, SAFE_FIELDS)),
        ("minimal", _pick(body, MINIMAL_FIELDS)),
    ]

    last_err: Optional[DependencyError] = None
    for name, payload in attempts:
        try:
            return store.insert_reservation(payload)
        except DependencyError as e:
            msg = e.message

            if looks_column_missing(msg):
                trimmed = drop_missing_columns(payload, msg)
                if trimmed and trimmed != payload:
                    logger.warning(f"[Reserve] {name} insert: dropping missing columns {sorted(set(payload) - set(trimmed))}")
                    try:
                        return store.insert_reservation(trimmed)
                    except DependencyError as e2:
                        last_err = e2
                        continue

            if looks_read_only(msg):
                logger.warning(f"[Reserve] {name} insert hit a read-only column, retrying with a smaller payload")
                last_err = e
                continue

            # anything else is a real validation problem
            raise

    raise last_err


def handle(event, services):
    headers = cors_headers(event, services.settings, methods="POST,OPTIONS,GET", allow_headers="Content-Type")
    method = get_method(event)

    if method == "OPTIONS":
        return empty_resp(204, headers)
    if method == "GET":
        return _resp(200, {"ok": True, "route": "reserve"}, headers)
    if method != "POST":
        return method_not_allowed(headers, plain_text=True)

    try:
        body = normalize_body(parse_body(event))
        inserted = insert_with_fallbacks(services.store, body)

        idkey = extract_idkey(inserted)
        if not idkey:
            logger.error(f"[Reserve] insert succeeded but no IDKEY in response: {inserted}")
            return _resp(200, {
                "ok": False,
                "error": "Inserted, but could not read IDKEY from Caspio response.",
                "raw": inserted,
            }, headers)

        logger.info(f"[Reserve] created reservation IDKEY={idkey} for {body.get('Business_Unit')} {body.get('Session_Date')}")
        return _resp(200, {"ok": True, "idkey": idkey}, headers)
    except Exception as e:
        return error_resp(e, headers, tag="Reserve")


def lambda_handler(event, context):
    return run_handler(handle, event, tag="Reserve")
