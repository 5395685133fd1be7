# rollup_webhook.py
"""
POST /api/sigma-rollup-total-res

Caspio outgoing-URL webhook fired on insert/update/delete of reservation line items.
Recomputes the per-RES_ID rollup row through RollupEngine.

Auth: Authorization: Bearer <SIGMA_WEBHOOK_SECRET>, or ?token=<SIGMA_WEBHOOK_SECRET>.

Events:
  - insert / delete: always recompute
  - update: skipped when the Total is verifiably unchanged (old vs new snapshot, or a
    changed-fields list that does not name Total); otherwise recomputed
"""

import hmac
import logging
from typing import Any, Dict, Optional

from errors import AuthError, ValidationError
from http_utils import (_resp, cors_headers, empty_resp, error_resp, get_header, get_method,
                        method_not_allowed, parse_body, query_value)
from rollup_engine import LINE_TOTAL_FIELD, TYPE_FIELD, to_number
from services import run_handler

logger = logging.getLogger()
logger.setLevel(logging.INFO)

NEW_SNAPSHOT_KEYS = ("Data", "data", "NewData", "newData", "After", "after", "Record", "record", "Row", "row")
OLD_SNAPSHOT_KEYS = ("OldData", "oldData", "Before", "before", "Previous", "previous")
EVENT_TYPE_KEYS = ("EventType", "eventType", "Event", "event", "type")
CHANGED_FIELDS_KEYS = ("ChangedFields", "changedFields", "ModifiedFields", "modifiedFields",
                       "FieldsChanged", "fieldsChanged")


# ════════════════════════════════════════════════════════════════════════════
# Payload normalization
# ════════════════════════════════════════════════════════════════════════════
def _first(payload: Dict[str, Any], keys) -> Any:
    for k in keys:
        v = payload.get(k)
        if v:
            return v
    return None


def normalize_payload(payload: Dict[str, Any], res_id_field: str = "RES_ID") -> Dict[str, Any]:
    """Find the event type and the new/old record snapshots wherever Caspio put them."""
    event_type = str(_first(payload, EVENT_TYPE_KEYS) or "")
    new_data = _first(payload, NEW_SNAPSHOT_KEYS)
    old_data = _first(payload, OLD_SNAPSHOT_KEYS)

    if not isinstance(new_data, dict):
        # some payloads put the record fields at the top level
        top_level = any(k in payload for k in (res_id_field, TYPE_FIELD, LINE_TOTAL_FIELD))
        new_data = payload if top_level else {}
    if not isinstance(old_data, dict):
        old_data = None

    return {"event_type": event_type, "new_data": new_data, "old_data": old_data}


def total_field_changed(payload: Dict[str, Any], field: str = LINE_TOTAL_FIELD) -> Optional[bool]:
    """True/False when the payload lists changed fields, None when it does not say."""
    lists = [payload.get(k) for k in CHANGED_FIELDS_KEYS if payload.get(k)]
    if not lists:
        return None
    for changed in lists:
        if isinstance(changed, (list, tuple)) and any(str(f).lower() == field.lower() for f in changed):
            return True
        if isinstance(changed, str) and field.lower() in [s.strip().lower() for s in changed.split(",")]:
            return True
    return False


def skip_reason(payload: Dict[str, Any], normalized: Dict[str, Any]) -> Optional[str]:
    if "update" not in normalized["event_type"].lower():
        return None

    new_data, old_data = normalized["new_data"], normalized["old_data"]
    if old_data is not None and LINE_TOTAL_FIELD in old_data and LINE_TOTAL_FIELD in new_data:
        if to_number(old_data[LINE_TOTAL_FIELD]) == to_number(new_data[LINE_TOTAL_FIELD]):
            return "Total unchanged on update"
        return None

    if total_field_changed(payload) is False:
        return "Total not in changed-fields list"
    # unknown: recompute
    return None


# ════════════════════════════════════════════════════════════════════════════
# Auth
# ════════════════════════════════════════════════════════════════════════════
def _presented_token(event) -> str:
    auth = get_header(event, "authorization").strip()
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return query_value(event, "token")


def check_auth(event, secret: str) -> None:
    if not secret:
        logger.error("[Rollup] SIGMA_WEBHOOK_SECRET is not configured, rejecting request")
        raise AuthError()
    token = _presented_token(event)
    if not token or not hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
        raise AuthError()


# ════════════════════════════════════════════════════════════════════════════
# Handler
# ════════════════════════════════════════════════════════════════════════════
def handle(event, services):
    settings = services.settings
    headers = cors_headers(event, settings, methods="POST,OPTIONS")
    method = get_method(event)

    if method == "OPTIONS":
        return empty_resp(204, headers)
    if method != "POST":
        return method_not_allowed(headers)

    try:
        check_auth(event, settings.sigma_webhook_secret)

        payload = parse_body(event)
        normalized = normalize_payload(payload, settings.res_id_field)
        event_type = normalized["event_type"]

        res_id = normalized["new_data"].get(settings.res_id_field)
        if res_id in (None, "") and normalized["old_data"]:
            res_id = normalized["old_data"].get(settings.res_id_field)
        if res_id in (None, ""):
            raise ValidationError(f"Missing {settings.res_id_field} in webhook payload")

        reason = skip_reason(payload, normalized)
        if reason:
            logger.info(f"[Rollup] skip {settings.res_id_field}={res_id} ({event_type}): {reason}")
            return _resp(200, {
                "ok": True,
                "skipped": True,
                "reason": reason,
                settings.res_id_field: str(res_id),
                "eventType": event_type,
            }, headers)

        result = services.rollup.recompute(res_id, event_type)
        return _resp(200, result, headers)
    except Exception as e:
        return error_resp(e, headers, tag="Rollup")


def lambda_handler(event, context):
    return run_handler(handle, event, tag="Rollup")
