# transactions_api.py
# GET /api/txns?idkey=<IDKEY>      -> {"txns": [...]} newest first
# GET /api/receipt?txn_id=<TXN_ID> -> {"txn": {...}}
# Errors are plain text (the customer pages render them as-is).

import logging

from errors import NotFoundError, ValidationError
from http_utils import _resp, cors_headers, empty_resp, error_resp, get_method, method_not_allowed, query_value
from services import run_handler

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def handle_txns(event, services):
    headers = cors_headers(event, services.settings, methods="GET,OPTIONS")
    method = get_method(event)

    if method == "OPTIONS":
        return empty_resp(200, headers)
    if method != "GET":
        return method_not_allowed(headers, plain_text=True)

    try:
        idkey = query_value(event, "idkey", "IDKEY")
        if not idkey:
            raise ValidationError("Missing idkey")

        txns = services.store.list_transactions_by_idkey(idkey)
        logger.info(f"[Txns] {len(txns)} transactions for IDKEY={idkey}")
        return _resp(200, {"txns": txns}, {**headers, "Cache-Control": "no-store"})
    except Exception as e:
        return error_resp(e, headers, plain_text=True, tag="Txns")


def handle_receipt(event, services):
    headers = cors_headers(event, services.settings, methods="GET,OPTIONS")
    method = get_method(event)

    if method == "OPTIONS":
        return empty_resp(200, headers)
    if method != "GET":
        return method_not_allowed(headers, plain_text=True)

    try:
        txn_id = query_value(event, "txn_id", "TXN_ID", "txnid")
        if not txn_id:
            raise ValidationError("Missing txn_id")

        row = services.store.find_transaction(txn_id)
        if not row:
            raise NotFoundError("Transaction not found")
        return _resp(200, {"txn": row}, {**headers, "Cache-Control": "no-store"})
    except Exception as e:
        return error_resp(e, headers, plain_text=True, tag="Receipt")


def txns_handler(event, context):
    return run_handler(handle_txns, event, tag="Txns", plain_text=True)


def receipt_handler(event, context):
    return run_handler(handle_receipt, event, tag="Receipt", plain_text=True)
