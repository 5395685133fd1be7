# rollup_engine.py
"""
Roll up reservation line items into one total row per RES_ID.

Source table (e.g. BAR2_Reservations_SIGMA):
  - one row with Type = "Reservation"
  - zero or more rows with Type = "addon"
  - numeric "Total" on each row

Target table (e.g. SIGMA_BAR3_TOTAL_RES):
  - exactly one row per RES_ID with IDKEY, Business_Unit, Status,
    Subtotal_Primary, Subtotal_Addon, Total
  - deleted once nothing remains for the RES_ID

Storm guard: duplicate triggers for the same RES_ID share an in-flight computation,
and a finished result is served from a short-lived cache for rollup_result_ttl seconds.
Totals are recomputed from scratch on every run, never adjusted incrementally.
"""

import time
import logging
import threading
from concurrent.futures import Future
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from caspio_client import build_where
from errors import ValidationError
from payments import quantize_cents

logger = logging.getLogger(__name__)

TYPE_FIELD = "Type"
LINE_TOTAL_FIELD = "Total"
RESERVATION_TYPE_VALUE = "Reservation"
ADDON_TYPE_VALUE = "addon"

MAX_ADDON_ROWS = 1000
MAX_CACHED_RESULTS = 500
CACHE_EVICT_BATCH = 100

ACTION_INSERTED = "inserted"
ACTION_UPDATED = "updated"
ACTION_DELETED = "deleted_rollup"
ACTION_NOTHING_TO_DELETE = "no_rollup_to_delete"


def to_number(value: Any) -> float:
    """Numeric value of a Caspio field; missing or non-numeric counts as 0."""
    if isinstance(value, bool) or value is None:
        return 0.0
    try:
        n = float(value)
    except (TypeError, ValueError):
        return 0.0
    if n != n or n in (float("inf"), float("-inf")):
        return 0.0
    return n


def _money(amount: Decimal):
    """Cent-rounded Decimal as a JSON-friendly number (whole amounts stay ints)."""
    return int(amount) if amount == amount.to_integral_value() else float(amount)


class RollupEngine:

    def __init__(self, store, source_table: str, rollup_table: str, res_id_field: str = "RES_ID",
                 result_ttl: float = 1.5, clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.source_table = source_table
        self.rollup_table = rollup_table
        self.res_id_field = res_id_field
        self.result_ttl = result_ttl
        self._clock = clock

        self._in_flight: Dict[str, Future] = {}
        self._results: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    # ---------------- Public API ----------------------------------------------

    def recompute(self, entity_id: Any, event_type: str = "") -> Dict[str, Any]:
        entity_id = "" if entity_id is None else str(entity_id).strip()
        if not entity_id:
            raise ValidationError(f"Missing {self.res_id_field}")

        with self._lock:
            cached = self._get_cached_locked(entity_id)
            if cached is not None:
                return {**cached, "coalesced": "cache"}

            future = self._in_flight.get(entity_id)
            leader = future is None
            if leader:
                future = Future()
                self._in_flight[entity_id] = future

        if not leader:
            logger.info(f"[Rollup] joining in-flight recompute for {self.res_id_field}={entity_id}")
            return {**future.result(), "coalesced": "inflight"}

        try:
            result = self._compute(entity_id, event_type)
            with self._lock:
                self._set_cached_locked(entity_id, result)
        except Exception as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
        finally:
            with self._lock:
                self._in_flight.pop(entity_id, None)
            if not future.done():
                future.cancel()

        return {**result, "coalesced": "fresh"}

    # ---------------- Storm-guard cache ---------------------------------------

    def _get_cached_locked(self, entity_id: str) -> Optional[Dict[str, Any]]:
        hit = self._results.get(entity_id)
        if hit is None:
            return None
        stored_at, result = hit
        if self._clock() - stored_at > self.result_ttl:
            del self._results[entity_id]
            return None
        return result

    def _set_cached_locked(self, entity_id: str, result: Dict[str, Any]) -> None:
        self._results.pop(entity_id, None)
        self._results[entity_id] = (self._clock(), result)
        if len(self._results) > MAX_CACHED_RESULTS:
            for stale_key in list(self._results)[:CACHE_EVICT_BATCH]:
                del self._results[stale_key]

    # ---------------- Computation ---------------------------------------------

    def _compute(self, entity_id: str, event_type: str) -> Dict[str, Any]:
        primary_rows = self.store.list_records(
            self.source_table,
            build_where({self.res_id_field: entity_id, TYPE_FIELD: RESERVATION_TYPE_VALUE}),
            1,
        )
        primary = primary_rows[0] if primary_rows else None

        addon_rows = self.store.list_records(
            self.source_table,
            build_where({self.res_id_field: entity_id, TYPE_FIELD: ADDON_TYPE_VALUE}),
            MAX_ADDON_ROWS,
        )

        rollup_where = build_where({self.res_id_field: entity_id})
        existing = self.store.find_one(self.rollup_table, rollup_where)

        base = {"ok": True, self.res_id_field: entity_id, "eventType": event_type}

        if primary is None and not addon_rows:
            if existing:
                self.store.delete_records(self.rollup_table, rollup_where)
                logger.info(f"[Rollup] {self.res_id_field}={entity_id} has no line items, deleted rollup row")
                return {**base, "action": ACTION_DELETED}
            logger.info(f"[Rollup] {self.res_id_field}={entity_id} has no line items and no rollup row")
            return {**base, "action": ACTION_NOTHING_TO_DELETE}

        # Total == Subtotal_Primary + Subtotal_Addon exactly: both are cent-rounded before the sum
        subtotal_primary = quantize_cents(to_number((primary or {}).get(LINE_TOTAL_FIELD)))
        subtotal_addon = quantize_cents(
            sum((Decimal(str(to_number(r.get(LINE_TOTAL_FIELD)))) for r in addon_rows), Decimal(0))
        )

        totals = {
            "Subtotal_Primary": _money(subtotal_primary),
            "Subtotal_Addon": _money(subtotal_addon),
            "Total": _money(subtotal_primary + subtotal_addon),
        }
        body = {
            self.res_id_field: entity_id,
            "IDKEY": (primary or {}).get("IDKEY"),
            "Business_Unit": (primary or {}).get("Business_Unit"),
            "Status": (primary or {}).get("Status"),
            **totals,
        }

        if existing:
            self.store.update_records(self.rollup_table, rollup_where, body)
            action = ACTION_UPDATED
        else:
            self.store.insert_record(self.rollup_table, body)
            action = ACTION_INSERTED

        logger.info(
            f"[Rollup] {action} {self.res_id_field}={entity_id} "
            f"primary={totals['Subtotal_Primary']} addon={totals['Subtotal_Addon']} total={totals['Total']} "
            f"({len(addon_rows)} addon rows)"
        )
        return {**base, **body, "action": action}
