# catalog.py
"""
Upstream fetchers behind the read-through caches.

Each fetcher takes the Caspio client plus the request arguments and returns the
rows the HTTP route serves. Cache keys are built here too so handlers and tests agree on them.
"""

import logging
from typing import Any, Dict, List

from caspio_client import where_eq

logger = logging.getLogger(__name__)

V_DATE = "BAR2_Sessions_Date"
V_BU = "BAR2_Sessions_Business_Unit"
V_DBA = "GEN_Business_Units_DBA"

SESSIONS_LIMIT = 2000
PRICING_LIMIT = 1000
ANY_BUSINESS_UNIT = "__ANY__"


def sessions_key(date: str, bu: str = "") -> str:
    return f"sessions:{date}:{bu or ANY_BUSINESS_UNIT}"


def businesses_key(date: str) -> str:
    return f"biz:{date}"


def pricing_key(price_status: str) -> str:
    return f"pricing:{price_status}"


def fetch_sessions(client, view: str, date: str, bu: str = "") -> List[Dict[str, Any]]:
    where = where_eq(V_DATE, date)
    if bu:
        where += f" AND {where_eq(V_BU, bu)}"
    rows = client.list_view_records(view, where, SESSIONS_LIMIT)
    logger.info(f"[Sessions] fetched {len(rows)} rows for date={date} bu={bu or ANY_BUSINESS_UNIT}")
    return rows


def fetch_business_pairs(client, view: str, date: str) -> List[Dict[str, str]]:
    """Distinct {bu, dba} pairs offering sessions on a date, sorted by dba."""
    rows = client.list_view_records(view, where_eq(V_DATE, date), SESSIONS_LIMIT)

    pairs = []
    seen = set()
    for r in rows:
        bu = str(r.get(V_BU) or "").strip()
        dba = str(r.get(V_DBA) or "").strip()
        if not bu or not dba or bu in seen:
            continue
        seen.add(bu)
        pairs.append({"bu": bu, "dba": dba})

    pairs.sort(key=lambda p: p["dba"].lower())
    return pairs


def _num(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _pricing_sort_key(row: Dict[str, Any]):
    return (
        str(row.get("Price_Status_Sub") or ""),
        _num(row.get("C_Quant")),
        _num(row.get("Unit")),
        _num(row.get("Price")),
    )


def fetch_pricing(client, view: str, price_status: str) -> List[Dict[str, Any]]:
    rows = client.list_view_records(view, where_eq("Price_Status", price_status), PRICING_LIMIT)
    return sorted(rows, key=_pricing_sort_key)
