# reservation_store.py
# Reservation and transaction reads/writes on top of CaspioClient, with table names from Settings.

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from caspio_client import build_where
from errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MAX_TXNS_PER_RESERVATION = 500


def _sort_timestamp(row: Dict[str, Any]) -> float:
    raw = str(row.get("Transaction_date") or row.get("CreatedAt") or "").strip()
    if not raw:
        return 0.0
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


class ReservationStore:

    def __init__(self, client, settings):
        self.client = client
        self.settings = settings

    # ---------------- Generic passthroughs (used by the rollup engine) --------

    def list_records(self, table: str, where: str, limit: int = 1000) -> List[Dict[str, Any]]:
        return self.client.list_records(table, where, limit)

    def find_one(self, table: str, where: str) -> Optional[Dict[str, Any]]:
        return self.client.find_one(table, where)

    def insert_record(self, table: str, payload: Dict[str, Any]) -> Any:
        return self.client.insert_record(table, payload)

    def update_records(self, table: str, where: str, payload: Dict[str, Any]) -> Any:
        return self.client.update_records(table, where, payload)

    def delete_records(self, table: str, where: str) -> Any:
        return self.client.delete_records(table, where)

    # ---------------- Reservations --------------------------------------------

    def idkey_where(self, idkey: str) -> str:
        return build_where({self.settings.key_field: idkey})

    def get_reservation_by_idkey(self, idkey: str) -> Dict[str, Any]:
        where = self.idkey_where(idkey)
        row = self.client.find_one(self.settings.reservations_table, where)
        if not row:
            raise NotFoundError(f"No reservation found for {where}")
        return row

    def update_reservation_by_idkey(self, idkey: str, payload: Dict[str, Any]) -> Any:
        return self.client.update_records(self.settings.reservations_table, self.idkey_where(idkey), payload)

    def insert_reservation(self, payload: Dict[str, Any]) -> Any:
        return self.client.insert_record(self.settings.reservations_table, payload)

    # ---------------- Transactions (ledger) -----------------------------------

    def insert_transaction_if_missing(self, txn: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a ledger row unless one with the same RawEventId already exists."""
        raw_event_id = txn.get("RawEventId")
        if not raw_event_id:
            raise ValidationError("Transaction payload missing RawEventId")

        table = self.settings.txn_table
        existing = self.client.find_one(table, build_where({"RawEventId": raw_event_id}))
        if existing:
            logger.info(f"[Ledger] {raw_event_id} already recorded, skipping insert")
            return {"ok": True, "skipped": True, "reason": "already_exists"}

        inserted = self.client.insert_record(table, txn)
        logger.info(f"[Ledger] recorded {raw_event_id}")
        return {"ok": True, "inserted": inserted}

    def insert_transaction(self, txn: Dict[str, Any]) -> Any:
        return self.client.insert_record(self.settings.txn_table, txn)

    def list_transactions_by_idkey(self, idkey: str, limit: int = MAX_TXNS_PER_RESERVATION) -> List[Dict[str, Any]]:
        rows = self.client.list_records(self.settings.txn_table, build_where({"IDKEY": idkey}), limit)
        return sorted(rows, key=_sort_timestamp, reverse=True)

    def find_transaction(self, txn_id: str) -> Optional[Dict[str, Any]]:
        # TXN_ID is text in Caspio, so it is always quoted
        return self.client.find_one(self.settings.txn_table, build_where({"TXN_ID": txn_id}))
