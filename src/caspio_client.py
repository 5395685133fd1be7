# caspio_client.py
"""
Caspio REST client.

Works against integrations where:
  - GET by q.where works
  - PUT/DELETE by q.where works
  - path-based PUT /records/{id} does NOT exist

Every transport failure or non-2xx answer is raised as DependencyError.
"""

import json
import time
import logging
import threading
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from errors import DependencyError

logger = logging.getLogger(__name__)

API_VERSIONS = ("v3", "v2")
TOKEN_REFRESH_MARGIN_SECONDS = 60


def escape_where_value(value: Any) -> str:
    """Double embedded single quotes so the value can sit inside '...' in a q.where clause."""
    return str(value).replace("'", "''")


def where_eq(field_name: str, value: Any) -> str:
    return f"{field_name}='{escape_where_value(value)}'"


def build_where(filters: Dict[str, Any]) -> str:
    """AND-combine equality filters: {"RES_ID": "12", "Type": "addon"} -> RES_ID='12' AND Type='addon'"""
    if not filters:
        raise ValueError("build_where requires at least one filter")
    return " AND ".join(where_eq(k, v) for k, v in filters.items())


class CaspioClient:
    """Thin Caspio REST wrapper with an in-memory client-credentials token cache."""

    def __init__(self, base_url: str, client_id: str, client_secret: str,
                 token_url: Optional[str] = None, timeout: float = 15.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.token_url = token_url or f"{self.base_url}/oauth/token"
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self.session = session or requests.Session()

        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> "CaspioClient":
        return cls(
            base_url=settings.caspio_base_url,
            client_id=settings.caspio_client_id,
            client_secret=settings.caspio_client_secret,
            token_url=settings.caspio_token_url,
            timeout=settings.caspio_timeout,
        )

    # ---------------- Auth ----------------------------------------------------

    def get_access_token(self) -> str:
        with self._token_lock:
            if self._token and time.time() < self._token_expires_at:
                return self._token

            try:
                response = self.session.post(
                    self.token_url,
                    data={"grant_type": "client_credentials"},
                    auth=(self.client_id, self.client_secret),
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                raise DependencyError(f"Caspio token request failed: {e}")

            if not response.ok:
                raise DependencyError(f"Caspio token error {response.status_code}: {response.text}",
                                      upstream_status=response.status_code)

            try:
                payload = response.json()
            except ValueError:
                raise DependencyError("Caspio token response was not JSON")

            token = payload.get("access_token")
            if not token:
                raise DependencyError("Caspio token response missing access_token")

            expires_in = float(payload.get("expires_in") or 900)
            self._token = token
            self._token_expires_at = time.time() + max(0.0, expires_in - TOKEN_REFRESH_MARGIN_SECONDS)
            return token

    def invalidate_token(self) -> None:
        with self._token_lock:
            self._token = None
            self._token_expires_at = 0.0

    # ---------------- Transport -----------------------------------------------

    def _url(self, kind: str, name: str, version: str) -> str:
        return f"{self.base_url}/rest/{version}/{kind}/{quote(name, safe='')}/records"

    def _records_request(self, method: str, kind: str, name: str,
                         params: Optional[Dict[str, Any]] = None,
                         payload: Optional[Dict[str, Any]] = None) -> Any:
        """
        Issue a records request, trying v3 then v2. A bare 404 (empty body) means the
        version is not available and the next one is tried; a 404 with a body is a real error.
        """
        if not name:
            raise DependencyError(f"Missing Caspio {kind[:-1]} name")

        headers = {
            "Authorization": f"Bearer {self.get_access_token()}",
            "Accept": "application/json",
        }
        if payload is not None:
            headers["Content-Type"] = "application/json"

        where = (params or {}).get("q.where", "")
        for version in API_VERSIONS:
            url = self._url(kind, name, version)
            try:
                response = self.session.request(
                    method,
                    url,
                    params=params,
                    data=json.dumps(payload) if payload is not None else None,
                    headers=headers,
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                raise DependencyError(f"Caspio {method} {name} ({version}) failed: {e}")

            text = response.text or ""
            if response.status_code == 404 and not text.strip():
                logger.info(f"[Caspio] {method} {name} not found on {version}, trying next version")
                continue

            if not response.ok:
                raise DependencyError(
                    f"Caspio {method} error {response.status_code} for {name} ({version}) where [{where}]: {text}",
                    upstream_status=response.status_code,
                )

            if not text.strip():
                return None
            try:
                return response.json()
            except ValueError:
                return {"ok": True, "raw": text}

        raise DependencyError(
            f"Caspio {method} 404 for {name} (tried {', '.join(API_VERSIONS)}). "
            "The name is wrong or it is not allowed in the REST API profile.",
            upstream_status=404,
        )

    # ---------------- Reads ---------------------------------------------------

    def list_records(self, table: str, where: str, limit: int = 1000) -> List[Dict[str, Any]]:
        data = self._records_request("GET", "tables", table, params={"q.where": where, "q.limit": limit})
        return list((data or {}).get("Result") or [])

    def list_view_records(self, view: str, where: str, limit: int = 1000) -> List[Dict[str, Any]]:
        data = self._records_request("GET", "views", view, params={"q.where": where, "q.limit": limit})
        return list((data or {}).get("Result") or [])

    def find_one(self, table: str, where: str) -> Optional[Dict[str, Any]]:
        rows = self.list_records(table, where, limit=1)
        return rows[0] if rows else None

    # ---------------- Writes --------------------------------------------------

    def insert_record(self, table: str, payload: Dict[str, Any]) -> Any:
        return self._records_request("POST", "tables", table, params={"response": "rows"}, payload=payload) or {"ok": True}

    def update_records(self, table: str, where: str, payload: Dict[str, Any]) -> Any:
        return self._records_request("PUT", "tables", table, params={"q.where": where}, payload=payload) or {"ok": True}

    def delete_records(self, table: str, where: str) -> Any:
        return self._records_request("DELETE", "tables", table, params={"q.where": where}) or {"ok": True}
