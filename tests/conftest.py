"""
Shared fixtures: fake clock, executors that run refreshes inline or on demand,
an in-memory Caspio stand-in, and a MiddlewareServices wired to them.
"""

import json
import re
from concurrent.futures import Future
from unittest.mock import MagicMock

import pytest

from reservation_store import ReservationStore
from services import MiddlewareServices, set_services
from settings import Settings


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class InlineExecutor:
    """Runs submitted work immediately on the calling thread."""

    def __init__(self):
        self.submitted = 0

    def submit(self, fn, *args, **kwargs):
        self.submitted += 1
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future

    def shutdown(self, wait=True):
        pass


class DeferredExecutor:
    """Queues submitted work until run_all() is called."""

    def __init__(self):
        self.pending = []

    def submit(self, fn, *args, **kwargs):
        self.pending.append((fn, args, kwargs))
        return Future()

    def run_all(self):
        pending, self.pending = self.pending, []
        for fn, args, kwargs in pending:
            fn(*args, **kwargs)

    def shutdown(self, wait=True):
        pass


_CLAUSE = re.compile(r"(\w+)='((?:[^']|'')*)'")


def parse_where(where):
    """RES_ID='1' AND Type='addon' -> {"RES_ID": "1", "Type": "addon"}"""
    return {field: value.replace("''", "'") for field, value in _CLAUSE.findall(where)}


class FakeCaspio:
    """In-memory tables with the CaspioClient call surface (equality-only where clauses)."""

    def __init__(self, tables=None, views=None):
        self.tables = {name: [dict(r) for r in rows] for name, rows in (tables or {}).items()}
        self.views = {name: [dict(r) for r in rows] for name, rows in (views or {}).items()}
        self.calls = []

    def _match(self, rows, where, limit):
        filters = parse_where(where)
        out = [r for r in rows if all(str(r.get(k)) == v for k, v in filters.items())]
        return [dict(r) for r in out[:limit]]

    def list_records(self, table, where, limit=1000):
        self.calls.append(("GET", table, where))
        return self._match(self.tables.get(table, []), where, limit)

    def list_view_records(self, view, where, limit=1000):
        self.calls.append(("GET_VIEW", view, where))
        return self._match(self.views.get(view, []), where, limit)

    def find_one(self, table, where):
        rows = self.list_records(table, where, 1)
        return rows[0] if rows else None

    def insert_record(self, table, payload):
        self.calls.append(("POST", table, dict(payload)))
        self.tables.setdefault(table, []).append(dict(payload))
        return {"Result": [dict(payload)]}

    def update_records(self, table, where, payload):
        self.calls.append(("PUT", table, where, dict(payload)))
        filters = parse_where(where)
        for row in self.tables.get(table, []):
            if all(str(row.get(k)) == v for k, v in filters.items()):
                row.update(payload)
        return {"RecordsAffected": 1}

    def delete_records(self, table, where):
        self.calls.append(("DELETE", table, where))
        filters = parse_where(where)
        self.tables[table] = [
            r for r in self.tables.get(table, [])
            if not all(str(r.get(k)) == v for k, v in filters.items())
        ]
        return {"RecordsAffected": 1}

    def writes(self):
        return [c for c in self.calls if c[0] in ("POST", "PUT", "DELETE")]


@pytest.fixture
def settings():
    return Settings(
        environment="test",
        caspio_base_url="https://acct.caspio.com",
        caspio_token_url="https://acct.caspio.com/oauth/token",
        caspio_client_id="cid",
        caspio_client_secret="csecret",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret="whsec_test",
        site_base_url="https://www.reservebarsandrec.com",
        sigma_webhook_secret="sigma-secret",
        admin_refund_key="refund-key",
        allowed_origins=["https://www.reservebarsandrec.com", "https://reservebarsandrec.com"],
    )


@pytest.fixture
def clock():
    return FakeClock(1000.0)


@pytest.fixture
def caspio():
    return FakeCaspio()


@pytest.fixture
def services(settings, caspio, clock):
    svc = MiddlewareServices(settings, caspio=caspio, clock=clock, executor=InlineExecutor())
    set_services(svc)
    yield svc
    set_services(None)
    svc.close()


@pytest.fixture
def mock_store(services):
    """Replace the store with a MagicMock for handler tests that only care about calls."""
    store = MagicMock(spec=ReservationStore)
    services.store = store
    return store


def api_event(method="GET", path="/api/x", query=None, body=None, headers=None):
    """Minimal API Gateway REST proxy event."""
    if body is not None and not isinstance(body, str):
        body = json.dumps(body)
    return {
        "httpMethod": method,
        "path": path,
        "queryStringParameters": query,
        "headers": headers or {},
        "body": body,
        "isBase64Encoded": False,
    }


def json_body(response):
    return json.loads(response["body"])
