"""
Tests for the single-function router.
"""

import pytest

import catalog_api
import paystart
import router
import sessions_api
from conftest import api_event, json_body
from services import set_services


class TestResolve:

    @pytest.mark.parametrize("path, expected", [
        ("/api/sessions", sessions_api.handle),
        ("/prod/api/sessions/", sessions_api.handle),
        ("/api/pricing", catalog_api.handle_pricing),
        ("/api/paystart", paystart.handle),
    ])
    def test_suffix_match(self, path, expected):
        handle, _ = router.resolve(path)
        assert handle is expected

    def test_plain_text_routes(self):
        assert router.resolve("/api/paystart")[1] is True
        assert router.resolve("/api/sessions")[1] is False

    def test_unknown(self):
        assert router.resolve("/api/chatbot") == (None, False)
        assert router.resolve(None) == (None, False)


class TestLambdaHandler:

    def test_dispatches_to_route(self, services):
        resp = router.lambda_handler(api_event("GET", "/api/sessions"), None)
        assert resp["statusCode"] == 400
        assert json_body(resp)["error"] == "Missing date"

    def test_unknown_route_is_404(self, services):
        resp = router.lambda_handler(api_event("GET", "/api/debug-view"), None)
        assert resp["statusCode"] == 404
        assert json_body(resp) == {"ok": False, "error": "Not found"}

    def test_missing_configuration_is_500(self, monkeypatch):
        set_services(None)
        for name in ("CASPIO_INTEGRATION_URL", "CASPIO_BASE_URL", "CASPIO_ACCOUNT"):
            monkeypatch.delenv(name, raising=False)

        resp = router.lambda_handler(api_event("GET", "/api/txns", {"idkey": "K1"}), None)

        assert resp["statusCode"] == 500
        assert resp["body"].startswith("Missing CASPIO_INTEGRATION_URL")
