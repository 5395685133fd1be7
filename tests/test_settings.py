"""
Tests for Settings.from_env and the KMS secret helpers.
"""

import base64
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

import kms_utils
from errors import ConfigError
from kms_utils import is_wrapped, kms_decrypt_wrapped, mask_secret
from settings import Settings, _stripe_mode

ENV_NAMES = [
    "CASPIO_INTEGRATION_URL", "CASPIO_BASE_URL", "CASPIO_ACCOUNT", "CASPIO_TOKEN_URL", "CASPIO_AUTH_TOKEN_URL",
    "CASPIO_CLIENT_ID", "CASPIO_CLIENT_SECRET", "CASPIO_TABLE", "STRIPE_SECRET_KEY", "STRIPE_SECRET",
    "ALLOWED_ORIGINS", "ALLOWED_ORIGIN", "SESSIONS_SOFT_TTL_SECONDS", "SITE_BASE_URL",
]


@pytest.fixture
def env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CASPIO_INTEGRATION_URL", "https://c0abc.caspio.com/")
    monkeypatch.setenv("CASPIO_CLIENT_ID", "cid")
    monkeypatch.setenv("CASPIO_CLIENT_SECRET", "csecret")
    return monkeypatch


@pytest.fixture
def kms(monkeypatch):
    client = MagicMock()
    monkeypatch.setattr(kms_utils, "_kms_client", client)
    return client


class TestFromEnv:

    def test_defaults(self, env):
        s = Settings.from_env()

        assert s.caspio_base_url == "https://c0abc.caspio.com"
        assert s.caspio_token_url == "https://c0abc.caspio.com/oauth/token"
        assert s.reservations_table == "BAR2_Reservations_SIGMA"
        assert s.rollup_table == "SIGMA_BAR3_TOTAL_RES"
        assert s.sessions_soft_ttl == 30.0
        assert s.allowed_origins == ["https://www.reservebarsandrec.com", "https://reservebarsandrec.com"]
        assert s.stripe_secret_key == ""

    def test_account_fallback_and_overrides(self, env):
        env.delenv("CASPIO_INTEGRATION_URL")
        env.setenv("CASPIO_ACCOUNT", "c0xyz")
        env.setenv("CASPIO_TABLE", "OtherTable")
        env.setenv("STRIPE_SECRET", "sk_live_abc")
        env.setenv("ALLOWED_ORIGINS", "https://a.example, https://b.example")
        env.setenv("SITE_BASE_URL", "https://site.example/")
        env.setenv("SESSIONS_SOFT_TTL_SECONDS", "10")

        s = Settings.from_env()

        assert s.caspio_base_url == "https://c0xyz.caspio.com"
        assert s.reservations_table == "OtherTable"
        assert s.stripe_secret_key == "sk_live_abc"
        assert s.allowed_origins == ["https://a.example", "https://b.example"]
        assert s.site_base_url == "https://site.example"
        assert s.sessions_soft_ttl == 10.0

    def test_missing_base_url(self, env):
        env.delenv("CASPIO_INTEGRATION_URL")
        with pytest.raises(ConfigError):
            Settings.from_env()

    def test_missing_client_secret(self, env):
        env.delenv("CASPIO_CLIENT_SECRET")
        with pytest.raises(ConfigError) as exc:
            Settings.from_env()
        assert "CASPIO_CLIENT_SECRET" in exc.value.message

    def test_non_numeric_ttl(self, env):
        env.setenv("SESSIONS_SOFT_TTL_SECONDS", "soon")
        with pytest.raises(ConfigError):
            Settings.from_env()

    def test_encrypted_secret_is_unwrapped(self, env, kms):
        kms.decrypt.return_value = {"Plaintext": b"sk_test_from_kms"}
        env.setenv("STRIPE_SECRET_KEY", "ENCRYPTED(" + base64.b64encode(b"blob").decode() + ")")

        assert Settings.from_env().stripe_secret_key == "sk_test_from_kms"
        assert kms.decrypt.call_args.kwargs["EncryptionContext"] == {"app": "reservation-middleware"}

    def test_kms_failure_is_config_error(self, env, kms):
        kms.decrypt.side_effect = ClientError({"Error": {"Code": "AccessDeniedException"}}, "Decrypt")
        env.setenv("STRIPE_SECRET_KEY", "ENCRYPTED(" + base64.b64encode(b"blob").decode() + ")")

        with pytest.raises(ConfigError) as exc:
            Settings.from_env()
        assert "AccessDeniedException" in exc.value.message


class TestRequire:

    def test_present(self, settings):
        assert settings.require("site_base_url", "SITE_BASE_URL") == "https://www.reservebarsandrec.com"

    def test_missing(self, settings):
        settings.site_base_url = ""
        with pytest.raises(ConfigError) as exc:
            settings.require("site_base_url", "SITE_BASE_URL")
        assert exc.value.message == "Missing SITE_BASE_URL"


class TestKmsHelpers:

    @pytest.mark.parametrize("key, mode", [
        ("sk_live_1", "live"), ("rk_test_1", "test"), ("pk_live_1", None), ("", None),
    ])
    def test_stripe_mode(self, key, mode):
        assert _stripe_mode(key) == mode

    def test_plaintext_passthrough(self):
        assert kms_decrypt_wrapped("plain") == "plain"
        assert kms_decrypt_wrapped("") == ""

    def test_is_wrapped(self):
        assert is_wrapped("ENCRYPTED(abc)")
        assert not is_wrapped("ENCRYPTED(abc")

    def test_mask_secret(self):
        assert mask_secret("sk_test_abcd") == "********abcd"
        assert mask_secret("abc") == "***"
