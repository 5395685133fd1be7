# settings.py
# Environment-driven configuration. Loaded lazily on the first request, never at import time.

import os
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from errors import ConfigError
from kms_utils import kms_decrypt_wrapped

logger = logging.getLogger(__name__)

# ---------------- Env helpers (accept common aliases) ------------------------

def _req(name: str) -> str:
    v = os.environ.get(name)
    if not v:
        raise ConfigError(f"Missing required environment variable: {name}")
    return v

def _get_env_any(keys, default: str = "") -> str:
    for k in keys:
        v = os.environ.get(k)
        if isinstance(v, str) and v.strip():
            return v.strip()
    return default

def _get_secret(keys, required: bool = False) -> str:
    """Read a secret that may be stored as ENCRYPTED(...) and unwrap it with KMS."""
    raw = _get_env_any(keys)
    if required and not raw:
        raise ConfigError(f"Missing required environment variable: {keys[0]}")
    try:
        return kms_decrypt_wrapped(raw)
    except ValueError as e:
        raise ConfigError(f"{keys[0]}: {e}")

def _get_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"Environment variable {name} must be numeric, got {raw!r}")

def _get_int(name: str, default: int) -> int:
    return int(_get_float(name, default))

def _split_csv(raw: str) -> List[str]:
    return [s.strip() for s in (raw or "").split(",") if s.strip()]


DEFAULT_ALLOWED_ORIGINS = "https://www.reservebarsandrec.com,https://reservebarsandrec.com"


@dataclass
class Settings:
    environment: str = "dev"

    # Caspio
    caspio_base_url: str = ""
    caspio_token_url: str = ""
    caspio_client_id: str = ""
    caspio_client_secret: str = ""
    caspio_timeout: float = 15.0
    reservations_table: str = "BAR2_Reservations_SIGMA"
    key_field: str = "IDKEY"
    res_id_field: str = "RES_ID"
    txn_table: str = "SIGMA_BAR3_Transactions"
    rollup_table: str = "SIGMA_BAR3_TOTAL_RES"
    sessions_view: str = "SIGMA_VW_Active_Sessions_Manage"
    pricing_view: str = "SIGMA_VW_Pricing"

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    site_base_url: str = ""

    # Shared secrets
    sigma_webhook_secret: str = ""
    admin_refund_key: str = ""

    # CORS
    allowed_origins: List[str] = field(default_factory=lambda: _split_csv(DEFAULT_ALLOWED_ORIGINS))
    cors_allow_any: bool = False

    # Cache tiers (seconds)
    sessions_soft_ttl: float = 30.0
    sessions_hard_ttl: float = 120.0
    pricing_soft_ttl: float = 15 * 60.0
    pricing_hard_ttl: float = 30 * 60.0
    businesses_soft_ttl: float = 10 * 60.0
    businesses_hard_ttl: float = 20 * 60.0
    rollup_result_ttl: float = 1.5
    background_refresh_workers: int = 4
    max_pending_refreshes: int = 32

    @classmethod
    def from_env(cls) -> "Settings":
        base = _get_env_any(["CASPIO_INTEGRATION_URL", "CASPIO_BASE_URL"])
        if not base:
            account = _get_env_any(["CASPIO_ACCOUNT"])
            if not account:
                raise ConfigError("Missing CASPIO_INTEGRATION_URL (or CASPIO_ACCOUNT fallback)")
            base = f"https://{account}.caspio.com"
        base = base.rstrip("/")

        return cls(
            environment=_get_env_any(["ENVIRONMENT", "VERCEL_ENV"], "dev"),
            caspio_base_url=base,
            caspio_token_url=_get_env_any(["CASPIO_TOKEN_URL", "CASPIO_AUTH_TOKEN_URL"], f"{base}/oauth/token"),
            caspio_client_id=_req("CASPIO_CLIENT_ID"),
            caspio_client_secret=_get_secret(["CASPIO_CLIENT_SECRET"], required=True),
            caspio_timeout=_get_float("CASPIO_TIMEOUT_SECONDS", 15.0),
            reservations_table=_get_env_any(["CASPIO_TABLE"], "BAR2_Reservations_SIGMA"),
            key_field=_get_env_any(["CASPIO_KEY_FIELD"], "IDKEY"),
            res_id_field=_get_env_any(["CASPIO_RES_ID_FIELD"], "RES_ID"),
            txn_table=_get_env_any(["CASPIO_TXN_TABLE"], "SIGMA_BAR3_Transactions"),
            rollup_table=_get_env_any(["CASPIO_ROLLUP_TABLE"], "SIGMA_BAR3_TOTAL_RES"),
            sessions_view=_get_env_any(["CASPIO_SESSIONS_VIEW"], "SIGMA_VW_Active_Sessions_Manage"),
            pricing_view=_get_env_any(["CASPIO_PRICING_VIEW"], "SIGMA_VW_Pricing"),
            stripe_secret_key=_get_secret(["STRIPE_SECRET_KEY", "STRIPE_SECRET"]),
            stripe_webhook_secret=_get_secret(["STRIPE_WEBHOOK_SECRET"]),
            site_base_url=_get_env_any(["SITE_BASE_URL"]).rstrip("/"),
            sigma_webhook_secret=_get_secret(["SIGMA_WEBHOOK_SECRET"]),
            admin_refund_key=_get_secret(["ADMIN_REFUND_KEY"]),
            allowed_origins=_split_csv(_get_env_any(["ALLOWED_ORIGINS", "ALLOWED_ORIGIN"], DEFAULT_ALLOWED_ORIGINS)),
            cors_allow_any=_get_env_any(["CORS_ALLOW_ANY"], "false").lower() == "true",
            sessions_soft_ttl=_get_float("SESSIONS_SOFT_TTL_SECONDS", 30.0),
            sessions_hard_ttl=_get_float("SESSIONS_HARD_TTL_SECONDS", 120.0),
            pricing_soft_ttl=_get_float("PRICING_SOFT_TTL_SECONDS", 15 * 60.0),
            pricing_hard_ttl=_get_float("PRICING_HARD_TTL_SECONDS", 30 * 60.0),
            businesses_soft_ttl=_get_float("BUSINESSES_SOFT_TTL_SECONDS", 10 * 60.0),
            businesses_hard_ttl=_get_float("BUSINESSES_HARD_TTL_SECONDS", 20 * 60.0),
            rollup_result_ttl=_get_float("ROLLUP_RESULT_TTL_SECONDS", 1.5),
            background_refresh_workers=_get_int("BACKGROUND_REFRESH_WORKERS", 4),
            max_pending_refreshes=_get_int("MAX_PENDING_REFRESHES", 32),
        )

    def require(self, attr: str, env_name: Optional[str] = None) -> str:
        """Return a setting that a specific route cannot work without."""
        value = getattr(self, attr)
        if not value:
            raise ConfigError(f"Missing {env_name or attr.upper()}")
        return value

    def resolved_source(self) -> dict:
        """Non-secret view of the configuration, for diagnostics/logging."""
        return {
            "environment": self.environment,
            "caspio_base_url": self.caspio_base_url,
            "caspio_token_url": self.caspio_token_url,
            "reservations_table": self.reservations_table,
            "txn_table": self.txn_table,
            "rollup_table": self.rollup_table,
            "sessions_view": self.sessions_view,
            "pricing_view": self.pricing_view,
            "has_stripe_secret_key": bool(self.stripe_secret_key),
            "stripe_key_mode": _stripe_mode(self.stripe_secret_key),
            "has_stripe_webhook_secret": bool(self.stripe_webhook_secret),
            "has_sigma_webhook_secret": bool(self.sigma_webhook_secret),
            "has_admin_refund_key": bool(self.admin_refund_key),
            "site_base_url_set": bool(self.site_base_url),
        }


def _stripe_mode(key: str) -> Optional[str]:
    if key.startswith("sk_live_") or key.startswith("rk_live_"):
        return "live"
    if key.startswith("sk_test_") or key.startswith("rk_test_"):
        return "test"
    return None


def configure_logging() -> None:
    level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.getLogger().setLevel(level)
