# services.py
"""
Process-wide service container.

One MiddlewareServices instance per warm Lambda process owns the Caspio client, the
read-through caches and the rollup engine, so their state survives between invocations.
It is built on first use (never at import time); tests inject their own with set_services().
"""

import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Optional

from caspio_client import CaspioClient
from catalog import fetch_business_pairs, fetch_pricing, fetch_sessions
from errors import MiddlewareError
from freshness_cache import FreshnessCache
from http_utils import error_resp
from reservation_store import ReservationStore
from rollup_engine import RollupEngine
from settings import Settings, configure_logging

logger = logging.getLogger(__name__)


class MiddlewareServices:

    def __init__(self, settings: Settings, caspio=None, clock=time.monotonic, executor=None):
        self.settings = settings
        self.caspio = caspio or CaspioClient.from_settings(settings)
        self.store = ReservationStore(self.caspio, settings)

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=settings.background_refresh_workers, thread_name_prefix="cache-refresh"
        )
        cache_opts = dict(
            max_pending_refreshes=settings.max_pending_refreshes,
            clock=clock,
            executor=self._executor,
        )
        self.sessions_cache = FreshnessCache(
            "Sessions", partial(fetch_sessions, self.caspio, settings.sessions_view),
            settings.sessions_soft_ttl, settings.sessions_hard_ttl, **cache_opts,
        )
        self.businesses_cache = FreshnessCache(
            "Businesses", partial(fetch_business_pairs, self.caspio, settings.sessions_view),
            settings.businesses_soft_ttl, settings.businesses_hard_ttl, **cache_opts,
        )
        self.pricing_cache = FreshnessCache(
            "Pricing", partial(fetch_pricing, self.caspio, settings.pricing_view),
            settings.pricing_soft_ttl, settings.pricing_hard_ttl, **cache_opts,
        )

        self.rollup = RollupEngine(
            self.store,
            source_table=settings.reservations_table,
            rollup_table=settings.rollup_table,
            res_id_field=settings.res_id_field,
            result_ttl=settings.rollup_result_ttl,
            clock=clock,
        )

    def close(self) -> None:
        """Stop the shared background refresh pool. Caches keep serving; stale hits stop refreshing."""
        if self._owns_executor:
            self._executor.shutdown(wait=False)


_services: Optional[MiddlewareServices] = None
_services_lock = threading.Lock()


def get_services() -> MiddlewareServices:
    global _services
    if _services is None:
        with _services_lock:
            if _services is None:
                configure_logging()
                settings = Settings.from_env()
                logger.info(f"[Services] initialized: {settings.resolved_source()}")
                _services = MiddlewareServices(settings)
    return _services


def set_services(services: Optional[MiddlewareServices]) -> None:
    global _services
    with _services_lock:
        _services = services


def run_handler(handle, event, tag: str = "API", plain_text: bool = False):
    """Lambda entry shim: resolve the container, then delegate to handle(event, services)."""
    try:
        services = get_services()
    except MiddlewareError as e:
        return error_resp(e, plain_text=plain_text, tag=tag)
    return handle(event, services)
