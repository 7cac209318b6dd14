from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable

from dashboard import DashboardData, build_dashboard_payload
from storage_intel import API_KEY_ENV, DashboardBuildError

logger = logging.getLogger(__name__)

CACHE_TTL = 2 * 60 * 60.0
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

ERROR_MESSAGE = "Failed to build dashboard."
ERROR_HINT = f"Set {API_KEY_ENV} env var if API requires auth."

Builder = Callable[[], DashboardData]


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


class DashboardCache:
    """Holds the last built dashboard for a fixed time-to-live.

    ``get`` never blocks on a running build. ``get_or_build`` serialises
    builds behind a separate gate and re-checks freshness once inside it, so
    callers that queued behind a build receive that build's result instead of
    starting their own.
    """

    def __init__(self, ttl: float = CACHE_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._lock = threading.Lock()
        self._build_gate = threading.Lock()
        self._data: DashboardData | None = None
        self._stored_at: float | None = None

    @property
    def state(self) -> str:
        with self._lock:
            if self._data is None or self._stored_at is None:
                return "empty"
            return "fresh" if self.clock() - self._stored_at < self.ttl else "stale"

    def get(self) -> DashboardData | None:
        with self._lock:
            if self._data is not None and self._stored_at is not None:
                if self.clock() - self._stored_at < self.ttl:
                    return self._data
            return None

    def set(self, data: DashboardData) -> None:
        with self._lock:
            self._data = data
            self._stored_at = self.clock()

    def clear(self) -> None:
        with self._lock:
            self._data = None
            self._stored_at = None

    def get_or_build(self, builder: Builder) -> DashboardData:
        cached = self.get()
        if cached is not None:
            logger.debug("Serving cached data")
            return cached

        with self._build_gate:
            cached = self.get()
            if cached is not None:
                return cached
            data = builder()
            self.set(data)
            return data

    def rebuild(self, builder: Builder) -> DashboardData:
        self.clear()
        with self._build_gate:
            data = builder()
            self.set(data)
            return data


class DashboardService:
    def __init__(self, builder: Builder = build_dashboard_payload, cache: DashboardCache | None = None):
        self.builder = builder
        self.cache = cache or DashboardCache()

    def get_dashboard(self) -> DashboardData:
        return self.cache.get_or_build(self.builder)

    def refresh(self) -> DashboardData:
        logger.info("Force refresh")
        return self.cache.rebuild(self.builder)

    def has_data(self) -> bool:
        return self.cache.get() is not None

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "hasData": self.has_data(),
            "time": datetime.now(timezone.utc).replace(microsecond=0).isoformat(),
        }

    def api_payload(self) -> tuple[int, dict[str, Any]]:
        try:
            data = self.get_dashboard()
        except DashboardBuildError as exc:
            logger.error("Dashboard build failed: %s", exc)
            return 500, build_error_payload(exc)
        return 200, data.to_dict()

    def refresh_payload(self) -> tuple[int, dict[str, Any]]:
        try:
            data = self.refresh()
        except DashboardBuildError as exc:
            logger.error("Refresh failed: %s", exc)
            return 500, build_error_payload(exc)
        return 200, data.to_dict()

    def start_prefetch(self) -> threading.Thread:
        thread = threading.Thread(target=self._prefetch, name="dashboard-prefetch", daemon=True)
        thread.start()
        return thread

    def _prefetch(self) -> None:
        logger.info("Pre-fetching...")
        try:
            self.get_dashboard()
        except DashboardBuildError as exc:
            logger.warning("Pre-fetch failed: %s", exc)
            return
        logger.info("Ready!")


def build_error_payload(exc: Exception) -> dict[str, str]:
    return {"error": str(exc), "message": ERROR_MESSAGE, "hint": ERROR_HINT}
