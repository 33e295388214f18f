"""Dashboard synchronization engine with an explicit lifecycle."""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

from .api import ApiClient
from .autorefresh import AutoRefreshLoop
from .categories import CategorySelector
from .config import AppConfig
from .credentials import CredentialStore
from .logging_utils import get_logger
from .store import DashboardCache, SnapshotStore
from .sync import DashboardApi, RefreshCoordinator

log = get_logger(__name__)


class DashboardEngine:
    """Own the selector, stores, coordinator and auto-refresh loop of one dashboard.

    Instances share nothing, so several engines (for example in tests) can
    live side by side. Call :meth:`dispose` before dropping an engine so no
    scheduled tick outlives it.
    """

    def __init__(
        self,
        api: DashboardApi,
        *,
        selector: Optional[CategorySelector] = None,
        refresh_interval: Optional[float] = None,
        config: Optional[AppConfig] = None,
        credentials: Optional[CredentialStore] = None,
    ) -> None:
        self.config = config or AppConfig()
        self.api = api
        self.credentials = credentials
        self.selector = selector or CategorySelector(self.config.default_category)
        self.snapshots = SnapshotStore()
        self.dashboards = DashboardCache()
        self.coordinator = RefreshCoordinator(
            api,
            self.selector,
            self.snapshots,
            self.dashboards,
            latency_ttl=self.config.latency_ttl_delta,
        )
        self.loop = AutoRefreshLoop(
            self.coordinator.refresh,
            interval=refresh_interval or self.config.refresh_interval,
        )
        self._disposed = False

    @classmethod
    def create(
        cls,
        config: Optional[AppConfig] = None,
        *,
        api: Optional[DashboardApi] = None,
        credentials: Optional[CredentialStore] = None,
    ) -> "DashboardEngine":
        """Build an engine talking to the relay named in *config*."""

        config = config or AppConfig()
        if credentials is None:
            credentials_path = Path(config.credentials_path).expanduser() if config.credentials_path else None
            credentials = CredentialStore(credentials_path)
            credentials.load()
        if api is None:
            api = ApiClient(config.api_base_url, credentials, timeout=config.request_timeout)
        log.info("Dashboard engine created for %s", config.api_base_url)
        return cls(api, config=config, credentials=credentials)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def start(self) -> None:
        """Start (or restart) auto refresh on the running event loop."""

        if self._disposed:
            raise RuntimeError("Dashboard engine has been disposed")
        self.loop.start()

    def stop(self) -> None:
        self.loop.stop()

    def dispose(self) -> None:
        """Stop auto refresh for good. Idempotent."""

        if self._disposed:
            return
        self.loop.stop()
        self._disposed = True
        log.debug("Dashboard engine disposed")

    def refresh(self) -> "asyncio.Future[None]":
        return self.coordinator.refresh()

    def sign_out(self) -> None:
        """Forget the access key and every cached category."""

        self.loop.stop()
        if self.credentials is not None:
            self.credentials.clear()
        self.coordinator.clear()


__all__ = ["DashboardEngine"]
