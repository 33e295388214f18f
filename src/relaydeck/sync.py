"""Keep the per-category stores in step with the relay.

:class:`RefreshCoordinator` owns every write to the snapshot and dashboard
stores. Dashboard fetches are single-flight: while a pass is running,
further :meth:`RefreshCoordinator.refresh` calls share it and request one
trailing pass, so no request is dropped and fetches never overlap.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol, Sequence

from .categories import Category, CategorySelector
from .logging_utils import get_logger
from .models import (
    Channel,
    DashboardPayload,
    OperationResult,
    PingResult,
    Snapshot,
    validate_status,
)
from .overlay import LATENCY_TTL, merge_channels
from .store import DashboardCache, SnapshotStore, SystemStatus

log = get_logger(__name__)

QUICK_ADD_PROMOTION_SECONDS = 300

RefreshListener = Callable[[Category, bool], None]


class DashboardApi(Protocol):
    """Remote operations the coordinator depends on."""

    async def fetch_dashboard(self, category: Category) -> DashboardPayload: ...

    async def ping(self, category: Category, index: int) -> PingResult: ...

    async def ping_all(self, category: Category) -> list[PingResult]: ...

    async def add_channel(self, category: Category, channel: Channel) -> None: ...

    async def update_channel(self, category: Category, index: int, channel: Channel) -> None: ...

    async def delete_channel(self, category: Category, index: int) -> None: ...

    async def reorder_channels(self, category: Category, order: Sequence[int]) -> None: ...

    async def set_channel_status(self, category: Category, index: int, status: str) -> None: ...

    async def set_channel_promotion(
        self, category: Category, index: int, duration_seconds: int
    ) -> None: ...

    async def update_load_balance(self, category: Category, strategy: str) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _retrieve_outcome(handle: "asyncio.Future[None]") -> None:
    # The pass logs its own failure; handles nobody awaits stay quiet.
    if not handle.cancelled():
        handle.exception()


class RefreshCoordinator:
    """Fetch, merge and store dashboard data for the active category."""

    def __init__(
        self,
        api: DashboardApi,
        selector: CategorySelector,
        snapshots: SnapshotStore,
        dashboards: DashboardCache,
        *,
        latency_ttl: timedelta = LATENCY_TTL,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._api = api
        self._selector = selector
        self._snapshots = snapshots
        self._dashboards = dashboards
        self._latency_ttl = latency_ttl
        self._clock = clock
        self._requested = False
        self._pass: Optional[asyncio.Task[None]] = None
        self._ping_sweep_running = False
        self._last_refresh_success: Optional[bool] = None
        self._listeners: list[RefreshListener] = []

    # -- state ---------------------------------------------------------------

    @property
    def refreshing(self) -> bool:
        return self._pass is not None

    @property
    def last_refresh_success(self) -> Optional[bool]:
        """``None`` until the first pass finishes, then the outcome of the latest fetch."""

        return self._last_refresh_success

    @property
    def system_status(self) -> SystemStatus:
        return SystemStatus.from_refresh(self._last_refresh_success)

    @property
    def ping_sweep_running(self) -> bool:
        return self._ping_sweep_running

    def subscribe(self, listener: RefreshListener) -> Callable[[], None]:
        """Call ``listener(category, success)`` after every fetch attempt."""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -- refresh -------------------------------------------------------------

    def refresh(self) -> "asyncio.Future[None]":
        """Request a pass for the active category and return a handle on it.

        Must be called from a running event loop. The handle resolves once
        every request made before the pass finished has been served, and
        raises the fetch error if the pass failed. Every caller gets its own
        handle: cancelling one drops that caller only, the pass keeps
        running and still applies its result.
        """

        self._requested = True
        if self._pass is None:
            task = asyncio.get_running_loop().create_task(self._run_passes(), name="relaydeck-refresh")
            task.add_done_callback(self._pass_done)
            self._pass = task
        else:
            log.debug("Refresh already in flight; request coalesced")
        handle = asyncio.shield(self._pass)
        handle.add_done_callback(_retrieve_outcome)
        return handle

    async def _run_passes(self) -> None:
        try:
            while self._requested:
                self._requested = False
                # Re-read every iteration so a category switch is honoured.
                await self._refresh_category(self._selector.current)
        finally:
            self._pass = None

    def _pass_done(self, task: "asyncio.Task[None]") -> None:
        if self._pass is task:
            # Cancelled before its first step; the coroutine never cleared it.
            self._pass = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.debug("Refresh pass ended with %s", type(exc).__name__)

    async def _refresh_category(self, category: Category) -> None:
        log.debug("Fetching dashboard for %s", category.value)
        try:
            dashboard = await self._api.fetch_dashboard(category)
        except Exception as exc:
            log.warning("Dashboard refresh for %s failed: %s", category.value, exc)
            self._record(category, False)
            raise
        previous = self._snapshots.get(category)
        merged = merge_channels(
            dashboard.channels,
            previous.channels,
            now=self._clock(),
            ttl=self._latency_ttl,
        )
        self._snapshots.replace(
            category,
            Snapshot(channels=merged, current=previous.current, load_balance=dashboard.load_balance),
        )
        self._dashboards.replace(category, dashboard.slot())
        log.info(
            "Refreshed %s: %d channel(s), strategy %s",
            category.value,
            len(merged),
            dashboard.load_balance,
        )
        self._record(category, True)

    def _record(self, category: Category, success: bool) -> None:
        self._last_refresh_success = success
        for listener in list(self._listeners):
            try:
                listener(category, success)
            except Exception:
                log.exception("Refresh listener %r failed", listener)

    # -- pings ---------------------------------------------------------------

    def _apply_ping(self, channel: Channel, result: PingResult, measured_at: datetime) -> None:
        channel.latency = result.latency
        channel.latency_measured_at = measured_at
        channel.health = result.health

    async def ping_one(self, category: Category | str, index: int) -> PingResult:
        """Measure one channel and overlay the result on the current snapshot."""

        resolved = Category.parse(category)
        result = await self._api.ping(resolved, index)
        channel = self._snapshots.get(resolved).find(index)
        if channel is None:
            log.info("Ping result for %s channel %d has no matching channel", resolved.value, index)
            return result
        self._apply_ping(channel, result, self._clock())
        self._snapshots.mark_pinged(resolved)
        log.info(
            "Pinged %s channel %d: %s ms (%s)",
            resolved.value,
            index,
            result.latency,
            result.status,
        )
        return result

    async def ping_all(self, category: Category | str) -> OperationResult:
        """Measure every channel of *category*.

        Rejected while another sweep is running. Results are only applied
        after the whole response arrived, and only to channels that were
        present when the sweep started.
        """

        resolved = Category.parse(category)
        if self._ping_sweep_running:
            log.info("Ping sweep requested for %s while one is running", resolved.value)
            return OperationResult(False, "Ping sweep already running")
        self._ping_sweep_running = True
        try:
            requested = {channel.index for channel in self._snapshots.get(resolved).channels}
            results = await self._api.ping_all(resolved)
            measured_at = self._clock()
            snapshot = self._snapshots.get(resolved)
            applied = 0
            for result in results:
                if result.id not in requested:
                    continue
                channel = snapshot.find(result.id)
                if channel is None:
                    continue
                self._apply_ping(channel, result, measured_at)
                applied += 1
            if applied:
                self._snapshots.mark_pinged(resolved)
            log.info("Ping sweep for %s updated %d channel(s)", resolved.value, applied)
            return OperationResult(True, f"Pinged {applied} channel(s)")
        finally:
            self._ping_sweep_running = False

    # -- channel management --------------------------------------------------

    def select_channel(self, index: Optional[int]) -> None:
        """Record the operator's current channel for the active category."""

        category = self._selector.current
        snapshot = self._snapshots.get(category)
        if snapshot.current == index:
            return
        self._snapshots.replace(
            category,
            Snapshot(channels=snapshot.channels, current=index, load_balance=snapshot.load_balance),
        )

    async def save_channel(
        self,
        channel: Channel,
        editing_index: Optional[int] = None,
        *,
        quick_add: bool = False,
    ) -> OperationResult:
        """Add *channel* to the active category, or update ``editing_index``.

        A quick add moves the new channel to the front of the order and
        gives it a short promotion window. The terminal UI has no channel
        form; front ends embedding the engine call this directly.
        """

        category = self._selector.current
        if editing_index is not None:
            await self._api.update_channel(category, editing_index, channel)
            log.info("Updated %s channel %d", category.value, editing_index)
            return OperationResult(True, "Channel updated")

        await self._api.add_channel(category, channel)
        log.info("Added %s channel %s", category.value, channel.name)
        if not quick_add:
            return OperationResult(True, "Channel added")

        await self.refresh()
        candidates = [item for item in self._snapshots.get(category).channels if item.takes_failover]
        if not candidates:
            return OperationResult(True, "Channel added")
        newest = max(candidates, key=lambda item: item.index)
        others = sorted(
            (item for item in candidates if item.index != newest.index),
            key=lambda item: item.priority if item.priority is not None else item.index,
        )
        order = [newest.index, *(item.index for item in others)]
        try:
            await self._api.reorder_channels(category, order)
            await self._api.set_channel_promotion(
                category, newest.index, QUICK_ADD_PROMOTION_SECONDS
            )
        except Exception as exc:
            log.warning("Could not prioritise quick-added channel %s: %s", channel.name, exc)
            return OperationResult(True, "Channel added")
        return OperationResult(
            True,
            "Channel added",
            detail=f"Channel {channel.name} now has top priority for the next 5 minutes",
        )

    async def delete_channel(self, index: int) -> OperationResult:
        category = self._selector.current
        await self._api.delete_channel(category, index)
        log.info("Deleted %s channel %d", category.value, index)
        await self.refresh()
        return OperationResult(True, "Channel deleted")

    async def set_channel_status(self, index: int, status: str) -> OperationResult:
        validate_status(status)
        category = self._selector.current
        await self._api.set_channel_status(category, index, status)
        log.info("Set %s channel %d status to %s", category.value, index, status)
        await self.refresh()
        return OperationResult(True, f"Channel status set to {status}")

    async def update_load_balance(self, strategy: str) -> OperationResult:
        category = self._selector.current
        await self._api.update_load_balance(category, strategy)
        snapshot = self._snapshots.get(category)
        self._snapshots.replace(
            category,
            Snapshot(channels=snapshot.channels, current=snapshot.current, load_balance=strategy),
        )
        log.info("Load balancing for %s set to %s", category.value, strategy)
        return OperationResult(True, f"Load balancing strategy updated to {strategy}")

    def clear(self) -> None:
        """Forget all fetched data, e.g. after signing out.

        A ping sweep still awaiting its response keeps the sweep slot until
        it finishes, so a second sweep stays rejected meanwhile.
        """

        self._snapshots.clear()
        self._dashboards.clear()
        self._last_refresh_success = None


__all__ = ["DashboardApi", "QUICK_ADD_PROMOTION_SECONDS", "RefreshCoordinator"]
