import asyncio
import copy
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from relaydeck.categories import Category, CategorySelector
from relaydeck.errors import ApiError, InvalidCategoryError, InvalidStatusError
from relaydeck.models import Channel, DashboardPayload, PingResult
from relaydeck.store import DashboardCache, SnapshotStore, SystemStatus
from relaydeck.sync import QUICK_ADD_PROMOTION_SECONDS, RefreshCoordinator

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _dashboard(*channels: Channel, load_balance: str = "round-robin") -> DashboardPayload:
    return DashboardPayload(
        channels=list(channels),
        load_balance=load_balance,
        metrics=[],
        stats=None,
        recent_activity=None,
    )


class FakeApi:
    """In-memory relay whose dashboard fetches can be held open by tests."""

    def __init__(self) -> None:
        self.dashboards: dict[Category, DashboardPayload] = {category: _dashboard() for category in Category}
        self.fetches: list[Category] = []
        self.calls: list[tuple] = []
        self.gate: Optional[asyncio.Event] = None
        self.fail_fetch: Optional[Exception] = None
        self.ping_results: dict[int, PingResult] = {}
        self.sweep_results: list[PingResult] = []
        self.sweep_gate: Optional[asyncio.Event] = None
        self.fail_reorder = False

    async def fetch_dashboard(self, category: Category) -> DashboardPayload:
        self.fetches.append(category)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_fetch is not None:
            raise self.fail_fetch
        return copy.deepcopy(self.dashboards[category])

    async def ping(self, category: Category, index: int) -> PingResult:
        self.calls.append(("ping", category, index))
        return self.ping_results[index]

    async def ping_all(self, category: Category) -> list[PingResult]:
        self.calls.append(("ping_all", category))
        if self.sweep_gate is not None:
            await self.sweep_gate.wait()
        return list(self.sweep_results)

    async def add_channel(self, category, channel) -> None:
        self.calls.append(("add", category, channel.name))

    async def update_channel(self, category, index, channel) -> None:
        self.calls.append(("update", category, index))

    async def delete_channel(self, category, index) -> None:
        self.calls.append(("delete", category, index))

    async def reorder_channels(self, category, order) -> None:
        self.calls.append(("reorder", category, list(order)))
        if self.fail_reorder:
            raise ApiError("reorder rejected", 500)

    async def set_channel_status(self, category, index, status) -> None:
        self.calls.append(("status", category, index, status))

    async def set_channel_promotion(self, category, index, duration_seconds) -> None:
        self.calls.append(("promote", category, index, duration_seconds))

    async def update_load_balance(self, category, strategy) -> None:
        self.calls.append(("loadbalance", category, strategy))


class Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _coordinator(api: FakeApi, *, category: Category = Category.MESSAGES, clock: Optional[Clock] = None):
    selector = CategorySelector(category)
    snapshots = SnapshotStore()
    dashboards = DashboardCache()
    coordinator = RefreshCoordinator(api, selector, snapshots, dashboards, clock=clock or Clock())
    return coordinator, selector, snapshots, dashboards


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def test_initial_state_is_connecting() -> None:
    coordinator, *_ = _coordinator(FakeApi())

    assert coordinator.last_refresh_success is None
    assert coordinator.system_status is SystemStatus.CONNECTING
    assert not coordinator.refreshing


def test_concurrent_refreshes_share_one_pass_and_one_trailing_pass() -> None:
    api = FakeApi()
    coordinator, *_ = _coordinator(api)

    async def run() -> None:
        api.gate = asyncio.Event()
        first = coordinator.refresh()
        await _settle()
        second = coordinator.refresh()
        third = coordinator.refresh()
        assert coordinator.refreshing
        assert len(api.fetches) == 1
        api.gate.set()
        await first
        assert second.done() and third.done()
        assert not coordinator.refreshing

    asyncio.run(run())

    assert len(api.fetches) == 2


def test_refresh_requests_before_start_collapse_into_one_fetch() -> None:
    api = FakeApi()
    coordinator, *_ = _coordinator(api)

    async def run() -> None:
        handles = [coordinator.refresh() for _ in range(3)]
        await coordinator.refresh()
        assert all(handle.done() for handle in handles)

    asyncio.run(run())

    assert len(api.fetches) == 1


def test_successful_refresh_fills_only_active_category() -> None:
    api = FakeApi()
    api.dashboards[Category.GEMINI] = _dashboard(Channel(index=0, name="g0"), load_balance="failover")
    coordinator, _, snapshots, dashboards = _coordinator(api, category=Category.GEMINI)
    results: list[tuple[Category, bool]] = []
    coordinator.subscribe(lambda category, success: results.append((category, success)))

    asyncio.run(_await_refresh(coordinator))

    assert snapshots.get(Category.GEMINI).load_balance == "failover"
    assert [channel.name for channel in snapshots.get(Category.GEMINI).channels] == ["g0"]
    assert snapshots.get(Category.MESSAGES).channels == []
    assert dashboards.get(Category.GEMINI).metrics == []
    assert coordinator.last_refresh_success is True
    assert coordinator.system_status is SystemStatus.RUNNING
    assert results == [(Category.GEMINI, True)]


async def _await_refresh(coordinator: RefreshCoordinator) -> None:
    await coordinator.refresh()


def test_failed_refresh_keeps_previous_data_and_flags_error() -> None:
    api = FakeApi()
    api.dashboards[Category.MESSAGES] = _dashboard(Channel(index=0, name="kept"))
    coordinator, _, snapshots, _ = _coordinator(api)

    async def run() -> None:
        await coordinator.refresh()
        api.fail_fetch = ApiError("relay down", 0)
        with pytest.raises(ApiError):
            await coordinator.refresh()

    asyncio.run(run())

    assert [channel.name for channel in snapshots.get(Category.MESSAGES).channels] == ["kept"]
    assert coordinator.last_refresh_success is False
    assert coordinator.system_status is SystemStatus.ERROR
    assert not coordinator.refreshing


def test_failure_is_shared_by_every_caller_of_the_pass() -> None:
    api = FakeApi()
    coordinator, *_ = _coordinator(api)

    async def run() -> list[BaseException]:
        api.gate = asyncio.Event()
        api.fail_fetch = ApiError("boom", 502)
        first = coordinator.refresh()
        second = coordinator.refresh()
        api.gate.set()
        return await asyncio.gather(first, second, return_exceptions=True)

    outcomes = asyncio.run(run())

    assert all(isinstance(outcome, ApiError) for outcome in outcomes)
    assert len(api.fetches) == 1


def test_trailing_pass_uses_category_selected_meanwhile() -> None:
    api = FakeApi()
    api.dashboards[Category.MESSAGES] = _dashboard(Channel(index=0, name="m0"))
    api.dashboards[Category.RESPONSES] = _dashboard(Channel(index=0, name="r0"))
    coordinator, selector, snapshots, _ = _coordinator(api)

    async def run() -> None:
        api.gate = asyncio.Event()
        handle = coordinator.refresh()
        await _settle()
        selector.select(Category.RESPONSES)
        coordinator.refresh()
        api.gate.set()
        await handle

    asyncio.run(run())

    assert api.fetches == [Category.MESSAGES, Category.RESPONSES]
    assert snapshots.get(Category.MESSAGES).channels[0].name == "m0"
    assert snapshots.get(Category.RESPONSES).channels[0].name == "r0"


def test_ping_measurement_survives_refresh_until_it_expires() -> None:
    api = FakeApi()
    api.dashboards[Category.MESSAGES] = _dashboard(
        Channel(index=0, name="a", latency=500.0), Channel(index=1, name="b", latency=700.0)
    )
    api.ping_results[0] = PingResult(id=0, latency=120.0, status="healthy", success=True)
    clock = Clock()
    coordinator, _, snapshots, _ = _coordinator(api, clock=clock)

    async def run() -> None:
        await coordinator.refresh()
        await coordinator.ping_one(Category.MESSAGES, 0)
        clock.now = NOW + timedelta(minutes=4)
        await coordinator.refresh()
        assert snapshots.get(Category.MESSAGES).find(0).latency == 120.0
        clock.now = NOW + timedelta(minutes=6)
        await coordinator.refresh()

    asyncio.run(run())

    channels = snapshots.get(Category.MESSAGES)
    assert channels.find(0).latency == 500.0
    assert channels.find(1).latency == 700.0


def test_ping_one_updates_only_its_category() -> None:
    api = FakeApi()
    api.dashboards[Category.MESSAGES] = _dashboard(Channel(index=0, latency=900.0))
    api.ping_results[0] = PingResult(id=0, latency=33.0, status="error", success=False)
    coordinator, selector, snapshots, _ = _coordinator(api)
    notified: list[Category] = []
    snapshots.subscribe(notified.append)

    async def run() -> None:
        await coordinator.refresh()
        selector.select(Category.GEMINI)
        await coordinator.refresh()
        notified.clear()
        await coordinator.ping_one(Category.MESSAGES, 0)

    asyncio.run(run())

    pinged = snapshots.get(Category.MESSAGES).find(0)
    assert pinged.latency == 33.0
    assert pinged.health == "error"
    assert pinged.latency_measured_at == NOW
    assert snapshots.get(Category.GEMINI).channels == []
    assert notified == [Category.MESSAGES]


def test_ping_for_unknown_channel_leaves_snapshot_alone() -> None:
    api = FakeApi()
    api.ping_results[4] = PingResult(id=4, latency=10.0, status="healthy", success=True)
    coordinator, _, snapshots, _ = _coordinator(api)

    result = asyncio.run(coordinator.ping_one("messages", 4))

    assert result.latency == 10.0
    assert snapshots.get(Category.MESSAGES).channels == []


def test_ping_with_invalid_category_fails_fast() -> None:
    api = FakeApi()
    coordinator, *_ = _coordinator(api)

    with pytest.raises(InvalidCategoryError):
        asyncio.run(coordinator.ping_all("completions"))

    assert api.calls == []


def test_second_ping_sweep_is_rejected_while_running() -> None:
    api = FakeApi()
    api.dashboards[Category.MESSAGES] = _dashboard(Channel(index=0), Channel(index=1))
    api.sweep_results = [
        PingResult(id=0, latency=11.0, status="healthy", success=True),
        PingResult(id=1, latency=22.0, status="healthy", success=True),
    ]
    coordinator, _, snapshots, _ = _coordinator(api)

    async def run():
        await coordinator.refresh()
        api.sweep_gate = asyncio.Event()
        first = asyncio.ensure_future(coordinator.ping_all(Category.MESSAGES))
        await _settle()
        assert coordinator.ping_sweep_running
        rejected = await coordinator.ping_all(Category.MESSAGES)
        api.sweep_gate.set()
        return await first, rejected

    completed, rejected = asyncio.run(run())

    assert completed.success
    assert not rejected.success
    assert rejected.message == "Ping sweep already running"
    assert [call for call in api.calls if call[0] == "ping_all"] == [("ping_all", Category.MESSAGES)]
    assert [channel.latency for channel in snapshots.get(Category.MESSAGES).channels] == [11.0, 22.0]
    assert not coordinator.ping_sweep_running


def test_ping_sweep_ignores_channels_added_after_it_started() -> None:
    api = FakeApi()
    api.dashboards[Category.MESSAGES] = _dashboard(Channel(index=0))
    api.sweep_results = [
        PingResult(id=0, latency=15.0, status="healthy", success=True),
        PingResult(id=1, latency=25.0, status="healthy", success=True),
    ]
    coordinator, _, snapshots, _ = _coordinator(api)

    async def run() -> None:
        await coordinator.refresh()
        api.sweep_gate = asyncio.Event()
        sweep = asyncio.ensure_future(coordinator.ping_all(Category.MESSAGES))
        await _settle()
        api.dashboards[Category.MESSAGES] = _dashboard(Channel(index=0), Channel(index=1, latency=999.0))
        await coordinator.refresh()
        api.sweep_gate.set()
        await sweep

    asyncio.run(run())

    channels = snapshots.get(Category.MESSAGES)
    assert channels.find(0).latency == 15.0
    assert channels.find(1).latency == 999.0


def test_ping_sweep_flag_is_released_after_failure() -> None:
    api = FakeApi()
    coordinator, *_ = _coordinator(api)

    async def failing_sweep(category):
        raise ApiError("sweep failed", 500)

    api.ping_all = failing_sweep

    with pytest.raises(ApiError):
        asyncio.run(coordinator.ping_all(Category.MESSAGES))

    assert not coordinator.ping_sweep_running


def test_quick_add_promotes_newest_channel() -> None:
    api = FakeApi()
    api.dashboards[Category.MESSAGES] = _dashboard(
        Channel(index=0, name="a", priority=2),
        Channel(index=1, name="b", priority=1),
        Channel(index=2, name="off", status="disabled"),
        Channel(index=3, name="c"),
        Channel(index=4, name="new"),
    )
    coordinator, *_ = _coordinator(api)

    result = asyncio.run(coordinator.save_channel(Channel(index=-1, name="new"), quick_add=True))

    assert result.success
    assert result.detail is not None
    assert ("add", Category.MESSAGES, "new") in api.calls
    assert ("reorder", Category.MESSAGES, [4, 1, 0, 3]) in api.calls
    assert ("promote", Category.MESSAGES, 4, QUICK_ADD_PROMOTION_SECONDS) in api.calls


def test_quick_add_follow_up_failure_still_reports_success() -> None:
    api = FakeApi()
    api.dashboards[Category.MESSAGES] = _dashboard(Channel(index=0, name="only"))
    api.fail_reorder = True
    coordinator, *_ = _coordinator(api)

    result = asyncio.run(coordinator.save_channel(Channel(index=-1, name="only"), quick_add=True))

    assert result.success
    assert result.detail is None
    assert not any(call[0] == "promote" for call in api.calls)


def test_save_channel_update_uses_active_category() -> None:
    api = FakeApi()
    coordinator, selector, *_ = _coordinator(api)
    selector.select(Category.GEMINI)

    result = asyncio.run(coordinator.save_channel(Channel(index=2, name="x"), editing_index=2))

    assert result.message == "Channel updated"
    assert api.calls == [("update", Category.GEMINI, 2)]


def test_delete_and_status_changes_refresh_afterwards() -> None:
    api = FakeApi()
    coordinator, *_ = _coordinator(api, category=Category.RESPONSES)

    async def run() -> None:
        await coordinator.delete_channel(1)
        await coordinator.set_channel_status(0, "suspended")

    asyncio.run(run())

    assert ("delete", Category.RESPONSES, 1) in api.calls
    assert ("status", Category.RESPONSES, 0, "suspended") in api.calls
    assert api.fetches == [Category.RESPONSES, Category.RESPONSES]


def test_invalid_status_is_rejected_before_any_request() -> None:
    api = FakeApi()
    coordinator, *_ = _coordinator(api)

    with pytest.raises(InvalidStatusError):
        asyncio.run(coordinator.set_channel_status(0, "paused"))

    assert api.calls == []


def test_update_load_balance_replaces_label() -> None:
    api = FakeApi()
    api.dashboards[Category.MESSAGES] = _dashboard(Channel(index=0))
    coordinator, _, snapshots, _ = _coordinator(api)

    async def run():
        await coordinator.refresh()
        return await coordinator.update_load_balance("failover")

    result = asyncio.run(run())

    assert result.success
    assert snapshots.get(Category.MESSAGES).load_balance == "failover"
    assert len(snapshots.get(Category.MESSAGES).channels) == 1


def test_select_channel_records_current_index() -> None:
    api = FakeApi()
    coordinator, _, snapshots, _ = _coordinator(api)
    notified: list[Category] = []
    snapshots.subscribe(notified.append)

    coordinator.select_channel(3)
    coordinator.select_channel(3)

    assert snapshots.get(Category.MESSAGES).current == 3
    assert notified == [Category.MESSAGES]


def test_clear_forgets_everything() -> None:
    api = FakeApi()
    api.dashboards[Category.MESSAGES] = _dashboard(Channel(index=0))
    coordinator, _, snapshots, _ = _coordinator(api)

    asyncio.run(_await_refresh(coordinator))
    coordinator.clear()

    assert snapshots.get(Category.MESSAGES).channels == []
    assert coordinator.system_status is SystemStatus.CONNECTING


def test_refresh_scenario_writes_snapshot_and_strategy() -> None:
    api = FakeApi()
    api.dashboards[Category.MESSAGES] = DashboardPayload.from_payload(
        {
            "channels": [{"index": 0, "status": "active"}],
            "loadBalance": "round-robin",
            "metrics": [],
            "stats": {"multiChannelMode": False, "activeChannelCount": 1},
        }
    )
    coordinator, _, snapshots, dashboards = _coordinator(api)

    asyncio.run(_await_refresh(coordinator))

    snapshot = snapshots.get(Category.MESSAGES)
    assert [(channel.index, channel.status) for channel in snapshot.channels] == [(0, "active")]
    assert snapshot.load_balance == "round-robin"
    assert dashboards.get(Category.MESSAGES).stats.active_channel_count == 1


def test_stale_pass_writes_only_the_category_it_fetched() -> None:
    api = FakeApi()
    api.dashboards[Category.MESSAGES] = _dashboard(Channel(index=0, name="m0"))
    coordinator, selector, snapshots, dashboards = _coordinator(api)
    written: list[Category] = []
    snapshots.subscribe(written.append)
    dashboards.subscribe(written.append)

    async def run() -> None:
        api.gate = asyncio.Event()
        handle = coordinator.refresh()
        await _settle()
        selector.select(Category.GEMINI)
        api.gate.set()
        await handle

    asyncio.run(run())

    assert written == [Category.MESSAGES, Category.MESSAGES]
    assert snapshots.get(Category.GEMINI).channels == []
    assert api.fetches == [Category.MESSAGES]


def test_failed_ping_sweep_leaves_latencies_unchanged() -> None:
    api = FakeApi()
    api.dashboards[Category.MESSAGES] = _dashboard(Channel(index=0, latency=300.0), Channel(index=1))
    coordinator, _, snapshots, _ = _coordinator(api)

    async def failing_sweep(category):
        raise ApiError("sweep failed", 502)

    async def run() -> None:
        await coordinator.refresh()
        api.ping_all = failing_sweep
        with pytest.raises(ApiError):
            await coordinator.ping_all(Category.MESSAGES)

    asyncio.run(run())

    channels = snapshots.get(Category.MESSAGES).channels
    assert [(channel.latency, channel.latency_measured_at) for channel in channels] == [(300.0, None), (None, None)]


def test_cancelled_caller_does_not_cancel_the_shared_pass() -> None:
    api = FakeApi()
    api.dashboards[Category.MESSAGES] = _dashboard(Channel(index=0, name="m0"), load_balance="failover")
    coordinator, _, snapshots, _ = _coordinator(api)

    async def run() -> None:
        api.gate = asyncio.Event()
        patient = coordinator.refresh()
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(coordinator.refresh(), 0.01)
        assert coordinator.refreshing
        api.gate.set()
        await patient

    asyncio.run(run())

    assert snapshots.get(Category.MESSAGES).load_balance == "failover"
    assert coordinator.last_refresh_success is True
    assert api.fetches == [Category.MESSAGES]


def test_clear_keeps_a_running_ping_sweep_exclusive() -> None:
    api = FakeApi()
    api.dashboards[Category.MESSAGES] = _dashboard(Channel(index=0))
    api.sweep_results = [PingResult(id=0, latency=12.0, status="healthy", success=True)]
    coordinator, *_ = _coordinator(api)

    async def run():
        await coordinator.refresh()
        api.sweep_gate = asyncio.Event()
        first = asyncio.ensure_future(coordinator.ping_all(Category.MESSAGES))
        await _settle()
        coordinator.clear()
        assert coordinator.ping_sweep_running
        second = await coordinator.ping_all(Category.MESSAGES)
        api.sweep_gate.set()
        await first
        return second

    second = asyncio.run(run())

    assert not second.success
    assert [call for call in api.calls if call[0] == "ping_all"] == [("ping_all", Category.MESSAGES)]
    assert not coordinator.ping_sweep_running
