"""Textual application showing the relay dashboard."""
from __future__ import annotations

from datetime import datetime
from typing import Awaitable, Callable, Optional

try:
    from textual import on
    from textual.app import App, ComposeResult
    from textual.binding import Binding
    from textual.containers import Horizontal, Vertical
    from textual.reactive import reactive
    from textual.screen import ModalScreen
    from textual.widgets import (
        Button,
        DataTable,
        Footer,
        Header,
        Label,
        Static,
        TabPane,
        TabbedContent,
    )
except ModuleNotFoundError as exc:  # pragma: no cover - dependency guard
    raise ModuleNotFoundError(
        "The 'textual' package is required to run relaydeck. "
        "Install dependencies with 'pip install -e .[test]' or 'pip install relaydeck'."
    ) from exc

from rich.markup import escape
from rich.text import Text

from .categories import Category
from .engine import DashboardEngine
from .errors import AuthenticationError, RelaydeckError
from .log_viewer import LogViewer
from .logging_utils import get_logger
from .models import LOAD_BALANCE_STRATEGIES, Channel, DashboardSlot, OperationResult, Snapshot
from .store import SystemStatus

log = get_logger(__name__)

DEFAULT_THEME_NAME = "textual-dark"

TABLE_COLUMNS: tuple[str, ...] = (
    "#",
    "Name",
    "Status",
    "Health",
    "Latency",
    "Success",
    "RPM",
)

_STATUS_STYLES = {
    "active": "green",
    "suspended": "yellow",
    "disabled": "red",
    "": "green",
}

_HEALTH_STYLES = {
    "healthy": "green",
    "error": "red",
    "unknown": "dim",
}

_SYSTEM_STATUS_STYLES = {
    SystemStatus.CONNECTING: "yellow",
    SystemStatus.RUNNING: "green",
    SystemStatus.ERROR: "red",
}


def format_latency(latency: Optional[float]) -> str:
    if latency is None:
        return "–"
    if latency >= 1000:
        return f"{latency / 1000:.2f} s"
    return f"{latency:.0f} ms"


def format_rate(rate: Optional[float]) -> str:
    if rate is None:
        return "–"
    return f"{rate:.1f}%"


def channel_row(channel: Channel, slot: DashboardSlot) -> tuple[Text, ...]:
    """Return the table cells describing *channel*."""

    metrics = slot.metrics_for(channel.index)
    activity = slot.activity_for(channel.index)
    status = channel.status or "active"
    health = channel.health or "unknown"
    name = channel.name or f"channel {channel.index}"
    if channel.pinned:
        name = f"{name} *"
    latency = channel.latency if channel.latency is not None else (metrics.latency if metrics else None)
    return (
        Text(str(channel.index)),
        Text(name),
        Text(status, style=_STATUS_STYLES.get(channel.status, "")),
        Text(health, style=_HEALTH_STYLES.get(health, "")),
        Text(format_latency(latency)),
        Text(format_rate(metrics.success_rate if metrics else None)),
        Text(f"{activity.rpm:.1f}" if activity else "–"),
    )


def summary_markup(category: Category, snapshot: Snapshot, slot: DashboardSlot, *, active: int, failover: int) -> str:
    """Return the one-line summary shown above a category's channel table."""

    parts = [
        f"[b]{escape(category.label)}[/b]",
        f"{len(snapshot.channels)} channel(s)",
        f"{active} active",
        f"{failover} in failover",
        f"strategy {escape(snapshot.load_balance)}",
    ]
    if slot.stats is not None:
        mode = "multi-channel" if slot.stats.multi_channel_mode else "single-channel"
        parts.append(mode)
    if snapshot.current is not None:
        parts.append(f"current #{snapshot.current}")
    return " | ".join(parts)


def toggled_status(channel: Channel) -> str:
    """Return the status the enable/disable binding moves *channel* to."""

    return "disabled" if channel.status in ("", "active") else "active"


def next_load_balance(current: str) -> str:
    try:
        position = LOAD_BALANCE_STRATEGIES.index(current)
    except ValueError:
        return LOAD_BALANCE_STRATEGIES[0]
    return LOAD_BALANCE_STRATEGIES[(position + 1) % len(LOAD_BALANCE_STRATEGIES)]


class StatusBar(Static):
    """Single line describing relay reachability and the last action."""

    status: reactive[str] = reactive("Connecting to the relay")

    def watch_status(self, status: str) -> None:
        self.update(status)


class CategorySummary(Static):
    """Counts and strategy for one category."""


class DeleteConfirmation(ModalScreen[bool]):
    """Modal dialog asking the operator to confirm a channel deletion."""

    def __init__(self, category: Category, channel: Channel) -> None:
        super().__init__()
        self._category = category
        self._channel = channel

    def compose(self) -> ComposeResult:
        name = self._channel.name or f"#{self._channel.index}"
        message = f"Delete {self._category.label} channel {name}?\nThe relay stops routing to it at once."
        with Vertical(id="delete-confirmation"):
            yield Label(escape(message), id="delete-confirmation-message")
            with Horizontal(id="delete-confirmation-buttons"):
                yield Button("Cancel", id="delete-cancel", variant="primary")
                yield Button("Delete", id="delete-confirm", variant="error")

    @on(Button.Pressed, "#delete-confirm")
    def _on_confirm(self, _: Button.Pressed) -> None:
        self.dismiss(True)

    @on(Button.Pressed, "#delete-cancel")
    def _on_cancel(self, _: Button.Pressed) -> None:
        self.dismiss(False)


_INLINE_DEFAULT_CSS = """
#main-tabs {
    height: 1fr;
}

TabPane {
    padding: 0;
}

.category-pane,
#logs-pane {
    layout: vertical;
    height: 1fr;
    padding: 0 1;
}

CategorySummary {
    padding: 0 1;
    height: 1;
}

.channel-table {
    height: 1fr;
}

#log-viewer {
    border: heavy $surface;
    padding: 0 1;
    height: 1fr;
}

StatusBar {
    padding: 0 1;
}

DeleteConfirmation {
    align: center middle;
}

#delete-confirmation {
    width: 60;
    height: auto;
    border: thick $error;
    background: $surface;
    padding: 1 2;
}

#delete-confirmation-buttons {
    height: auto;
    align-horizontal: right;
    padding-top: 1;
}
"""


DEFAULT_CSS = _INLINE_DEFAULT_CSS


class RelaydeckApp(App[None]):
    """Main Textual application."""

    CSS = DEFAULT_CSS
    CSS_PATH: list[str] = []
    ENABLE_COMMAND_PALETTE = False
    BINDINGS = [
        Binding("ctrl+c", "quit", "Quit"),
        Binding("q", "quit", "Quit"),
        Binding("1", "switch_category('messages')", "Messages"),
        Binding("2", "switch_category('responses')", "Responses"),
        Binding("3", "switch_category('gemini')", "Gemini"),
        Binding("l", "show_logs", "Logs"),
        Binding("r", "refresh", "Refresh"),
        Binding("p", "ping_all", "Ping all"),
        Binding("ctrl+p", "ping_channel", "Ping channel"),
        Binding("s", "toggle_status", "Enable/disable"),
        Binding("d", "delete_channel", "Delete"),
        Binding("b", "cycle_load_balance", "Load balance"),
    ]

    def __init__(self, engine: DashboardEngine, *, theme: Optional[str] = None) -> None:
        super().__init__()
        self._apply_requested_theme(theme)
        self.engine = engine
        self._unsubscribers: list[Callable[[], None]] = []
        self._status_bar: Optional[StatusBar] = None
        self._last_refresh_at: Optional[datetime] = None
        log.info(
            "RelaydeckApp initialized for category %s",
            engine.selector.current.value,
        )

    def _apply_requested_theme(self, requested: Optional[str]) -> None:
        preferred = requested or DEFAULT_THEME_NAME
        theme = self.get_theme(preferred)
        if theme is None:
            if requested:
                log.warning(
                    "Requested theme '%s' is unavailable; falling back to %s",
                    requested,
                    DEFAULT_THEME_NAME,
                )
            return
        log.debug("Applying theme %s", theme.name)
        self.theme = theme.name

    def compose(self) -> ComposeResult:
        yield Header()
        with TabbedContent(id="main-tabs", initial=f"{self.engine.selector.current.value}-tab"):
            for category in Category:
                with TabPane(category.label, id=f"{category.value}-tab"):
                    with Vertical(classes="category-pane"):
                        yield CategorySummary(id=f"{category.value}-summary")
                        yield DataTable(
                            id=f"{category.value}-table",
                            classes="channel-table",
                            cursor_type="row",
                            zebra_stripes=True,
                        )
            with TabPane("Logs", id="logs-tab"):
                with Vertical(id="logs-pane"):
                    yield LogViewer(id="log-viewer")
        yield StatusBar(id="status")
        yield Footer()

    def on_mount(self) -> None:
        log.debug("Application mounted")
        for category in Category:
            table = self._table(category)
            if table is not None:
                table.add_columns(*TABLE_COLUMNS)
            self._render_category(category)
        self._unsubscribers = [
            self.engine.snapshots.subscribe(self._render_category),
            self.engine.dashboards.subscribe(self._render_category),
            self.engine.coordinator.subscribe(self._on_refresh_finished),
            self.engine.selector.subscribe(self._on_category_selected),
        ]
        self._update_status()
        self.engine.start()
        self.action_refresh()

    def on_unmount(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self.engine.dispose()

    # -- widgets -------------------------------------------------------------

    def _query_optional_widget(self, query: str, widget_type: type) -> Optional[object]:
        try:
            return self.query_one(query, widget_type)
        except Exception:
            return None

    def _table(self, category: Category) -> Optional[DataTable]:
        return self._query_optional_widget(f"#{category.value}-table", DataTable)  # type: ignore[return-value]

    def _set_status(self, message: str) -> None:
        log.debug("Status update: %s", message)
        status_bar = self._status_bar or self._query_optional_widget("#status", StatusBar)
        if status_bar is None:
            log.debug("Dropping status update; status bar unavailable")
            return
        self._status_bar = status_bar  # type: ignore[assignment]
        status_bar.status = message  # type: ignore[attr-defined]

    def _update_status(self, note: Optional[str] = None) -> None:
        system = self.engine.coordinator.system_status
        style = _SYSTEM_STATUS_STYLES[system]
        parts = [f"[{style}]{escape(system.label)}[/{style}]", escape(system.description)]
        if self._last_refresh_at is not None:
            parts.append(f"updated {self._last_refresh_at:%H:%M:%S}")
        if note:
            parts.append(escape(note))
        self._set_status(" | ".join(parts))

    def _render_category(self, category: Category) -> None:
        snapshot = self.engine.snapshots.get(category)
        slot = self.engine.dashboards.get(category)
        summary = self._query_optional_widget(f"#{category.value}-summary", CategorySummary)
        if summary is not None:
            summary.update(  # type: ignore[attr-defined]
                summary_markup(
                    category,
                    snapshot,
                    slot,
                    active=self.engine.snapshots.active_channel_count(category),
                    failover=self.engine.snapshots.failover_channel_count(category),
                )
            )
        table = self._table(category)
        if table is None:
            return
        cursor_row = table.cursor_row
        table.clear()
        for channel in snapshot.channels:
            table.add_row(*channel_row(channel, slot), key=str(channel.index))
        if not snapshot.channels:
            return
        if snapshot.current is not None:
            for row, channel in enumerate(snapshot.channels):
                if channel.index == snapshot.current:
                    cursor_row = row
                    break
        table.move_cursor(row=min(cursor_row, len(snapshot.channels) - 1))

    def _highlighted_index(self, category: Category) -> Optional[int]:
        table = self._table(category)
        if table is None or table.row_count == 0:
            return None
        try:
            row_key = table.coordinate_to_cell_key(table.cursor_coordinate).row_key
        except Exception:
            return None
        try:
            return int(row_key.value) if row_key.value is not None else None
        except ValueError:
            return None

    # -- engine callbacks ----------------------------------------------------

    def _on_refresh_finished(self, category: Category, success: bool) -> None:
        if success:
            self._last_refresh_at = datetime.now()
        self._update_status()

    def _on_category_selected(self, category: Category) -> None:
        tabbed = self._query_optional_widget("#main-tabs", TabbedContent)
        pane_id = f"{category.value}-tab"
        if tabbed is not None and tabbed.active != pane_id:  # type: ignore[attr-defined]
            tabbed.active = pane_id  # type: ignore[attr-defined]
        self.action_refresh()

    # -- workers -------------------------------------------------------------

    async def _refresh(self) -> None:
        try:
            await self.engine.refresh()
        except AuthenticationError:
            self.engine.stop()
            self._update_status("Access key rejected; set RELAYDECK_API_KEY and restart")
        except (RelaydeckError, ValueError) as exc:
            self._update_status(f"Refresh failed: {exc}")

    async def _ping_all(self, category: Category) -> None:
        self._update_status(f"Pinging {category.label} channels…")
        try:
            result = await self.engine.coordinator.ping_all(category)
        except (RelaydeckError, ValueError) as exc:
            self._update_status(f"Ping failed: {exc}")
            return
        self._update_status(result.message)

    async def _ping_channel(self, category: Category, index: int) -> None:
        try:
            result = await self.engine.coordinator.ping_one(category, index)
        except (RelaydeckError, ValueError) as exc:
            self._update_status(f"Ping of channel {index} failed: {exc}")
            return
        self._update_status(f"Channel {index}: {format_latency(result.latency)} ({result.status})")

    async def _run_operation(self, operation: Awaitable[OperationResult], failure: str) -> None:
        try:
            result = await operation
        except AuthenticationError:
            self.engine.stop()
            self._update_status("Access key rejected; set RELAYDECK_API_KEY and restart")
            return
        except (RelaydeckError, ValueError) as exc:
            self._update_status(f"{failure}: {exc}")
            return
        self._update_status(result.detail or result.message)

    def _delete_confirmed(self, category: Category, index: int, confirmed: Optional[bool]) -> None:
        if not confirmed:
            self._set_status("Deletion cancelled")
            return
        if category is not self.engine.selector.current:
            self._set_status("Category changed; deletion cancelled")
            return
        log.warning("Deleting %s channel %d", category.value, index)
        self.run_worker(
            self._run_operation(
                self.engine.coordinator.delete_channel(index),
                f"Deleting channel {index} failed",
            ),
            name=f"delete:{category.value}:{index}",
            group="mutation",
        )

    # -- actions -------------------------------------------------------------

    def action_switch_category(self, value: str) -> None:
        category = self.engine.selector.select(value)
        log.debug("Category switched to %s", category.value)

    def action_show_logs(self) -> None:
        tabbed = self._query_optional_widget("#main-tabs", TabbedContent)
        if tabbed is not None:
            tabbed.active = "logs-tab"  # type: ignore[attr-defined]

    def action_refresh(self) -> None:
        self.run_worker(self._refresh(), name="refresh", group="refresh")

    def action_ping_all(self) -> None:
        category = self.engine.selector.current
        self.run_worker(self._ping_all(category), name=f"ping-all:{category.value}")

    def action_ping_channel(self) -> None:
        category = self.engine.selector.current
        index = self._highlighted_index(category)
        if index is None:
            self._set_status("Select a channel to ping")
            return
        self.run_worker(self._ping_channel(category, index), name=f"ping:{category.value}:{index}")

    def _highlighted_channel(self) -> Optional[Channel]:
        category = self.engine.selector.current
        index = self._highlighted_index(category)
        if index is None:
            return None
        return self.engine.snapshots.get(category).find(index)

    def action_toggle_status(self) -> None:
        channel = self._highlighted_channel()
        if channel is None:
            self._set_status("Select a channel to enable or disable")
            return
        status = toggled_status(channel)
        self.run_worker(
            self._run_operation(
                self.engine.coordinator.set_channel_status(channel.index, status),
                f"Updating channel {channel.index} failed",
            ),
            name=f"status:{channel.index}:{status}",
            group="mutation",
        )

    def action_delete_channel(self) -> None:
        channel = self._highlighted_channel()
        if channel is None:
            self._set_status("Select a channel to delete")
            return
        category = self.engine.selector.current
        self.push_screen(
            DeleteConfirmation(category, channel),
            callback=lambda confirmed, *, index=channel.index: self._delete_confirmed(
                category, index, confirmed
            ),
        )
        self._set_status(f"Confirm deletion of channel {channel.index}")

    def action_cycle_load_balance(self) -> None:
        category = self.engine.selector.current
        strategy = next_load_balance(self.engine.snapshots.get(category).load_balance)
        self.run_worker(
            self._run_operation(
                self.engine.coordinator.update_load_balance(strategy),
                "Updating load balancing failed",
            ),
            name=f"loadbalance:{category.value}:{strategy}",
            group="mutation",
        )

    # -- events --------------------------------------------------------------

    @on(TabbedContent.TabActivated, "#main-tabs")
    def _on_main_tab_activated(self, event: TabbedContent.TabActivated) -> None:
        pane_id = (event.pane.id or "").removesuffix("-tab")
        category = Category.try_parse(pane_id)
        if category is None or category is self.engine.selector.current:
            return
        self.engine.selector.select(category)

    @on(DataTable.RowSelected, ".channel-table")
    def _on_channel_selected(self, event: DataTable.RowSelected) -> None:
        try:
            index = int(event.row_key.value) if event.row_key.value is not None else None
        except ValueError:
            return
        self.engine.coordinator.select_channel(index)
        log.debug("Channel %s selected", index)


__all__ = [
    "TABLE_COLUMNS",
    "DeleteConfirmation",
    "RelaydeckApp",
    "channel_row",
    "format_latency",
    "format_rate",
    "next_load_balance",
    "summary_markup",
    "toggled_status",
]
