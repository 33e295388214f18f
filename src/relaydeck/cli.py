"""Command line entry point for relaydeck."""
from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Iterable, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .app import TABLE_COLUMNS, RelaydeckApp, channel_row, summary_markup
from .categories import Category
from .config import CONFIG_PATH, AppConfig, load_config
from .engine import DashboardEngine
from .errors import RelaydeckError
from .logging_utils import configure_logging, detach_stream_handler, get_log_file_path, get_logger

log = get_logger(__name__)


def _category_argument(value: str) -> Category:
    category = Category.try_parse(value)
    if category is None:
        choices = ", ".join(item.value for item in Category)
        raise argparse.ArgumentTypeError(f"invalid category {value!r} (choose from {choices})")
    return category


def _positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number {value!r}") from None
    if number <= 0:
        raise argparse.ArgumentTypeError("value must be positive")
    return number


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Terminal dashboard for an API relay's upstream channels")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        type=Path,
        default=CONFIG_PATH,
        help="Path to configuration file (default: %(default)s)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override RELAYDECK_LOG_LEVEL for this invocation",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Write logs to this file instead of the default or RELAYDECK_LOG_FILE",
    )
    parser.add_argument(
        "--api-url",
        default=None,
        help="Base URL of the relay's management API (overrides the configuration file)",
    )
    parser.add_argument(
        "--category",
        type=_category_argument,
        default=None,
        help="Category shown first: messages, responses or gemini",
    )
    parser.add_argument(
        "--interval",
        type=_positive_float,
        default=None,
        help="Seconds between automatic refreshes",
    )
    parser.add_argument(
        "--url",
        default=None,
        help="Open the category named by a web dashboard link, e.g. http://relay/monitor?type=responses",
    )
    parser.add_argument(
        "--theme",
        default=None,
        help="Name of a built-in Textual theme to use",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Fetch the dashboard once, print it as a table and exit.",
    )
    parser.add_argument(
        "--sign-out",
        action="store_true",
        help="Forget the stored access key and exit.",
    )
    parser.add_argument(
        "--logs",
        metavar="PATTERN",
        default=None,
        help="Print log entries containing PATTERN and exit.",
    )
    return parser.parse_args(argv)


def _print_logs(pattern: str) -> None:
    """Write log entries that contain *pattern* to stdout."""

    log_path = get_log_file_path()
    if log_path is None:
        print("File logging is not enabled; set --log-file or RELAYDECK_LOG_FILE.")
        return

    if not log_path.exists():
        print(f"No log file found at {log_path}")
        return

    token = pattern.lower()
    matches = 0

    print(f"Log file: {log_path}")
    with log_path.open("r", encoding="utf8", errors="replace") as handle:
        for raw_line in handle:
            line = raw_line.rstrip("\n")
            if token in line.lower():
                print(line)
                matches += 1

    if matches == 0:
        print(f"No log entries containing '{pattern}' were found.")


def apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    """Return *config* with command line overrides applied."""

    if args.api_url:
        config.api_base_url = args.api_url
    if args.category is not None:
        config.default_category = args.category
    if args.interval is not None:
        config.refresh_interval = args.interval
    if args.theme:
        config.theme = args.theme
    return config


def build_table(engine: DashboardEngine, category: Category) -> Table:
    snapshot = engine.snapshots.get(category)
    slot = engine.dashboards.get(category)
    table = Table(
        title=summary_markup(
            category,
            snapshot,
            slot,
            active=engine.snapshots.active_channel_count(category),
            failover=engine.snapshots.failover_channel_count(category),
        )
    )
    for column in TABLE_COLUMNS:
        table.add_column(column, justify="right" if column in ("#", "Latency", "Success", "RPM") else "left")
    for channel in snapshot.channels:
        table.add_row(*channel_row(channel, slot))
    return table


async def _refresh_once(engine: DashboardEngine) -> None:
    try:
        await engine.refresh()
    finally:
        engine.dispose()


def _apply_url(engine: DashboardEngine, url: Optional[str]) -> None:
    if not url:
        return
    if engine.selector.apply_url(url) is None:
        log.warning("Link %s does not name a category; showing %s", url, engine.selector.current.value)


def run_once(config: AppConfig, *, console: Optional[Console] = None, url: Optional[str] = None) -> int:
    """Fetch the configured category once and print it; return the exit code."""

    console = console or Console()
    engine = DashboardEngine.create(config)
    _apply_url(engine, url)
    category = engine.selector.current
    try:
        asyncio.run(_refresh_once(engine))
    except (RelaydeckError, ValueError) as exc:
        log.error("One-shot refresh of %s failed: %s", category.value, exc)
        console.print(f"[red]Refresh failed:[/red] {escape(str(exc))}", markup=True, highlight=False)
        return 1
    console.print(build_table(engine, category))
    return 0


def main(argv: Iterable[str] | None = None) -> None:
    args = parse_args(argv)
    configure_logging(
        level=args.log_level,
        log_file=str(args.log_file) if args.log_file is not None else None,
    )
    if args.logs:
        _print_logs(args.logs)
        return
    log.info("CLI invoked with config=%s", args.config)
    config = apply_overrides(load_config(args.config), args)
    if args.sign_out:
        DashboardEngine.create(config).sign_out()
        print("Stored access key removed.")
        return
    if args.once:
        exit_code = run_once(config, url=args.url)
        if exit_code:
            raise SystemExit(exit_code)
        return

    engine = DashboardEngine.create(config)
    _apply_url(engine, args.url)
    app = RelaydeckApp(engine, theme=config.theme)
    detach_stream_handler()
    log.info("Launching Textual application")
    try:
        app.run()
    except KeyboardInterrupt:
        log.info("Keyboard interrupt received; exiting application")
        if app.is_running:
            app.exit()
        raise SystemExit(130) from None
    finally:
        engine.dispose()


if __name__ == "__main__":  # pragma: no cover
    main()
