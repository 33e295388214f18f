"""Textual widget showing the package log inside the dashboard."""

from __future__ import annotations

import threading
from typing import Iterable, Optional

from textual.widgets import Log

from .logging_utils import register_log_viewer


class LogViewer(Log):
    """Rolling log panel fed by the package's UI log handler."""

    def __init__(self, *, max_lines: int = 500, id: Optional[str] = None) -> None:
        super().__init__(max_lines=max_lines, auto_scroll=True, id=id)
        self._owner_thread: Optional[int] = None

    def on_mount(self) -> None:
        self._owner_thread = threading.get_ident()
        register_log_viewer(self)

    def on_unmount(self) -> None:
        register_log_viewer(None)

    def get_messages(self) -> tuple[str, ...]:
        return tuple(self.lines)

    def deliver(self, message: str) -> None:
        """Append *message*, hopping onto the UI thread when called from a worker."""

        if self._owner_thread is None or threading.get_ident() == self._owner_thread:
            self.write_line(message)
            return
        try:
            self.app.call_from_thread(self.write_line, message)
        except RuntimeError:  # pragma: no cover - app already shut down
            pass

    def replace_messages(self, messages: Iterable[str]) -> None:
        self.clear()
        self.write_lines(list(messages))
