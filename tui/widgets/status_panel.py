"""Widgets for notices and the one-line status bar."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from rich.text import Text
from textual.widgets import RichLog, Static

from tui.models import THEMES, Theme


class StatusPanel(RichLog):
    """Scrolling log of notices, errors and help output."""

    def __init__(self, *args, theme: Optional[Theme] = None, **kwargs) -> None:
        kwargs.setdefault("wrap", True)
        kwargs.setdefault("markup", False)
        super().__init__(*args, **kwargs)
        self._palette = theme or THEMES["dark"]

    def set_theme(self, theme: Theme) -> None:
        self._palette = theme

    def log_status(self, message: str, level: str = "info") -> None:
        """Log a message using colour conventions for the level provided."""
        style_map = {
            "info": "default",
            "help": self._palette.accent,
            "warning": "yellow",
            "error": self._palette.error,
        }
        stamp = datetime.now().strftime("%H:%M:%S")
        line = Text(f"{stamp} ", style=self._palette.muted)
        line.append(message, style=style_map.get(level, "default"))
        self.write(line)


class StatusBar(Static):
    """Mode indicator, input line and session state on one line."""

    def __init__(self, *args, theme: Optional[Theme] = None, **kwargs) -> None:
        super().__init__("", *args, **kwargs)
        self._palette = theme or THEMES["dark"]
        self.fields: Dict[str, Any] = {}
        self.input_line = ""

    def set_theme(self, theme: Theme) -> None:
        self._palette = theme
        self.refresh_bar()

    def set_fields(self, **fields: Any) -> None:
        self.fields.update(fields)
        self.refresh_bar()

    def set_input(self, text: str) -> None:
        self.input_line = text
        self.refresh_bar()

    def refresh_bar(self) -> None:
        # mode already carries the command/search buffer; input_line is the insert draft
        bar = Text(str(self.fields.get("mode") or ""), style=f"bold {self._palette.accent}")
        if self.input_line:
            bar.append(f"  {self.input_line}_")
        right = []
        if self.fields.get("state") == "awaiting_response":
            right.append("streaming…")
        if self.fields.get("model"):
            right.append(str(self.fields["model"]))
        if self.fields.get("thread") is not None:
            right.append(f"thread {self.fields['thread']}")
        if right:
            bar.append("   " + " | ".join(right), style=self._palette.muted)
        self.update(bar)
