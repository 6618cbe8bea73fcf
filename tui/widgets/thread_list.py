"""Sidebar listing conversations, indented by thread depth."""

from __future__ import annotations

from typing import Any, List, Optional

from rich.text import Text
from textual.widgets import Static

from tui.models import THEMES, Theme


class ThreadList(Static):
    """Read-only list; selection is driven by the coordinator (H/L, :thread, search)."""

    MAX_TITLE = 28

    def __init__(self, *args, theme: Optional[Theme] = None, **kwargs) -> None:
        super().__init__("", *args, **kwargs)
        self._palette = theme or THEMES["dark"]
        self._conversations: List[Any] = []
        self._selected_id: Optional[int] = None

    def set_conversations(self, conversations: List[Any], selected_id: Optional[int] = None) -> None:
        self._conversations = list(conversations or [])
        self._selected_id = selected_id
        self.update(self._render_rows())

    def set_theme(self, theme: Theme) -> None:
        self._palette = theme
        self.update(self._render_rows())

    def _render_rows(self) -> Text:
        text = Text()
        if not self._conversations:
            text.append("No conversations", style=self._palette.muted)
            return text
        for conversation in self._conversations:
            title = conversation.title or f"Conversation {conversation.id}"
            if len(title) > self.MAX_TITLE:
                title = title[:self.MAX_TITLE - 1] + "…"
            indent = "  " * getattr(conversation, "depth", 0)
            count = getattr(conversation, "message_count", 0)
            line = f"{indent}{conversation.id:>3} {title} ({count})"
            style = self._palette.selected if conversation.id == self._selected_id else ""
            text.append(line, style=style)
            text.append("\n")
        return text
