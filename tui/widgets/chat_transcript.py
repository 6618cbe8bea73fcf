"""Chat transcript widget for the Textual TUI."""

from __future__ import annotations

import uuid
from typing import List, Optional

from rich import box
from rich.markdown import Markdown
from rich.panel import Panel
from rich.text import Text
from textual.widgets import RichLog

from tui.models import THEMES, Msg, Theme


class ChatTranscript(RichLog):
    """
    Scrollable transcript with cursor-driven navigation.

    The cursor is a message index; it is the position the modal machine
    records for visual selections and marks.
    """

    ROLE_TITLES = {
        "user": "You",
        "assistant": "Assistant",
        "system": "System",
    }

    DEFAULT_PAGE_JUMP = 5
    WINDOW_RADIUS = 200

    def __init__(self, *args, theme: Optional[Theme] = None, **kwargs) -> None:
        kwargs.setdefault("wrap", True)
        kwargs.setdefault("markup", False)
        kwargs.setdefault("highlight", False)
        kwargs.setdefault("auto_scroll", True)
        super().__init__(*args, **kwargs)
        self.messages: List[Msg] = []
        self._palette = theme or THEMES["dark"]
        self._cursor: Optional[int] = None
        self._follow_latest: bool = True
        self._page_jump = self.DEFAULT_PAGE_JUMP
        self._streaming_id: Optional[str] = None

    # ------------------------------------------------------------------
    # Message lifecycle
    def add_message(self, role: str, text: str, *, streaming: bool = False) -> str:
        msg_id = uuid.uuid4().hex
        message = Msg(
            msg_id=msg_id,
            role=(role or "assistant"),
            text=text or "",
            streaming=streaming,
        )
        self._prepare_message(message)
        self.messages.append(message)
        if self._follow_latest or self._cursor is None:
            self._cursor = len(self.messages) - 1
            self._follow_latest = True
        self._render_messages()
        return msg_id

    def begin_stream(self) -> str:
        self._streaming_id = self.add_message("assistant", "", streaming=True)
        return self._streaming_id

    def append_stream(self, chunk: str) -> None:
        if self._streaming_id is None:
            return
        idx = self._find_index(self._streaming_id)
        if idx is None:
            return
        message = self.messages[idx]
        message.text = (message.text or "") + (chunk or "")
        self._prepare_message(message)
        if self._follow_latest:
            self._cursor = len(self.messages) - 1
        self._render_messages()

    def end_stream(self) -> None:
        if self._streaming_id is None:
            return
        idx = self._find_index(self._streaming_id)
        self._streaming_id = None
        if idx is None:
            return
        message = self.messages[idx]
        message.streaming = False
        self._prepare_message(message)
        self._render_messages()

    def clear_messages(self) -> None:
        self.messages.clear()
        self._cursor = None
        self._follow_latest = True
        self._streaming_id = None
        self.clear()
        self._render_messages()

    def set_theme(self, theme: Theme) -> None:
        self._palette = theme
        self._render_messages()

    # ------------------------------------------------------------------
    # Cursor management
    @property
    def cursor(self) -> int:
        return self._cursor if self._cursor is not None else max(0, len(self.messages) - 1)

    def current_message(self) -> Optional[Msg]:
        if self._cursor is None:
            return None
        if 0 <= self._cursor < len(self.messages):
            return self.messages[self._cursor]
        return None

    def move_cursor(self, delta: int) -> Optional[Msg]:
        if not self.messages:
            return None
        if delta == 0:
            return self.current_message()
        index = self._cursor if self._cursor is not None else len(self.messages) - 1
        return self.jump_to(index + delta)

    def page_cursor(self, direction: int) -> Optional[Msg]:
        delta = self._page_jump * (1 if direction >= 0 else -1)
        return self.move_cursor(delta)

    def jump_to(self, index: int) -> Optional[Msg]:
        if not self.messages:
            return None
        index = max(0, min(len(self.messages) - 1, index))
        self._follow_latest = index == len(self.messages) - 1
        self._cursor = index
        self.auto_scroll = self._follow_latest
        self._render_messages()
        return self.current_message()

    def jump_home(self) -> Optional[Msg]:
        return self.jump_to(0)

    def jump_end(self) -> Optional[Msg]:
        return self.jump_to(len(self.messages) - 1)

    def text_between(self, start: int, end: int) -> str:
        lo, hi = sorted((start, end))
        return "\n\n".join(m.text for m in self.messages[max(0, lo):hi + 1])

    # ------------------------------------------------------------------
    def _prepare_message(self, message: Msg) -> None:
        message.rich = self._render_body(message)

    def _render_body(self, message: Msg):
        if message.role == "assistant":
            return Markdown(message.text or "")
        return Text(message.text or "", style="default")

    def _render_messages(self) -> None:
        self.clear()
        if not self.messages:
            empty = Panel(
                Text("Press i to start typing, : for commands, / to search.", style=self._palette.muted),
                border_style=self._palette.muted,
                box=box.ROUNDED,
                padding=(1, 2),
            )
            self.write(empty)
            return

        cursor = self._cursor
        if cursor is None or cursor >= len(self.messages):
            cursor = len(self.messages) - 1
            self._cursor = cursor

        start = 0
        end = len(self.messages)
        radius = self.WINDOW_RADIUS
        if len(self.messages) > (radius * 2):
            start = max(0, cursor - radius)
            end = min(len(self.messages), cursor + radius + 1)

        for idx in range(start, end):
            message = self.messages[idx]
            self.write(self._build_panel(message, highlighted=(idx == cursor)))
            if idx != end - 1:
                self.write("")

        if self._follow_latest:
            self.scroll_end(animate=False)

    def _build_panel(self, message: Msg, *, highlighted: bool) -> Panel:
        title = self.ROLE_TITLES.get(message.role, message.role.title())
        if message.streaming:
            title += " …"
        border_style = self._palette.roles.get(message.role, self._palette.accent)
        if highlighted and "bold" not in border_style:
            border_style = f"bold {border_style}"
        return Panel(
            message.rich,
            title=Text(f" {title} "),
            border_style=border_style,
            padding=(1, 2) if message.role != "system" else (0, 1),
            box=box.HEAVY if highlighted else box.ROUNDED,
        )

    def _find_index(self, msg_id: str) -> Optional[int]:
        for idx, entry in enumerate(self.messages):
            if entry.msg_id == msg_id:
                return idx
        return None
