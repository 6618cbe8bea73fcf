"""Display adapter: the coordinator's view of the Textual app."""

from __future__ import annotations

from typing import Any, List, Optional, TYPE_CHECKING

from tui.utils.clipboard import ClipboardHelper, ClipboardOutcome

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from tui.app import MemexThreadsApp


class TuiDisplay:
    """
    Forwards Display calls to the app's widgets.

    Everything runs on the app's event loop, so widgets are updated directly.
    Calls made before the widgets are mounted are dropped.
    """

    def __init__(self, app: "MemexThreadsApp", clipboard: Optional[ClipboardHelper] = None) -> None:
        self.app = app
        self._clipboard = clipboard or ClipboardHelper()
        self.last_clipboard_outcome: Optional[ClipboardOutcome] = None

    # ----- transcript ----------------------------------------------------
    def append_message(self, role: str, content: str) -> None:
        if self.app.transcript is not None:
            self.app.transcript.add_message(role, content)

    def begin_streaming_message(self) -> None:
        if self.app.transcript is not None:
            self.app.transcript.begin_stream()

    def update_streaming_message(self, text: str) -> None:
        if self.app.transcript is not None:
            self.app.transcript.append_stream(text)

    def end_streaming_message(self) -> None:
        if self.app.transcript is not None:
            self.app.transcript.end_stream()

    def clear_chat(self) -> None:
        if self.app.transcript is not None:
            self.app.transcript.clear_messages()

    # ----- side panels ---------------------------------------------------
    def update_thread_list(self, conversations: List[Any], selected_id: Optional[int] = None) -> None:
        if self.app.thread_list is not None:
            self.app.thread_list.set_conversations(conversations, selected_id)

    def update_status(self, **fields: Any) -> None:
        if self.app.status_bar is not None:
            self.app.status_bar.set_fields(**fields)

    def update_title(self, title: str) -> None:
        self.app.sub_title = title

    def show_error(self, message: str) -> None:
        self._log(message, 'error')

    def show_help(self, text: str) -> None:
        for line in (text or '').splitlines():
            self._log(line, 'help')

    def show_message(self, message: str) -> None:
        self._log(message, 'info')

    def _log(self, message: str, level: str) -> None:
        if self.app.status_panel is not None:
            self.app.status_panel.log_status(message, level)

    # ----- view operations -----------------------------------------------
    def scroll(self, delta: int) -> None:
        if self.app.transcript is not None:
            self.app.transcript.move_cursor(delta)

    def scroll_half_page(self, direction: int) -> None:
        if self.app.transcript is not None:
            self.app.transcript.page_cursor(direction)

    def scroll_to(self, position: int) -> None:
        if self.app.transcript is not None:
            self.app.transcript.jump_to(position)

    def scroll_home(self) -> None:
        if self.app.transcript is not None:
            self.app.transcript.jump_home()

    def scroll_end(self) -> None:
        if self.app.transcript is not None:
            self.app.transcript.jump_end()

    def scroll_position(self) -> int:
        return self.app.transcript.cursor if self.app.transcript is not None else 0

    def current_line(self) -> str:
        message = self.app.transcript.current_message() if self.app.transcript is not None else None
        return message.text if message else ''

    def selection_text(self, start: int, end: int) -> str:
        return self.app.transcript.text_between(start, end) if self.app.transcript is not None else ''

    # ----- misc ------------------------------------------------------------
    def copy_to_clipboard(self, text: str) -> None:
        outcome = self._clipboard.copy(text, osc52=self.app.copy_to_clipboard)
        self.last_clipboard_outcome = outcome
        if outcome.success:
            self.show_message(f"Copied {len(text)} characters ({outcome.method})")
        else:
            self.show_error(f"Clipboard unavailable: {outcome.error}")

    def set_theme(self, name: str) -> None:
        self.app.apply_theme(name)

    def exit_app(self) -> None:
        self.app.exit()
