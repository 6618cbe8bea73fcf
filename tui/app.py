"""Textual application for memex-threads."""

from __future__ import annotations

from typing import Optional

from textual import events
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical

from core.modal_input import KeyEvent, Mode
from tui.display import TuiDisplay
from tui.models import THEMES
from tui.widgets.chat_transcript import ChatTranscript
from tui.widgets.status_panel import StatusBar, StatusPanel
from tui.widgets.thread_list import ThreadList


class MemexThreadsApp(App):
    """Thread sidebar, transcript, notice log and a modal status line."""

    CSS = """
    #thread_list {
        width: 36;
        border-right: solid $primary-darken-2;
        padding: 0 1;
    }
    #chat_transcript {
        height: 1fr;
    }
    #status_panel {
        height: 6;
        border-top: solid $primary-darken-2;
    }
    #status_bar {
        height: 1;
        padding: 0 1;
        background: $boost;
    }
    """

    # Every other key goes to the modal machine through on_key
    BINDINGS = [
        Binding("ctrl+c", "quit_session", "Quit", show=False, priority=True),
        Binding("ctrl+q", "quit_session", "Quit", show=False, priority=True),
    ]

    def __init__(self, session) -> None:
        super().__init__()
        self.session = session
        self.theme_def = THEMES.get(session.config.theme, THEMES["dark"])
        self.tui_display = TuiDisplay(self)
        self.coordinator = session.coordinator(self.tui_display)
        self.title = "memex-threads"

        self.transcript: Optional[ChatTranscript] = None
        self.thread_list: Optional[ThreadList] = None
        self.status_panel: Optional[StatusPanel] = None
        self.status_bar: Optional[StatusBar] = None

    # ----- layout --------------------------------------------------
    def compose(self) -> ComposeResult:
        with Horizontal(id="main_content"):
            self.thread_list = ThreadList(id="thread_list", theme=self.theme_def)
            yield self.thread_list
            with Vertical(id="chat_column"):
                self.transcript = ChatTranscript(id="chat_transcript", theme=self.theme_def)
                yield self.transcript
                self.status_panel = StatusPanel(id="status_panel", theme=self.theme_def)
                yield self.status_panel
        self.status_bar = StatusBar(id="status_bar", theme=self.theme_def)
        yield self.status_bar

    async def on_mount(self) -> None:
        for widget in (self.transcript, self.status_panel, self.thread_list, self.status_bar):
            if widget is not None:
                widget.can_focus = False
        self.session.logger.log('tui_start', component='tui.app', aspect='settings', data={
            'model': self.session.config.model,
            'theme': self.theme_def.name,
        })
        if self.session.config.get_option('DEFAULT', 'show_startup_banner', fallback=True):
            self.tui_display.show_message("Welcome to memex-threads. Press i to type, :help for commands.")
        await self.coordinator.start()
        self.refresh_input()

    # ----- input ----------------------------------------------------
    def on_key(self, event: events.Key) -> None:
        event.prevent_default()
        event.stop()
        self.coordinator.handle_key(KeyEvent(key=event.key, char=event.character))
        self.refresh_input()

    def refresh_input(self) -> None:
        if not self.status_bar:
            return
        machine = self.coordinator.machine
        self.status_bar.set_input(machine.insert_buffer if machine.mode is Mode.INSERT else '')

    def action_quit_session(self) -> None:
        self.coordinator.handle_key(KeyEvent(key="ctrl+c"))

    # ----- theming --------------------------------------------------
    def apply_theme(self, name: str) -> None:
        self.theme_def = THEMES.get(name, self.theme_def)
        for widget in (self.transcript, self.thread_list, self.status_panel, self.status_bar):
            if widget is not None:
                widget.set_theme(self.theme_def)

    async def on_unmount(self) -> None:
        self.session.logger.log('tui_stop', component='tui.app', aspect='settings', data={
            'pending_tasks': self.coordinator.pending_tasks,
        })


def run_app(session) -> None:
    MemexThreadsApp(session).run()
