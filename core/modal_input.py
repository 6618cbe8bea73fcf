"""
Vim-style modal interpreter for key events.

The machine owns the mode, the command/search/insert buffers, the command
history, the yank register and the mark registry. It turns each key event
into zero or more Intents and hands them to a single dispatch callable;
it never talks to storage or the model itself.
"""

from __future__ import annotations

import os
import string
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from base_classes import UserInputError


class Mode(Enum):
    NORMAL = 'normal'
    INSERT = 'insert'
    VISUAL = 'visual'
    COMMAND = 'command'
    SEARCH = 'search'


MODE_INDICATORS = {
    Mode.NORMAL: "█ NORMAL",
    Mode.INSERT: "▲ INSERT",
    Mode.VISUAL: "◆ VISUAL",
    Mode.COMMAND: "❯ COMMAND",
    Mode.SEARCH: "／ SEARCH",
}


class IntentKind(Enum):
    MODE_CHANGED = 'mode_changed'
    SUBMIT_MESSAGE = 'submit_message'
    RUN_COMMAND = 'run_command'
    RUN_SEARCH = 'run_search'
    SEARCH_NEXT = 'search_next'
    SEARCH_PREV = 'search_prev'
    SCROLL_LINE = 'scroll_line'
    SCROLL_HALF_PAGE = 'scroll_half_page'
    SCROLL_TOP = 'scroll_top'
    SCROLL_BOTTOM = 'scroll_bottom'
    PREV_THREAD = 'prev_thread'
    NEXT_THREAD = 'next_thread'
    SET_MARK = 'set_mark'
    JUMP_MARK = 'jump_mark'
    YANK_LINE = 'yank_line'
    YANK_SELECTION = 'yank_selection'
    DELETE_SELECTION = 'delete_selection'
    PASTE = 'paste'
    QUIT = 'quit'


@dataclass(frozen=True)
class Intent:
    kind: IntentKind
    payload: Any = None


@dataclass(frozen=True)
class KeyEvent:
    """One key press: the terminal's key name plus the printable character, if any."""

    key: str
    char: Optional[str] = None

    @classmethod
    def of(cls, token: str) -> 'KeyEvent':
        """Build an event from a single printable character or a key name like 'escape'."""
        if len(token) == 1:
            return cls(key=token, char=token)
        return cls(key=token)

    @property
    def name(self) -> str:
        if self.char and len(self.char) == 1 and self.char.isprintable():
            return self.char
        return self.key

    @property
    def printable(self) -> Optional[str]:
        if self.char and len(self.char) == 1 and self.char.isprintable():
            return self.char
        return None


ESCAPE = 'escape'
ENTER = 'enter'
BACKSPACE = 'backspace'
MARK_KEYS = set(string.ascii_letters)

# key -> (intent, payload) for single-key normal-mode actions
NORMAL_KEYMAP = {
    'j': (IntentKind.SCROLL_LINE, 1),
    'down': (IntentKind.SCROLL_LINE, 1),
    'k': (IntentKind.SCROLL_LINE, -1),
    'up': (IntentKind.SCROLL_LINE, -1),
    'ctrl+d': (IntentKind.SCROLL_HALF_PAGE, 1),
    'ctrl+u': (IntentKind.SCROLL_HALF_PAGE, -1),
    'G': (IntentKind.SCROLL_BOTTOM, None),
    'H': (IntentKind.PREV_THREAD, None),
    'L': (IntentKind.NEXT_THREAD, None),
}

MOVEMENT_KEYS = set(NORMAL_KEYMAP) - {'H', 'L'}


class ModalInputMachine:
    """
    Five-mode key interpreter.

    ``view`` answers position queries (scroll_position, current_line,
    selection_text); ``dispatch`` receives every emitted Intent and
    ``on_error`` receives a message for anything the machine or a
    dispatched handler raised. Not re-entrant: one key is fully handled
    before the next is accepted.
    """

    def __init__(
            self,
            view: Any,
            dispatch: Optional[Callable[[Intent], Any]] = None,
            on_error: Optional[Callable[[str], Any]] = None,
            logger: Optional[Any] = None,
            history_size: int = 100,
            completer: Optional[Callable[[str], List[str]]] = None,
    ) -> None:
        self.view = view
        self._dispatch = dispatch
        self._on_error = on_error
        self.logger = logger
        self.history_size = max(1, int(history_size))
        self.completer = completer

        self.mode = Mode.NORMAL
        self.command_buffer = ''
        self.search_buffer = ''
        self.insert_buffer = ''
        self.last_search = ''
        self.register = ''
        self.visual_start: Optional[int] = None
        self.visual_end: Optional[int] = None
        self.marks: Dict[str, int] = {}
        self.command_history: List[str] = []  # most recent first
        self._history_index = -1
        self._history_draft = ''
        self._pending: Optional[str] = None  # 'mark', 'jump', 'g', 'y'
        self._handling = False
        self._emitted: List[Intent] = []

    # --- public ---------------------------------------------------------
    def handle_key(self, event: KeyEvent) -> List[Intent]:
        """Process one key event and return the intents it produced."""
        if self._handling:
            raise RuntimeError("ModalInputMachine.handle_key is not re-entrant")
        self._handling = True
        self._emitted = []
        try:
            if self.logger:
                self.logger.input_detail('key', {'key': event.key, 'mode': self.mode.value})
            if event.key == 'ctrl+c':
                self._pending = None
                self._emit(Intent(IntentKind.QUIT))
            else:
                handler = {
                    Mode.NORMAL: self._handle_normal,
                    Mode.INSERT: self._handle_insert,
                    Mode.VISUAL: self._handle_visual,
                    Mode.COMMAND: self._handle_command,
                    Mode.SEARCH: self._handle_search,
                }[self.mode]
                try:
                    handler(event)
                except UserInputError as e:
                    self._report(e.user_message, e)
            return list(self._emitted)
        finally:
            self._handling = False

    def status_text(self) -> str:
        text = MODE_INDICATORS[self.mode]
        if self.mode is Mode.COMMAND:
            text += f" {self.command_buffer}"
        elif self.mode is Mode.SEARCH:
            text += f" {self.search_buffer}"
        elif self._pending in ('mark', 'jump'):
            text += " m-" if self._pending == 'mark' else " '-"
        return text

    # --- modes ----------------------------------------------------------
    def _set_mode(self, mode: Mode) -> None:
        if mode is self.mode:
            return
        old = self.mode
        self.mode = mode
        if self.logger:
            self.logger.input_detail('mode_change', {'from': old.value, 'to': mode.value})
        self._emit(Intent(IntentKind.MODE_CHANGED, mode))

    def _to_normal(self) -> None:
        self.command_buffer = ''
        self.search_buffer = ''
        self.insert_buffer = ''
        self.visual_start = None
        self.visual_end = None
        self._history_index = -1
        self._history_draft = ''
        self._pending = None
        self._set_mode(Mode.NORMAL)

    def _handle_normal(self, event: KeyEvent) -> None:
        key = event.name
        if self._pending:
            self._complete_pending(event)
            return

        if key == 'i':
            self._set_mode(Mode.INSERT)
        elif key == 'v':
            self.visual_start = self.view.scroll_position()
            self.visual_end = self.visual_start
            self._set_mode(Mode.VISUAL)
        elif key == ':':
            self.command_buffer = ':'
            self._history_index = -1
            self._set_mode(Mode.COMMAND)
        elif key == '/':
            self.search_buffer = '/'
            self._set_mode(Mode.SEARCH)
        elif key in NORMAL_KEYMAP:
            kind, payload = NORMAL_KEYMAP[key]
            self._emit(Intent(kind, payload))
        elif key == 'm':
            self._pending = 'mark'
        elif key == "'":
            self._pending = 'jump'
        elif key == 'g':
            self._pending = 'g'
        elif key == 'y':
            self._pending = 'y'
        elif key == 'p':
            if self.register:
                self.insert_buffer += self.register
                self._set_mode(Mode.INSERT)
            self._emit(Intent(IntentKind.PASTE, self.register))
        elif key == 'n' and self.last_search:
            self._emit(Intent(IntentKind.SEARCH_NEXT, self.last_search))
        elif key == 'N' and self.last_search:
            self._emit(Intent(IntentKind.SEARCH_PREV, self.last_search))

    def _complete_pending(self, event: KeyEvent) -> None:
        pending, self._pending = self._pending, None
        key = event.name
        if key == ESCAPE:
            return
        if pending == 'g':
            if key == 'g':
                self._emit(Intent(IntentKind.SCROLL_TOP))
            return
        if pending == 'y':
            if key == 'y':
                self.register = self.view.current_line()
                self._emit(Intent(IntentKind.YANK_LINE, self.register))
            return
        if key not in MARK_KEYS:
            raise UserInputError(f"Invalid mark key: {key!r}")
        if pending == 'mark':
            self.marks[key] = self.view.scroll_position()
            self._emit(Intent(IntentKind.SET_MARK, (key, self.marks[key])))
        else:
            if key not in self.marks:
                raise UserInputError(f"Mark '{key}' not set")
            self._emit(Intent(IntentKind.JUMP_MARK, (key, self.marks[key])))

    def _handle_insert(self, event: KeyEvent) -> None:
        key = event.key
        if key == ESCAPE:
            self._to_normal()
        elif key == ENTER:
            text = self.insert_buffer
            if text.strip():
                self.insert_buffer = ''
                self._emit(Intent(IntentKind.SUBMIT_MESSAGE, text.strip()))
        elif key in ('shift+enter', 'ctrl+j'):
            self.insert_buffer += '\n'
        elif key == BACKSPACE:
            self.insert_buffer = self.insert_buffer[:-1]
        elif event.printable:
            self.insert_buffer += event.printable

    def _handle_visual(self, event: KeyEvent) -> None:
        key = event.name
        if key == ESCAPE:
            self._to_normal()
            return
        if self._pending == 'g':
            self._pending = None
            if key == 'g':
                self._emit(Intent(IntentKind.SCROLL_TOP))
                self.visual_end = self.view.scroll_position()
            return
        if key in MOVEMENT_KEYS:
            kind, payload = NORMAL_KEYMAP[key]
            self._emit(Intent(kind, payload))
            self.visual_end = self.view.scroll_position()
        elif key == 'g':
            self._pending = 'g'
        elif key in ('y', 'd'):
            start, end = self._selection_bounds()
            text = self.view.selection_text(start, end)
            self.register = text
            kind = IntentKind.YANK_SELECTION if key == 'y' else IntentKind.DELETE_SELECTION
            self._emit(Intent(kind, (start, end, text)))
            self._to_normal()

    def _selection_bounds(self) -> tuple[int, int]:
        start = self.visual_start if self.visual_start is not None else self.view.scroll_position()
        end = self.visual_end if self.visual_end is not None else start
        return (start, end) if start <= end else (end, start)

    def _handle_command(self, event: KeyEvent) -> None:
        key = event.key
        if key == ESCAPE:
            self._to_normal()
        elif key == ENTER:
            raw = self.command_buffer
            command = raw[1:].strip()
            if command and (not self.command_history or self.command_history[0] != raw):
                self.command_history.insert(0, raw)
                del self.command_history[self.history_size:]
            self._to_normal()
            if command:
                self._emit(Intent(IntentKind.RUN_COMMAND, command))
        elif key == BACKSPACE:
            self.command_buffer = self.command_buffer[:-1]
            if not self.command_buffer:
                self._to_normal()
        elif key == 'up':
            if self._history_index + 1 < len(self.command_history):
                if self._history_index == -1:
                    self._history_draft = self.command_buffer
                self._history_index += 1
                self.command_buffer = self.command_history[self._history_index]
        elif key == 'down':
            if self._history_index > 0:
                self._history_index -= 1
                self.command_buffer = self.command_history[self._history_index]
            elif self._history_index == 0:
                self._history_index = -1
                self.command_buffer = self._history_draft or ':'
        elif key == 'tab':
            self._complete_command()
        elif event.printable:
            self.command_buffer += event.printable

    def _complete_command(self) -> None:
        if self.completer is None:
            return
        candidates = self.completer(self.command_buffer)
        if len(candidates) == 1:
            self.command_buffer = candidates[0]
        elif candidates:
            prefix = os.path.commonprefix(candidates)
            if len(prefix) > len(self.command_buffer):
                self.command_buffer = prefix

    def _handle_search(self, event: KeyEvent) -> None:
        key = event.key
        if key == ESCAPE:
            self._to_normal()
        elif key == ENTER:
            query = self.search_buffer[1:].strip()
            self._to_normal()
            if query:
                self.last_search = query
                self._emit(Intent(IntentKind.RUN_SEARCH, query))
        elif key == BACKSPACE:
            self.search_buffer = self.search_buffer[:-1]
            if not self.search_buffer:
                self._to_normal()
        elif event.printable:
            self.search_buffer += event.printable

    # --- emission -------------------------------------------------------
    def _emit(self, intent: Intent) -> None:
        self._emitted.append(intent)
        if self._dispatch is None:
            return
        try:
            self._dispatch(intent)
        except Exception as e:  # handler failures must not corrupt mode/buffers
            message = e.user_message if isinstance(e, UserInputError) else f"{intent.kind.value} failed: {e}"
            self._report(message, e)

    def _report(self, message: str, exc: BaseException) -> None:
        if self.logger:
            self.logger.error('core.modal_input', exc)
        if self._on_error:
            self._on_error(message)
