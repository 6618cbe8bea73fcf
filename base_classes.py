"""
Abstract base classes and error types for memex-threads components.

These classes define the interfaces that providers and displays must
implement to work with the session coordinator, plus the error taxonomy
shared by every layer.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Protocol


# --- Errors ---------------------------------------------------------------


class MemexError(Exception):
    """Base class for errors that are reported to the user."""

    def __init__(self, user_message: str, *, debug_info: Optional[Dict[str, Any]] = None):
        super().__init__(user_message)
        self.user_message = user_message
        self.debug_info = debug_info or {}


class UserInputError(MemexError):
    """Malformed command, invalid mark/thread id or out-of-range option."""


class NotFoundError(UserInputError):
    """A conversation or message id that does not exist was referenced."""


class StreamError(MemexError):
    """Upstream fragment delivery failed or ended mid-directive."""


class IncompleteExportError(StreamError):
    """The stream ended while a FileExport directive was still open."""


class StorageError(MemexError):
    """A persistence operation failed."""


class ConfigError(MemexError):
    """Configuration could not be loaded or failed validation."""


# --- Model access ---------------------------------------------------------


@dataclass
class GenerationOptions:
    model: str
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    stream: bool = True


class APIProvider(ABC):
    """
    Abstract class for model-access handlers
    """

    @abstractmethod
    def chat(self, messages: List[Dict[str, str]], options: GenerationOptions) -> str:
        pass

    @abstractmethod
    def stream_chat(self, messages: List[Dict[str, str]], options: GenerationOptions) -> Iterator[str]:
        pass

    @abstractmethod
    def get_usage(self) -> Dict[str, int]:
        """Token counts of the last completed request (total/prompt/completion)"""
        pass

    @abstractmethod
    def reset_usage(self) -> None:
        pass

    @abstractmethod
    def list_models(self) -> List[str]:
        pass


# --- Display --------------------------------------------------------------


class Display(Protocol):
    """
    Sink for everything the coordinator wants the user to see.

    No return values are consumed except for the view queries
    (scroll_position, current_line, selection_text) used by normal-mode
    intents.
    """

    def append_message(self, role: str, content: str) -> None: ...
    def begin_streaming_message(self) -> None: ...
    def update_streaming_message(self, text: str) -> None: ...
    def end_streaming_message(self) -> None: ...
    def update_thread_list(self, conversations: List[Any], selected_id: Optional[int] = None) -> None: ...
    def update_status(self, **fields: Any) -> None: ...
    def update_title(self, title: str) -> None: ...
    def show_error(self, message: str) -> None: ...
    def show_help(self, text: str) -> None: ...
    def show_message(self, message: str) -> None: ...
    def clear_chat(self) -> None: ...
    def scroll(self, delta: int) -> None: ...
    def scroll_half_page(self, direction: int) -> None: ...
    def scroll_to(self, position: int) -> None: ...
    def scroll_home(self) -> None: ...
    def scroll_end(self) -> None: ...
    def scroll_position(self) -> int: ...
    def current_line(self) -> str: ...
    def selection_text(self, start: int, end: int) -> str: ...
    def copy_to_clipboard(self, text: str) -> None: ...
    def set_theme(self, name: str) -> None: ...
    def exit_app(self) -> None: ...
