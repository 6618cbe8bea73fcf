"""Common data structures used by the TUI widgets."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Literal, Optional

from rich.console import RenderableType


@dataclass
class Msg:
    """Message tracked in the transcript view."""

    msg_id: str
    role: Literal["user", "assistant", "system"]
    text: str = ""
    streaming: bool = False
    rich: Optional[RenderableType] = None


@dataclass
class Theme:
    """Rich styles for one named color theme."""

    name: str
    roles: Dict[str, str] = field(default_factory=dict)
    accent: str = "cyan"
    muted: str = "grey50"
    error: str = "red"
    selected: str = "reverse"


THEMES: Dict[str, Theme] = {
    "dark": Theme(
        name="dark",
        roles={"user": "bold blue", "assistant": "bold green", "system": "bold magenta"},
        accent="cyan",
    ),
    "light": Theme(
        name="light",
        roles={"user": "bold dark_blue", "assistant": "bold dark_green", "system": "bold purple"},
        accent="blue",
        muted="grey42",
        error="dark_red",
    ),
    "cyberpunk": Theme(
        name="cyberpunk",
        roles={"user": "bold bright_cyan", "assistant": "bold bright_magenta", "system": "bold yellow"},
        accent="bright_magenta",
        muted="grey62",
        error="bold bright_red",
        selected="black on bright_cyan",
    ),
}
