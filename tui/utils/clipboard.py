"""Copy yanked text to the system clipboard."""

from __future__ import annotations

import platform
import shutil
import subprocess
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

# platform.system().lower() -> candidate commands, first available wins
CLIPBOARD_COMMANDS = {
    "darwin": [("pbcopy",)],
    "windows": [("clip",)],
    "linux": [("wl-copy",), ("xclip", "-selection", "clipboard"), ("xsel", "--clipboard", "--input")],
}


@dataclass
class ClipboardOutcome:
    """Result metadata for a clipboard attempt."""

    success: bool
    method: str
    error: Optional[str] = None


class ClipboardHelper:
    """
    Tries the platform clipboard tools, then the terminal's OSC-52 sequence.

    OSC-52 goes last because the terminal gives no feedback on whether it
    honoured the sequence.
    """

    def __init__(self, system: Optional[str] = None, which: Callable[[str], Optional[str]] = shutil.which) -> None:
        self.system = (system or platform.system()).lower()
        self._which = which

    def commands(self) -> List[Tuple[str, ...]]:
        candidates = CLIPBOARD_COMMANDS.get(self.system, CLIPBOARD_COMMANDS["linux"])
        return [cmd for cmd in candidates if self._which(cmd[0])]

    def copy(self, text: str, osc52: Optional[Callable[[str], None]] = None) -> ClipboardOutcome:
        """Copy ``text`` to the clipboard, returning the attempt metadata."""
        text = text or ""
        last_error: Optional[str] = None
        for command in self.commands():
            try:
                subprocess.run(command, check=True, input=text.encode("utf-8"), timeout=5)
                return ClipboardOutcome(True, " ".join(command))
            except (OSError, subprocess.SubprocessError) as exc:
                last_error = f"{' '.join(command)}: {exc}"

        if osc52 is not None:
            osc52(text)
            return ClipboardOutcome(True, "osc52")
        return ClipboardOutcome(False, "none", error=last_error or "no clipboard tool found")
