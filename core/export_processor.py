"""Split streamed model output into display text and exported files."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from base_classes import IncompleteExportError, StorageError

OPEN_HEAD = '<FileExport name="'
CLOSE_TAG = '</FileExport>'
# Names longer than this are not treated as directives, whether or not the
# opening tag arrives in one fragment.
MAX_NAME_LEN = 255
OPEN_RE = re.compile(r'<FileExport name="([^"]{0,%d})">' % MAX_NAME_LEN)
# Longest possible opening tag: head + name + '">'
MAX_OPEN_LEN = len(OPEN_HEAD) + MAX_NAME_LEN + 2

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9.-]')


def sanitize_filename(name: str) -> str:
    """Replace anything outside [A-Za-z0-9.-] with an underscore."""
    cleaned = _UNSAFE_CHARS.sub('_', name or '')
    return cleaned or '_'


class ScanState(Enum):
    SCANNING = 'scanning'
    COLLECTING = 'collecting'


@dataclass
class ExportedFile:
    name: str
    content: str

    @property
    def filename(self) -> str:
        return sanitize_filename(self.name)


@dataclass
class ProcessedChunk:
    display: str = ''
    files: List[ExportedFile] = field(default_factory=list)


def _could_start_open_tag(candidate: str) -> bool:
    """True if more input could still turn ``candidate`` into an opening tag."""
    if len(candidate) <= len(OPEN_HEAD):
        return OPEN_HEAD.startswith(candidate)
    if not candidate.startswith(OPEN_HEAD):
        return False
    rest = candidate[len(OPEN_HEAD):]
    quote = rest.find('"')
    if quote == -1:
        return len(rest) <= MAX_NAME_LEN
    # Name closed; only the '>' is missing
    return quote == len(rest) - 1


def _close_holdback(buf: str) -> int:
    """Length of the longest suffix of ``buf`` that is a proper prefix of the closing tag."""
    for k in range(min(len(buf), len(CLOSE_TAG) - 1), 0, -1):
        if CLOSE_TAG.startswith(buf[-k:]):
            return k
    return 0


class StreamingExportProcessor:
    """
    Two-state scanner over arbitrarily chunked model output.

    - scanning: text is display text until an opening <FileExport name="..."> tag
    - collecting: text is file content until the closing </FileExport> tag

    A residual buffer carries any trailing text that could still be the start
    of a tag into the next fragment, so tags split across fragments never
    leak into the display stream.
    """

    def __init__(self, logger: Optional[Any] = None) -> None:
        self.logger = logger
        self.reset()

    def reset(self) -> None:
        self._state = ScanState.SCANNING
        self._residual = ''
        self._filename: Optional[str] = None
        self._content: List[str] = []

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def pending_filename(self) -> Optional[str]:
        return self._filename

    def feed(self, fragment: str) -> ProcessedChunk:
        buf = self._residual + (fragment or '')
        self._residual = ''
        out: List[str] = []
        files: List[ExportedFile] = []

        while buf:
            if self._state is ScanState.SCANNING:
                match = OPEN_RE.search(buf)
                if match:
                    out.append(buf[:match.start()])
                    self._filename = match.group(1)
                    self._content = []
                    self._state = ScanState.COLLECTING
                    buf = buf[match.end():]
                    if self.logger:
                        self.logger.export_event('export_open', {'name': self._filename})
                    continue
                keep_from = self._open_holdback_start(buf)
                out.append(buf[:keep_from])
                self._residual = buf[keep_from:]
                break

            idx = buf.find(CLOSE_TAG)
            if idx != -1:
                self._content.append(buf[:idx])
                files.append(ExportedFile(self._filename or '', ''.join(self._content)))
                if self.logger:
                    self.logger.export_event('export_ready', {
                        'name': self._filename,
                        'chars': len(files[-1].content),
                    })
                self._filename = None
                self._content = []
                self._state = ScanState.SCANNING
                buf = buf[idx + len(CLOSE_TAG):]
                continue
            hold = _close_holdback(buf)
            self._content.append(buf[:len(buf) - hold])
            self._residual = buf[len(buf) - hold:]
            break

        return ProcessedChunk(display=''.join(out), files=files)

    def finish(self) -> ProcessedChunk:
        """
        End of stream. Flushes held-back display text; raises
        IncompleteExportError (discarding the partial file) if a directive
        is still open.
        """
        if self._state is ScanState.COLLECTING:
            name = self._filename
            self.reset()
            raise IncompleteExportError(
                f"Response ended before the export of '{name}' was complete; file not saved",
                debug_info={'name': name},
            )
        tail = self._residual
        self.reset()
        return ProcessedChunk(display=tail)

    @staticmethod
    def _open_holdback_start(buf: str) -> int:
        """Index where the held-back tail begins (len(buf) when nothing is held)."""
        window_start = max(0, len(buf) - MAX_OPEN_LEN)
        pos = buf.find('<', window_start)
        while pos != -1:
            if _could_start_open_tag(buf[pos:]):
                return pos
            pos = buf.find('<', pos + 1)
        return len(buf)


class ExportWriter:
    """Writes exported files to <root>/<conversation-id>/<sanitized-name>."""

    def __init__(self, root: str, logger: Optional[Any] = None) -> None:
        self.root = os.path.expanduser(root)
        self.logger = logger

    def path_for(self, conversation_id: int, name: str) -> str:
        return os.path.join(self.root, str(conversation_id), sanitize_filename(name))

    def write(self, conversation_id: int, exported: ExportedFile) -> str:
        path = self.path_for(conversation_id, exported.name)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            # Same sanitized name in one conversation overwrites the earlier file
            with open(path, 'w', encoding='utf-8') as f:
                f.write(exported.content)
        except OSError as e:
            if self.logger:
                self.logger.error('core.export_writer', e)
            raise StorageError(f"Failed to save file {exported.name}: {e}") from e
        if self.logger:
            self.logger.export_event('export_saved', {'name': exported.filename, 'path': path})
        return path
