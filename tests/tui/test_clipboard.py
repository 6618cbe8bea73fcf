from __future__ import annotations

import os
import subprocess
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir, os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from tui.utils import clipboard
from tui.utils.clipboard import ClipboardHelper


def only(*available):
    return lambda name: f"/usr/bin/{name}" if name in available else None


def test_commands_filtered_by_availability():
    helper = ClipboardHelper(system="Linux", which=only("xsel", "xclip"))
    assert helper.commands() == [("xclip", "-selection", "clipboard"), ("xsel", "--clipboard", "--input")]
    assert ClipboardHelper(system="Darwin", which=only("pbcopy")).commands() == [("pbcopy",)]
    # Unknown platforms try the linux tools
    assert ClipboardHelper(system="FreeBSD", which=only("wl-copy")).commands() == [("wl-copy",)]


def test_copy_uses_first_working_tool(monkeypatch):
    calls = []

    def fake_run(command, check, input, timeout):
        calls.append((command, input))
        if command[0] == "wl-copy":
            raise subprocess.CalledProcessError(1, command)

    monkeypatch.setattr(clipboard.subprocess, "run", fake_run)
    helper = ClipboardHelper(system="linux", which=only("wl-copy", "xclip"))
    outcome = helper.copy("yanked")
    assert outcome.success is True
    assert outcome.method == "xclip -selection clipboard"
    assert [c[0][0] for c in calls] == ["wl-copy", "xclip"]
    assert calls[-1][1] == b"yanked"


def test_copy_falls_back_to_osc52():
    sent = []
    helper = ClipboardHelper(system="linux", which=only())
    outcome = helper.copy("text", osc52=sent.append)
    assert outcome.success is True
    assert outcome.method == "osc52"
    assert sent == ["text"]


def test_copy_reports_failure_without_fallback(monkeypatch):
    def broken(command, check, input, timeout):
        raise OSError("no display")

    monkeypatch.setattr(clipboard.subprocess, "run", broken)
    outcome = ClipboardHelper(system="darwin", which=only("pbcopy")).copy("x")
    assert outcome.success is False
    assert outcome.error == "pbcopy: no display"

    assert ClipboardHelper(system="linux", which=only()).copy("x").error == "no clipboard tool found"
