"""
Textual terminal interface for memex-threads.

The app owns the widgets; every key is handed to the session coordinator's
modal machine and the coordinator talks back through tui.display.TuiDisplay.
"""
