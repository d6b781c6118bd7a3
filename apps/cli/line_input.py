from __future__ import annotations

import atexit
from pathlib import Path
from typing import Sequence

# Enable readline for arrow keys, history navigation, and line editing.
try:
    import readline
except ImportError:
    readline = None  # type: ignore[assignment]  # Windows fallback


class LineReader:
    """Blocking line input with command completion and persistent history."""

    def __init__(
        self,
        *,
        completions: Sequence[str] = (),
        history_file: Path | None = None,
        history_length: int = 1000,
    ) -> None:
        self._completions = list(completions)
        self._history_file = history_file
        self._history_length = history_length
        self._installed = False

    def install(self) -> None:
        """Hook completion and history into readline (no-op without readline)."""
        if readline is None or self._installed:
            return
        self._installed = True
        self._setup_history()
        self._setup_completer()

    def _setup_history(self) -> None:
        if self._history_file is None:
            return
        history_file = self._history_file
        history_file.parent.mkdir(parents=True, exist_ok=True)
        try:
            readline.read_history_file(history_file)
        except FileNotFoundError:
            pass
        readline.set_history_length(self._history_length)
        atexit.register(readline.write_history_file, history_file)

    def _setup_completer(self) -> None:
        readline.set_completer(self.complete)
        readline.set_completer_delims(" \t\n")
        readline.parse_and_bind("tab: complete")

    def complete(self, text: str, state: int) -> str | None:
        matches = [cmd for cmd in self._completions if cmd.startswith(text)] if text else []
        return matches[state] if state < len(matches) else None

    def read_line(self, prompt: str) -> str | None:
        """Read one line; None at end of input."""
        try:
            return input(prompt)
        except EOFError:
            return None
