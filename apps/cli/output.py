from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Iterator, TextIO


BOLD = "\x1b[1m"
FAINT = "\x1b[2m"
UNBOLD = "\x1b[22m"
MAGENTA = "\x1b[35m"
UNFOREGROUND = "\x1b[39m"
BRIGHT_BLACK = "\x1b[90m"
BRIGHT_RED = "\x1b[91m"
BRIGHT_GREEN = "\x1b[92m"
CLEAR_FORWARD = "\x1b[K"

# Loggers silenced unless --verbose; /stats lifts this temporarily.
_ENGINE_LOGGERS = ("localchat", "transformers")


def print_ephemeral(description: str, *, stream: TextIO | None = None) -> None:
    """Show a status line on stderr that the next output overwrites."""
    s = stream or sys.stderr
    s.write(f" {BRIGHT_BLACK}{description}{UNFOREGROUND}\r")
    s.flush()


def clear_ephemeral(*, stream: TextIO | None = None) -> None:
    s = stream or sys.stderr
    s.write(CLEAR_FORWARD)
    s.flush()


def print_fatal(message: str, *, stream: TextIO | None = None) -> None:
    s = stream or sys.stderr
    s.write(f"\n{BRIGHT_RED}error: {message}{UNFOREGROUND}\n")
    s.flush()


def model_basename(path: str) -> str:
    """Last path component, ignoring trailing slashes ("." for an empty path)."""
    if not path:
        return "."
    stripped = path.rstrip("/")
    if not stripped:
        return "/"
    return stripped.rsplit("/", 1)[-1]


def banner(*, version: str, model: str) -> str:
    return (
        f"{BOLD}software{UNBOLD}: localchat {version}\n"
        f"{BOLD}model{UNBOLD}:    {model_basename(model)}\n"
    )


def configure_logging(*, verbose: bool = False) -> None:
    """Route engine logs to stderr; keep them silent unless `verbose`."""
    logger = logging.getLogger("localchat")
    if not any(getattr(h, "_localchat_handler", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(message)s"))
        handler._localchat_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
        logger.propagate = False
    set_engine_logs_enabled(verbose)


def set_engine_logs_enabled(enabled: bool) -> None:
    for name in _ENGINE_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO if enabled else logging.CRITICAL + 1)


@contextmanager
def engine_logs_visible() -> Iterator[None]:
    saved = {name: logging.getLogger(name).level for name in _ENGINE_LOGGERS}
    set_engine_logs_enabled(True)
    try:
        yield
    finally:
        for name, level in saved.items():
            logging.getLogger(name).setLevel(level)
