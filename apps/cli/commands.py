"""IRC-style slash commands: `/name arg1 arg2`."""

from __future__ import annotations

from localchat.engine.adapters.base import BaseEngine
from localchat.engine.session import EngineHandles, Session

from apps.cli.output import engine_logs_visible


# Commands for tab completion
COMMAND_NAMES = ["/context", "/stats"]


def is_command(line: str) -> bool:
    """A command starts with `/` immediately followed by a letter."""
    if len(line) < 2 or line[0] != "/":
        return False
    ch = line[1].lower()
    return "a" <= ch <= "z"


def _cmd_stats(*, engine: BaseEngine, handles: EngineHandles) -> None:
    with engine_logs_visible():
        engine.print_timing_report(handles.context)


def _cmd_context(*, session: Session) -> None:
    configured = session.configured_window_size
    used = session.consumed_tokens
    print(f"{used} out of {configured} context tokens used ({configured - used} tokens remaining)")
    if configured < session.max_trainable_window_size:
        print(f"use the `-c {session.max_trainable_window_size}` flag at startup for maximum context")


def dispatch(line: str, *, engine: BaseEngine, handles: EngineHandles, session: Session) -> bool:
    """Run `line` if it is a command; return whether it was one."""
    if not is_command(line):
        return False

    args = line[1:].split()
    cmd = args[0]
    if cmd == "stats":
        _cmd_stats(engine=engine, handles=handles)
    elif cmd == "context":
        _cmd_context(session=session)
    else:
        print(f"{cmd}: unrecognized command")
    return True
