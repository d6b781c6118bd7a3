"""Process-wide chat session state."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class InterruptFlag:
    """Cancellation flag set from a signal handler.

    A single attribute store under the GIL; no locks are taken, so `set()`
    is safe to call from a handler that may interrupt `clear()`.
    """

    __slots__ = ("_set",)

    def __init__(self) -> None:
        self._set = False

    def set(self) -> None:
        self._set = True

    def clear(self) -> None:
        self._set = False

    def is_set(self) -> bool:
        return self._set


@dataclass
class Session:
    """Conversation state shared by the session components.

    Only `ContextAccountant` writes `consumed_tokens`.
    """

    configured_window_size: int
    max_trainable_window_size: int
    consumed_tokens: int = 0
    interrupt: InterruptFlag = field(default_factory=InterruptFlag)

    @property
    def interrupt_requested(self) -> bool:
        return self.interrupt.is_set()


@dataclass
class EngineHandles:
    """Opaque engine handles, created once at startup and released once."""

    model: Any = None
    context: Any = None
    sampler: Any = None
