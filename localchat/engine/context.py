"""Context-window accounting."""

from __future__ import annotations

from dataclasses import dataclass

from .session import Session


@dataclass(eq=False)
class ContextOverflow(RuntimeError):
    """The engine ran out of context window. Not recoverable within a session."""

    consumed_tokens: int
    configured_window_size: int
    max_trainable_window_size: int
    reason: str = "context window exhausted"

    def __str__(self) -> str:
        return (
            f"ran out of context window at {self.consumed_tokens} tokens; "
            "you can use the maximum context window size by passing the flag "
            f"`-c {self.max_trainable_window_size}` to localchat."
        )


class ContextAccountant:
    def __init__(self, session: Session) -> None:
        self._session = session

    @property
    def consumed_tokens(self) -> int:
        return self._session.consumed_tokens

    def remaining_capacity(self) -> int:
        return self._session.configured_window_size - self._session.consumed_tokens

    def advance(self, n: int) -> None:
        """Record `n` tokens the engine has already accepted."""
        if n < 0:
            raise ValueError(f"cannot advance by a negative token count: {n}")
        if n > self.remaining_capacity():
            raise ContextOverflow(
                consumed_tokens=self._session.consumed_tokens,
                configured_window_size=self._session.configured_window_size,
                max_trainable_window_size=self._session.max_trainable_window_size,
                reason=f"engine accepted {n} tokens past the configured window",
            )
        self._session.consumed_tokens += n
