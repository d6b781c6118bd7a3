"""Batched evaluation of token sequences into the engine's context."""

from __future__ import annotations

import logging
from typing import Any, Sequence

from .adapters.base import BaseEngine
from .context import ContextAccountant, ContextOverflow
from .session import Session
from .types import DecodeFailure

logger = logging.getLogger(__name__)


class BatchedEvaluator:
    """Feed tokens to the engine in chunks of at most `batch_size`.

    The accountant advances only after the engine accepted a chunk, so on
    overflow the count reflects exactly the chunks that made it into context.
    """

    def __init__(
        self,
        engine: BaseEngine,
        context: Any,
        session: Session,
        *,
        accountant: ContextAccountant | None = None,
    ) -> None:
        self._engine = engine
        self._context = context
        self._session = session
        self._accountant = accountant or ContextAccountant(session)

    @property
    def accountant(self) -> ContextAccountant:
        return self._accountant

    def evaluate(
        self,
        tokens: Sequence[int],
        batch_size: int,
        position_offset: int | None = None,
    ) -> int:
        """Evaluate `tokens`; return how many were accepted.

        Raises:
            ContextOverflow: the engine refused a chunk.
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        position = self._accountant.consumed_tokens
        if position_offset is not None and position_offset != position:
            raise ValueError(
                f"position_offset={position_offset} does not continue the context at {position}"
            )

        total = len(tokens)
        for start in range(0, total, batch_size):
            chunk = tokens[start : start + batch_size]
            position = self._accountant.consumed_tokens
            result = self._engine.decode(self._context, chunk, position)
            if isinstance(result, DecodeFailure):
                logger.debug(
                    "decode refused %d tokens at position %d: %s",
                    result.n_tokens,
                    result.position,
                    result.reason,
                )
                raise ContextOverflow(
                    consumed_tokens=self._session.consumed_tokens,
                    configured_window_size=self._session.configured_window_size,
                    max_trainable_window_size=self._session.max_trainable_window_size,
                    reason=result.reason,
                )
            self._accountant.advance(len(chunk))
        return total
