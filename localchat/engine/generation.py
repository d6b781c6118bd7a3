"""Token-by-token generation loop with streaming output and cancellation."""

from __future__ import annotations

import enum
import logging
import sys
from dataclasses import dataclass, field
from typing import Any, TextIO

from .adapters.base import BaseEngine
from .evaluator import BatchedEvaluator
from .session import Session

logger = logging.getLogger(__name__)


class GenerationState(enum.Enum):
    SAMPLING = "sampling"
    EMITTING = "emitting"
    DONE = "done"
    CANCELLED = "cancelled"


@dataclass
class GenerationResult:
    state: GenerationState
    token_ids: list[int] = field(default_factory=list)
    text: str = ""
    # End-of-generation token that finished the reply, if any.
    end_token_id: int | None = None
    end_token_folded: bool = False

    @property
    def cancelled(self) -> bool:
        return self.state is GenerationState.CANCELLED


class GenerationLoop:
    """Sample, stream and evaluate one assistant reply.

    The interrupt flag is polled only at the top of each sampling step.
    Tokens already streamed stay in context when the reply is cancelled.

    Args:
        special: Render control tokens when detokenizing.
        fold_end_token: Evaluate the end-of-generation token into context
            before finishing, so the next turn follows a closed reply.
    """

    def __init__(
        self,
        engine: BaseEngine,
        model: Any,
        context: Any,
        sampler: Any,
        evaluator: BatchedEvaluator,
        session: Session,
        *,
        special: bool = False,
        fold_end_token: bool = True,
        out: TextIO | None = None,
    ) -> None:
        self._engine = engine
        self._model = model
        self._context = context
        self._sampler = sampler
        self._evaluator = evaluator
        self._session = session
        self._special = bool(special)
        self._fold_end_token = bool(fold_end_token)
        self._out = out

    def run(self) -> GenerationResult:
        out = self._out if self._out is not None else sys.stdout
        interrupt = self._session.interrupt
        result = GenerationResult(state=GenerationState.SAMPLING)
        pieces: list[str] = []
        token_id = -1

        state = GenerationState.SAMPLING
        while state in (GenerationState.SAMPLING, GenerationState.EMITTING):
            if state is GenerationState.SAMPLING:
                if interrupt.is_set():
                    interrupt.clear()
                    state = GenerationState.CANCELLED
                    continue
                token_id = self._engine.sample(self._context, self._sampler)
                self._engine.accept(self._context, self._sampler, token_id)
                state = GenerationState.EMITTING
                continue

            if self._engine.is_end_of_generation(self._model, token_id):
                result.end_token_id = token_id
                if self._fold_end_token:
                    self._evaluator.evaluate([token_id], 1)
                    result.end_token_folded = True
                state = GenerationState.DONE
                continue

            piece = self._engine.detokenize(self._context, token_id, self._special)
            out.write(piece)
            out.flush()
            result.token_ids.append(token_id)
            pieces.append(piece)
            self._evaluator.evaluate([token_id], 1)
            state = GenerationState.SAMPLING

        out.write("\n")
        out.flush()
        result.state = state
        result.text = "".join(pieces)
        logger.debug("generation %s after %d tokens", state.value, len(result.token_ids))
        return result
