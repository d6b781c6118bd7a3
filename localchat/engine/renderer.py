"""Chat turn rendering: turns -> chat template -> tokens -> context.

The renderer keeps the running message list. Each new turn is rendered
together with the whole conversation, and only the text past what the
context already holds is tokenized and evaluated, so templates that open
every conversation with a begin marker or a default system block emit
those once.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Sequence

from .adapters.base import BaseEngine
from .evaluator import BatchedEvaluator
from .generation import GenerationResult
from .types import ChatTurn

logger = logging.getLogger(__name__)


class TurnRenderer:
    def __init__(
        self,
        engine: BaseEngine,
        model: Any,
        context: Any,
        evaluator: BatchedEvaluator,
        *,
        batch_size: int,
        chat_template: str | None = None,
    ) -> None:
        self._engine = engine
        self._model = model
        self._context = context
        self._evaluator = evaluator
        self._batch_size = int(batch_size)
        self._chat_template = chat_template

        self._history: list[ChatTurn] = []
        # Rendered text of everything evaluated into context so far.
        self._evaluated_text = ""

    @property
    def history(self) -> list[ChatTurn]:
        return list(self._history)

    def render(self, turns: Sequence[ChatTurn], is_continuation: bool) -> str:
        """Render `turns` with the model's template.

        `is_continuation` appends the assistant-reply prefix (user turns);
        the opening system turn is rendered without it.
        """
        return self._engine.render_template(self._model, self._chat_template, turns, is_continuation)

    def evaluate(self, turns: Sequence[ChatTurn], is_continuation: bool) -> str:
        """Append `turns` to the conversation and evaluate them.

        Returns the rendered text that was evaluated. Only the opening system
        turn gets the begin marker; control tokens are always parsed.
        """
        opening = not self._history
        full = self.render(self._history + list(turns), is_continuation)
        text = full[_shared_prefix_length(self._evaluated_text, full) :]

        add_begin_marker = (
            opening
            and any(t.role == "system" for t in turns)
            and self._engine.should_add_begin_marker(self._model)
        )
        self._feed(text, add_begin_marker=add_begin_marker)

        self._history.extend(turns)
        self._evaluated_text = full
        return text

    def close_reply(self, result: GenerationResult) -> str:
        """Record the assistant reply and evaluate the template's turn ending.

        The reply tokens are already in context. What the template puts after
        the reply text (an end-of-turn marker, a newline) is evaluated here,
        minus the end token the generation loop already folded in.
        """
        self._history.append(ChatTurn(role="assistant", text=result.text))
        full = self.render(self._history, False)
        streamed = self._evaluated_text + result.text
        closing = full[_shared_prefix_length(streamed, full) :]

        if closing:
            tokens = self._engine.tokenize(
                self._context,
                closing,
                add_begin_marker=False,
                parse_control_tokens=True,
            )
            if result.end_token_folded and tokens and tokens[0] == result.end_token_id:
                tokens = tokens[1:]
            self._evaluator.evaluate(tokens, self._batch_size)

        self._evaluated_text = full
        return closing

    def _feed(self, text: str, *, add_begin_marker: bool) -> None:
        tokens = self._engine.tokenize(
            self._context,
            text,
            add_begin_marker=add_begin_marker,
            parse_control_tokens=True,
        )
        self._evaluator.evaluate(tokens, self._batch_size)


def _shared_prefix_length(a: str, b: str) -> int:
    if b.startswith(a):
        return len(a)
    n = len(os.path.commonprefix([a, b]))
    logger.debug("rendered conversation diverges from the evaluated text at char %d", n)
    return n
