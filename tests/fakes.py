"""Scripted stand-ins for the inference engine and the line reader."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Sequence

from localchat.engine.adapters.base import BaseEngine, ContextCreationError, ModelLoadError
from localchat.engine.types import (
    ChatTurn,
    ContextParams,
    DecodeFailure,
    DecodeOk,
    DecodeResult,
    ModelParams,
    SamplingParams,
)


BOS = 1
EOG = 2
_CHAR_OFFSET = 1000


def encode(text: str) -> list[int]:
    return [_CHAR_OFFSET + ord(ch) for ch in text]


@dataclass
class FakeContext:
    n_ctx: int
    n_past: int = 0


@dataclass
class FakeSampler:
    params: SamplingParams
    history: list[int] = field(default_factory=list)


class ScriptedEngine(BaseEngine):
    """Characters are tokens; templates are plain concatenation.

    Each call to `sample` walks through the next scripted reply and ends it
    with the end-of-generation token.
    """

    def __init__(
        self,
        *,
        n_ctx_train: int = 128,
        replies: Sequence[str] = (),
        add_begin_marker: bool = True,
        fail_load: bool = False,
        fail_context: bool = False,
        on_sample: Callable[[int], None] | None = None,
    ) -> None:
        self.n_ctx_train = n_ctx_train
        self.replies = list(replies)
        self.add_begin_marker = add_begin_marker
        self.fail_load = fail_load
        self.fail_context = fail_context
        self.on_sample = on_sample

        self.rendered: list[tuple[tuple[ChatTurn, ...], bool]] = []
        self.tokenize_calls: list[tuple[str, bool, bool]] = []
        self.decode_calls: list[tuple[list[int], int]] = []
        self.failed_decodes = 0
        self.samples = 0
        self.report_levels: list[int] = []
        self.freed: list[str] = []
        self._pending: list[int] = []

    def load_model(self, path: str, params: ModelParams) -> str:
        if self.fail_load:
            raise ModelLoadError(f"cannot load {path}")
        return f"model:{path}"

    def create_context(self, model: str, params: ContextParams) -> FakeContext:
        if self.fail_context:
            raise ContextCreationError("cannot allocate context")
        return FakeContext(n_ctx=params.n_ctx if params.n_ctx > 0 else self.n_ctx_train)

    def create_sampler(self, context: FakeContext, params: SamplingParams) -> FakeSampler:
        return FakeSampler(params=params)

    def decode(self, context: FakeContext, tokens: Sequence[int], position: int) -> DecodeResult:
        if position != context.n_past or position + len(tokens) > context.n_ctx:
            self.failed_decodes += 1
            return DecodeFailure(position=position, n_tokens=len(tokens))
        self.decode_calls.append((list(tokens), position))
        context.n_past += len(tokens)
        return DecodeOk(n_tokens=len(tokens))

    def sample(self, context: FakeContext, sampler: FakeSampler) -> int:
        if not self._pending:
            reply = self.replies.pop(0) if self.replies else ""
            self._pending = encode(reply) + [EOG]
        self.samples += 1
        token = self._pending.pop(0)
        if self.on_sample is not None:
            self.on_sample(self.samples)
        return token

    def accept(self, context: FakeContext, sampler: FakeSampler, token_id: int) -> None:
        sampler.history.append(token_id)

    def detokenize(self, context: FakeContext, token_id: int, special: bool = False) -> str:
        if token_id < _CHAR_OFFSET:
            return f"<{token_id}>" if special else ""
        return chr(token_id - _CHAR_OFFSET)

    def is_end_of_generation(self, model: str, token_id: int) -> bool:
        return token_id == EOG

    def tokenize(
        self,
        context: FakeContext,
        text: str,
        add_begin_marker: bool,
        parse_control_tokens: bool,
    ) -> list[int]:
        self.tokenize_calls.append((text, add_begin_marker, parse_control_tokens))
        return ([BOS] if add_begin_marker else []) + encode(text)

    def should_add_begin_marker(self, model: str) -> bool:
        return self.add_begin_marker

    def render_template(
        self,
        model: str,
        template_name: str | None,
        turns: Sequence[ChatTurn],
        want_continuation: bool,
    ) -> str:
        self.rendered.append((tuple(turns), want_continuation))
        return "".join(t.text for t in turns)

    def window_size(self, context: FakeContext) -> int:
        return context.n_ctx

    def max_trained_window_size(self, model: str) -> int:
        return self.n_ctx_train

    def print_timing_report(self, context: FakeContext) -> None:
        logger = logging.getLogger("localchat")
        self.report_levels.append(logger.getEffectiveLevel())

    def free_sampler(self, sampler: FakeSampler) -> None:
        self.freed.append("sampler")

    def free_context(self, context: FakeContext) -> None:
        self.freed.append("context")

    def free_model(self, model: str) -> None:
        self.freed.append("model")


class ScriptedReader:
    def __init__(self, lines: Sequence[str], *, on_read: Callable[[], None] | None = None) -> None:
        self._lines = list(lines)
        self._on_read = on_read
        self.prompts = 0

    def read_line(self, prompt: str) -> str | None:
        self.prompts += 1
        if self._on_read is not None:
            self._on_read()
        if not self._lines:
            return None
        return self._lines.pop(0)
