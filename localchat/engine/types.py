"""Engine-facing value types.

These types are shared by the session core and the engine adapters.
They carry no engine state and do no I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


Role = Literal["system", "user", "assistant"]


@dataclass(frozen=True)
class ChatTurn:
    """A single role-tagged chat message, rendered once and then dropped."""

    role: Role
    text: str


@dataclass(frozen=True)
class ModelParams:
    device: str = "auto"  # "auto" picks cuda when available
    dtype: str | None = None  # "float16" | "bfloat16" | "float32"; None lets the backend pick
    trust_remote_code: bool = False


@dataclass(frozen=True)
class ContextParams:
    n_ctx: int = 4096  # 0 means "use the model's trained window"


@dataclass(frozen=True)
class SamplingParams:
    temperature: float = 0.8
    top_k: int = 40
    top_p: float = 0.95
    repeat_penalty: float = 1.0
    repeat_last_n: int = 64
    seed: int | None = None


@dataclass(frozen=True)
class DecodeOk:
    n_tokens: int


@dataclass(frozen=True)
class DecodeFailure:
    """The engine refused a batch; for a chat session this means the window is full."""

    position: int
    n_tokens: int
    reason: str = "context window exhausted"


DecodeResult = DecodeOk | DecodeFailure


@dataclass
class EngineTimings:
    """Cumulative engine timings, reported by `/stats`."""

    load_ms: float = 0.0
    sample_ms: float = 0.0
    n_sample: int = 0
    prompt_eval_ms: float = 0.0
    n_prompt_eval: int = 0
    eval_ms: float = 0.0
    n_eval: int = 0

    def report_lines(self) -> list[str]:
        def _rate(ms: float, n: int, unit: str) -> str:
            if n <= 0 or ms <= 0:
                return f"{ms:10.2f} ms / {n:5d} {unit}"
            return (
                f"{ms:10.2f} ms / {n:5d} {unit} ({ms / n:8.2f} ms per token, "
                f"{1e3 * n / ms:8.2f} tokens per second)"
            )

        total_ms = self.load_ms + self.sample_ms + self.prompt_eval_ms + self.eval_ms
        return [
            f"      load time = {self.load_ms:10.2f} ms",
            f"    sample time = {_rate(self.sample_ms, self.n_sample, 'runs  ')}",
            f"prompt eval time = {_rate(self.prompt_eval_ms, self.n_prompt_eval, 'tokens')}",
            f"      eval time = {_rate(self.eval_ms, self.n_eval, 'runs  ')}",
            f"     total time = {total_ms:10.2f} ms / {self.n_prompt_eval + self.n_eval:5d} tokens",
        ]
