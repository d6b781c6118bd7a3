"""Base interface for inference engine backends."""

from abc import ABC, abstractmethod
from typing import Any, Sequence

from ..types import (
    ChatTurn,
    ContextParams,
    DecodeResult,
    ModelParams,
    SamplingParams,
)


class EngineError(RuntimeError):
    pass


class ModelLoadError(EngineError):
    pass


class ContextCreationError(EngineError):
    pass


class BaseEngine(ABC):
    """
    Abstract base class for inference engines.

    The chat session talks to the engine exclusively through this interface.
    Handles returned by `load_model`, `create_context` and `create_sampler`
    are opaque to callers; only the engine that produced a handle may
    inspect it.

    Thread Safety:
        Engines are NOT thread-safe. All calls for a given context must be
        serialized by a single owner.
    """

    @abstractmethod
    def load_model(self, path: str, params: ModelParams) -> Any:
        """
        Load model weights and tokenizer.

        Args:
            path: Local path or hub identifier.
            params: Device / dtype options.

        Returns:
            An opaque model handle.

        Raises:
            ModelLoadError: If the model cannot be loaded.
        """
        pass

    @abstractmethod
    def create_context(self, model: Any, params: ContextParams) -> Any:
        """
        Create an inference context (KV state) for a loaded model.

        Raises:
            ContextCreationError: If the context cannot be allocated.
        """
        pass

    @abstractmethod
    def create_sampler(self, context: Any, params: SamplingParams) -> Any:
        """Create a sampling state (penalty history, RNG) bound to a context."""
        pass

    @abstractmethod
    def decode(self, context: Any, tokens: Sequence[int], position: int) -> DecodeResult:
        """
        Evaluate `tokens` at absolute positions starting at `position`.

        A `DecodeFailure` means the batch was not accepted and the context
        is unchanged. For a chat session this signals window overflow.
        """
        pass

    @abstractmethod
    def sample(self, context: Any, sampler: Any) -> int:
        """Choose the next token from the logits of the last decoded position."""
        pass

    @abstractmethod
    def accept(self, context: Any, sampler: Any, token_id: int) -> None:
        """Fold a chosen token into the sampler's history."""
        pass

    @abstractmethod
    def detokenize(self, context: Any, token_id: int, special: bool = False) -> str:
        """Return the text piece for a generated token (may be empty while a
        multi-byte character is still incomplete)."""
        pass

    @abstractmethod
    def is_end_of_generation(self, model: Any, token_id: int) -> bool:
        pass

    @abstractmethod
    def tokenize(
        self,
        context: Any,
        text: str,
        add_begin_marker: bool,
        parse_control_tokens: bool,
    ) -> list[int]:
        pass

    @abstractmethod
    def should_add_begin_marker(self, model: Any) -> bool:
        pass

    @abstractmethod
    def render_template(
        self,
        model: Any,
        template_name: str | None,
        turns: Sequence[ChatTurn],
        want_continuation: bool,
    ) -> str:
        """
        Render turns with the model's chat template.

        Args:
            model: Model handle.
            template_name: Built-in template name or a literal template; None
                uses the template declared by the model.
            turns: Turns to render.
            want_continuation: Append the assistant-reply prefix.
        """
        pass

    @abstractmethod
    def window_size(self, context: Any) -> int:
        pass

    @abstractmethod
    def max_trained_window_size(self, model: Any) -> int:
        pass

    @abstractmethod
    def print_timing_report(self, context: Any) -> None:
        """Emit the performance report through the engine's logger."""
        pass

    def free_sampler(self, sampler: Any) -> None:
        """
        Release a sampler.

        Default implementation does nothing; override if cleanup is needed.
        """
        pass

    def free_context(self, context: Any) -> None:
        pass

    def free_model(self, model: Any) -> None:
        pass
