"""Inference engine backed by Hugging Face transformers."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Sequence

from ..types import (
    ChatTurn,
    ContextParams,
    DecodeFailure,
    DecodeOk,
    DecodeResult,
    EngineTimings,
    ModelParams,
    SamplingParams,
)
from .base import BaseEngine, ContextCreationError, ModelLoadError

if TYPE_CHECKING:
    import torch

logger = logging.getLogger(__name__)


# Used when the model declares no chat template of its own.
_CHATML_TEMPLATE = (
    "{% for message in messages %}"
    "{{ '<|im_start|>' + message['role'] + '\\n' + message['content'] + '<|im_end|>' + '\\n' }}"
    "{% endfor %}"
    "{% if add_generation_prompt %}{{ '<|im_start|>assistant\\n' }}{% endif %}"
)

_BUILTIN_TEMPLATES: dict[str, str] = {
    "chatml": _CHATML_TEMPLATE,
}

# Turn terminators some chat models use in addition to the tokenizer's EOS.
_EXTRA_EOG_TOKENS = ("<|im_end|>", "<|eot_id|>", "<|end|>", "<end_of_turn>")

_DTYPES = ("float16", "bfloat16", "float32")

# Pending detokenizer ids are flushed past this length even if the text
# still ends in a replacement character.
_MAX_PENDING_PIECE_IDS = 8


# =============================================================================
# Handles
# =============================================================================


@dataclass
class _LoadedModel:
    model: Any
    tokenizer: Any
    path: str
    n_ctx_train: int
    eog_token_ids: frozenset[int]
    load_ms: float = 0.0


@dataclass
class _InferenceContext:
    """KV state of one conversation."""

    loaded: _LoadedModel
    n_ctx: int
    past_key_values: Any
    n_past: int = 0
    next_token_logits: torch.Tensor | None = None
    timings: EngineTimings = field(default_factory=EngineTimings)
    # Streaming detokenizer: ids decoded together with the next token, and
    # the text they decode to on their own.
    detok_ids: list[int] = field(default_factory=list)
    detok_text: str = ""


@dataclass
class _Sampler:
    params: SamplingParams
    history: deque[int]
    generator: Any


# =============================================================================
# Engine
# =============================================================================


class TransformersEngine(BaseEngine):
    """
    Engine running a causal LM through `transformers` on a single device.

    Contexts keep a `DynamicCache` and an explicit position cursor, so a chat
    session can append prompt batches and single generated tokens without
    re-prefilling. Decoding is refused (not truncated) once the configured
    window is full.

    Example:
        >>> engine = TransformersEngine()
        >>> model = engine.load_model("Qwen/Qwen2.5-0.5B-Instruct", ModelParams())
        >>> ctx = engine.create_context(model, ContextParams(n_ctx=2048))
        >>> ids = engine.tokenize(ctx, "Hello", add_begin_marker=True, parse_control_tokens=True)
        >>> engine.decode(ctx, ids, position=0)
        DecodeOk(n_tokens=...)
    """

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def load_model(self, path: str, params: ModelParams) -> _LoadedModel:
        """Load tokenizer and weights.

        Args:
            path: Local path or HF hub id.
            params: `device`, `dtype` ("float16" | "bfloat16" | "float32"),
                `trust_remote_code`.
        """
        import torch
        from transformers import AutoModelForCausalLM, AutoTokenizer

        started = time.perf_counter()
        try:
            if params.dtype is not None and params.dtype not in _DTYPES:
                raise ValueError(f"unsupported dtype {params.dtype!r} (choose from {', '.join(_DTYPES)})")
            torch_dtype = getattr(torch, params.dtype) if params.dtype else None

            tokenizer = AutoTokenizer.from_pretrained(
                path,
                trust_remote_code=params.trust_remote_code,
            )
            model = AutoModelForCausalLM.from_pretrained(
                path,
                torch_dtype=torch_dtype,
                trust_remote_code=params.trust_remote_code,
            )
            device = params.device
            if device == "auto":
                device = "cuda" if torch.cuda.is_available() else "cpu"
            model.to(device)
            model.eval()
        except (OSError, ValueError, RuntimeError, ImportError, KeyError) as exc:
            raise ModelLoadError(f"failed to load model {path!r}: {exc}") from exc

        loaded = _LoadedModel(
            model=model,
            tokenizer=tokenizer,
            path=path,
            n_ctx_train=_trained_window_size(model, tokenizer),
            eog_token_ids=_end_of_generation_ids(model, tokenizer),
        )
        loaded.load_ms = (time.perf_counter() - started) * 1e3
        logger.info(
            "loaded %s in %.0f ms (n_ctx_train=%d, device=%s)",
            path,
            loaded.load_ms,
            loaded.n_ctx_train,
            device,
        )
        return loaded

    def create_context(self, model: _LoadedModel, params: ContextParams) -> _InferenceContext:
        from transformers import DynamicCache

        n_ctx = params.n_ctx if params.n_ctx > 0 else model.n_ctx_train
        if n_ctx <= 0:
            raise ContextCreationError(f"invalid context size: {params.n_ctx}")
        if n_ctx > model.n_ctx_train:
            logger.warning(
                "n_ctx=%d exceeds the trained window (%d); quality may degrade",
                n_ctx,
                model.n_ctx_train,
            )

        try:
            cache = DynamicCache()
        except (TypeError, RuntimeError) as exc:
            raise ContextCreationError(f"failed to allocate KV cache: {exc}") from exc

        ctx = _InferenceContext(loaded=model, n_ctx=n_ctx, past_key_values=cache)
        ctx.timings.load_ms = model.load_ms
        logger.info("created context n_ctx=%d", n_ctx)
        return ctx

    def create_sampler(self, context: _InferenceContext, params: SamplingParams) -> _Sampler:
        import torch

        generator = torch.Generator(device=context.loaded.model.device)
        if params.seed is not None:
            generator.manual_seed(int(params.seed))
        else:
            generator.seed()
        return _Sampler(
            params=params,
            history=deque(maxlen=max(int(params.repeat_last_n), 0)),
            generator=generator,
        )

    def free_context(self, context: _InferenceContext) -> None:
        context.past_key_values = None
        context.next_token_logits = None

    def free_model(self, model: _LoadedModel) -> None:
        """Drop the weights and free accelerator memory."""
        import gc
        import torch

        model.model = None
        model.tokenizer = None
        gc.collect()
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def decode(self, context: _InferenceContext, tokens: Sequence[int], position: int) -> DecodeResult:
        import torch

        n = len(tokens)
        if n == 0:
            return DecodeOk(n_tokens=0)
        if position != context.n_past:
            return DecodeFailure(
                position=position,
                n_tokens=n,
                reason=f"position {position} does not match context cursor {context.n_past}",
            )
        if position + n > context.n_ctx:
            return DecodeFailure(position=position, n_tokens=n)

        model = context.loaded.model
        started = time.perf_counter()
        input_ids = torch.tensor([list(tokens)], dtype=torch.long, device=model.device)
        cache_position = torch.arange(position, position + n, device=model.device)
        try:
            with torch.no_grad():
                outputs = model(
                    input_ids,
                    past_key_values=context.past_key_values,
                    position_ids=cache_position.unsqueeze(0),
                    cache_position=cache_position,
                    use_cache=True,
                )
        except RuntimeError as exc:
            # Layers before the failing one may already hold this batch.
            if hasattr(context.past_key_values, "crop"):
                context.past_key_values.crop(position)
            logger.warning("decode failed at position %d (%d tokens): %s", position, n, exc)
            return DecodeFailure(position=position, n_tokens=n, reason=str(exc))

        context.past_key_values = outputs.past_key_values
        context.n_past = position + n
        context.next_token_logits = outputs.logits[:, -1, :].detach()

        elapsed_ms = (time.perf_counter() - started) * 1e3
        if n > 1:
            context.timings.prompt_eval_ms += elapsed_ms
            context.timings.n_prompt_eval += n
        else:
            context.timings.eval_ms += elapsed_ms
            context.timings.n_eval += 1
        return DecodeOk(n_tokens=n)

    # -------------------------------------------------------------------------
    # Sampling
    # -------------------------------------------------------------------------

    def sample(self, context: _InferenceContext, sampler: _Sampler) -> int:
        import torch
        from transformers import (
            LogitsProcessorList,
            RepetitionPenaltyLogitsProcessor,
            TemperatureLogitsWarper,
            TopKLogitsWarper,
            TopPLogitsWarper,
        )

        logits = context.next_token_logits
        if logits is None:
            raise RuntimeError("Nothing has been decoded yet; cannot sample.")

        started = time.perf_counter()
        params = sampler.params

        # Numerical stability: work in fp32 even for half-precision models.
        scores = logits.float()
        history = torch.tensor([list(sampler.history)], dtype=torch.long, device=scores.device)

        processors = LogitsProcessorList()
        if params.repeat_penalty != 1.0 and sampler.history:
            processors.append(RepetitionPenaltyLogitsProcessor(penalty=float(params.repeat_penalty)))
        if params.temperature > 0:
            if params.top_k > 0:
                processors.append(TopKLogitsWarper(top_k=int(params.top_k)))
            if 0.0 < params.top_p < 1.0:
                processors.append(TopPLogitsWarper(top_p=float(params.top_p)))
            processors.append(TemperatureLogitsWarper(temperature=float(params.temperature)))
        scores = processors(history, scores)

        if params.temperature <= 0:
            next_token = torch.argmax(scores, dim=-1)
        else:
            probs = torch.softmax(scores, dim=-1)
            next_token = torch.multinomial(probs, 1, generator=sampler.generator)

        context.timings.sample_ms += (time.perf_counter() - started) * 1e3
        context.timings.n_sample += 1
        return int(next_token.reshape(-1)[0].item())

    def accept(self, context: _InferenceContext, sampler: _Sampler, token_id: int) -> None:
        sampler.history.append(int(token_id))

    # -------------------------------------------------------------------------
    # Text
    # -------------------------------------------------------------------------

    def detokenize(self, context: _InferenceContext, token_id: int, special: bool = False) -> str:
        tokenizer = context.loaded.tokenizer
        skip = not special

        # Decode together with the previous token so that leading-space
        # markers and multi-byte characters come out right.
        ids = context.detok_ids + [int(token_id)]
        text = tokenizer.decode(ids, skip_special_tokens=skip, clean_up_tokenization_spaces=False)
        if text.endswith("\ufffd") and len(ids) < _MAX_PENDING_PIECE_IDS:
            context.detok_ids = ids
            return ""

        if text.startswith(context.detok_text):
            piece = text[len(context.detok_text) :]
        else:
            piece = tokenizer.decode([int(token_id)], skip_special_tokens=skip, clean_up_tokenization_spaces=False)

        context.detok_ids = [int(token_id)]
        context.detok_text = tokenizer.decode(
            context.detok_ids, skip_special_tokens=skip, clean_up_tokenization_spaces=False
        )
        return piece

    def is_end_of_generation(self, model: _LoadedModel, token_id: int) -> bool:
        return int(token_id) in model.eog_token_ids

    def tokenize(
        self,
        context: _InferenceContext,
        text: str,
        add_begin_marker: bool,
        parse_control_tokens: bool,
    ) -> list[int]:
        tokenizer = context.loaded.tokenizer
        bos = tokenizer.bos_token
        if add_begin_marker and bos and text.startswith(bos):
            # The chat template already rendered the marker as text.
            add_begin_marker = False

        kwargs: dict[str, Any] = {}
        if not parse_control_tokens:
            kwargs["split_special_tokens"] = True
        ids = list(tokenizer.encode(text, add_special_tokens=False, **kwargs))
        if add_begin_marker and tokenizer.bos_token_id is not None:
            ids.insert(0, int(tokenizer.bos_token_id))
        return ids

    def should_add_begin_marker(self, model: _LoadedModel) -> bool:
        tokenizer = model.tokenizer
        if tokenizer.bos_token_id is None:
            return False
        return getattr(tokenizer, "add_bos_token", True) is not False

    def render_template(
        self,
        model: _LoadedModel,
        template_name: str | None,
        turns: Sequence[ChatTurn],
        want_continuation: bool,
    ) -> str:
        tokenizer = model.tokenizer
        template = _BUILTIN_TEMPLATES.get(template_name, template_name) if template_name else None
        if template is None and not getattr(tokenizer, "chat_template", None):
            template = _CHATML_TEMPLATE

        messages = [{"role": t.role, "content": t.text} for t in turns]
        return tokenizer.apply_chat_template(
            messages,
            chat_template=template,
            tokenize=False,
            add_generation_prompt=want_continuation,
        )

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def window_size(self, context: _InferenceContext) -> int:
        return context.n_ctx

    def max_trained_window_size(self, model: _LoadedModel) -> int:
        return model.n_ctx_train

    def print_timing_report(self, context: _InferenceContext) -> None:
        for line in context.timings.report_lines():
            logger.info("%s", line)


# =============================================================================
# Helpers
# =============================================================================


def _trained_window_size(model: Any, tokenizer: Any) -> int:
    config = getattr(model, "config", None)
    for attr in ("max_position_embeddings", "n_positions", "seq_length", "max_seq_len"):
        value = getattr(config, attr, None)
        if isinstance(value, int) and value > 0:
            return value
    # Tokenizers without a real limit report a huge sentinel.
    value = getattr(tokenizer, "model_max_length", None)
    if isinstance(value, int) and 0 < value < 10_000_000:
        return value
    return 2048


def _end_of_generation_ids(model: Any, tokenizer: Any) -> frozenset[int]:
    ids: set[int] = set()
    if tokenizer.eos_token_id is not None:
        ids.add(int(tokenizer.eos_token_id))

    generation_config = getattr(model, "generation_config", None)
    eos = getattr(generation_config, "eos_token_id", None)
    if isinstance(eos, int):
        ids.add(eos)
    elif isinstance(eos, (list, tuple)):
        ids.update(int(t) for t in eos)

    vocab = tokenizer.get_vocab()
    for tok in _EXTRA_EOG_TOKENS:
        if tok in vocab:
            ids.add(int(vocab[tok]))
    return frozenset(ids)
