"""
localchat - Interactive terminal chat on top of a local text-generation engine.

This package holds the session core: context-window accounting, batched
evaluation, chat-turn rendering and the streaming generation loop. The
interactive front-end lives in `apps.cli`.

Quick Start:
    from localchat import get_engine, ModelParams, ContextParams

    engine = get_engine("transformers")
    model = engine.load_model("Qwen/Qwen2.5-0.5B-Instruct", ModelParams())
    ctx = engine.create_context(model, ContextParams(n_ctx=4096))

Submodules:
    - localchat.engine.adapters: Inference engine contract and backends
    - localchat.engine.session: Session state and interrupt flag
    - localchat.engine.evaluator: Batched evaluation and overflow detection
    - localchat.engine.generation: Sampling / streaming loop
"""

from localchat._version import __version__

from localchat.engine.adapters.base import (
    BaseEngine,
    ContextCreationError,
    EngineError,
    ModelLoadError,
)
from localchat.engine.context import ContextAccountant, ContextOverflow
from localchat.engine.evaluator import BatchedEvaluator
from localchat.engine.generation import GenerationLoop, GenerationResult, GenerationState
from localchat.engine.registry import get_engine, list_backends, register_engine
from localchat.engine.renderer import TurnRenderer
from localchat.engine.session import EngineHandles, InterruptFlag, Session
from localchat.engine.types import (
    ChatTurn,
    ContextParams,
    DecodeFailure,
    DecodeOk,
    DecodeResult,
    EngineTimings,
    ModelParams,
    SamplingParams,
)

__all__ = [
    # Version
    "__version__",
    # Engine contract
    "BaseEngine",
    "EngineError",
    "ModelLoadError",
    "ContextCreationError",
    "get_engine",
    "list_backends",
    "register_engine",
    # Session core
    "Session",
    "EngineHandles",
    "InterruptFlag",
    "ContextAccountant",
    "ContextOverflow",
    "BatchedEvaluator",
    "TurnRenderer",
    "GenerationLoop",
    "GenerationResult",
    "GenerationState",
    # Types
    "ChatTurn",
    "ModelParams",
    "ContextParams",
    "SamplingParams",
    "DecodeOk",
    "DecodeFailure",
    "DecodeResult",
    "EngineTimings",
]
