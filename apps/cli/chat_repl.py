from __future__ import annotations

import signal
import sys
from typing import Any, Protocol

from localchat import __version__
from localchat.engine.adapters.base import BaseEngine, ContextCreationError, ModelLoadError
from localchat.engine.context import ContextOverflow
from localchat.engine.evaluator import BatchedEvaluator
from localchat.engine.generation import GenerationLoop
from localchat.engine.renderer import TurnRenderer
from localchat.engine.session import EngineHandles, Session
from localchat.engine.types import ChatTurn, ContextParams, ModelParams, SamplingParams

from apps.cli.commands import COMMAND_NAMES, dispatch
from apps.cli.config import ChatConfig, history_path
from apps.cli.line_input import LineReader
from apps.cli.output import (
    BRIGHT_GREEN,
    UNFOREGROUND,
    banner,
    clear_ephemeral,
    print_ephemeral,
    print_fatal,
)


EXIT_OK = 0
EXIT_BAD_ARGS = 1
EXIT_MODEL_LOAD = 2
EXIT_CONTEXT_CREATE = 3
EXIT_CONTEXT_OVERFLOW = 4

PROMPT = ">>> "


class LineSource(Protocol):
    def read_line(self, prompt: str) -> str | None: ...


def _install_interrupt_handler(session: Session) -> Any:
    """Make Ctrl-C request cancellation instead of killing the process.

    The handler only flips the session's interrupt flag.
    """

    def on_sigint(signum: int, frame: Any) -> None:
        session.interrupt.set()

    return signal.signal(signal.SIGINT, on_sigint)


def _release_handles(engine: BaseEngine, handles: EngineHandles) -> None:
    if handles.sampler is not None:
        engine.free_sampler(handles.sampler)
        handles.sampler = None
    if handles.context is not None:
        engine.free_context(handles.context)
        handles.context = None
    if handles.model is not None:
        engine.free_model(handles.model)
        handles.model = None


def _read_prompt_line(reader: LineSource) -> str | None:
    sys.stdout.write(BRIGHT_GREEN)
    sys.stdout.flush()
    try:
        return reader.read_line(PROMPT)
    finally:
        sys.stdout.write(UNFOREGROUND)
        sys.stdout.flush()


def _run_repl(
    *,
    reader: LineSource,
    engine: BaseEngine,
    handles: EngineHandles,
    session: Session,
    renderer: TurnRenderer,
    generation: GenerationLoop,
) -> None:
    while True:
        line = _read_prompt_line(reader)
        if line is None:
            print()
            return

        # A Ctrl-C pressed at the prompt must not cancel the next reply.
        session.interrupt.clear()

        if not line.strip():
            continue
        if dispatch(line, engine=engine, handles=handles, session=session):
            continue

        renderer.evaluate([ChatTurn(role="user", text=line)], is_continuation=True)
        result = generation.run()
        renderer.close_reply(result)


def chat_repl(
    *,
    engine: BaseEngine,
    config: ChatConfig,
    reader: LineSource | None = None,
) -> int:
    """Run an interactive chat session; return the process exit code."""
    if reader is None:
        line_reader = LineReader(completions=COMMAND_NAMES, history_file=history_path())
        line_reader.install()
        reader = line_reader

    print(banner(version=__version__, model=config.model or ""))

    handles = EngineHandles()
    previous_sigint: Any = None
    try:
        print_ephemeral("initializing model...")
        try:
            handles.model = engine.load_model(
                config.model or "",
                ModelParams(device=config.device, dtype=config.dtype),
            )
        except ModelLoadError as exc:
            clear_ephemeral()
            print_fatal(str(exc))
            return EXIT_MODEL_LOAD
        clear_ephemeral()

        print_ephemeral("initializing context...")
        try:
            handles.context = engine.create_context(handles.model, ContextParams(n_ctx=config.ctx_size))
        except ContextCreationError as exc:
            clear_ephemeral()
            print_fatal(str(exc))
            return EXIT_CONTEXT_CREATE
        clear_ephemeral()

        session = Session(
            configured_window_size=engine.window_size(handles.context),
            max_trainable_window_size=engine.max_trained_window_size(handles.model),
        )
        evaluator = BatchedEvaluator(engine, handles.context, session)
        renderer = TurnRenderer(
            engine,
            handles.model,
            handles.context,
            evaluator,
            batch_size=config.batch_size,
            chat_template=config.chat_template,
        )

        print_ephemeral("loading prompt...")
        rendered = renderer.evaluate(
            [ChatTurn(role="system", text=config.system_prompt)],
            is_continuation=False,
        )
        clear_ephemeral()
        print(rendered if config.special else config.system_prompt)

        handles.sampler = engine.create_sampler(
            handles.context,
            SamplingParams(
                temperature=config.temperature,
                top_k=config.top_k,
                top_p=config.top_p,
                repeat_penalty=config.repeat_penalty,
                repeat_last_n=config.repeat_last_n,
                seed=config.seed,
            ),
        )
        generation = GenerationLoop(
            engine,
            handles.model,
            handles.context,
            handles.sampler,
            evaluator,
            session,
            special=config.special,
            fold_end_token=config.fold_end_token,
        )

        previous_sigint = _install_interrupt_handler(session)
        _run_repl(
            reader=reader,
            engine=engine,
            handles=handles,
            session=session,
            renderer=renderer,
            generation=generation,
        )
        return EXIT_OK
    except ContextOverflow as exc:
        clear_ephemeral()
        print_fatal(str(exc))
        return EXIT_CONTEXT_OVERFLOW
    finally:
        if previous_sigint is not None:
            signal.signal(signal.SIGINT, previous_sigint)
        _release_handles(engine, handles)
