import io

import pytest

from localchat.engine.context import ContextOverflow
from localchat.engine.evaluator import BatchedEvaluator
from localchat.engine.generation import GenerationLoop, GenerationState
from localchat.engine.renderer import TurnRenderer
from localchat.engine.session import Session
from localchat.engine.types import ChatTurn, ContextParams, ModelParams, SamplingParams

from tests.fakes import EOG, ScriptedEngine, encode


class _CountingStream(io.StringIO):
    def __init__(self) -> None:
        super().__init__()
        self.flushes = 0

    def flush(self) -> None:
        self.flushes += 1
        super().flush()


def _stack(engine: ScriptedEngine, *, n_ctx: int = 64, fold_end_token: bool = True, special: bool = False):
    model = engine.load_model("m", ModelParams())
    ctx = engine.create_context(model, ContextParams(n_ctx=n_ctx))
    session = Session(
        configured_window_size=engine.window_size(ctx),
        max_trainable_window_size=engine.max_trained_window_size(model),
    )
    evaluator = BatchedEvaluator(engine, ctx, session)
    renderer = TurnRenderer(engine, model, ctx, evaluator, batch_size=512)
    sampler = engine.create_sampler(ctx, SamplingParams())
    out = _CountingStream()
    loop = GenerationLoop(
        engine,
        model,
        ctx,
        sampler,
        evaluator,
        session,
        special=special,
        fold_end_token=fold_end_token,
        out=out,
    )
    return session, renderer, sampler, loop, out


def test_reply_streams_until_end_of_generation():
    engine = ScriptedEngine(replies=["hello"])
    session, _, sampler, loop, out = _stack(engine)

    result = loop.run()

    assert result.state is GenerationState.DONE
    assert not result.cancelled
    assert result.text == "hello"
    assert result.token_ids == encode("hello")
    assert out.getvalue() == "hello\n"
    assert sampler.history == encode("hello") + [EOG]
    assert session.consumed_tokens == 6
    assert result.end_token_id == EOG
    assert result.end_token_folded


def test_end_token_left_out_of_context_when_folding_disabled():
    engine = ScriptedEngine(replies=["hello"])
    session, _, _, loop, out = _stack(engine, fold_end_token=False)

    result = loop.run()

    assert result.end_token_id == EOG
    assert not result.end_token_folded
    assert out.getvalue() == "hello\n"
    assert session.consumed_tokens == 5
    assert all(EOG not in chunk for chunk, _ in engine.decode_calls)


def test_end_token_is_not_printed_even_in_special_mode():
    engine = ScriptedEngine(replies=["ok"])
    _, _, _, loop, out = _stack(engine, special=True)

    loop.run()

    assert out.getvalue() == "ok\n"


def test_each_token_is_flushed():
    engine = ScriptedEngine(replies=["abc"])
    _, _, _, loop, out = _stack(engine)

    loop.run()

    # one per token plus the trailing newline
    assert out.flushes == 4


def test_interrupt_before_first_sample_cancels_without_sampling():
    engine = ScriptedEngine(replies=["hello"])
    session, _, _, loop, out = _stack(engine)
    session.interrupt.set()

    result = loop.run()

    assert result.state is GenerationState.CANCELLED
    assert engine.samples == 0
    assert out.getvalue() == "\n"
    assert not session.interrupt_requested
    assert session.consumed_tokens == 0


def test_interrupt_mid_reply_keeps_streamed_tokens_in_context():
    session_box = {}

    def interrupt_on_second(n: int) -> None:
        if n == 2:
            session_box["session"].interrupt.set()

    engine = ScriptedEngine(replies=["hello"], on_sample=interrupt_on_second)
    session, _, _, loop, out = _stack(engine)
    session_box["session"] = session

    result = loop.run()

    assert result.cancelled
    assert result.text == "he"
    assert out.getvalue() == "he\n"
    assert engine.samples == 2
    assert session.consumed_tokens == 2
    assert not session.interrupt_requested


def test_next_reply_runs_after_a_cancelled_one():
    engine = ScriptedEngine(replies=["a", "b"])
    session, _, _, loop, _ = _stack(engine)

    session.interrupt.set()
    assert loop.run().cancelled

    result = loop.run()
    assert result.state is GenerationState.DONE
    assert result.text == "a"


def test_generation_overflow_propagates_after_streaming():
    engine = ScriptedEngine(replies=["ab"])
    session, renderer, _, loop, out = _stack(engine, n_ctx=10)

    renderer.evaluate([ChatTurn(role="system", text="abc")], is_continuation=False)
    assert session.consumed_tokens == 4
    renderer.evaluate([ChatTurn(role="user", text="defgh")], is_continuation=True)
    assert session.consumed_tokens == 9

    with pytest.raises(ContextOverflow):
        loop.run()

    assert out.getvalue() == "ab"
    assert session.consumed_tokens == 10
    assert engine.failed_decodes == 1
