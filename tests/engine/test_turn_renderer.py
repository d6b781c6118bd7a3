from localchat.engine.evaluator import BatchedEvaluator
from localchat.engine.generation import GenerationResult, GenerationState
from localchat.engine.renderer import TurnRenderer
from localchat.engine.session import Session
from localchat.engine.types import ChatTurn, ContextParams, ModelParams

from tests.fakes import BOS, ScriptedEngine, encode


def _renderer(engine: ScriptedEngine, *, n_ctx: int = 64, batch_size: int = 512, chat_template=None):
    model = engine.load_model("m", ModelParams())
    ctx = engine.create_context(model, ContextParams(n_ctx=n_ctx))
    session = Session(
        configured_window_size=engine.window_size(ctx),
        max_trainable_window_size=engine.max_trained_window_size(model),
    )
    evaluator = BatchedEvaluator(engine, ctx, session)
    renderer = TurnRenderer(
        engine, model, ctx, evaluator, batch_size=batch_size, chat_template=chat_template
    )
    return renderer, session


def test_system_turn_opens_with_begin_marker():
    engine = ScriptedEngine()
    renderer, session = _renderer(engine)

    text = renderer.evaluate([ChatTurn(role="system", text="sys")], is_continuation=False)

    assert text == "sys"
    assert engine.rendered[-1][1] is False
    assert engine.tokenize_calls[-1] == ("sys", True, True)
    assert engine.decode_calls[0][0] == [BOS] + encode("sys")
    assert session.consumed_tokens == 4


def test_user_turn_is_a_continuation_without_begin_marker():
    engine = ScriptedEngine()
    renderer, session = _renderer(engine)

    renderer.evaluate([ChatTurn(role="user", text="hello")], is_continuation=True)

    assert engine.rendered[-1][1] is True
    assert engine.tokenize_calls[-1] == ("hello", False, True)
    assert session.consumed_tokens == 5


def test_no_begin_marker_when_model_does_not_want_one():
    engine = ScriptedEngine(add_begin_marker=False)
    renderer, session = _renderer(engine)

    renderer.evaluate([ChatTurn(role="system", text="sys")], is_continuation=False)

    assert engine.tokenize_calls[-1][1] is False
    assert session.consumed_tokens == 3


def test_render_does_not_touch_context():
    engine = ScriptedEngine()
    renderer, session = _renderer(engine)

    assert renderer.render([ChatTurn(role="user", text="hi")], is_continuation=True) == "hi"
    assert engine.decode_calls == []
    assert session.consumed_tokens == 0


def test_prompt_batches_use_configured_batch_size():
    engine = ScriptedEngine()
    renderer, _ = _renderer(engine, batch_size=3)

    renderer.evaluate([ChatTurn(role="user", text="abcdefgh")], is_continuation=True)

    assert [len(chunk) for chunk, _ in engine.decode_calls] == [3, 3, 2]


class _TaggedEngine(ScriptedEngine):
    """Template that opens every conversation with a marker and, when the
    first turn is not a system turn, a default system block."""

    def render_template(self, model, template_name, turns, want_continuation):
        self.rendered.append((tuple(turns), want_continuation))
        out = "<bos>"
        if not turns or turns[0].role != "system":
            out += "[system]default|"
        out += "".join(f"[{t.role}]{t.text}|" for t in turns)
        if want_continuation:
            out += "[assistant]"
        return out


def _reply(text: str, *, end_token_id=None, folded=False) -> GenerationResult:
    return GenerationResult(
        state=GenerationState.DONE,
        token_ids=encode(text),
        text=text,
        end_token_id=end_token_id,
        end_token_folded=folded,
    )


def test_each_turn_evaluates_only_the_new_part_of_the_conversation():
    engine = _TaggedEngine()
    renderer, session = _renderer(engine, n_ctx=128)

    renderer.evaluate([ChatTurn(role="system", text="sys")], is_continuation=False)
    renderer.evaluate([ChatTurn(role="user", text="hi")], is_continuation=True)
    renderer._evaluator.evaluate(encode("yo"), 1)
    renderer.close_reply(_reply("yo"))
    renderer.evaluate([ChatTurn(role="user", text="ok")], is_continuation=True)

    assert [call[0] for call in engine.tokenize_calls] == [
        "<bos>[system]sys|",
        "[user]hi|[assistant]",
        "|",
        "[user]ok|[assistant]",
    ]
    whole = engine.render_template(
        None,
        None,
        [
            ChatTurn(role="system", text="sys"),
            ChatTurn(role="user", text="hi"),
            ChatTurn(role="assistant", text="yo"),
            ChatTurn(role="user", text="ok"),
        ],
        True,
    )
    evaluated = [tok for chunk, _ in engine.decode_calls for tok in chunk]
    assert evaluated == [BOS] + encode(whole)
    assert session.consumed_tokens == len(evaluated)
    assert "default" not in whole
    assert [t.role for t in renderer.history] == ["system", "user", "assistant", "user"]


def test_folded_end_token_is_not_evaluated_twice():
    engine = _TaggedEngine()
    renderer, session = _renderer(engine)
    renderer.evaluate([ChatTurn(role="system", text="s")], is_continuation=False)
    renderer.evaluate([ChatTurn(role="user", text="q")], is_continuation=True)
    end_token = encode("|")[0]
    renderer._evaluator.evaluate(encode("a") + [end_token], 1)
    before = session.consumed_tokens

    closing = renderer.close_reply(_reply("a", end_token_id=end_token, folded=True))

    assert closing == "|"
    assert session.consumed_tokens == before


def test_cancelled_reply_is_closed_with_the_partial_text():
    engine = _TaggedEngine()
    renderer, _ = _renderer(engine)
    renderer.evaluate([ChatTurn(role="system", text="s")], is_continuation=False)
    renderer.evaluate([ChatTurn(role="user", text="q")], is_continuation=True)
    renderer._evaluator.evaluate(encode("ab"), 1)

    renderer.close_reply(GenerationResult(state=GenerationState.CANCELLED, text="ab"))

    assert renderer.history[-1] == ChatTurn(role="assistant", text="ab")
    assert engine.tokenize_calls[-1][0] == "|"
