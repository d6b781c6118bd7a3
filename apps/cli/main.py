"""`localchat`: interactive chat with a local language model.

This is the CLI entrypoint. Run from source with:
  `python -m apps.cli.main --model <path-or-repo> --help`
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Sequence

from localchat import __version__
from localchat.engine.registry import get_engine, list_backends

from apps.cli.chat_repl import EXIT_BAD_ARGS, chat_repl
from apps.cli.config import ConfigError, load_config, merge_overrides
from apps.cli.output import configure_logging


class _ArgumentParser(argparse.ArgumentParser):
    """Argument errors exit with status 1 (argparse defaults to 2, which means
    "model load failure" here)."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(EXIT_BAD_ARGS, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    p = _ArgumentParser(prog="localchat", description="Chat with a local language model")
    p.add_argument("--version", action="version", version=f"localchat {__version__}")
    p.add_argument("-m", "--model", help="Model path or HF repo id")
    p.add_argument(
        "-c",
        "--ctx-size",
        dest="ctx_size",
        type=int,
        default=None,
        help="Context window in tokens; 0 uses the model's trained window (default: 4096)",
    )
    p.add_argument(
        "-b",
        "--batch-size",
        dest="batch_size",
        type=int,
        default=None,
        help="Maximum tokens per prompt evaluation batch (default: 512)",
    )
    p.add_argument(
        "-p",
        "--prompt",
        dest="system_prompt",
        default=None,
        help="System prompt",
    )
    p.add_argument(
        "--chat-template",
        default=None,
        help="Chat template: a built-in name (chatml) or a Jinja template (default: the model's own)",
    )
    p.add_argument("--temp", dest="temperature", type=float, default=None, help="Sampling temperature (default: 0.8)")
    p.add_argument("--top-k", type=int, default=None, help="Top-k sampling, 0 disables (default: 40)")
    p.add_argument("--top-p", type=float, default=None, help="Top-p (nucleus) sampling (default: 0.95)")
    p.add_argument("--repeat-penalty", type=float, default=None, help="Repetition penalty (default: 1.0)")
    p.add_argument(
        "--repeat-last-n",
        type=int,
        default=None,
        help="Tokens of history the repetition penalty looks at (default: 64)",
    )
    p.add_argument("--seed", type=int, default=None, help="Sampling seed (default: random)")
    p.add_argument(
        "--special",
        action="store_true",
        default=None,
        help="Print control tokens and the rendered system prompt",
    )
    p.add_argument(
        "--no-fold-eog",
        dest="fold_end_token",
        action="store_false",
        default=None,
        help="Do not evaluate the end-of-generation token into context after a reply",
    )
    p.add_argument("--device", default=None, help="Torch device, or auto (default: auto)")
    p.add_argument(
        "--dtype",
        choices=["float16", "bfloat16", "float32"],
        default=None,
        help="Model dtype (default: the checkpoint's)",
    )
    p.add_argument(
        "--backend",
        choices=list_backends(),
        default=None,
        help="Inference engine backend (default: transformers)",
    )
    p.add_argument("--config", type=Path, default=None, help="Config file (default: ~/.config/localchat/config.json)")
    p.add_argument("--verbose", action="store_true", help="Show engine logs")
    return p


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(sys.argv[1:]) if argv is None else list(argv))

    try:
        config = load_config(path=args.config)
    except ConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_BAD_ARGS

    # Resolve options: flag > config file > default
    config = merge_overrides(config, vars(args))

    if not config.model:
        parser.error("a model is required (pass --model or set 'model' in the config file)")
    if config.ctx_size < 0:
        parser.error(f"--ctx-size must be >= 0, got {config.ctx_size}")
    if config.backend not in list_backends():
        parser.error(f"unknown backend {config.backend!r} (available: {', '.join(list_backends())})")
    if config.batch_size < 1:
        parser.error(f"--batch-size must be >= 1, got {config.batch_size}")

    configure_logging(verbose=bool(args.verbose))
    engine = get_engine(config.backend)
    return chat_repl(engine=engine, config=config)


if __name__ == "__main__":
    raise SystemExit(main())
