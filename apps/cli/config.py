from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any


CONFIG_SCHEMA_VERSION = 1

DEFAULT_SYSTEM_PROMPT = (
    "A chat between a curious human and an artificial intelligence assistant. The "
    "assistant gives helpful, detailed, and polite answers to the human's questions."
)


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class ChatConfig:
    model: str | None = None
    backend: str = "transformers"
    device: str = "auto"
    dtype: str | None = None

    # Context window; 0 means the model's trained window.
    ctx_size: int = 4096
    batch_size: int = 512

    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    chat_template: str | None = None

    temperature: float = 0.8
    top_k: int = 40
    top_p: float = 0.95
    repeat_penalty: float = 1.0
    repeat_last_n: int = 64
    seed: int | None = None

    # Print control tokens and the rendered system prompt.
    special: bool = False
    # Evaluate the end-of-generation token into context after each reply.
    fold_end_token: bool = True


# field name -> (accepted types, nullable)
_FIELD_TYPES: dict[str, tuple[tuple[type, ...], bool]] = {
    "model": ((str,), True),
    "backend": ((str,), False),
    "device": ((str,), False),
    "dtype": ((str,), True),
    "ctx_size": ((int,), False),
    "batch_size": ((int,), False),
    "system_prompt": ((str,), False),
    "chat_template": ((str,), True),
    "temperature": ((int, float), False),
    "top_k": ((int,), False),
    "top_p": ((int, float), False),
    "repeat_penalty": ((int, float), False),
    "repeat_last_n": ((int,), False),
    "seed": ((int,), True),
    "special": ((bool,), False),
    "fold_end_token": ((bool,), False),
}


def config_dir() -> Path:
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg_config_home) if xdg_config_home else (Path.home() / ".config")
    return base / "localchat"


def config_path(*, base_dir: Path | None = None) -> Path:
    return (base_dir or config_dir()) / "config.json"


def history_path(*, base_dir: Path | None = None) -> Path:
    return (base_dir or config_dir()) / "chat_history"


def _check_value(name: str, value: Any, p: Path) -> Any:
    types, nullable = _FIELD_TYPES[name]
    if value is None:
        if nullable:
            return None
        raise ConfigError(f"'{name}' must not be null in {p}")
    # bool is an int subclass; only accept it where a bool is expected.
    if isinstance(value, bool) and bool not in types:
        raise ConfigError(f"'{name}' has the wrong type in {p}")
    if not isinstance(value, types):
        raise ConfigError(f"'{name}' has the wrong type in {p}")
    if float in types:
        return float(value)
    return value


def load_config(*, path: Path | None = None) -> ChatConfig:
    """Load `config.json`; a missing file yields the defaults."""
    p = path or config_path()
    if not p.exists():
        return ChatConfig()

    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Failed to read config file: {p}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file must contain a JSON object: {p}")

    version = raw.get("schema_version", CONFIG_SCHEMA_VERSION)
    if version != CONFIG_SCHEMA_VERSION:
        raise ConfigError(f"Unsupported config schema_version={version!r} in {p}")

    values: dict[str, Any] = {}
    for key, value in raw.items():
        if key == "schema_version":
            continue
        if key not in _FIELD_TYPES:
            raise ConfigError(f"Unknown config key {key!r} in {p}")
        values[key] = _check_value(key, value, p)
    return ChatConfig(**values)


def merge_overrides(config: ChatConfig, overrides: dict[str, Any]) -> ChatConfig:
    """Apply non-None overrides (e.g. parsed command-line flags)."""
    known = {f.name for f in fields(ChatConfig)}
    changes = {k: v for k, v in overrides.items() if k in known and v is not None}
    return replace(config, **changes)
