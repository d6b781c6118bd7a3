"""Backend name -> engine class lookup used by the CLI's `--backend` flag."""

from typing import Type

from .adapters.base import BaseEngine
from .adapters.hf import TransformersEngine

DEFAULT_BACKEND = "transformers"

_BACKENDS: dict[str, Type[BaseEngine]] = {
    DEFAULT_BACKEND: TransformersEngine,
}


def get_engine(backend: str = DEFAULT_BACKEND) -> BaseEngine:
    """Instantiate the engine registered under `backend`.

    Engines are cheap to construct; model weights are only loaded by
    `BaseEngine.load_model`.

    Raises:
        ValueError: `backend` is not registered.
    """
    try:
        engine_cls = _BACKENDS[backend]
    except KeyError:
        raise ValueError(f"no engine backend named {backend!r} (known: {', '.join(list_backends())})") from None
    return engine_cls()


def register_engine(backend: str, engine_cls: Type[BaseEngine]) -> None:
    # Re-registering a name replaces the previous class.
    _BACKENDS[backend] = engine_cls


def list_backends() -> list[str]:
    return sorted(_BACKENDS)
