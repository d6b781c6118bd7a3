# Inference engine backends
#
# Each backend implements a common interface for:
#   - Loading model + tokenizer, creating contexts
#   - Decoding token batches at explicit positions
#   - Sampling, detokenizing, rendering chat templates
#   - Reporting timings
#
# The session core uses backends only through this interface.

from .base import BaseEngine, ContextCreationError, EngineError, ModelLoadError

__all__ = ["BaseEngine", "ContextCreationError", "EngineError", "ModelLoadError"]
