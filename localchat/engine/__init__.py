# Chat session core
#
# This package drives a local inference engine through a chat session:
# the engine contract lives in adapters/, everything else is backend-agnostic.
#
# Key components:
#   - adapters/       Inference engine contract + backends
#   - registry.py     Maps backend names to engine classes
#   - types.py        Turns, parameters, decode results, timings
#   - session.py      Session state, interrupt flag, engine handles
#   - context.py      Context-window accounting
#   - evaluator.py    Batched evaluation into the context window
#   - renderer.py     Chat turn -> template -> tokens -> context
#   - generation.py   Sampling / streaming loop
