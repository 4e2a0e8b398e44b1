"""
DGM - Darwin Gödel Machine

Open-ended self-improvement of a coding agent: the agent rewrites its own
source, each variant is scored on a coding benchmark, and every evaluated
variant is kept in an archive that later generations branch from.

Layers:
- core: configuration, errors, logging
- llm: model providers and retry
- tools: bash and editor tools for the agent
- agent: the tool-use loop and self-improvement diagnosis
- evolution: archive, selection strategy, git patch store, sandbox
- evaluation: benchmarks and the candidate evaluator
- runner: self-improvement workers and the generation loop
"""

__version__ = "0.1.0"
