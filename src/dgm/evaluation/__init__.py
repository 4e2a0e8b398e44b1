"""
Evaluation Layer

Benchmark scoring for candidate revisions:
- Benchmarks with named subsets and deterministic sampling
- Bounded-concurrency evaluator with per-instance timeouts
- Staged evaluation (small subset first, then the rest)
"""

from dgm.evaluation.benchmark import Benchmark, BenchmarkInstance
from dgm.evaluation.evaluator import (
    AGENT_OUTPUT_FILE,
    CHAT_HISTORY_FILE,
    PATCH_FILE,
    TEST_OUTPUT_FILE,
    Evaluator,
)

__all__ = [
    # Benchmarks
    "Benchmark",
    "BenchmarkInstance",
    # Evaluator
    "Evaluator",
    "AGENT_OUTPUT_FILE",
    "CHAT_HISTORY_FILE",
    "PATCH_FILE",
    "TEST_OUTPUT_FILE",
]
