"""
Evolution Layer

Everything that persists or transforms candidates:
- Archive of evaluated candidates with lineage and metrics
- Parent selection and archive update strategy
- Git-backed patch store for candidate revisions
- Sandboxed execution for untrusted candidate code
"""

from dgm.evolution.archive import (
    ROOT_ID,
    Archive,
    Candidate,
    InstanceOutcome,
    PerformanceMetrics,
)
from dgm.evolution.repository import Repository
from dgm.evolution.sandbox import (
    ExecutionResult,
    Sandbox,
    SandboxConfig,
    SandboxType,
)
from dgm.evolution.strategy import (
    SOLVE_EMPTY_PATCHES,
    SOLVE_STOCHASTICITY,
    EvolutionStrategy,
    SelfImproveAssignment,
)

__all__ = [
    # Archive
    "ROOT_ID",
    "Archive",
    "Candidate",
    "InstanceOutcome",
    "PerformanceMetrics",
    # Repository
    "Repository",
    # Sandbox
    "ExecutionResult",
    "Sandbox",
    "SandboxConfig",
    "SandboxType",
    # Strategy
    "SOLVE_EMPTY_PATCHES",
    "SOLVE_STOCHASTICITY",
    "EvolutionStrategy",
    "SelfImproveAssignment",
]
