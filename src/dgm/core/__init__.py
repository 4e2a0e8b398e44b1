"""
Core Layer

Configuration, error taxonomy and logging shared by every other layer.
"""

from dgm.core.config import (
    AgentConfig,
    ApiCredentials,
    ArchiveUpdate,
    BenchmarkName,
    DgmConfig,
    EvaluationConfig,
    EvolutionConfig,
    ParentSelection,
    SandboxSettings,
)
from dgm.core.errors import (
    AgentLogicError,
    ArchiveIntegrityError,
    BrokenLineageError,
    ConfigurationError,
    DgmError,
    DiagnosisError,
    DuplicateIdError,
    PatchApplyError,
    ProviderError,
    SandboxError,
    ToolError,
    TransientServiceError,
)
from dgm.core.logging import configure_logging

__all__ = [
    # Config
    "AgentConfig",
    "ApiCredentials",
    "ArchiveUpdate",
    "BenchmarkName",
    "DgmConfig",
    "EvaluationConfig",
    "EvolutionConfig",
    "ParentSelection",
    "SandboxSettings",
    # Errors
    "AgentLogicError",
    "ArchiveIntegrityError",
    "BrokenLineageError",
    "ConfigurationError",
    "DgmError",
    "DiagnosisError",
    "DuplicateIdError",
    "PatchApplyError",
    "ProviderError",
    "SandboxError",
    "ToolError",
    "TransientServiceError",
    # Logging
    "configure_logging",
]
