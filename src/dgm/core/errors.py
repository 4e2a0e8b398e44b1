"""
Error Taxonomy

Every failure the orchestration loop distinguishes has its own exception type.
Where an error is caught decides its blast radius:

- TransientServiceError: retried with backoff, then fails the attempt
- SandboxError: never retried, fails the attempt
- AgentLogicError: fed back to the model when recoverable, else fails the attempt
- ArchiveIntegrityError: fatal to the whole run
- ConfigurationError: fatal at setup
"""

from __future__ import annotations


class DgmError(Exception):
    """Base class for all dgm errors."""


class ConfigurationError(DgmError):
    """Invalid settings or missing credentials."""


class TransientServiceError(DgmError):
    """A model provider call failed in a way that may succeed on retry."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderError(DgmError):
    """A model provider rejected the request. Not retried."""


class SandboxError(DgmError):
    """Sandbox or infrastructure failure (process spawn, docker, git)."""


class AgentLogicError(DgmError):
    """The agent did something invalid."""


class ToolError(AgentLogicError):
    """A tool call could not be carried out. Reported back to the model."""


class PatchApplyError(AgentLogicError):
    """A patch does not apply cleanly to a checkout."""


class DiagnosisError(AgentLogicError):
    """No usable self-improvement problem statement could be produced."""


class ArchiveIntegrityError(DgmError):
    """The archive is corrupt or its lineage is inconsistent."""


class DuplicateIdError(ArchiveIntegrityError):
    """A candidate with the same id is already archived."""

    def __init__(self, candidate_id: str):
        super().__init__(f"Candidate already archived: {candidate_id}")
        self.candidate_id = candidate_id


class BrokenLineageError(ArchiveIntegrityError):
    """A candidate's parent is missing or its generation does not follow it."""
