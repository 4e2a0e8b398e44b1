"""
Runner Layer

Orchestration of a DGM run:
- Self-improvement workers (diagnose, modify, commit, evaluate)
- Generation loop with bounded worker concurrency
- Snapshot persistence and resume
"""

from dgm.runner.runner import ARCHIVE_FILE, METADATA_LOG, DgmRunner, GenerationReport
from dgm.runner.worker import (
    AttemptStatus,
    SelfImproveAttempt,
    SelfImproveWorker,
    new_attempt_id,
)

__all__ = [
    # Runner
    "DgmRunner",
    "GenerationReport",
    "ARCHIVE_FILE",
    "METADATA_LOG",
    # Worker
    "AttemptStatus",
    "SelfImproveAttempt",
    "SelfImproveWorker",
    "new_attempt_id",
]
