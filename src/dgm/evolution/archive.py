"""
Evolution Archive

Durable record of every evaluated candidate, its lineage and its benchmark
performance. History is never deleted: the update step can only flip a
candidate's `active` flag, which controls whether it may be chosen as a
parent.

The snapshot written by `save()` is the run's only crash-recovery boundary.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator

import structlog

from dgm.core.errors import (
    ArchiveIntegrityError,
    BrokenLineageError,
    DuplicateIdError,
)

logger = structlog.get_logger(__name__)

SNAPSHOT_VERSION = "1.0"
ROOT_ID = "initial"


class InstanceOutcome(str, Enum):
    """Verdict for one benchmark instance."""
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"


@dataclass
class PerformanceMetrics:
    """
    Benchmark performance of one candidate.

    `accuracy` is passed / `total_instances`. Instances that were never
    attempted are absent from `per_instance` and count as failed.
    """

    accuracy: float = 0.0
    per_instance: dict[str, InstanceOutcome] = field(default_factory=dict)
    total_instances: int = 0
    compiled: bool = False

    # Scored on a sample rather than the full benchmark
    approximate: bool = False

    @classmethod
    def from_outcomes(
        cls,
        outcomes: dict[str, InstanceOutcome],
        total_instances: int,
        approximate: bool = False,
    ) -> PerformanceMetrics:
        """Aggregate per-instance verdicts. Order independent."""
        if len(outcomes) > total_instances:
            raise ValueError(
                f"{len(outcomes)} outcomes for a benchmark of {total_instances} instances"
            )
        passed = sum(1 for o in outcomes.values() if o == InstanceOutcome.PASS)
        return cls(
            accuracy=passed / total_instances if total_instances else 0.0,
            per_instance=dict(outcomes),
            total_instances=total_instances,
            compiled=passed > 0,
            approximate=approximate,
        )

    @property
    def resolved_ids(self) -> list[str]:
        return [i for i, o in self.per_instance.items() if o == InstanceOutcome.PASS]

    @property
    def unresolved_ids(self) -> list[str]:
        return [i for i, o in self.per_instance.items() if o == InstanceOutcome.FAIL]

    @property
    def error_ids(self) -> list[str]:
        return [i for i, o in self.per_instance.items() if o == InstanceOutcome.ERROR]

    @property
    def attempted(self) -> int:
        return len(self.per_instance)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "accuracy": self.accuracy,
            "perInstance": {k: v.value for k, v in self.per_instance.items()},
            "totalInstances": self.total_instances,
            "compiled": self.compiled,
            "approximate": self.approximate,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PerformanceMetrics:
        """Create from dictionary."""
        return cls(
            accuracy=float(data.get("accuracy", 0.0)),
            per_instance={
                k: InstanceOutcome(v) for k, v in data.get("perInstance", {}).items()
            },
            total_instances=int(data.get("totalInstances", 0)),
            compiled=bool(data.get("compiled", False)),
            approximate=bool(data.get("approximate", False)),
        )

    @classmethod
    def merge(cls, runs: list[PerformanceMetrics]) -> PerformanceMetrics:
        """
        Combine repeated evaluations of the same revision.

        Accuracy is the mean over runs. Each instance keeps the verdict it
        reached in at least half of the runs that attempted it, preferring
        `pass`, then `fail`, then `error`.
        """
        if not runs:
            raise ValueError("No evaluation runs to merge")
        if len(runs) == 1:
            return runs[0]

        verdicts: dict[str, list[InstanceOutcome]] = {}
        for run in runs:
            for instance_id, outcome in run.per_instance.items():
                verdicts.setdefault(instance_id, []).append(outcome)

        per_instance: dict[str, InstanceOutcome] = {}
        for instance_id, outcomes in verdicts.items():
            for verdict in (InstanceOutcome.PASS, InstanceOutcome.FAIL):
                if outcomes.count(verdict) * 2 >= len(outcomes):
                    per_instance[instance_id] = verdict
                    break
            else:
                per_instance[instance_id] = InstanceOutcome.ERROR

        accuracy = sum(r.accuracy for r in runs) / len(runs)
        return cls(
            accuracy=accuracy,
            per_instance=per_instance,
            total_instances=max(r.total_instances for r in runs),
            compiled=accuracy > 0,
            approximate=any(r.approximate for r in runs),
        )


@dataclass
class Candidate:
    """
    One evaluated variant of the agent.

    `parent_id` is a lookup key into the same archive, never an owning
    reference.
    """

    id: str
    code_revision: str
    parent_id: str | None = None
    generation: int = 0

    metrics: PerformanceMetrics | None = None

    # Eligible as a parent
    active: bool = True

    # What the producing attempt was asked to fix
    entry: str = ""
    problem_statement: str = ""

    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    @property
    def accuracy(self) -> float:
        return self.metrics.accuracy if self.metrics else 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "parentId": self.parent_id,
            "generation": self.generation,
            "codeRevision": self.code_revision,
            "metrics": self.metrics.to_dict() if self.metrics else None,
            "active": self.active,
            "entry": self.entry,
            "problemStatement": self.problem_statement,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Candidate:
        """Create from dictionary."""
        metrics = data.get("metrics")
        return cls(
            id=data["id"],
            parent_id=data.get("parentId"),
            generation=int(data.get("generation", 0)),
            code_revision=data["codeRevision"],
            metrics=PerformanceMetrics.from_dict(metrics) if metrics else None,
            active=bool(data.get("active", True)),
            entry=data.get("entry", ""),
            problem_statement=data.get("problemStatement", ""),
            created_at=datetime.fromisoformat(data["createdAt"]),
        )


class Archive:
    """
    Evolution Archive - insertion-ordered store of every evaluated candidate.

    Only the run loop mutates the archive, and only between generations.
    Workers read nothing from it but the parent they were handed.

    Example:
        ```python
        archive = Archive(storage_path="output_dgm/run/archive.json")
        await archive.load()

        archive.append(Candidate(id="initial", code_revision=sha, metrics=m))
        pool = archive.parents_pool()

        archive.generation = 1
        await archive.save()
        ```
    """

    def __init__(self, storage_path: str | Path | None = None):
        """
        Initialize the archive.

        Args:
            storage_path: Path of the JSON snapshot
        """
        self.storage_path = Path(storage_path) if storage_path else None

        # Last fully committed generation
        self.generation = 0

        self._candidates: dict[str, Candidate] = {}
        self._children: dict[str, int] = {}
        self._save_lock = asyncio.Lock()

    def append(self, candidate: Candidate) -> None:
        """
        Add a candidate.

        Raises:
            DuplicateIdError: The id is already archived
            BrokenLineageError: Unknown parent, or generation != parent's + 1
        """
        if candidate.id in self._candidates:
            raise DuplicateIdError(candidate.id)

        if candidate.parent_id is None:
            if candidate.generation != 0:
                raise BrokenLineageError(
                    f"Root candidate {candidate.id} must have generation 0, "
                    f"got {candidate.generation}"
                )
        else:
            parent = self._candidates.get(candidate.parent_id)
            if parent is None:
                raise BrokenLineageError(
                    f"Parent {candidate.parent_id} of {candidate.id} is not archived"
                )
            if candidate.generation != parent.generation + 1:
                raise BrokenLineageError(
                    f"Candidate {candidate.id} has generation {candidate.generation}, "
                    f"expected {parent.generation + 1}"
                )
            self._children[parent.id] = self._children.get(parent.id, 0) + 1

        self._candidates[candidate.id] = candidate

        logger.debug(
            "Archived candidate",
            id=candidate.id,
            parent=candidate.parent_id,
            generation=candidate.generation,
            accuracy=candidate.accuracy,
            active=candidate.active,
        )

    def parents_pool(
        self,
        filter: Callable[[Candidate], bool] | None = None,
    ) -> list[Candidate]:
        """
        Active, evaluated candidates eligible as parents, in insertion order.

        Args:
            filter: Optional extra predicate
        """
        return [
            c for c in self._candidates.values()
            if c.active and c.metrics is not None and (filter is None or filter(c))
        ]

    def mark_inactive(self, candidate_id: str) -> None:
        """Exclude a candidate from future parent selection."""
        self._require(candidate_id).active = False

    def mark_active(self, candidate_id: str) -> None:
        """Make a candidate eligible for parent selection."""
        self._require(candidate_id).active = True

    def children_count(self, candidate_id: str) -> int:
        """Number of archived candidates whose parent is `candidate_id`."""
        return self._children.get(candidate_id, 0)

    def get(self, candidate_id: str) -> Candidate | None:
        """Get a candidate by id."""
        return self._candidates.get(candidate_id)

    def by_generation(self, generation: int) -> list[Candidate]:
        """Candidates of a given lineage depth."""
        return [c for c in self._candidates.values() if c.generation == generation]

    def lineage(self, candidate_id: str) -> list[Candidate]:
        """The candidate followed by its ancestors up to the root."""
        chain: list[Candidate] = []
        current = self.get(candidate_id)
        while current is not None:
            chain.append(current)
            current = self.get(current.parent_id) if current.parent_id else None
        return chain

    def _require(self, candidate_id: str) -> Candidate:
        candidate = self._candidates.get(candidate_id)
        if candidate is None:
            raise KeyError(candidate_id)
        return candidate

    def to_dict(self) -> dict[str, Any]:
        """Snapshot contents."""
        return {
            "version": SNAPSHOT_VERSION,
            "savedAt": datetime.utcnow().isoformat(),
            "generation": self.generation,
            "candidates": [c.to_dict() for c in self._candidates.values()],
        }

    async def load(self) -> None:
        """
        Replace the contents with the snapshot at `storage_path`.

        A missing file leaves the archive empty.

        Raises:
            ArchiveIntegrityError: Unreadable snapshot or inconsistent lineage
        """
        if not self.storage_path or not self.storage_path.exists():
            return

        try:
            with open(self.storage_path, encoding="utf-8") as f:
                data = json.load(f)
            candidates = [Candidate.from_dict(c) for c in data["candidates"]]
            generation = int(data.get("generation", 0))
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise ArchiveIntegrityError(
                f"Corrupt archive snapshot {self.storage_path}: {e}"
            ) from e

        self._candidates = {}
        self._children = {}
        for candidate in candidates:
            # Snapshots are written in insertion order, so parents come first
            self.append(candidate)
        self.generation = generation

        logger.info(
            "Archive loaded",
            path=str(self.storage_path),
            candidates=len(self._candidates),
            generation=self.generation,
        )

    async def save(self) -> None:
        """
        Atomically write the snapshot to `storage_path`.

        The snapshot is written to a temp file in the same directory, flushed
        to disk, then renamed over the previous one.
        """
        if not self.storage_path:
            return

        async with self._save_lock:
            payload = json.dumps(self.to_dict(), indent=2)
            await asyncio.to_thread(self._atomic_write, self.storage_path, payload)

        logger.debug("Archive saved", candidates=len(self._candidates), generation=self.generation)

    @staticmethod
    def _atomic_write(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, path)
        except BaseException:
            Path(temp_path).unlink(missing_ok=True)
            raise

    def get_stats(self) -> dict[str, Any]:
        """Get archive statistics."""
        evaluated = [c for c in self._candidates.values() if c.metrics is not None]
        active = [c for c in evaluated if c.active]
        best = max(evaluated, key=lambda c: c.accuracy, default=None)

        return {
            "total_candidates": len(self._candidates),
            "active": len(active),
            "inactive": len(self._candidates) - len(active),
            "generation": self.generation,
            "best_id": best.id if best else None,
            "best_accuracy": best.accuracy if best else 0.0,
            "max_depth": max((c.generation for c in self._candidates.values()), default=0),
        }

    @property
    def candidates(self) -> list[Candidate]:
        """Get all candidates in insertion order."""
        return list(self._candidates.values())

    def __len__(self) -> int:
        return len(self._candidates)

    def __iter__(self) -> Iterator[Candidate]:
        return iter(list(self._candidates.values()))

    def __contains__(self, candidate_id: object) -> bool:
        return candidate_id in self._candidates
