"""
Benchmarks

A benchmark is a named set of instances plus named subsets, stored as

    <benchmarks_dir>/<name>/instances.json
    <benchmarks_dir>/<name>/subsets/small.json
    <benchmarks_dir>/<name>/subsets/medium.json

`instances.json` is a list of instance objects; subset files are lists of
instance ids.
"""

from __future__ import annotations

import json
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from dgm.core.errors import ConfigurationError

logger = structlog.get_logger(__name__)

SUBSET_NAMES = ("small", "medium")


@dataclass(frozen=True)
class BenchmarkInstance:
    """
    One benchmark task.

    Instances without `repo_path` are self-evaluation instances: the test
    command runs directly in the candidate's checkout.
    """
    instance_id: str
    problem_statement: str
    base_revision: str = "HEAD"
    test_command: str = "pytest -q"
    repo_path: str | None = None
    test_description: str | None = None
    pass_pattern: str | None = None

    @property
    def is_self_eval(self) -> bool:
        return self.repo_path is None

    @classmethod
    def from_dict(cls, data: dict[str, Any], root: Path | None = None) -> BenchmarkInstance:
        """Create from an `instances.json` entry; relative repo paths resolve against `root`."""
        repo_path = data.get("repo_path") or data.get("repoPath")
        if repo_path is not None and root is not None and not Path(repo_path).is_absolute():
            repo_path = str((root / repo_path).resolve())

        return cls(
            instance_id=str(data["instance_id"]),
            problem_statement=data.get("problem_statement", ""),
            base_revision=data.get("base_revision", "HEAD"),
            test_command=data.get("test_command", "pytest -q"),
            repo_path=repo_path,
            test_description=data.get("test_description"),
            pass_pattern=data.get("pass_pattern"),
        )


@dataclass
class Benchmark:
    """A named instance set with named subsets."""
    name: str
    instances: dict[str, BenchmarkInstance]
    subsets: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def load(cls, root: str | Path, name: str) -> Benchmark:
        """
        Load a benchmark from disk.

        Raises:
            ConfigurationError: Missing or malformed benchmark files
        """
        base = Path(root) / name
        instances_file = base / "instances.json"
        if not instances_file.exists():
            raise ConfigurationError(f"Benchmark instances not found: {instances_file}")

        try:
            raw = json.loads(instances_file.read_text(encoding="utf-8"))
            instances = [BenchmarkInstance.from_dict(item, root=base) for item in raw]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise ConfigurationError(f"Malformed benchmark file {instances_file}: {e}") from e

        by_id: dict[str, BenchmarkInstance] = {}
        for instance in instances:
            if instance.instance_id in by_id:
                raise ConfigurationError(f"Duplicate instance id in {instances_file}: {instance.instance_id}")
            by_id[instance.instance_id] = instance

        subsets: dict[str, list[str]] = {}
        for subset in SUBSET_NAMES:
            subset_file = base / "subsets" / f"{subset}.json"
            if not subset_file.exists():
                continue
            try:
                ids = [str(i) for i in json.loads(subset_file.read_text(encoding="utf-8"))]
            except (json.JSONDecodeError, TypeError) as e:
                raise ConfigurationError(f"Malformed subset file {subset_file}: {e}") from e
            unknown = [i for i in ids if i not in by_id]
            if unknown:
                raise ConfigurationError(f"Subset {subset} references unknown instances: {unknown[:5]}")
            subsets[subset] = ids

        logger.info(
            "Benchmark loaded",
            benchmark=name,
            instances=len(by_id),
            subsets={k: len(v) for k, v in subsets.items()},
        )
        return cls(name=name, instances=by_id, subsets=subsets)

    @property
    def instance_ids(self) -> list[str]:
        return list(self.instances)

    def get(self, instance_id: str) -> BenchmarkInstance | None:
        return self.instances.get(instance_id)

    def subset(self, name: str) -> list[str]:
        """Ids of a named subset; the whole benchmark if the subset is not defined."""
        return list(self.subsets.get(name, self.instance_ids))

    def sample(self, size: int, seed: int = 0) -> list[str]:
        """
        Deterministic sample of instance ids.

        The same benchmark name, instance set and seed always give the same
        sample.
        """
        ids = sorted(self.instances)
        if size >= len(ids):
            return ids
        rng = random.Random(f"{self.name}:{seed}")
        return sorted(rng.sample(ids, size))

    def __len__(self) -> int:
        return len(self.instances)
