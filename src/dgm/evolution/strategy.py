"""
Evolution Strategy

Chooses which archived candidates get to breed each generation, what each
attempt should work on, and which evaluated children stay eligible as
parents afterwards.

All randomness comes from the strategy's own seeded generator, so a run's
selections are reproducible from its seed.
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from dgm.core.config import ArchiveUpdate, BenchmarkName, ParentSelection, RunBaseline
from dgm.evolution.archive import Archive, Candidate

if TYPE_CHECKING:
    from dgm.core.config import EvaluationConfig, EvolutionConfig

logger = structlog.get_logger(__name__)

# Entries that are themes rather than benchmark instance ids
SOLVE_EMPTY_PATCHES = "solve_empty_patches"
SOLVE_STOCHASTICITY = "solve_stochasticity"


@dataclass
class SelfImproveAssignment:
    """A parent and the entry its self-improvement attempt should address."""

    parent: Candidate
    entry: str


class EvolutionStrategy:
    """
    Parent selection and archive update policy.

    Parent selection:
    - uniform: uniform choice per worker slot
    - score_prop: weight sigmoid(10 * (accuracy - 0.5))
    - score_child_prop: weight max(floor, accuracy) / (1 + children)
    - best_only: the highest scorer, earliest created on ties

    The no_darwin baseline replaces all of these with the most recently
    added active candidate.

    The weighted methods sample without replacement per worker slot and
    refill the pool once every candidate has been drawn.

    Archive update:
    - keep_all: every compiled child becomes active
    - keep_better: a compiled child becomes active, taking over from its
      parent, only when it scores at least as well as the parent

    Example:
        ```python
        strategy = EvolutionStrategy(
            selection=ParentSelection.SCORE_CHILD_PROP,
            update=ArchiveUpdate.KEEP_BETTER,
            seed=42,
        )
        assignments = strategy.select_assignments(archive, count=4)
        ...
        accepted = strategy.update_archive(archive, children)
        ```
    """

    def __init__(
        self,
        selection: ParentSelection | str = ParentSelection.SCORE_CHILD_PROP,
        update: ArchiveUpdate | str = ArchiveUpdate.KEEP_ALL,
        seed: int = 0,
        score_floor: float = 1e-3,
        noise_leeway: float = 0.0,
        run_baseline: RunBaseline | str | None = None,
        polyglot: bool = False,
    ):
        """
        Initialize the strategy.

        Args:
            selection: Parent selection method
            update: Archive update method
            seed: Seed of the strategy's private random generator
            score_floor: Minimum accuracy used for score_child_prop weights
            noise_leeway: Approximate scores this close compare as equal
            run_baseline: Ablation replacing parent selection
            polyglot: Entries are always instance ids, never themes
        """
        self.selection = ParentSelection(selection)
        self.update = ArchiveUpdate(update)
        self.seed = seed
        self.score_floor = score_floor
        self.noise_leeway = noise_leeway
        self.run_baseline = RunBaseline(run_baseline) if run_baseline is not None else None
        self.polyglot = polyglot

        self._rng = random.Random(seed)

    @classmethod
    def from_config(
        cls,
        evolution: EvolutionConfig,
        evaluation: EvaluationConfig,
    ) -> EvolutionStrategy:
        """Create from run config."""
        return cls(
            selection=evolution.choose_selfimproves_method,
            update=evolution.update_archive,
            seed=evolution.seed,
            score_floor=evolution.score_floor,
            noise_leeway=evaluation.eval_noise,
            run_baseline=evolution.run_baseline,
            polyglot=evaluation.benchmark == BenchmarkName.POLYGLOT,
        )

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    def compare(self, a: Candidate, b: Candidate) -> int:
        """
        Compare two candidates' scores.

        Returns 1, 0 or -1. Scores within `noise_leeway` of each other are
        equal when either of them is approximate; exact scores compare
        strictly.
        """
        diff = a.accuracy - b.accuracy
        approximate = bool(
            (a.metrics and a.metrics.approximate) or (b.metrics and b.metrics.approximate)
        )
        if approximate and abs(diff) <= self.noise_leeway:
            return 0
        if diff > 0:
            return 1
        if diff < 0:
            return -1
        return 0

    # ------------------------------------------------------------------
    # Parent selection
    # ------------------------------------------------------------------

    def select_parents(self, archive: Archive, count: int) -> list[Candidate]:
        """
        Choose `count` parents from the archive's parent pool.

        Returns an empty list when the pool is empty.
        """
        pool = archive.parents_pool()
        if not pool or count <= 0:
            return []

        if self.run_baseline == RunBaseline.NO_DARWIN:
            return [pool[-1]] * count

        if self.selection == ParentSelection.UNIFORM:
            return [self._rng.choice(pool) for _ in range(count)]

        if self.selection == ParentSelection.BEST_ONLY:
            return [self._best(pool)] * count

        if self.selection == ParentSelection.SCORE_PROP:
            weights = [1.0 / (1.0 + math.exp(-10.0 * (c.accuracy - 0.5))) for c in pool]
        else:
            weights = [
                max(self.score_floor, c.accuracy) / (1 + archive.children_count(c.id))
                for c in pool
            ]

        return self._sample_without_replacement(pool, weights, count)

    def _best(self, pool: list[Candidate]) -> Candidate:
        # sorted() is stable, so insertion order breaks exact timestamp ties
        ordered = sorted(pool, key=lambda c: c.created_at)
        best = ordered[0]
        for candidate in ordered[1:]:
            if self.compare(candidate, best) > 0:
                best = candidate
        return best

    def _sample_without_replacement(
        self,
        pool: list[Candidate],
        weights: list[float],
        count: int,
    ) -> list[Candidate]:
        chosen: list[Candidate] = []
        remaining = list(zip(pool, weights))

        while len(chosen) < count:
            if not remaining:
                remaining = list(zip(pool, weights))

            total = sum(w for _, w in remaining)
            threshold = self._rng.random() * total
            index = len(remaining) - 1
            cumulative = 0.0
            for i, (_, weight) in enumerate(remaining):
                cumulative += weight
                if threshold < cumulative:
                    index = i
                    break

            candidate, _ = remaining.pop(index)
            chosen.append(candidate)

        return chosen

    def choose_entry(self, parent: Candidate) -> str | None:
        """
        Decide what a self-improvement attempt on `parent` should address.

        Either a theme (`solve_empty_patches`, `solve_stochasticity`) or the
        id of a benchmark instance the parent failed. Polyglot runs only use
        instance ids, preferring errored and unresolved ones, and return None
        for a parent that attempted nothing.
        """
        metrics = parent.metrics
        if self.polyglot:
            if metrics is None:
                return None
            ids = metrics.error_ids + metrics.unresolved_ids or list(metrics.per_instance)
            return self._rng.choice(ids) if ids else None

        if metrics is None:
            return SOLVE_STOCHASTICITY

        errors = metrics.error_ids
        unresolved = metrics.unresolved_ids

        if errors and len(errors) >= 0.1 * metrics.attempted and self._rng.random() < 0.25:
            return SOLVE_EMPTY_PATCHES

        if self._rng.random() < 0.25:
            return SOLVE_STOCHASTICITY

        if unresolved:
            return self._rng.choice(unresolved)
        if errors:
            return self._rng.choice(errors)
        return SOLVE_STOCHASTICITY

    def select_assignments(self, archive: Archive, count: int) -> list[SelfImproveAssignment]:
        """Choose parents and an entry for each of `count` worker slots."""
        assignments = []
        for parent in self.select_parents(archive, count):
            entry = self.choose_entry(parent)
            if entry is None:
                logger.debug("No entry for parent", parent=parent.id)
                continue
            assignments.append(SelfImproveAssignment(parent=parent, entry=entry))

        logger.info(
            "Selected self-improvement assignments",
            method=self.selection.value,
            assignments=[(a.parent.id, a.entry) for a in assignments],
        )
        return assignments

    # ------------------------------------------------------------------
    # Archive update
    # ------------------------------------------------------------------

    def update_archive(self, archive: Archive, children: list[Candidate]) -> list[Candidate]:
        """
        Append evaluated children to the archive and settle who stays active.

        Every child is recorded. Children that do not qualify are recorded
        inactive.

        Returns:
            The children that became active
        """
        accepted: list[Candidate] = []
        superseded: set[str] = set()

        for child in children:
            keep = child.metrics is not None and child.metrics.compiled
            reason = "accepted" if keep else "not compiled"

            if keep and self.update == ArchiveUpdate.KEEP_BETTER and child.parent_id:
                parent = archive.get(child.parent_id)
                if parent is not None and parent.metrics is not None:
                    if self.compare(child, parent) >= 0:
                        superseded.add(parent.id)
                    else:
                        keep = False
                        reason = "worse than parent"

            child.active = keep
            archive.append(child)
            if keep:
                accepted.append(child)

            logger.info(
                "Archive update",
                child=child.id,
                parent=child.parent_id,
                accuracy=child.accuracy,
                decision=reason,
            )

        for parent_id in superseded:
            archive.mark_inactive(parent_id)

        return accepted
