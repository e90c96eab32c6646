"""
Bootstrap resampling utilities for cjs-jax.

Pseudo-samples are drawn by sampling individuals uniformly with replacement
from the observed encounter histories. Seeds are fixed once per bootstrap
run; iterations either share one sequential stream or receive child streams
spawned deterministically from the iteration index.
"""

import numpy as np
from typing import List, Optional, Union

from .encounter import EncounterHistories
from ..config.settings import SeedStrategy
from ..core.exceptions import InvalidInputError
from ..utils.logging import get_logger


logger = get_logger(__name__)


def resample_indices(n: int, rng: np.random.Generator) -> np.ndarray:
    """
    Draw n row indices uniformly with replacement.

    Raises:
        InvalidInputError: If n < 1
    """
    if n < 1:
        raise InvalidInputError(
            "cannot resample an empty dataset",
            suggestions=["The input must contain at least one individual"],
        )
    return rng.integers(0, n, size=n)


def resample(histories: EncounterHistories, rng: np.random.Generator) -> EncounterHistories:
    """Draw a pseudo-sample of the same size as the input."""
    return histories.take(resample_indices(histories.n_individuals, rng))


class BootstrapStreams:
    """
    Random streams for one bootstrap run.

    With the sequential strategy every iteration draws from a single
    generator in iteration order. With the per-iteration strategy each
    iteration index owns a child stream of ``SeedSequence(seed)``, so
    results do not depend on execution order.
    """

    def __init__(
        self,
        seed: Optional[int] = None,
        strategy: Union[SeedStrategy, str] = SeedStrategy.SEQUENTIAL
    ):
        self.strategy = SeedStrategy(strategy)
        self._seed_sequence = np.random.SeedSequence(seed)
        self._sequential_rng = np.random.default_rng(self._seed_sequence)
        self._children: List[np.random.SeedSequence] = []

    @property
    def entropy(self) -> int:
        """Entropy of the root seed; pass it back as ``seed`` to replay a run."""
        return self._seed_sequence.entropy

    def reserve(self, n_iterations: int) -> None:
        """Spawn child streams for iterations 0..n_iterations-1 ahead of a parallel run."""
        if n_iterations > len(self._children):
            self._children.extend(self._seed_sequence.spawn(n_iterations - len(self._children)))

    def generator_for(self, index: int) -> np.random.Generator:
        """Child generator for an iteration (per-iteration strategy)."""
        if index < 0:
            raise InvalidInputError(f"iteration index must be non-negative, got {index}")
        # spawn() continues from the number of children already spawned
        self.reserve(index + 1)
        return np.random.default_rng(self._children[index])

    def draw_all(self, histories: EncounterHistories, n_iterations: int) -> List[np.ndarray]:
        """
        Pre-draw the row indices of every pseudo-sample from the sequential stream.

        Drawing all indices up front keeps the sequence identical whether the
        fits later run sequentially or in parallel.
        """
        n = histories.n_individuals
        return [resample_indices(n, self._sequential_rng) for _ in range(n_iterations)]

    def indices_for(self, histories: EncounterHistories, index: int) -> np.ndarray:
        """Row indices for one iteration drawn from its own child stream."""
        return resample_indices(histories.n_individuals, self.generator_for(index))
