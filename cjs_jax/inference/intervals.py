"""
Quantile confidence bands for bootstrap abundance samples.

Quantiles use linear interpolation between order statistics (Hyndman and
Fan type 7, numpy's ``method="linear"``).
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd

from ..core.exceptions import InvalidInputError, UndefinedEstimateError, InsufficientIterationsError
from ..utils.logging import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class ConfidenceBand:
    """Per-occasion lower/median/upper quantiles of bootstrap estimates."""

    occasions: np.ndarray
    lower: np.ndarray
    upper: np.ndarray
    probabilities: Tuple[float, float]
    n_used: int
    n_dropped: int
    median: Optional[np.ndarray] = None

    def to_dataframe(self) -> pd.DataFrame:
        data = {"occasion": self.occasions, "lower": self.lower}
        if self.median is not None:
            data["median"] = self.median
        data["upper"] = self.upper
        return pd.DataFrame(data)


def defined_rows(samples: np.ndarray) -> np.ndarray:
    """Boolean mask of rows whose every value is finite."""
    return np.all(np.isfinite(samples), axis=1)


def quantile_band(
    samples,
    lower: float = 0.025,
    upper: float = 0.975,
    include_median: bool = True,
    drop_undefined: bool = True,
    first_occasion: int = 2,
) -> ConfidenceBand:
    """
    Compute per-column quantiles of a bootstrap sample matrix.

    Args:
        samples: Matrix (iterations x occasions) of estimates; NaN/inf marks
            an undefined iteration
        lower: Lower quantile probability
        upper: Upper quantile probability
        include_median: Also compute the 50% quantile
        drop_undefined: Drop undefined rows; if False they raise
        first_occasion: Occasion number of the first column

    Returns:
        ConfidenceBand

    Raises:
        UndefinedEstimateError: If undefined rows exist and drop_undefined is False
        InsufficientIterationsError: If no row is defined
    """
    if not 0.0 < lower < upper < 1.0:
        raise InvalidInputError(f"require 0 < lower < upper < 1, got lower={lower}, upper={upper}")

    matrix = np.asarray(samples, dtype=float)
    if matrix.ndim != 2 or matrix.shape[0] == 0:
        raise InvalidInputError(f"samples must be a non-empty 2-D matrix, got shape {matrix.shape}")

    defined = defined_rows(matrix)
    n_dropped = int((~defined).sum())
    n_total = matrix.shape[0]

    if n_dropped and not drop_undefined:
        raise UndefinedEstimateError(n_dropped=n_dropped, n_total=n_total)
    if n_dropped == n_total:
        raise InsufficientIterationsError(n_successful=0, n_iterations=n_total)
    if n_dropped:
        logger.debug(f"Dropped {n_dropped} undefined rows of {n_total}")

    used = matrix[defined]
    probabilities = [lower, 0.5, upper] if include_median else [lower, upper]
    quantiles = np.quantile(used, probabilities, axis=0, method="linear")

    return ConfidenceBand(
        occasions=np.arange(first_occasion, first_occasion + matrix.shape[1]),
        lower=quantiles[0],
        upper=quantiles[-1],
        median=quantiles[1] if include_median else None,
        probabilities=(lower, upper),
        n_used=int(defined.sum()),
        n_dropped=n_dropped,
    )
