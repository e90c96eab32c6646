"""
Validation utilities for cjs-jax.

Provides common validation functions for count vectors, probabilities and
encounter matrices. All failures raise InvalidInputError.
"""

import numpy as np
from typing import Union, Sequence, Optional

from ..core.exceptions import InvalidInputError


ArrayLike = Union[float, int, Sequence[float], np.ndarray]


def validate_counts(counts: ArrayLike, name: str = "counts") -> np.ndarray:
    """
    Validate a one-dimensional vector of non-negative counts.

    Args:
        counts: Per-occasion counts
        name: Name for error messages

    Returns:
        Counts as a float array

    Raises:
        InvalidInputError: If the vector is empty, not 1-D, or contains
            negative or non-finite values
    """
    array = np.asarray(counts, dtype=float)

    if array.ndim != 1:
        raise InvalidInputError(f"{name} must be one-dimensional, got shape {array.shape}")
    if array.size == 0:
        raise InvalidInputError(f"{name} is empty")
    if not np.all(np.isfinite(array)):
        raise InvalidInputError(f"{name} contains non-finite values")
    if np.any(array < 0):
        raise InvalidInputError(f"{name} contains negative values (min: {array.min()})")

    return array


def validate_probability(
    value: ArrayLike,
    length: Optional[int] = None,
    name: str = "probability"
) -> np.ndarray:
    """
    Validate probabilities (0 <= p <= 1), broadcasting scalars.

    Args:
        value: Scalar (constant model) or vector of probabilities
        length: Required vector length; scalars are broadcast to it
        name: Name for error messages

    Returns:
        Probabilities as a float array of the requested length

    Raises:
        InvalidInputError: If values are non-finite, outside [0, 1] or of the wrong length
    """
    array = np.asarray(value, dtype=float)

    if array.ndim == 0:
        array = np.full(length if length is not None else 1, float(array))
    elif array.ndim != 1:
        raise InvalidInputError(f"{name} must be a scalar or one-dimensional, got shape {array.shape}")
    elif length is not None and array.size != length:
        raise InvalidInputError(
            f"{name} has {array.size} values, expected {length}",
            suggestions=[
                "Per-occasion probabilities cover occasions 2..T (one fewer than the number of occasions)",
                "Pass a scalar for a constant model",
            ],
        )

    if not np.all(np.isfinite(array)):
        raise InvalidInputError(f"{name} contains non-finite values")
    if np.any(array < 0) or np.any(array > 1):
        raise InvalidInputError(
            f"{name} must lie in [0, 1] (min: {array.min()}, max: {array.max()})"
        )

    return array


def validate_capture_matrix(
    capture_matrix: np.ndarray,
    min_individuals: int = 1,
    min_occasions: int = 1
) -> None:
    """
    Validate an encounter matrix (individuals x occasions).

    Args:
        capture_matrix: Binary detection matrix
        min_individuals: Minimum number of individuals
        min_occasions: Minimum number of occasions

    Raises:
        InvalidInputError: If validation fails
    """
    if not hasattr(capture_matrix, 'shape') or len(capture_matrix.shape) != 2:
        raise InvalidInputError(
            "encounter matrix must be two-dimensional (individuals x occasions)",
            suggestions=["Build datasets with parse_encounter_histories()"],
        )

    n_individuals, n_occasions = capture_matrix.shape

    if n_individuals < min_individuals:
        raise InvalidInputError(
            f"dataset has {n_individuals} individuals, need at least {min_individuals}"
        )
    if n_occasions < min_occasions:
        raise InvalidInputError(
            f"dataset has {n_occasions} occasions, need at least {min_occasions}"
        )

    values = np.unique(np.asarray(capture_matrix))
    if not set(values.tolist()).issubset({0, 1, False, True}):
        raise InvalidInputError(
            f"encounter matrix contains values other than 0 and 1: {values.tolist()}"
        )
