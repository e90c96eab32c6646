"""Utility functions and classes for cjs-jax."""

from .logging import get_logger, setup_logging
from .validation import validate_counts, validate_probability, validate_capture_matrix

__all__ = [
    "get_logger",
    "setup_logging",
    "validate_counts",
    "validate_probability",
    "validate_capture_matrix",
]
