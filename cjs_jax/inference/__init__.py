"""
Statistical inference for cjs-jax.

Provides quantile confidence bands and the bootstrap driver for abundance
estimates.
"""

from .intervals import ConfidenceBand, quantile_band
from .bootstrap import (
    IterationStatus,
    IterationOutcome,
    BootstrapSummary,
    BootstrapResult,
    AbundanceBootstrap,
    run_bootstrap,
)

__all__ = [
    "ConfidenceBand",
    "quantile_band",
    "IterationStatus",
    "IterationOutcome",
    "BootstrapSummary",
    "BootstrapResult",
    "AbundanceBootstrap",
    "run_bootstrap",
]
