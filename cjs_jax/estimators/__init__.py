"""Abundance estimators for cjs-jax."""

from .abundance import (
    AbundanceEstimator,
    AbundanceEstimate,
    TransienceAbundance,
    MixtureAbundance,
    ratio_abundance,
    transient_rate,
    transience_abundance,
    mixture_abundance,
    estimate_abundance,
)

__all__ = [
    "AbundanceEstimator",
    "AbundanceEstimate",
    "TransienceAbundance",
    "MixtureAbundance",
    "ratio_abundance",
    "transient_rate",
    "transience_abundance",
    "mixture_abundance",
    "estimate_abundance",
]
