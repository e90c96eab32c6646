"""
CJS-JAX: Bootstrap abundance estimation for Cormack-Jolly-Seber models using JAX

Fits CJS models (constant, time, age-class, two-class mixture and random
effect structures) with an embedded JAX likelihood or RMark, and turns the
fits into per-occasion abundance estimates with bootstrap confidence bands.
"""

__version__ = "1.0.0"
__author__ = "Ava Britton, Christopher Chizinski"

# Encounter histories and resampling
from .data.encounter import (
    EncounterHistory,
    EncounterHistories,
    parse_encounter_histories,
    load_encounter_histories,
    from_dataframe,
    occasion_counts,
)
from .data.sampling import resample, BootstrapStreams

# Model specification and engines
from .models import (
    ModelSpec,
    ParameterFormula,
    ParameterType,
    ParameterStructure,
    create_model_spec,
    FittedModel,
    FitAdapter,
    CJSModel,
    RMarkAdapter,
    register_adapter,
    get_adapter,
    list_available_adapters,
)

# Estimators and inference
from .estimators import AbundanceEstimator, estimate_abundance
from .inference import quantile_band, AbundanceBootstrap, BootstrapResult, run_bootstrap

# Configuration
from .config.settings import CjsJaxConfig, get_default_config

# High-level API and export
from .core.api import fit_model, run_abundance_bootstrap
from .core.export import export_abundance_table

# Import key exception classes
from .core.exceptions import (
    CjsJaxError,
    InvalidInputError,
    MalformedRecordError,
    ConvergenceError,
    DivisionByZeroError,
    ModelSpecError,
)

# Register built-in engines
register_adapter(CJSModel.engine, CJSModel)
register_adapter(RMarkAdapter.engine, RMarkAdapter)

__all__ = [
    # Version info
    "__version__",
    "__author__",

    # Encounter histories
    "EncounterHistory",
    "EncounterHistories",
    "parse_encounter_histories",
    "load_encounter_histories",
    "from_dataframe",
    "occasion_counts",
    "resample",
    "BootstrapStreams",

    # Models
    "ModelSpec",
    "ParameterFormula",
    "ParameterType",
    "ParameterStructure",
    "create_model_spec",
    "FittedModel",
    "FitAdapter",
    "CJSModel",
    "RMarkAdapter",
    "register_adapter",
    "get_adapter",
    "list_available_adapters",

    # Estimation
    "AbundanceEstimator",
    "estimate_abundance",
    "quantile_band",
    "AbundanceBootstrap",
    "BootstrapResult",
    "run_bootstrap",

    # Configuration
    "CjsJaxConfig",

    # API
    "fit_model",
    "run_abundance_bootstrap",
    "export_abundance_table",

    # Exceptions
    "CjsJaxError",
    "InvalidInputError",
    "MalformedRecordError",
    "ConvergenceError",
    "DivisionByZeroError",
    "ModelSpecError",
]


def get_config() -> CjsJaxConfig:
    """Get the global configuration instance."""
    return get_default_config()


def configure(**kwargs) -> None:
    """
    Update global configuration.

    Example:
        >>> configure(**{"bootstrap.n_iterations": 200, "logging.level": "DEBUG"})
    """
    get_config().update(**kwargs)
