"""
Main API functions for cjs-jax.

High-level user interface for model fitting and abundance bootstrapping.
"""

from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Union

import pandas as pd

from ..config.settings import CjsJaxConfig, get_default_config
from ..data.encounter import (
    EncounterHistories,
    parse_encounter_histories,
    load_encounter_histories,
    from_dataframe,
)
from ..estimators.abundance import AbundanceEstimator
from ..inference.bootstrap import AbundanceBootstrap, BootstrapResult
from ..models.base import FittedModel, get_adapter
from ..models.spec import ModelSpec
from ..utils.logging import get_logger, log_performance
from .exceptions import InvalidInputError, ConfigurationError

logger = get_logger(__name__)


DataInput = Union[EncounterHistories, str, Path, Sequence[str], pd.DataFrame]
SpecInput = Union[ModelSpec, Dict[str, Any], None]

# Model structure each estimator needs when no spec is given
_DEFAULT_SPECS = {
    AbundanceEstimator.RATIO: {"phi": "~1", "p": "~1"},
    AbundanceEstimator.TRANSIENCE: {"phi": "~age", "p": "~1", "name": "transience"},
    AbundanceEstimator.MIXTURE: {"phi": "~1", "p": "~1", "pi": "~1", "name": "mixture"},
}


def load_histories(data: DataInput) -> EncounterHistories:
    """
    Coerce supported inputs to EncounterHistories.

    Accepts an EncounterHistories, a path to a text file with one history per
    line, a DataFrame with a ``ch`` column, or a sequence of history strings.
    """
    if isinstance(data, EncounterHistories):
        return data
    if isinstance(data, Path):
        return load_encounter_histories(data)
    if isinstance(data, str):
        # a single history string is not a path
        if Path(data).exists() or not set(data.strip()) <= {"0", "1"}:
            return load_encounter_histories(data)
        return parse_encounter_histories([data])
    if isinstance(data, pd.DataFrame):
        return from_dataframe(data)
    if data is None:
        raise InvalidInputError(
            "No data provided",
            suggestions=[
                "Provide an EncounterHistories object",
                "Provide a file path with one encounter history per line",
                "Provide a list of encounter-history strings",
            ],
        )
    return parse_encounter_histories(data)


def _resolve_spec(spec: SpecInput, estimator: AbundanceEstimator) -> ModelSpec:
    if spec is None:
        logger.info(f"Using default model structure for the {estimator.value} estimator")
        return ModelSpec.from_dict(_DEFAULT_SPECS[estimator])
    if isinstance(spec, dict):
        return ModelSpec.from_dict(spec)
    return spec


def fit_model(
    data: DataInput,
    spec: SpecInput = None,
    engine: str = "jax",
    config: Optional[CjsJaxConfig] = None,
    timeout: Optional[float] = None,
) -> FittedModel:
    """
    Fit a CJS model to encounter histories.

    Args:
        data: Encounter histories (object, file path, DataFrame or strings)
        spec: Model specification (default: constant phi and p)
        engine: Fitting engine name ("jax" or "rmark")
        config: Configuration (default: global configuration)
        timeout: Optional time limit for the fit in seconds

    Returns:
        FittedModel with real-scale estimates

    Examples:
        >>> fitted = fit_model(["1101", "0110", "1011"])
        >>> fitted = fit_model(histories, create_model_spec(phi="~age"))
    """
    histories = load_histories(data)
    spec = _resolve_spec(spec, AbundanceEstimator.RATIO)
    adapter = get_adapter(engine, config)

    logger.info(
        f"Fitting {spec} with engine '{engine}'",
        individuals=histories.n_individuals,
        occasions=histories.n_occasions,
    )
    return adapter.fit(histories, spec, timeout=timeout)


@log_performance
def run_abundance_bootstrap(
    data: DataInput,
    spec: SpecInput = None,
    estimator: Union[AbundanceEstimator, str] = AbundanceEstimator.RATIO,
    engine: str = "jax",
    config: Optional[CjsJaxConfig] = None,
    **overrides,
) -> BootstrapResult:
    """
    Estimate abundance with bootstrap confidence bands.

    Args:
        data: Encounter histories (object, file path, DataFrame or strings)
        spec: Model specification (default depends on the estimator)
        estimator: "ratio", "transience" or "mixture"
        engine: Fitting engine name
        config: Configuration (default: global configuration)
        **overrides: Bootstrap settings, e.g. ``n_iterations=200, random_seed=1``,
            or dotted keys for other sections, e.g. ``**{"intervals.lower": 0.05}``

    Returns:
        BootstrapResult with point estimate, bands and run summary

    Examples:
        >>> result = run_abundance_bootstrap("histories.txt", n_iterations=500, random_seed=42)
        >>> result.to_dataframe()
        >>> result.summary.n_successful
    """
    try:
        estimator = AbundanceEstimator(estimator)
    except ValueError:
        raise ConfigurationError(
            config_key="estimator",
            issue=f"unknown estimator '{estimator}', expected one of {[e.value for e in AbundanceEstimator]}",
        ) from None

    histories = load_histories(data)
    spec = _resolve_spec(spec, estimator)

    config = (config or get_default_config()).model_copy(deep=True)
    if overrides:
        config.update(**{
            key if "." in key else f"bootstrap.{key}": value
            for key, value in overrides.items()
        })

    adapter = get_adapter(engine, config)
    return AbundanceBootstrap(adapter, spec, estimator, config).run(histories)
