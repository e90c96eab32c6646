"""
Base classes for model-fit adapters in cjs-jax.

Defines the boundary the resampling core depends on: a FitAdapter turns an
encounter-history dataset and a ModelSpec into a FittedModel holding real
scale estimates, standard errors, confidence limits and the deviance.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Type, Tuple
import numpy as np
import pandas as pd

from .spec import ModelSpec, ParameterType, ParameterStructure, Heterogeneity
from ..config.settings import CjsJaxConfig, get_default_config
from ..data.encounter import EncounterHistories
from ..estimators.abundance import transient_rate
from ..core.exceptions import ModelSpecError, ConfigurationError
from ..utils.logging import get_logger


logger = get_logger(__name__)


def parameter_labels(spec: ModelSpec, parameter: ParameterType, n_occasions: int) -> List[Tuple[str, Optional[int]]]:
    """Names and indices of a parameter's real-scale values, in estimation order."""
    structure = spec.formulas()[parameter].structure

    if structure == ParameterStructure.TIME:
        if parameter == ParameterType.PHI:
            return [(f"phi_t{k}", k) for k in range(1, n_occasions)]
        return [(f"p_t{t}", t) for t in range(2, n_occasions + 1)]
    if structure == ParameterStructure.AGE:
        return [("phi_age0", 0), ("phi_age1", 1)]
    if parameter == ParameterType.P and spec.n_detection_classes == 2:
        return [("p_class1", 1), ("p_class2", 2)]
    return [(parameter.value, None)]


def fixed_estimate(spec: ModelSpec, parameter: ParameterType, n_occasions: int) -> "ParameterEstimate":
    """Estimate row for a parameter fixed at a known value."""
    value = spec.formulas()[parameter].value
    name, index = parameter_labels(spec, parameter, n_occasions)[0]
    return ParameterEstimate(
        name=name, parameter=parameter, estimate=value,
        se=0.0, lcl=value, ucl=value, index=index, fixed=True,
    )


@dataclass(frozen=True)
class ParameterEstimate:
    """
    Real-scale estimate of one model parameter.

    ``index`` is the interval number (1..T-1) for time-varying survival, the
    occasion number (2..T) for time-varying detection, the age class (0 for
    the first interval after marking, 1 afterwards) for age-structured
    survival, the class number (1, 2) for mixture detection, and None for
    constant or fixed parameters.
    """
    name: str
    parameter: ParameterType
    estimate: float
    se: float
    lcl: float
    ucl: float
    index: Optional[int] = None
    fixed: bool = False


@dataclass(frozen=True)
class MixtureParameters:
    """Two-class finite-mixture detection parameters."""
    prop: float  # proportion of class 1
    p1: float
    p2: float


@dataclass
class FittedModel:
    """Result of fitting a CJS model."""

    spec: ModelSpec
    n_occasions: int
    n_individuals: int
    estimates: Dict[ParameterType, List[ParameterEstimate]]
    log_likelihood: float
    n_parameters: int
    engine: str

    deviance: Optional[float] = None
    aic: Optional[float] = None
    aicc: Optional[float] = None
    fit_time: Optional[float] = None
    n_iterations: Optional[int] = None
    warnings: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Calculate derived quantities after initialization."""
        if self.deviance is None:
            self.deviance = -2.0 * self.log_likelihood

        if self.aic is None:
            self.aic = -2.0 * self.log_likelihood + 2 * self.n_parameters

        if self.aicc is None:
            n, k = self.n_individuals, self.n_parameters
            if n - k - 1 > 0:
                self.aicc = self.aic + 2 * k * (k + 1) / (n - k - 1)
            else:
                self.aicc = float("inf")

    def estimates_for(self, parameter: ParameterType) -> List[ParameterEstimate]:
        if parameter not in self.estimates:
            raise ModelSpecError(parameter.value, "parameter is not part of the fitted model")
        return self.estimates[parameter]

    def _per_occasion(self, parameter: ParameterType) -> np.ndarray:
        """Broadcast a constant/fixed/time-varying parameter to T-1 values."""
        rows = self.estimates_for(parameter)
        structure = self.spec.formulas()[parameter].structure

        if structure == ParameterStructure.TIME:
            return np.array([row.estimate for row in sorted(rows, key=lambda r: r.index)])
        if structure in (ParameterStructure.CONSTANT, ParameterStructure.FIXED) and len(rows) == 1:
            return np.full(self.n_occasions - 1, rows[0].estimate)

        raise ModelSpecError(
            parameter.value,
            f"'{structure.value}' structure has no single per-occasion value",
        )

    def survival_probabilities(self) -> np.ndarray:
        """Survival per interval (length T-1; interval k runs from occasion k to k+1)."""
        return self._per_occasion(ParameterType.PHI)

    def detection_probabilities(self) -> np.ndarray:
        """
        Recapture probability for occasions 2..T (length T-1).

        For random-effect models this is detection at the mean (zero) effect.
        """
        if self.spec.heterogeneity == Heterogeneity.MIXTURE:
            raise ModelSpecError("p", "mixture models have class-specific detection; use mixture_parameters()")
        return self._per_occasion(ParameterType.P)

    def age_survival(self) -> Tuple[float, float]:
        """(survival in the first interval after marking, survival afterwards)."""
        if self.spec.phi.structure != ParameterStructure.AGE:
            raise ModelSpecError("phi", "transience needs age-class survival ('~age')")
        rows = sorted(self.estimates_for(ParameterType.PHI), key=lambda r: r.index)
        return rows[0].estimate, rows[1].estimate

    def transient_rate(self) -> float:
        """Proportion of transients among newly marked individuals, 1 - phi_new/phi_old."""
        phi_new, phi_old = self.age_survival()
        return transient_rate(phi_new, phi_old)

    def mixture_parameters(self) -> MixtureParameters:
        if self.spec.heterogeneity != Heterogeneity.MIXTURE:
            raise ModelSpecError("pi", "model has no detection mixture")
        prop = self.estimates_for(ParameterType.PI)[0].estimate
        p_rows = sorted(self.estimates_for(ParameterType.P), key=lambda r: r.index)
        return MixtureParameters(prop=prop, p1=p_rows[0].estimate, p2=p_rows[1].estimate)

    def random_effect_sd(self) -> float:
        if self.spec.heterogeneity != Heterogeneity.RANDOM_EFFECT:
            raise ModelSpecError("sigma", "model has no random effect")
        return self.estimates_for(ParameterType.SIGMA)[0].estimate

    def to_dataframe(self) -> pd.DataFrame:
        rows = []
        for parameter, estimates in self.estimates.items():
            for est in estimates:
                rows.append({
                    "name": est.name,
                    "parameter": parameter.value,
                    "index": est.index,
                    "estimate": est.estimate,
                    "se": est.se,
                    "lcl": est.lcl,
                    "ucl": est.ucl,
                    "fixed": est.fixed,
                })
        return pd.DataFrame(rows, columns=["name", "parameter", "index", "estimate", "se", "lcl", "ucl", "fixed"])

    def get_summary_stats(self) -> Dict[str, float]:
        return {
            "log_likelihood": float(self.log_likelihood),
            "deviance": float(self.deviance),
            "aic": float(self.aic),
            "aicc": float(self.aicc),
            "n_parameters": self.n_parameters,
        }

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "engine": self.engine,
            "model": self.spec.to_dict(),
            "n_occasions": self.n_occasions,
            "n_individuals": self.n_individuals,
            "estimates": self.to_dataframe().to_dict(orient="records"),
        }
        result.update(self.get_summary_stats())
        if self.fit_time is not None:
            result["fit_time"] = self.fit_time
        if self.warnings:
            result["warnings"] = list(self.warnings)
        return result


class FitAdapter(ABC):
    """
    Abstract base class for model-fitting engines.

    Implementations either evaluate the likelihood themselves or call an
    external program; the bootstrap core only depends on ``fit``.
    """

    engine: str = "abstract"

    def __init__(self, config: Optional[CjsJaxConfig] = None):
        self.config = config or get_default_config()
        self.logger = get_logger(self.__class__.__name__, self.config)

    @abstractmethod
    def fit(
        self,
        histories: EncounterHistories,
        spec: ModelSpec,
        timeout: Optional[float] = None,
    ) -> FittedModel:
        """
        Fit the model to data.

        Args:
            histories: Encounter histories
            spec: Model specification
            timeout: Optional time limit in seconds

        Returns:
            FittedModel

        Raises:
            ModelSpecError: Structure inapplicable to the data
            ConvergenceError: The optimizer did not converge
            FitTimeoutError: The fit exceeded ``timeout``
        """


class AdapterRegistry:
    """Registry of available fitting engines."""

    def __init__(self):
        self._adapters: Dict[str, Type[FitAdapter]] = {}

    def register(self, name: str, adapter_class: Type[FitAdapter]) -> None:
        if not issubclass(adapter_class, FitAdapter):
            raise TypeError("Adapter class must inherit from FitAdapter")
        self._adapters[name] = adapter_class
        logger.debug(f"Registered fit adapter: {name} -> {adapter_class.__name__}")

    def get(self, name: str, config: Optional[CjsJaxConfig] = None) -> FitAdapter:
        if name not in self._adapters:
            raise ConfigurationError(
                config_key="engine",
                issue=f"unknown engine '{name}', available: {sorted(self._adapters)}",
            )
        return self._adapters[name](config)

    def list_adapters(self) -> List[str]:
        return sorted(self._adapters)


# Global adapter registry instance
_registry = AdapterRegistry()


def register_adapter(name: str, adapter_class: Type[FitAdapter]) -> None:
    """Register an adapter with the global registry."""
    _registry.register(name, adapter_class)


def get_adapter(name: str, config: Optional[CjsJaxConfig] = None) -> FitAdapter:
    """Get an adapter instance from the global registry."""
    return _registry.get(name, config)


def list_available_adapters() -> List[str]:
    """List registered engine names."""
    return _registry.list_adapters()
