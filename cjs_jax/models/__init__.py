"""Model specification and fitting engines for cjs-jax."""

from .spec import (
    ParameterType,
    ParameterStructure,
    Heterogeneity,
    ParameterFormula,
    ModelSpec,
    create_model_spec,
)
from .base import (
    ParameterEstimate,
    MixtureParameters,
    FittedModel,
    FitAdapter,
    AdapterRegistry,
    register_adapter,
    get_adapter,
    list_available_adapters,
)
from .cjs import CJSModel
from .rmark import RMarkAdapter

__all__ = [
    "ParameterType",
    "ParameterStructure",
    "Heterogeneity",
    "ParameterFormula",
    "ModelSpec",
    "create_model_spec",
    "ParameterEstimate",
    "MixtureParameters",
    "FittedModel",
    "FitAdapter",
    "AdapterRegistry",
    "register_adapter",
    "get_adapter",
    "list_available_adapters",
    "CJSModel",
    "RMarkAdapter",
]
