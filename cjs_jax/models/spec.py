"""
Model specification classes for cjs-jax.

A ModelSpec states, per parameter, which structure the fitting engine should
use: constant, time-varying, age-class-varying, or fixed at a value.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union
from enum import Enum

from ..core.exceptions import ModelSpecError


class ParameterType(str, Enum):
    """Parameters of the CJS family of models."""

    PHI = "phi"  # Apparent survival probability
    P = "p"  # Recapture (detection) probability
    PI = "pi"  # Mixture proportion of detection class 1
    SIGMA = "sigma"  # Random-effect SD of logit detection


class ParameterStructure(str, Enum):
    """How a parameter varies."""

    CONSTANT = "constant"
    TIME = "time"
    AGE = "age"  # Two classes: first interval after marking, later intervals
    FIXED = "fixed"


class Heterogeneity(str, Enum):
    """Individual heterogeneity in detection."""

    NONE = "none"
    MIXTURE = "mixture"
    RANDOM_EFFECT = "random_effect"


_FORMULA_STRUCTURES = {
    "1": ParameterStructure.CONSTANT,
    "time": ParameterStructure.TIME,
    "age": ParameterStructure.AGE,
}


@dataclass(frozen=True)
class ParameterFormula:
    """
    Structure of a single parameter.

    Examples:
        ParameterFormula(ParameterType.PHI, ParameterStructure.TIME)
        ParameterFormula(ParameterType.P, ParameterStructure.FIXED, value=1.0)
    """

    parameter: ParameterType
    structure: ParameterStructure = ParameterStructure.CONSTANT
    value: Optional[float] = None

    def __post_init__(self):
        if self.structure == ParameterStructure.FIXED:
            if self.value is None:
                raise ModelSpecError(self.parameter.value, "fixed structure requires a value")
            upper = float("inf") if self.parameter == ParameterType.SIGMA else 1.0
            if not 0.0 <= self.value <= upper:
                raise ModelSpecError(
                    self.parameter.value,
                    f"fixed value {self.value} outside [0, {upper}]",
                )
        elif self.value is not None:
            raise ModelSpecError(
                self.parameter.value,
                f"value given for non-fixed structure '{self.structure.value}'",
            )

    @classmethod
    def parse(cls, parameter: ParameterType, formula: Union[str, float, int]) -> "ParameterFormula":
        """
        Parse a formula string ('~1', '~time', '~age') or a number (fixed value).
        """
        if isinstance(formula, (int, float)) and not isinstance(formula, bool):
            return cls(parameter, ParameterStructure.FIXED, float(formula))

        text = str(formula).strip()
        term = text[1:].strip() if text.startswith("~") else text

        if term in _FORMULA_STRUCTURES:
            return cls(parameter, _FORMULA_STRUCTURES[term])

        try:
            value = float(term)
        except ValueError:
            raise ModelSpecError(
                parameter.value,
                f"unsupported formula '{text}'",
            ) from None
        return cls(parameter, ParameterStructure.FIXED, value)

    @property
    def formula_string(self) -> str:
        if self.structure == ParameterStructure.FIXED:
            return f"{self.value:g}"
        if self.structure == ParameterStructure.CONSTANT:
            return "~1"
        return f"~{self.structure.value}"

    def n_estimated(self, n_occasions: int, n_classes: int = 1) -> int:
        """Number of estimated (link-scale) parameters for this formula."""
        if self.structure == ParameterStructure.FIXED:
            return 0
        if self.structure == ParameterStructure.CONSTANT:
            return n_classes
        if self.structure == ParameterStructure.AGE:
            return 2
        return n_occasions - 1


@dataclass(frozen=True)
class ModelSpec:
    """
    Complete CJS model specification.

    ``pi`` turns on a two-class finite mixture on detection; ``sigma`` turns
    on an individual normal random effect on logit detection. At most one of
    them may be given.
    """

    phi: ParameterFormula
    p: ParameterFormula
    pi: Optional[ParameterFormula] = None
    sigma: Optional[ParameterFormula] = None
    name: Optional[str] = None

    def __post_init__(self):
        expected = {
            "phi": ParameterType.PHI,
            "p": ParameterType.P,
            "pi": ParameterType.PI,
            "sigma": ParameterType.SIGMA,
        }
        for attr, param_type in expected.items():
            formula = getattr(self, attr)
            if formula is not None and formula.parameter != param_type:
                raise ModelSpecError(attr, f"formula is declared for '{formula.parameter.value}'")

        if self.pi is not None and self.sigma is not None:
            raise ModelSpecError(
                issue="a mixture (pi) and a random effect (sigma) cannot be combined",
            )

        for formula in (self.pi, self.sigma):
            if formula is not None and formula.structure in (ParameterStructure.TIME, ParameterStructure.AGE):
                raise ModelSpecError(
                    formula.parameter.value,
                    f"must be constant or fixed, got '{formula.structure.value}'",
                )

        if self.p.structure == ParameterStructure.AGE:
            raise ModelSpecError("p", "age-class detection is not supported")

        if self.pi is not None and self.p.structure == ParameterStructure.TIME:
            raise ModelSpecError("p", "mixture models need class-specific constant detection")

        if self.pi is not None and self.p.structure == ParameterStructure.FIXED:
            raise ModelSpecError("p", "mixture models need estimated class-specific detection")

    @property
    def heterogeneity(self) -> Heterogeneity:
        if self.pi is not None:
            return Heterogeneity.MIXTURE
        if self.sigma is not None:
            return Heterogeneity.RANDOM_EFFECT
        return Heterogeneity.NONE

    @property
    def n_detection_classes(self) -> int:
        return 2 if self.heterogeneity == Heterogeneity.MIXTURE else 1

    def formulas(self) -> Dict[ParameterType, ParameterFormula]:
        """Formulas of the parameters present in this model, in fitting order."""
        result = {ParameterType.PHI: self.phi, ParameterType.P: self.p}
        if self.pi is not None:
            result[ParameterType.PI] = self.pi
        if self.sigma is not None:
            result[ParameterType.SIGMA] = self.sigma
        return result

    def validate(self, n_occasions: int) -> None:
        """
        Check the structure is applicable to data with n_occasions occasions.

        Raises:
            ModelSpecError: If the data cannot support the requested structure
        """
        if n_occasions < 2:
            raise ModelSpecError(
                issue=f"CJS models need at least 2 occasions, data has {n_occasions}",
            )
        if self.phi.structure == ParameterStructure.AGE and n_occasions < 3:
            raise ModelSpecError(
                "phi",
                f"age-class survival needs at least 3 occasions, data has {n_occasions}",
            )

    def n_parameters(self, n_occasions: int) -> int:
        """Number of estimated parameters."""
        return sum(
            formula.n_estimated(
                n_occasions,
                n_classes=self.n_detection_classes if param == ParameterType.P else 1,
            )
            for param, formula in self.formulas().items()
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            param.value: formula.formula_string for param, formula in self.formulas().items()
        }
        if self.name:
            result["name"] = self.name
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelSpec":
        """
        Create ModelSpec from dictionary.

        Examples:
            {"phi": "~1", "p": "~time"}
            {"phi": "~age", "p": "~1", "name": "transience"}
            {"phi": "~1", "p": "~1", "pi": "~1"}
        """
        return create_model_spec(
            phi=data.get("phi", "~1"),
            p=data.get("p", "~1"),
            pi=data.get("pi"),
            sigma=data.get("sigma"),
            name=data.get("name"),
        )

    def __str__(self) -> str:
        parts = [f"{param.value}({formula.formula_string})" for param, formula in self.formulas().items()]
        formula_str = " ".join(parts)
        return f"{self.name}: {formula_str}" if self.name else formula_str


def create_model_spec(
    phi: Union[str, float] = "~1",
    p: Union[str, float] = "~1",
    pi: Optional[Union[str, float]] = None,
    sigma: Optional[Union[str, float]] = None,
    name: Optional[str] = None,
) -> ModelSpec:
    """
    Create a model specification from formula strings.

    Examples:
        >>> create_model_spec()                       # phi(.) p(.)
        >>> create_model_spec(phi="~age", p="~1")     # transience model
        >>> create_model_spec(p="~1", pi="~1")        # two-class mixture on p
        >>> create_model_spec(p="~time", sigma="~1")  # random effect on p
    """
    return ModelSpec(
        phi=ParameterFormula.parse(ParameterType.PHI, phi),
        p=ParameterFormula.parse(ParameterType.P, p),
        pi=ParameterFormula.parse(ParameterType.PI, pi) if pi is not None else None,
        sigma=ParameterFormula.parse(ParameterType.SIGMA, sigma) if sigma is not None else None,
        name=name,
    )
