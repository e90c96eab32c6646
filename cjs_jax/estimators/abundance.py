"""
Abundance estimators for cjs-jax.

Converts per-occasion detection counts and fitted CJS parameters into
population-size estimates for occasions 2..T. Three variants:

- ratio: N_t = n_t / p_t
- transience: resident/transient decomposition from age-class survival
- mixture: inverse-probability weighting over two detection classes

All functions are pure; a detection probability of exactly zero raises
DivisionByZeroError instead of producing an infinite abundance.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, Union

import numpy as np
import pandas as pd

from ..data.encounter import EncounterHistories, occasion_counts
from ..core.exceptions import DivisionByZeroError, DegenerateSampleError, InvalidInputError
from ..utils.validation import validate_counts, validate_probability
from ..utils.logging import get_logger

if TYPE_CHECKING:
    from ..models.base import FittedModel


logger = get_logger(__name__)

Probability = Union[float, np.ndarray]


class AbundanceEstimator(str, Enum):
    """Available abundance estimators."""

    RATIO = "ratio"
    TRANSIENCE = "transience"
    MIXTURE = "mixture"


@dataclass(frozen=True)
class TransienceAbundance:
    resident: np.ndarray
    transient: np.ndarray
    total: np.ndarray


@dataclass(frozen=True)
class MixtureAbundance:
    unmarked: np.ndarray
    marked: np.ndarray
    total: np.ndarray
    previously_marked: np.ndarray  # m_t = n_t - u_t


@dataclass
class AbundanceEstimate:
    """Named abundance components for occasions 2..T."""

    estimator: AbundanceEstimator
    occasions: np.ndarray
    components: Dict[str, np.ndarray] = field(default_factory=dict)

    @property
    def total(self) -> np.ndarray:
        return self.components["total"]

    def to_dataframe(self) -> pd.DataFrame:
        frame = pd.DataFrame({"occasion": self.occasions})
        for name, values in self.components.items():
            frame[name] = values
        return frame


def _check_nonzero(p: np.ndarray, quantity: str = "detection probability") -> None:
    zero = np.flatnonzero(p == 0)
    if zero.size:
        # p[0] belongs to occasion 2
        raise DivisionByZeroError(quantity=quantity, occasion=int(zero[0]) + 2)


def _check_counts(detected: np.ndarray, newly_marked: np.ndarray) -> None:
    if detected.size != newly_marked.size:
        raise InvalidInputError(
            f"detected has {detected.size} occasions, newly_marked has {newly_marked.size}"
        )
    if np.any(newly_marked > detected):
        raise InvalidInputError("newly marked count exceeds detected count")


def _check_non_negative(name: str, values: np.ndarray) -> None:
    negative = np.flatnonzero(values < 0)
    if negative.size:
        raise DegenerateSampleError(component=name, occasions=[int(i) + 2 for i in negative])


def ratio_abundance(detected, p: Probability) -> np.ndarray:
    """
    Simple ratio estimator N_t = n_t / p_t for occasions 2..T.

    Args:
        detected: Number of individuals detected at each occasion (length T)
        p: Recapture probability, scalar or one value per occasion 2..T

    Returns:
        Abundance per occasion 2..T (length T-1)

    Raises:
        DivisionByZeroError: If any p_t is zero
        InvalidInputError: If counts or probabilities are invalid
    """
    counts = validate_counts(detected, "detected")
    if counts.size < 2:
        raise InvalidInputError("at least 2 occasions are needed to estimate abundance")

    p = validate_probability(p, length=counts.size - 1, name="p")
    _check_nonzero(p)
    return counts[1:] / p


def transient_rate(phi_new: float, phi_old: float) -> float:
    """
    Transient rate tau = 1 - phi_new / phi_old.

    ``phi_new`` is survival over the first interval after marking and
    ``phi_old`` survival in later intervals.
    """
    phi_new = float(validate_probability(phi_new, name="phi_new")[0])
    phi_old = float(validate_probability(phi_old, name="phi_old")[0])
    if phi_old == 0:
        raise DivisionByZeroError(quantity="resident survival probability")
    return 1.0 - phi_new / phi_old


def transience_abundance(newly_marked, detected, tau: float, p: Probability) -> TransienceAbundance:
    """
    Resident/transient abundance for occasions 2..T.

    resident_t = (m_t + R_t * (1 - tau)) / p
    transient_t = R_t * tau / p

    where R_t is the number first detected at t and m_t = n_t - R_t.

    Raises:
        DegenerateSampleError: If a component is negative
    """
    detected = validate_counts(detected, "detected")
    newly = validate_counts(newly_marked, "newly_marked")
    _check_counts(detected, newly)
    if detected.size < 2:
        raise InvalidInputError("at least 2 occasions are needed to estimate abundance")
    if not np.isfinite(tau):
        raise InvalidInputError(f"transient rate must be finite, got {tau}")

    p = validate_probability(p, length=detected.size - 1, name="p")
    _check_nonzero(p)

    new = newly[1:]
    marked = detected[1:] - new

    resident = (marked + new * (1.0 - tau)) / p
    transient = new * tau / p

    _check_non_negative("resident", resident)
    _check_non_negative("transient", transient)

    return TransienceAbundance(resident=resident, transient=transient, total=resident + transient)


def mixture_abundance(newly_marked, detected, prop: float, p1: float, p2: float, phi: Probability) -> MixtureAbundance:
    """
    Two-class mixture abundance for occasions 2..T.

    U_t = u_t * ((1 - prop) / p2 + prop / p1)
    M_t = sum over j < t of u_j * ((1 - prop) * S(j, t) + prop * S(j, t))

    where S(j, t) is the product of interval survivals phi_j .. phi_{t-1}.
    Both classes share the same survival product, so M_t reduces to
    u_j * S(j, t) summed over j.

    These bounds differ from the textbook form
    sum_{j<=t} prod_{k=j}^{t} phi_k. Here phi_k is survival over interval
    k -> k+1, so animals marked at t have not yet survived any interval
    and the survival into t stops at phi_{t-1}. Keep j < t and the
    product ending at t - 1.

    Args:
        newly_marked: u_t, number first detected at each occasion (length T)
        detected: n_t, number detected at each occasion (length T)
        prop: Proportion of detection class 1
        p1: Detection probability of class 1
        p2: Detection probability of class 2
        phi: Survival, scalar or one value per interval (length T-1)

    Returns:
        MixtureAbundance with unmarked (U_t), marked (M_t) and total vectors
    """
    detected = validate_counts(detected, "detected")
    newly = validate_counts(newly_marked, "newly_marked")
    _check_counts(detected, newly)
    n_occasions = detected.size
    if n_occasions < 2:
        raise InvalidInputError("at least 2 occasions are needed to estimate abundance")

    prop = float(validate_probability(prop, name="prop")[0])
    p1 = float(validate_probability(p1, name="p1")[0])
    p2 = float(validate_probability(p2, name="p2")[0])
    if p1 == 0:
        raise DivisionByZeroError(quantity="class 1 detection probability")
    if p2 == 0:
        raise DivisionByZeroError(quantity="class 2 detection probability")
    phi = validate_probability(phi, length=n_occasions - 1, name="phi")

    unmarked = newly[1:] * ((1.0 - prop) / p2 + prop / p1)

    marked = np.zeros(n_occasions - 1)
    for t in range(1, n_occasions):
        for j in range(t):
            survival = np.prod(phi[j:t])
            marked[t - 1] += newly[j] * ((1.0 - prop) * survival + prop * survival)

    return MixtureAbundance(
        unmarked=unmarked,
        marked=marked,
        total=unmarked + marked,
        previously_marked=detected[1:] - newly[1:],
    )


def estimate_abundance(
    histories: EncounterHistories,
    fitted: "FittedModel",
    estimator: Union[AbundanceEstimator, str] = AbundanceEstimator.RATIO,
) -> AbundanceEstimate:
    """
    Estimate abundance from a dataset and the model fitted to it.

    Raises:
        ModelSpecError: If the fitted model lacks the structure the estimator needs
    """
    estimator = AbundanceEstimator(estimator)
    counts = occasion_counts(histories)
    occasions = np.arange(2, histories.n_occasions + 1)

    if estimator == AbundanceEstimator.RATIO:
        components = {"total": ratio_abundance(counts.detected, fitted.detection_probabilities())}

    elif estimator == AbundanceEstimator.TRANSIENCE:
        result = transience_abundance(
            counts.newly_marked,
            counts.detected,
            fitted.transient_rate(),
            fitted.detection_probabilities(),
        )
        components = {"total": result.total, "resident": result.resident, "transient": result.transient}

    else:
        mixture = fitted.mixture_parameters()
        result = mixture_abundance(
            counts.newly_marked,
            counts.detected,
            mixture.prop,
            mixture.p1,
            mixture.p2,
            fitted.survival_probabilities(),
        )
        components = {"total": result.total, "unmarked": result.unmarked, "marked": result.marked}

    logger.debug(f"Estimated {estimator.value} abundance", total=np.round(components["total"], 3).tolist())
    return AbundanceEstimate(estimator=estimator, occasions=occasions, components=components)
