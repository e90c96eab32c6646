"""
Cormack-Jolly-Seber model implementation for cjs-jax.

Embedded maximum-likelihood engine: the CJS likelihood (conditional on first
capture) is computed with JAX and optimised with SciPy's L-BFGS-B using JAX
gradients. Supports constant, time-varying, age-class (transience) and fixed
structures, a two-class finite mixture on detection, and an individual
normal random effect on logit detection integrated by Gauss-Hermite
quadrature.
"""

import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Dict, List, Optional, Tuple

import jax

# Hessian-based standard errors need double precision
jax.config.update("jax_enable_x64", True)

import jax.numpy as jnp
import numpy as np
import scipy.optimize
from scipy import stats

from .base import FitAdapter, FittedModel, ParameterEstimate, fixed_estimate, parameter_labels
from .spec import ModelSpec, ParameterType, ParameterStructure, Heterogeneity
from ..data.encounter import EncounterHistories
from ..core.exceptions import ConvergenceError, FitTimeoutError, InvalidInputError
from ..utils.logging import get_logger


logger = get_logger(__name__)

# Link-scale bounds: probabilities from 0.0001 to 0.9999, SD from 1e-4 to 10
LOGIT_BOUNDS = (-9.21, 9.21)
LOG_SD_BOUNDS = (float(np.log(1e-4)), float(np.log(10.0)))

_TINY = 1e-300


@jax.jit
def logit(x: jnp.ndarray) -> jnp.ndarray:
    """Logit link function."""
    return jnp.log(x / (1 - x))


@jax.jit
def inv_logit(x: jnp.ndarray) -> jnp.ndarray:
    """Inverse logit (sigmoid) function."""
    return jax.nn.sigmoid(x)


def cjs_individual_log_likelihood(
    captures: jnp.ndarray,
    first: jnp.ndarray,
    phi: jnp.ndarray,
    p: jnp.ndarray,
) -> jnp.ndarray:
    """
    Per-individual CJS log-likelihood, conditional on first capture.

    Runs a scaled forward recursion over the alive/dead states from the
    occasion after first capture to the last occasion.

    Args:
        captures: Detection matrix (individuals x occasions), 0/1
        first: 0-based first-capture occasion per individual
        phi: Survival (individuals x occasions-1); column k is the interval k -> k+1
        p: Detection (individuals x occasions); column 0 is unused

    Returns:
        Log-likelihood per individual
    """
    n_individuals, n_occasions = captures.shape

    def step(carry, t):
        alive, dead, log_lik = carry
        active = t > first

        phi_t = phi[:, t - 1]
        p_t = p[:, t]
        detected = captures[:, t] > 0

        alive_next = alive * phi_t
        dead_next = dead + alive * (1.0 - phi_t)

        alive_obs = jnp.where(detected, alive_next * p_t, alive_next * (1.0 - p_t))
        dead_obs = jnp.where(detected, 0.0, dead_next)

        total = jnp.maximum(alive_obs + dead_obs, _TINY)

        alive = jnp.where(active, alive_obs / total, alive)
        dead = jnp.where(active, dead_obs / total, dead)
        log_lik = log_lik + jnp.where(active, jnp.log(total), 0.0)
        return (alive, dead, log_lik), None

    init = (
        jnp.ones(n_individuals),
        jnp.zeros(n_individuals),
        jnp.zeros(n_individuals),
    )
    (_, _, log_lik), _ = jax.lax.scan(step, init, jnp.arange(1, n_occasions))
    return log_lik


@dataclass(frozen=True)
class _ParameterLayout:
    """Position of each parameter's link-scale coefficients in the beta vector."""
    spec: ModelSpec
    n_occasions: int
    slices: Tuple[Tuple[ParameterType, int, int], ...]

    @classmethod
    def build(cls, spec: ModelSpec, n_occasions: int) -> "_ParameterLayout":
        slices = []
        start = 0
        for param, formula in spec.formulas().items():
            n_classes = spec.n_detection_classes if param == ParameterType.P else 1
            count = formula.n_estimated(n_occasions, n_classes=n_classes)
            slices.append((param, start, start + count))
            start += count
        return cls(spec=spec, n_occasions=n_occasions, slices=tuple(slices))

    @property
    def n_beta(self) -> int:
        return self.slices[-1][2] if self.slices else 0

    def coefficients(self, beta: jnp.ndarray) -> Dict[ParameterType, jnp.ndarray]:
        return {param: beta[start:stop] for param, start, stop in self.slices}

    def bounds(self) -> List[Tuple[float, float]]:
        bounds = []
        for param, start, stop in self.slices:
            bound = LOG_SD_BOUNDS if param == ParameterType.SIGMA else LOGIT_BOUNDS
            bounds.extend([bound] * (stop - start))
        return bounds


def _survival_matrix(layout: _ParameterLayout, coefs, first: jnp.ndarray) -> jnp.ndarray:
    """Survival per individual and interval."""
    formula = layout.spec.phi
    n_individuals = first.shape[0]
    shape = (n_individuals, layout.n_occasions - 1)

    if formula.structure == ParameterStructure.FIXED:
        return jnp.full(shape, formula.value)

    values = inv_logit(coefs[ParameterType.PHI])

    if formula.structure == ParameterStructure.CONSTANT:
        return jnp.broadcast_to(values[0], shape)
    if formula.structure == ParameterStructure.TIME:
        return jnp.broadcast_to(values[None, :], shape)

    # Age classes: the interval starting at first capture vs all later intervals
    interval = jnp.arange(layout.n_occasions - 1)[None, :]
    return jnp.where(interval == first[:, None], values[0], values[1])


def _detection_link(layout: _ParameterLayout, coefs, n_individuals: int) -> jnp.ndarray:
    """
    Logit detection per occasion, shape (classes, occasions).

    Column 0 (first occasion) is never used by the likelihood.
    """
    formula = layout.spec.p
    n_occasions = layout.n_occasions

    if formula.structure == ParameterStructure.FIXED:
        clipped = jnp.clip(formula.value, 1e-12, 1 - 1e-12)
        return jnp.full((1, n_occasions), logit(clipped))

    eta = coefs[ParameterType.P]
    if formula.structure == ParameterStructure.CONSTANT:
        # one coefficient per detection class
        return jnp.broadcast_to(eta[:, None], (eta.shape[0], n_occasions))

    return jnp.concatenate([jnp.zeros(1), eta])[None, :]


def _real_scalar(layout: _ParameterLayout, coefs, param: ParameterType, link: Callable) -> jnp.ndarray:
    formula = layout.spec.formulas()[param]
    if formula.structure == ParameterStructure.FIXED:
        return jnp.asarray(formula.value)
    return link(coefs[param][0])


@lru_cache(maxsize=64)
def _build_objective(layout: _ParameterLayout, quadrature_nodes: int):
    """
    Build the jitted negative log-likelihood and its gradient/Hessian for a layout.

    Cached per (layout, nodes) so bootstrap iterations reuse compiled code.
    """
    heterogeneity = layout.spec.heterogeneity
    nodes, weights = np.polynomial.hermite.hermgauss(quadrature_nodes)
    offsets = jnp.asarray(np.sqrt(2.0) * nodes)
    log_weights = jnp.asarray(np.log(weights / np.sqrt(np.pi)))

    def negative_log_likelihood(beta, captures, first, released):
        coefs = layout.coefficients(beta)
        n_individuals = captures.shape[0]
        phi = _survival_matrix(layout, coefs, first)
        eta_p = _detection_link(layout, coefs, n_individuals)

        def for_detection(eta_row):
            p = jnp.broadcast_to(inv_logit(eta_row)[None, :], captures.shape)
            return cjs_individual_log_likelihood(captures, first, phi, p)

        if heterogeneity == Heterogeneity.MIXTURE:
            prop = _real_scalar(layout, coefs, ParameterType.PI, inv_logit)
            ll_1 = for_detection(eta_p[0])
            ll_2 = for_detection(eta_p[1])
            log_lik = jnp.logaddexp(
                jnp.log(jnp.maximum(prop, _TINY)) + ll_1,
                jnp.log(jnp.maximum(1.0 - prop, _TINY)) + ll_2,
            )
        elif heterogeneity == Heterogeneity.RANDOM_EFFECT:
            sigma = _real_scalar(layout, coefs, ParameterType.SIGMA, jnp.exp)
            per_node = jax.vmap(lambda z: for_detection(eta_p[0] + sigma * z))(offsets)
            log_lik = jax.scipy.special.logsumexp(per_node + log_weights[:, None], axis=0)
        else:
            log_lik = for_detection(eta_p[0])

        return -jnp.sum(jnp.where(released, log_lik, 0.0))

    value_and_grad = jax.jit(jax.value_and_grad(negative_log_likelihood))
    hessian = jax.jit(jax.hessian(negative_log_likelihood))
    return value_and_grad, hessian


class CJSModel(FitAdapter):
    """
    Embedded CJS maximum-likelihood engine.

    Estimates:
    - phi: apparent survival (logit link)
    - p: recapture probability (logit link), one value per class for mixtures
    - pi: mixture proportion of detection class 1 (logit link)
    - sigma: SD of the individual random effect on logit p (log link)
    """

    engine = "jax"

    def fit(
        self,
        histories: EncounterHistories,
        spec: ModelSpec,
        timeout: Optional[float] = None,
    ) -> FittedModel:
        spec.validate(histories.n_occasions)
        settings = self.config.optimization
        start_time = time.time()

        first = histories.first_detection_occasions()
        released = (first >= 0) & (first < histories.n_occasions - 1)
        if not released.any():
            raise InvalidInputError(
                "no individual was released before the last occasion",
                suggestions=["CJS models need at least one individual detected before the final occasion"],
            )

        layout = _ParameterLayout.build(spec, histories.n_occasions)
        value_and_grad, hessian = _build_objective(layout, settings.quadrature_nodes)

        captures = jnp.asarray(histories.matrix, dtype=jnp.float64)
        first_j = jnp.asarray(first)
        released_j = jnp.asarray(released)

        def objective(beta):
            value, grad = value_and_grad(jnp.asarray(beta), captures, first_j, released_j)
            return float(value), np.asarray(grad, dtype=float)

        x0 = self._initial_parameters(layout, histories, first)
        bounds = layout.bounds()

        if layout.n_beta == 0:
            beta_hat = x0
            value, _ = objective(beta_hat)
            n_iterations, message = 0, "no free parameters"
        else:
            beta_hat, value, n_iterations, message = self._optimize(
                objective, x0, bounds, start_time, timeout
            )

        if not np.isfinite(value):
            raise ConvergenceError(engine=self.engine, reason="non-finite log-likelihood at optimum")

        warnings: List[str] = []
        covariance = None
        if settings.compute_standard_errors and layout.n_beta > 0:
            covariance = self._covariance(hessian, beta_hat, captures, first_j, released_j, warnings)

        estimates = self._real_estimates(layout, beta_hat, covariance, settings.confidence_level)

        fit_time = time.time() - start_time
        self.logger.debug(
            "CJS fit completed",
            model=str(spec),
            log_likelihood=round(-value, 4),
            iterations=n_iterations,
            seconds=round(fit_time, 3),
        )

        return FittedModel(
            spec=spec,
            n_occasions=histories.n_occasions,
            n_individuals=int(released.sum()),
            estimates=estimates,
            log_likelihood=-value,
            n_parameters=layout.n_beta,
            engine=self.engine,
            fit_time=fit_time,
            n_iterations=n_iterations,
            warnings=warnings,
            metadata={"optimizer_message": message},
        )

    def _optimize(self, objective, x0, bounds, start_time, timeout):
        settings = self.config.optimization

        def check_timeout(*args):
            if timeout is not None and time.time() - start_time > timeout:
                raise FitTimeoutError(engine=self.engine, timeout=timeout)

        try:
            result = scipy.optimize.minimize(
                fun=objective,
                x0=x0,
                method="L-BFGS-B",
                jac=True,
                bounds=bounds,
                callback=check_timeout,
                options={
                    "maxiter": settings.max_iterations,
                    "ftol": settings.tolerance,
                    "gtol": settings.tolerance,
                },
            )
        except (FloatingPointError, np.linalg.LinAlgError) as e:
            raise ConvergenceError(engine=self.engine, reason=str(e)) from e

        # A fit can still end in a line search at the optimum; accept it only
        # when the projected gradient is small.
        if not result.success:
            projected = self._projected_gradient(result.x, result.jac, bounds)
            if not np.all(np.isfinite(projected)) or np.max(np.abs(projected)) > 1e-3:
                raise ConvergenceError(
                    engine=self.engine,
                    reason=str(result.message),
                    iterations=int(result.nit),
                )
            logger.debug(f"Accepting fit ended by '{result.message}' with small gradient")

        return np.asarray(result.x), float(result.fun), int(result.nit), str(result.message)

    @staticmethod
    def _projected_gradient(x, grad, bounds) -> np.ndarray:
        grad = np.array(grad, dtype=float)
        lower = np.array([b[0] for b in bounds])
        upper = np.array([b[1] for b in bounds])
        at_lower = np.isclose(x, lower) & (grad > 0)
        at_upper = np.isclose(x, upper) & (grad < 0)
        grad[at_lower | at_upper] = 0.0
        return grad

    @staticmethod
    def _initial_parameters(layout: _ParameterLayout, histories: EncounterHistories, first: np.ndarray) -> np.ndarray:
        """Starting values from naive data summaries."""
        matrix = histories.matrix
        after_first = np.arange(histories.n_occasions)[None, :] > first[:, None]
        after_first &= (first >= 0)[:, None]
        n_after = after_first.sum()
        p_naive = matrix[after_first].mean() if n_after else 0.5
        p_start = float(logit(np.clip(p_naive, 0.05, 0.95)))
        phi_start = float(logit(0.75))

        x0: List[float] = []
        for param, start, stop in layout.slices:
            count = stop - start
            if param == ParameterType.PHI:
                x0.extend([phi_start] * count)
            elif param == ParameterType.P:
                if count == 2 and layout.spec.heterogeneity == Heterogeneity.MIXTURE:
                    # separate the classes to break label symmetry
                    x0.extend([p_start + 1.0, p_start - 1.0])
                else:
                    x0.extend([p_start] * count)
            elif param == ParameterType.PI:
                x0.extend([0.0] * count)
            else:
                x0.extend([float(np.log(0.5))] * count)
        return np.array(x0, dtype=float)

    def _covariance(self, hessian, beta_hat, captures, first, released, warnings) -> Optional[np.ndarray]:
        """Inverse Hessian of the negative log-likelihood, None if unusable."""
        matrix = np.asarray(hessian(jnp.asarray(beta_hat), captures, first, released))
        if not np.all(np.isfinite(matrix)):
            warnings.append("Hessian contains non-finite values; standard errors unavailable")
            return None

        try:
            covariance = np.linalg.inv(matrix)
        except np.linalg.LinAlgError:
            warnings.append("Hessian is singular; standard errors unavailable")
            return None

        if np.any(np.diag(covariance) < 0):
            warnings.append("Negative variances; some parameters may not be identifiable")
        return covariance

    def _real_estimates(
        self,
        layout: _ParameterLayout,
        beta_hat: np.ndarray,
        covariance: Optional[np.ndarray],
        confidence_level: float,
    ) -> Dict[ParameterType, List[ParameterEstimate]]:
        """Back-transform link-scale estimates with delta-method SEs and link-scale CIs."""
        z = stats.norm.ppf(1 - (1 - confidence_level) / 2)
        variances = np.diag(covariance) if covariance is not None else np.full(len(beta_hat), np.nan)
        link_se = np.sqrt(np.where(variances >= 0, variances, np.nan))

        formulas = layout.spec.formulas()
        estimates: Dict[ParameterType, List[ParameterEstimate]] = {}

        for param, start, stop in layout.slices:
            if formulas[param].structure == ParameterStructure.FIXED:
                estimates[param] = [fixed_estimate(layout.spec, param, layout.n_occasions)]
                continue

            rows = []
            labels = parameter_labels(layout.spec, param, layout.n_occasions)
            for offset, (name, index) in enumerate(labels):
                b = float(beta_hat[start + offset])
                se_b = float(link_se[start + offset])
                if param == ParameterType.SIGMA:
                    est = float(np.exp(b))
                    se = se_b * est
                    lcl, ucl = float(np.exp(b - z * se_b)), float(np.exp(b + z * se_b))
                else:
                    est = float(inv_logit(b))
                    se = se_b * est * (1 - est)
                    lcl, ucl = float(inv_logit(b - z * se_b)), float(inv_logit(b + z * se_b))
                rows.append(ParameterEstimate(
                    name=name, parameter=param, estimate=est, se=se, lcl=lcl, ucl=ucl, index=index,
                ))
            estimates[param] = rows

        return estimates
