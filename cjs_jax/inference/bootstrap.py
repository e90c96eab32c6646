"""
Nonparametric bootstrap of abundance estimates.

Each iteration resamples individuals with replacement, refits the model
through a FitAdapter and recomputes the abundance vector. Per-iteration
failures (non-convergence, timeouts, zero detection, degenerate draws and
unexpected engine errors) are recorded as undefined rows. Only model
specification and configuration errors abort the run.
Results are stored by iteration index so the bands do not depend on the
order in which parallel fits complete.
"""

import time
import traceback
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import numpy as np
import pandas as pd

from .intervals import ConfidenceBand, quantile_band
from ..config.settings import CjsJaxConfig, SeedStrategy, get_default_config
from ..data.encounter import EncounterHistories
from ..data.sampling import BootstrapStreams
from ..estimators.abundance import AbundanceEstimate, AbundanceEstimator, estimate_abundance
from ..models.base import FitAdapter, FittedModel
from ..models.spec import ModelSpec
from ..core.exceptions import (
    CjsJaxError,
    ConvergenceError,
    FitTimeoutError,
    DivisionByZeroError,
    DegenerateSampleError,
    InvalidInputError,
    InsufficientIterationsError,
    ModelSpecError,
    ConfigurationError,
)
from ..utils.logging import get_logger


logger = get_logger(__name__)


class IterationStatus(str, Enum):
    """Outcome of one bootstrap iteration."""

    SUCCESS = "success"
    CONVERGENCE_FAILURE = "convergence_failure"
    TIMEOUT = "timeout"
    DIVISION_BY_ZERO = "division_by_zero"
    DEGENERATE = "degenerate"
    INVALID_INPUT = "invalid_input"
    ENGINE_ERROR = "engine_error"


# Subclasses first: FitTimeoutError is a ConvergenceError
_UNDEFINED_STATUS = (
    (FitTimeoutError, IterationStatus.TIMEOUT),
    (ConvergenceError, IterationStatus.CONVERGENCE_FAILURE),
    (DivisionByZeroError, IterationStatus.DIVISION_BY_ZERO),
    (DegenerateSampleError, IterationStatus.DEGENERATE),
    (InvalidInputError, IterationStatus.INVALID_INPUT),
)


def _status_for(error: Exception) -> IterationStatus:
    for error_type, status in _UNDEFINED_STATUS:
        if isinstance(error, error_type):
            return status
    return IterationStatus.ENGINE_ERROR


@dataclass(frozen=True)
class IterationOutcome:
    index: int
    status: IterationStatus
    components: Optional[Dict[str, np.ndarray]] = None
    message: Optional[str] = None

    @property
    def defined(self) -> bool:
        return self.status == IterationStatus.SUCCESS


@dataclass
class BootstrapSummary:
    """Run summary: how many iterations produced a defined estimate."""

    n_iterations: int
    n_successful: int
    n_undefined: int
    failure_counts: Dict[str, int]
    seed_entropy: int
    seed_strategy: str
    elapsed_seconds: float

    @property
    def success_rate(self) -> float:
        return self.n_successful / self.n_iterations if self.n_iterations else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_iterations": self.n_iterations,
            "n_successful": self.n_successful,
            "n_undefined": self.n_undefined,
            "success_rate": self.success_rate,
            "failure_counts": dict(self.failure_counts),
            "seed_entropy": str(self.seed_entropy),
            "seed_strategy": self.seed_strategy,
            "elapsed_seconds": self.elapsed_seconds,
        }


@dataclass
class BootstrapResult:
    """Point estimate, bootstrap samples and confidence bands per component."""

    point_estimate: AbundanceEstimate
    fitted_model: FittedModel
    samples: Dict[str, np.ndarray]
    bands: Dict[str, ConfidenceBand]
    outcomes: List[IterationOutcome]
    summary: BootstrapSummary
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def band(self) -> ConfidenceBand:
        return self.bands["total"]

    def to_dataframe(self) -> pd.DataFrame:
        """Numeric table: one row per component and occasion."""
        frames = []
        for component, values in self.point_estimate.components.items():
            band = self.bands[component]
            frame = pd.DataFrame({
                "component": component,
                "occasion": self.point_estimate.occasions,
                "estimate": values,
                "lower": band.lower,
                "median": band.median if band.median is not None else np.nan,
                "upper": band.upper,
            })
            frames.append(frame)
        return pd.concat(frames, ignore_index=True)


class AbundanceBootstrap:
    """
    Bootstrap driver for abundance confidence bands.

    Args:
        adapter: Engine used to fit every dataset
        spec: Model structure fitted to every dataset
        estimator: Abundance estimator applied to each fit
        config: Configuration (defaults to the global configuration)
    """

    def __init__(
        self,
        adapter: FitAdapter,
        spec: ModelSpec,
        estimator: Union[AbundanceEstimator, str] = AbundanceEstimator.RATIO,
        config: Optional[CjsJaxConfig] = None,
    ):
        self.adapter = adapter
        self.spec = spec
        self.estimator = AbundanceEstimator(estimator)
        self.config = config or get_default_config()
        self.logger = get_logger(self.__class__.__name__, self.config)

    def run(self, histories: EncounterHistories) -> BootstrapResult:
        """
        Run the bootstrap.

        Raises:
            ModelSpecError: If the model structure does not fit the data
            InsufficientIterationsError: If too few iterations succeed
            UndefinedEstimateError: If undefined rows exist and may not be dropped
        """
        settings = self.config.bootstrap
        start_time = time.time()

        self.spec.validate(histories.n_occasions)

        fitted = self.adapter.fit(histories, self.spec, timeout=settings.fit_timeout)
        point = estimate_abundance(histories, fitted, self.estimator)

        n_iterations = settings.n_iterations
        streams = BootstrapStreams(settings.random_seed, settings.seed_strategy)

        self.logger.info(
            f"Starting bootstrap with {n_iterations} iterations",
            engine=self.adapter.engine,
            estimator=self.estimator.value,
            model=str(self.spec),
            workers=settings.max_workers,
        )

        if streams.strategy == SeedStrategy.SEQUENTIAL:
            pre_drawn = streams.draw_all(histories, n_iterations)
        else:
            pre_drawn = None
            streams.reserve(n_iterations)

        def indices_for(index: int) -> np.ndarray:
            if pre_drawn is not None:
                return pre_drawn[index]
            return streams.indices_for(histories, index)

        outcomes: List[Optional[IterationOutcome]] = [None] * n_iterations

        if settings.max_workers > 1:
            self._run_parallel(histories, indices_for, outcomes, settings.max_workers)
        else:
            for index in range(n_iterations):
                self._record(outcomes, self._run_iteration(histories, index, indices_for(index)))

        elapsed = time.time() - start_time
        summary = self._summarize(outcomes, streams, elapsed)

        self.logger.info(
            f"Bootstrap completed: {summary.n_successful}/{n_iterations} iterations successful",
            undefined=summary.n_undefined,
            seconds=round(elapsed, 2),
        )
        if summary.n_undefined:
            self.logger.warning(
                f"{summary.n_undefined} bootstrap iterations were undefined",
                **summary.failure_counts,
            )

        required = settings.min_success_fraction
        if summary.n_successful == 0 or summary.n_successful < required * n_iterations:
            raise InsufficientIterationsError(
                n_successful=summary.n_successful,
                n_iterations=n_iterations,
                required_fraction=required,
            )

        samples = self._sample_matrices(point, outcomes)
        intervals = self.config.intervals
        bands = {
            component: quantile_band(
                matrix,
                lower=intervals.lower,
                upper=intervals.upper,
                include_median=intervals.include_median,
                drop_undefined=settings.drop_undefined,
            )
            for component, matrix in samples.items()
        }

        return BootstrapResult(
            point_estimate=point,
            fitted_model=fitted,
            samples=samples,
            bands=bands,
            outcomes=outcomes,
            summary=summary,
            metadata={
                "engine": self.adapter.engine,
                "estimator": self.estimator.value,
                "model": self.spec.to_dict(),
            },
        )

    def _run_parallel(self, histories, indices_for, outcomes, max_workers: int) -> None:
        progress = self.config.bootstrap.progress_interval
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [
                executor.submit(self._run_iteration, histories, index, indices_for(index))
                for index in range(len(outcomes))
            ]
            try:
                for completed, future in enumerate(as_completed(futures), 1):
                    self._record(outcomes, future.result(), log_progress=False)
                    if completed % progress == 0:
                        self.logger.info(f"Completed {completed}/{len(outcomes)} bootstrap iterations")
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

    def _run_iteration(self, histories: EncounterHistories, index: int, indices: np.ndarray) -> IterationOutcome:
        """Fit one pseudo-sample; per-iteration errors become undefined outcomes."""
        sample = histories.take(indices)
        try:
            fitted = self.adapter.fit(sample, self.spec, timeout=self.config.bootstrap.fit_timeout)
            estimate = estimate_abundance(sample, fitted, self.estimator)
        except (ModelSpecError, ConfigurationError):
            raise
        except CjsJaxError as e:
            status = _status_for(e)
            self.logger.debug(f"Bootstrap iteration {index} undefined: {e.message}", status=status.value)
            return IterationOutcome(index=index, status=status, message=e.message)
        except Exception as e:
            self.logger.debug(
                f"Bootstrap iteration {index} undefined: {type(e).__name__}: {e}\n{traceback.format_exc()}",
                status=IterationStatus.ENGINE_ERROR.value,
            )
            return IterationOutcome(index=index, status=IterationStatus.ENGINE_ERROR, message=f"{type(e).__name__}: {e}")

        return IterationOutcome(index=index, status=IterationStatus.SUCCESS, components=estimate.components)

    def _record(self, outcomes: List[Optional[IterationOutcome]], outcome: IterationOutcome, log_progress: bool = True) -> None:
        if outcomes[outcome.index] is not None:
            raise RuntimeError(f"bootstrap iteration {outcome.index} recorded twice")
        outcomes[outcome.index] = outcome

        progress = self.config.bootstrap.progress_interval
        if log_progress and (outcome.index + 1) % progress == 0:
            self.logger.info(f"Completed {outcome.index + 1}/{len(outcomes)} bootstrap iterations")

    @staticmethod
    def _summarize(outcomes: List[IterationOutcome], streams: BootstrapStreams, elapsed: float) -> BootstrapSummary:
        failure_counts: Dict[str, int] = {}
        for outcome in outcomes:
            if not outcome.defined:
                failure_counts[outcome.status.value] = failure_counts.get(outcome.status.value, 0) + 1

        n_successful = sum(1 for outcome in outcomes if outcome.defined)
        return BootstrapSummary(
            n_iterations=len(outcomes),
            n_successful=n_successful,
            n_undefined=len(outcomes) - n_successful,
            failure_counts=failure_counts,
            seed_entropy=streams.entropy,
            seed_strategy=streams.strategy.value,
            elapsed_seconds=elapsed,
        )

    @staticmethod
    def _sample_matrices(point: AbundanceEstimate, outcomes: List[IterationOutcome]) -> Dict[str, np.ndarray]:
        """Stack per-iteration components; undefined iterations stay NaN."""
        n_columns = len(point.occasions)
        samples = {
            component: np.full((len(outcomes), n_columns), np.nan)
            for component in point.components
        }
        for outcome in outcomes:
            if outcome.defined:
                for component, values in outcome.components.items():
                    samples[component][outcome.index] = values
        return samples


def run_bootstrap(
    histories: EncounterHistories,
    adapter: FitAdapter,
    spec: ModelSpec,
    estimator: Union[AbundanceEstimator, str] = AbundanceEstimator.RATIO,
    config: Optional[CjsJaxConfig] = None,
) -> BootstrapResult:
    """Convenience function for a single bootstrap run."""
    return AbundanceBootstrap(adapter, spec, estimator, config).run(histories)
