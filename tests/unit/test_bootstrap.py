"""
Tests for the bootstrap driver using a deterministic stub fitting engine.
"""

import threading

import numpy as np
import pytest

from cjs_jax.config.settings import CjsJaxConfig
from cjs_jax.inference.bootstrap import AbundanceBootstrap, IterationStatus, run_bootstrap
from cjs_jax.models.base import FitAdapter, FittedModel, ParameterEstimate
from cjs_jax.models.spec import ParameterType, create_model_spec
from cjs_jax.core.exceptions import (
    ConvergenceError,
    FitTimeoutError,
    ModelSpecError,
    UndefinedEstimateError,
    InsufficientIterationsError,
)


def _detection(histories):
    return float(np.clip(histories.matrix[:, 1:].mean() * 2, 0.05, 0.95))


def _fitted(spec, histories, detection):
    estimates = {
        ParameterType.PHI: [ParameterEstimate("phi", ParameterType.PHI, 0.8, 0.05, 0.7, 0.9)],
        ParameterType.P: [ParameterEstimate("p", ParameterType.P, detection, 0.05, 0.0, 1.0)],
    }
    return FittedModel(
        spec=spec,
        n_occasions=histories.n_occasions,
        n_individuals=histories.n_individuals,
        estimates=estimates,
        log_likelihood=-100.0,
        n_parameters=2,
        engine="stub",
    )


class StubAdapter(FitAdapter):
    """
    Returns detection derived from the data so estimates vary between pseudo-samples.

    ``failures`` maps a call number (0 is the point fit) to the exception raised.
    ``detections`` maps a call number to a fixed detection probability.
    """

    engine = "stub"

    def __init__(self, config=None, failures=None, fail_always=None, detections=None):
        super().__init__(config)
        self.failures = failures or {}
        self.fail_always = fail_always
        self.detections = detections or {}
        self.calls = 0
        self.timeouts = []
        self._lock = threading.Lock()

    def _next_call(self, timeout):
        with self._lock:
            call = self.calls
            self.calls += 1
            self.timeouts.append(timeout)

        if call in self.failures:
            raise self.failures[call]
        if self.fail_always is not None and call > 0:
            raise self.fail_always
        return call

    def fit(self, histories, spec, timeout=None):
        call = self._next_call(timeout)
        return _fitted(spec, histories, self.detections.get(call, _detection(histories)))


class AgeSurvivalStubAdapter(StubAdapter):
    """Age-class survival; calls in ``inverted`` survive better in the first interval."""

    def __init__(self, config=None, inverted=()):
        super().__init__(config)
        self.inverted = set(inverted)

    def fit(self, histories, spec, timeout=None):
        call = self._next_call(timeout)
        phi_new, phi_old = (0.9, 0.6) if call in self.inverted else (0.5, 0.8)
        fitted = _fitted(spec, histories, _detection(histories))
        fitted.estimates[ParameterType.PHI] = [
            ParameterEstimate("phi_age0", ParameterType.PHI, phi_new, 0.05, 0.0, 1.0, index=0),
            ParameterEstimate("phi_age1", ParameterType.PHI, phi_old, 0.05, 0.0, 1.0, index=1),
        ]
        return fitted


def _config(**bootstrap):
    settings = {"n_iterations": 100, "random_seed": 123}
    settings.update(bootstrap)
    return CjsJaxConfig(bootstrap=settings, logging={"console_logging": False})


@pytest.fixture
def histories(test_utils):
    return test_utils.simulate_histories(n_individuals=60, n_occasions=5, seed=1)


class TestBootstrapRun:

    def test_all_iterations_succeed(self, histories):
        result = run_bootstrap(histories, StubAdapter(), create_model_spec(), config=_config())

        assert result.summary.n_successful == 100
        assert result.summary.n_undefined == 0
        assert result.samples["total"].shape == (100, 4)
        assert [o.index for o in result.outcomes] == list(range(100))
        np.testing.assert_array_equal(result.band.occasions, [2, 3, 4, 5])
        assert np.all(result.band.lower <= result.band.upper)

    def test_undefined_iterations_are_dropped(self, histories):
        failing_calls = [3, 10, 20, 40, 77]
        adapter = StubAdapter(failures={
            call: (FitTimeoutError(engine="stub", timeout=1.0) if call == 40 else ConvergenceError(engine="stub"))
            for call in failing_calls
        })

        result = run_bootstrap(histories, adapter, create_model_spec(), config=_config(max_workers=1))

        undefined = [o.index for o in result.outcomes if not o.defined]
        assert undefined == [call - 1 for call in failing_calls]
        assert result.summary.n_successful == 95
        assert result.summary.n_undefined == 5
        assert result.summary.failure_counts == {"convergence_failure": 4, "timeout": 1}
        assert result.outcomes[39].status == IterationStatus.TIMEOUT
        assert np.isnan(result.samples["total"][2]).all()
        assert result.band.n_used == 95
        assert result.band.n_dropped == 5

        defined = result.samples["total"][np.isfinite(result.samples["total"]).all(axis=1)]
        np.testing.assert_allclose(result.band.lower, np.quantile(defined, 0.025, axis=0))
        np.testing.assert_allclose(result.band.upper, np.quantile(defined, 0.975, axis=0))

    def test_fit_timeout_is_passed_to_every_fit(self, histories):
        adapter = StubAdapter()

        run_bootstrap(histories, adapter, create_model_spec(), config=_config(n_iterations=5, fit_timeout=2.5))

        assert adapter.timeouts == [2.5] * 6

    def test_point_estimate_from_original_data(self, histories):
        result = run_bootstrap(histories, StubAdapter(), create_model_spec(), config=_config(n_iterations=5))

        expected = histories.matrix.sum(axis=0)[1:] / _detection(histories)
        np.testing.assert_allclose(result.point_estimate.total, expected)
        assert result.metadata["estimator"] == "ratio"

    def test_to_dataframe(self, histories):
        result = run_bootstrap(histories, StubAdapter(), create_model_spec(), config=_config(n_iterations=20))

        frame = result.to_dataframe()

        assert list(frame.columns) == ["component", "occasion", "estimate", "lower", "median", "upper"]
        assert len(frame) == 4


class TestBootstrapErrors:

    def test_model_spec_error_aborts_run(self, histories):
        adapter = StubAdapter(failures={7: ModelSpecError("p", "not estimable")})

        with pytest.raises(ModelSpecError):
            run_bootstrap(histories, adapter, create_model_spec(), config=_config())

    def test_model_spec_error_aborts_parallel_run(self, histories):
        adapter = StubAdapter(fail_always=ModelSpecError("p", "not estimable"))

        with pytest.raises(ModelSpecError):
            run_bootstrap(histories, adapter, create_model_spec(), config=_config(max_workers=4))

    def test_engine_errors_become_undefined_rows(self, histories):
        adapter = StubAdapter(failures={5: FloatingPointError("overflow in exp")})

        result = run_bootstrap(histories, adapter, create_model_spec(), config=_config(n_iterations=20))

        assert result.summary.n_undefined == 1
        assert result.summary.failure_counts == {"engine_error": 1}
        assert result.outcomes[4].status == IterationStatus.ENGINE_ERROR
        assert "FloatingPointError" in result.outcomes[4].message
        assert np.isnan(result.samples["total"][4]).all()

    def test_point_fit_failure_propagates(self, histories):
        adapter = StubAdapter(failures={0: ConvergenceError(engine="stub")})

        with pytest.raises(ConvergenceError):
            run_bootstrap(histories, adapter, create_model_spec(), config=_config())

    def test_all_iterations_undefined(self, histories):
        adapter = StubAdapter(fail_always=ConvergenceError(engine="stub"))

        with pytest.raises(InsufficientIterationsError) as exc_info:
            run_bootstrap(histories, adapter, create_model_spec(), config=_config(n_iterations=10))

        assert exc_info.value.n_successful == 0

    def test_minimum_success_fraction(self, histories):
        adapter = StubAdapter(failures={call: ConvergenceError(engine="stub") for call in range(1, 6)})

        with pytest.raises(InsufficientIterationsError):
            run_bootstrap(
                histories, adapter, create_model_spec(),
                config=_config(n_iterations=20, min_success_fraction=0.9),
            )

    def test_undefined_rows_fail_when_not_dropped(self, histories):
        adapter = StubAdapter(failures={4: ConvergenceError(engine="stub")})

        with pytest.raises(UndefinedEstimateError):
            run_bootstrap(
                histories, adapter, create_model_spec(),
                config=_config(n_iterations=10, drop_undefined=False),
            )

    def test_spec_checked_before_fitting(self, test_utils):
        histories = test_utils.simulate_histories(n_individuals=20, n_occasions=2, seed=0)
        adapter = StubAdapter()

        with pytest.raises(ModelSpecError):
            AbundanceBootstrap(adapter, create_model_spec(phi="~age"), "transience", _config()).run(histories)

        assert adapter.calls == 0


class TestReproducibility:

    @pytest.mark.parametrize("strategy", ["sequential", "per_iteration"])
    def test_same_seed_same_samples_regardless_of_workers(self, histories, strategy):
        serial = run_bootstrap(
            histories, StubAdapter(), create_model_spec(),
            config=_config(n_iterations=40, seed_strategy=strategy, max_workers=1),
        )
        parallel = run_bootstrap(
            histories, StubAdapter(), create_model_spec(),
            config=_config(n_iterations=40, seed_strategy=strategy, max_workers=4),
        )

        np.testing.assert_array_equal(serial.samples["total"], parallel.samples["total"])
        np.testing.assert_array_equal(serial.band.lower, parallel.band.lower)
        assert serial.summary.seed_strategy == strategy

    def test_recorded_entropy_replays_unseeded_run(self, histories):
        first = run_bootstrap(histories, StubAdapter(), create_model_spec(), config=_config(n_iterations=10, random_seed=None))
        replay = run_bootstrap(
            histories, StubAdapter(), create_model_spec(),
            config=_config(n_iterations=10, random_seed=first.summary.seed_entropy),
        )

        np.testing.assert_array_equal(first.samples["total"], replay.samples["total"])


class TestUndefinedEstimates:

    def test_zero_detection_is_undefined(self, histories):
        adapter = StubAdapter(detections={4: 0.0, 9: 0.0})

        result = run_bootstrap(histories, adapter, create_model_spec(), config=_config(n_iterations=20))

        assert result.summary.failure_counts == {"division_by_zero": 2}
        assert [o.index for o in result.outcomes if not o.defined] == [3, 8]
        assert result.outcomes[3].status == IterationStatus.DIVISION_BY_ZERO
        assert result.band.n_used == 18

    def test_negative_transient_component_is_undefined(self, histories):
        adapter = AgeSurvivalStubAdapter(inverted={2, 6, 7})

        result = run_bootstrap(
            histories, adapter, create_model_spec(phi="~age"),
            estimator="transience", config=_config(n_iterations=15),
        )

        assert result.summary.failure_counts == {"degenerate": 3}
        assert [o.index for o in result.outcomes if not o.defined] == [1, 5, 6]
        assert set(result.bands) == {"total", "resident", "transient"}
        assert np.all(result.bands["transient"].lower >= 0)
