"""
Shared pytest configuration and fixtures for cjs-jax tests.

This module provides common test fixtures, utilities, and configuration
used across the test suite.
"""

import pytest
import numpy as np
from typing import Dict, List, Optional

from cjs_jax.config.settings import CjsJaxConfig
from cjs_jax.data.encounter import EncounterHistories, parse_encounter_histories
from cjs_jax.models.base import FittedModel, ParameterEstimate, fixed_estimate, parameter_labels
from cjs_jax.models.spec import ModelSpec, ParameterType, ParameterStructure


ENV_VARIABLES = [
    "CJS_JAX_LOG_LEVEL",
    "CJS_JAX_N_ITERATIONS",
    "CJS_JAX_RANDOM_SEED",
    "CJS_JAX_MAX_WORKERS",
    "CJS_JAX_FIT_TIMEOUT",
    "CJS_JAX_R_PATH",
]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep user environment variables out of configuration tests."""
    for name in ENV_VARIABLES:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def quiet_config():
    """Configuration with console logging disabled."""
    return CjsJaxConfig(logging={"console_logging": False, "level": "WARNING"})


@pytest.fixture(scope="session")
def sample_histories():
    """Small dataset mirroring a dipper-style study (7 occasions)."""
    return parse_encounter_histories([
        "1111000", "1010100", "0011110", "1001010", "0100101",
        "1100010", "0110100", "1011000", "0101010", "1000111",
    ])


@pytest.fixture
def small_histories():
    """Three individuals, three occasions; detected counts [2, 2, 1]."""
    return parse_encounter_histories(["110", "110", "001"])


@pytest.fixture(scope="session")
def simulated_histories():
    """Simulated CJS data with phi=0.8, p=0.6."""
    return TestUtils.simulate_histories(n_individuals=600, n_occasions=6, phi=0.8, p=0.6, seed=2024)


# Markers for different test types
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test (fast)"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test (medium speed)"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow (may take >10 seconds)"
    )


# Test utilities
class TestUtils:
    """Utility functions for testing."""

    @staticmethod
    def simulate_histories(
        n_individuals: int = 300,
        n_occasions: int = 6,
        phi=0.8,
        p=0.6,
        seed: int = 42,
        phi_first: Optional[float] = None,
        p2: Optional[float] = None,
        prop: float = 0.5,
    ) -> EncounterHistories:
        """
        Simulate CJS encounter histories.

        Releases are spread evenly over occasions 1..T-1. ``phi`` and ``p``
        may be scalars or per-interval/per-occasion vectors (length T-1).
        ``phi_first`` sets survival over the first interval after release;
        ``p2`` adds a second detection class with proportion ``1 - prop``.
        """
        rng = np.random.default_rng(seed)
        phi = np.broadcast_to(np.asarray(phi, dtype=float), (n_occasions - 1,))
        p = np.broadcast_to(np.asarray(p, dtype=float), (n_occasions - 1,))

        matrix = np.zeros((n_individuals, n_occasions), dtype=bool)
        releases = np.arange(n_individuals) % (n_occasions - 1)

        for i, release in enumerate(releases):
            matrix[i, release] = True
            in_class_two = p2 is not None and rng.random() >= prop
            for k in range(release, n_occasions - 1):
                survival = phi_first if (phi_first is not None and k == release) else phi[k]
                if rng.random() >= survival:
                    break
                detection = p2 if in_class_two else p[k]
                matrix[i, k + 1] = rng.random() < detection

        return EncounterHistories(matrix)

    @staticmethod
    def fitted_model(
        spec: ModelSpec,
        n_occasions: int,
        values: Dict[ParameterType, List[float]],
        n_individuals: int = 100,
        log_likelihood: float = -120.0,
        engine: str = "test",
    ) -> FittedModel:
        """Build a FittedModel from real-scale values, one list per estimated parameter."""
        estimates = {}
        for param, formula in spec.formulas().items():
            if formula.structure == ParameterStructure.FIXED:
                estimates[param] = [fixed_estimate(spec, param, n_occasions)]
                continue
            labels = parameter_labels(spec, param, n_occasions)
            estimates[param] = [
                ParameterEstimate(
                    name=name, parameter=param, estimate=value,
                    se=0.05, lcl=max(value - 0.1, 0.0), ucl=min(value + 0.1, 1.0), index=index,
                )
                for (name, index), value in zip(labels, values[param])
            ]
        return FittedModel(
            spec=spec,
            n_occasions=n_occasions,
            n_individuals=n_individuals,
            estimates=estimates,
            log_likelihood=log_likelihood,
            n_parameters=spec.n_parameters(n_occasions),
            engine=engine,
        )


@pytest.fixture
def test_utils():
    """Provide test utilities."""
    return TestUtils
