"""
Tests for quantile confidence bands.
"""

import numpy as np
import pytest

from cjs_jax.inference.intervals import quantile_band
from cjs_jax.core.exceptions import (
    InvalidInputError,
    UndefinedEstimateError,
    InsufficientIterationsError,
)


class TestQuantileBand:

    def test_type_7_quantiles(self):
        samples = np.array([[1.0], [2.0], [3.0], [4.0], [5.0]])

        band = quantile_band(samples)

        assert band.lower[0] == pytest.approx(1.1)
        assert band.median[0] == pytest.approx(3.0)
        assert band.upper[0] == pytest.approx(4.9)

    def test_order_statistics_are_ordered(self):
        rng = np.random.default_rng(0)
        samples = rng.gamma(2.0, 50.0, size=(200, 6))

        band = quantile_band(samples)

        assert np.all(band.lower <= band.median)
        assert np.all(band.median <= band.upper)

    def test_occasions_start_at_two(self):
        band = quantile_band(np.ones((10, 4)))

        np.testing.assert_array_equal(band.occasions, [2, 3, 4, 5])

    def test_undefined_rows_dropped(self):
        samples = np.array([[1.0, 10.0], [np.nan, 20.0], [3.0, np.inf], [5.0, 50.0]])

        band = quantile_band(samples, lower=0.25, upper=0.75)

        assert band.n_used == 2
        assert band.n_dropped == 2
        np.testing.assert_allclose(band.lower, np.quantile([[1.0, 10.0], [5.0, 50.0]], 0.25, axis=0))

    def test_undefined_rows_fail_loudly_when_not_dropped(self):
        samples = np.array([[1.0], [np.nan], [3.0]])

        with pytest.raises(UndefinedEstimateError) as exc_info:
            quantile_band(samples, drop_undefined=False)

        assert exc_info.value.n_dropped == 1
        assert exc_info.value.n_total == 3

    def test_all_undefined(self):
        with pytest.raises(InsufficientIterationsError):
            quantile_band(np.full((4, 2), np.nan))

    def test_without_median(self):
        band = quantile_band(np.arange(20.0).reshape(10, 2), include_median=False)

        assert band.median is None
        assert list(band.to_dataframe().columns) == ["occasion", "lower", "upper"]

    @pytest.mark.parametrize("lower,upper", [(0.5, 0.5), (0.9, 0.1), (0.0, 0.9), (0.1, 1.0)])
    def test_invalid_probabilities(self, lower, upper):
        with pytest.raises(InvalidInputError):
            quantile_band(np.ones((3, 2)), lower=lower, upper=upper)

    def test_requires_matrix(self):
        with pytest.raises(InvalidInputError):
            quantile_band(np.ones(5))
