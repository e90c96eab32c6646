"""
Tests for exporting abundance tables.
"""

import json

import numpy as np
import pandas as pd
import pytest

from cjs_jax.core.export import ResultsExporter, export_abundance_table, create_timestamped_export
from cjs_jax.estimators.abundance import AbundanceEstimate, AbundanceEstimator
from cjs_jax.inference.bootstrap import BootstrapResult, BootstrapSummary
from cjs_jax.inference.intervals import quantile_band
from cjs_jax.models.spec import ParameterType, create_model_spec
from cjs_jax.core.exceptions import ConfigurationError


@pytest.fixture
def result(test_utils):
    spec = create_model_spec()
    fitted = test_utils.fitted_model(spec, 3, {ParameterType.PHI: [0.8], ParameterType.P: [0.5]})
    samples = {"total": np.array([[3.0, 1.0], [4.0, 2.0], [5.0, 3.0], [np.nan, np.nan], [4.123456789, 2.0]])}
    return BootstrapResult(
        point_estimate=AbundanceEstimate(
            estimator=AbundanceEstimator.RATIO,
            occasions=np.array([2, 3]),
            components={"total": np.array([4.0, 2.0])},
        ),
        fitted_model=fitted,
        samples=samples,
        bands={"total": quantile_band(samples["total"])},
        outcomes=[],
        summary=BootstrapSummary(
            n_iterations=5,
            n_successful=4,
            n_undefined=1,
            failure_counts={"convergence_failure": 1},
            seed_entropy=2 ** 100,
            seed_strategy="sequential",
            elapsed_seconds=0.5,
        ),
        metadata={"engine": "test", "estimator": "ratio", "model": spec.to_dict()},
    )


class TestResultsExporter:

    def test_csv(self, result, tmp_path):
        path = export_abundance_table(result, tmp_path / "out" / "abundance.csv")

        table = pd.read_csv(path)

        assert list(table.columns) == ["component", "occasion", "estimate", "lower", "median", "upper"]
        assert table["occasion"].tolist() == [2, 3]
        assert table["estimate"].tolist() == [4.0, 2.0]

    def test_rounding(self, result):
        table = ResultsExporter(decimal_precision=2).abundance_table(result)

        assert table["upper"].iloc[0] == round(table["upper"].iloc[0], 2)

    def test_json_includes_summary_and_model(self, result, tmp_path):
        path = export_abundance_table(result, tmp_path / "abundance.json", format="JSON")

        with open(path) as f:
            data = json.load(f)

        assert len(data["estimates"]) == 2
        assert data["summary"]["n_successful"] == 4
        assert data["summary"]["failure_counts"] == {"convergence_failure": 1}
        assert data["summary"]["seed_entropy"] == str(2 ** 100)
        assert data["model"]["model"] == {"phi": "~1", "p": "~1"}
        assert data["metadata"]["estimator"] == "ratio"

    def test_unsupported_format(self, result, tmp_path):
        with pytest.raises(ConfigurationError):
            export_abundance_table(result, tmp_path / "abundance.xlsx", format="xlsx")

    def test_timestamped_export(self, result, tmp_path):
        path = create_timestamped_export(result, prefix="run", directory=tmp_path)

        assert path.parent == tmp_path
        assert path.name.startswith("run_")
        assert path.suffix == ".csv"
        assert path.exists()
