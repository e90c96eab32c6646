"""
Tests for the RMark adapter, with the R subprocess mocked out.
"""

import json
import subprocess
from pathlib import Path
from unittest.mock import patch

import numpy as np
import pytest

from cjs_jax.config.settings import CjsJaxConfig
from cjs_jax.data.encounter import EncounterHistories
from cjs_jax.models.rmark import RMarkAdapter, RESULTS_START, RESULTS_END
from cjs_jax.models.spec import ParameterType, create_model_spec
from cjs_jax.core.exceptions import ConvergenceError, FitTimeoutError, ConfigurationError


def _completed(results=None, returncode=0, stdout=None, stderr=""):
    if stdout is None:
        stdout = f"noise\n{RESULTS_START}\n{json.dumps(results)}\n{RESULTS_END}\n"
    return subprocess.CompletedProcess(args=["Rscript"], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def adapter(tmp_path):
    config = CjsJaxConfig(
        rmark={"work_directory": str(tmp_path), "timeout": 30.0},
        logging={"console_logging": False},
    )
    return RMarkAdapter(config)


@pytest.fixture
def histories(test_utils):
    return test_utils.simulate_histories(n_individuals=40, n_occasions=4, seed=3)


class TestScriptGeneration:

    def test_constant_model(self, adapter):
        script = adapter.generate_script(create_model_spec(), Path("/tmp/data.csv"), 5)

        assert 'process.data(data, model = "CJS")' in script
        assert "Phi = list(formula = ~1)" in script
        assert "p = list(formula = ~1)" in script
        assert 'real$phi <- extract("Phi", NULL)' in script
        assert "/tmp/data.csv" in script

    def test_time_varying_detection(self, adapter):
        script = adapter.generate_script(create_model_spec(p="~time"), Path("d.csv"), 5)

        assert "p = list(formula = ~time)" in script
        assert 'real$p <- extract("p", "time")' in script

    def test_age_survival_adds_design_covariate(self, adapter):
        script = adapter.generate_script(create_model_spec(phi="~age"), Path("d.csv"), 6)

        assert 'type = "age", bins = c(0, 0.5, 6), name = "tr"' in script
        assert "Phi = list(formula = ~tr)" in script

    def test_fixed_detection_is_not_extracted(self, adapter):
        script = adapter.generate_script(create_model_spec(p=1.0), Path("d.csv"), 4)

        assert "p = list(formula = ~1, fixed = 1.0)" in script
        assert 'extract("p"' not in script

    def test_mixture_model(self, adapter):
        script = adapter.generate_script(create_model_spec(pi="~1"), Path("d.csv"), 4)

        assert 'model = "CJSMixture"' in script
        assert "p = list(formula = ~mixture)" in script
        assert 'real$pi <- extract("pi", NULL)' in script


class TestFit:

    def test_successful_fit(self, adapter, histories):
        results = {
            "converged": True,
            "neg2lnl": 250.0,
            "n_parameters": 4,
            "aicc": 258.5,
            "real": {
                "phi": {"estimate": 0.8, "se": 0.04, "lcl": 0.7, "ucl": 0.87},
                "p": {"estimate": [0.5, 0.6, 0.7], "se": [0.1, 0.1, 0.1],
                      "lcl": [0.3, 0.4, 0.5], "ucl": [0.7, 0.8, 0.85]},
            },
        }

        with patch("cjs_jax.models.rmark.subprocess.run", return_value=_completed(results)) as run:
            fitted = adapter.fit(histories, create_model_spec(p="~time"))

        assert run.call_args.kwargs["timeout"] == 30.0
        assert fitted.engine == "rmark"
        assert fitted.log_likelihood == pytest.approx(-125.0)
        assert fitted.aicc == pytest.approx(258.5)
        assert fitted.n_parameters == 4
        np.testing.assert_allclose(fitted.detection_probabilities(), [0.5, 0.6, 0.7])
        assert [e.name for e in fitted.estimates_for(ParameterType.P)] == ["p_t2", "p_t3", "p_t4"]

    def test_working_files_removed(self, adapter, histories, tmp_path):
        with patch("cjs_jax.models.rmark.subprocess.run", return_value=_completed({"converged": False})):
            with pytest.raises(ConvergenceError):
                adapter.fit(histories, create_model_spec())

        assert list(tmp_path.iterdir()) == []

    def test_data_file_written(self, adapter, histories):
        seen = {}

        def fake_run(command, **kwargs):
            data = Path(kwargs["cwd"]) / "data.csv"
            seen["lines"] = data.read_text().splitlines()
            return _completed({"converged": False, "error": "Model convergence failed"})

        with patch("cjs_jax.models.rmark.subprocess.run", side_effect=fake_run):
            with pytest.raises(ConvergenceError) as exc_info:
                adapter.fit(histories, create_model_spec())

        assert seen["lines"][0] == "ch"
        assert len(seen["lines"]) == histories.n_individuals + 1
        assert "Model convergence failed" in str(exc_info.value)

    def test_data_file_keeps_individual_ids(self, adapter):
        histories = EncounterHistories(
            np.array([[1, 0, 1], [0, 1, 1]]), individual_ids=["A1", "B2"]
        )
        seen = {}

        def fake_run(command, **kwargs):
            seen["lines"] = (Path(kwargs["cwd"]) / "data.csv").read_text().splitlines()
            return _completed({"converged": False})

        with patch("cjs_jax.models.rmark.subprocess.run", side_effect=fake_run):
            with pytest.raises(ConvergenceError):
                adapter.fit(histories, create_model_spec())

        assert seen["lines"] == ["id,ch", "A1,101", "B2,011"]

    def test_shorter_call_timeout_wins(self, adapter, histories):
        with patch("cjs_jax.models.rmark.subprocess.run", return_value=_completed({"converged": False})) as run:
            with pytest.raises(ConvergenceError):
                adapter.fit(histories, create_model_spec(), timeout=5.0)

        assert run.call_args.kwargs["timeout"] == 5.0

    def test_timeout(self, adapter, histories):
        error = subprocess.TimeoutExpired(cmd="Rscript", timeout=30.0)

        with patch("cjs_jax.models.rmark.subprocess.run", side_effect=error):
            with pytest.raises(FitTimeoutError) as exc_info:
                adapter.fit(histories, create_model_spec())

        assert exc_info.value.timeout == 30.0

    def test_missing_r_executable(self, adapter, histories):
        with patch("cjs_jax.models.rmark.subprocess.run", side_effect=FileNotFoundError("Rscript")):
            with pytest.raises(ConfigurationError) as exc_info:
                adapter.fit(histories, create_model_spec())

        assert "rmark.r_path" in str(exc_info.value)


class TestParseOutput:

    def test_nonzero_exit(self, adapter):
        with pytest.raises(ConvergenceError) as exc_info:
            adapter.parse_output(_completed(returncode=1, stdout="", stderr="Error: package 'RMark' not found"))

        assert "RMark" in str(exc_info.value)

    def test_missing_markers(self, adapter):
        with pytest.raises(ConvergenceError):
            adapter.parse_output(_completed(stdout="nothing useful"))

    def test_unreadable_json(self, adapter):
        with pytest.raises(ConvergenceError):
            adapter.parse_output(_completed(stdout=f"{RESULTS_START}\n{{not json\n{RESULTS_END}"))

    def test_estimate_count_mismatch(self, adapter, histories):
        results = {
            "converged": True,
            "neg2lnl": 250.0,
            "n_parameters": 4,
            "real": {"phi": {"estimate": 0.8}, "p": {"estimate": [0.5, 0.6]}},
        }

        with patch("cjs_jax.models.rmark.subprocess.run", return_value=_completed(results)):
            with pytest.raises(ConvergenceError):
                adapter.fit(histories, create_model_spec(p="~time"))
