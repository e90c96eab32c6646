"""
RMark/MARK engine adapter for cjs-jax.

Fits CJS models by running an R script that calls RMark (and through it the
MARK program) in a temporary working directory. The encounter histories are
written as an RMark ``ch`` data file, the script is generated from the
ModelSpec, and the real-scale estimates come back as a JSON block printed
between markers on standard output.
"""

import json
import shutil
import subprocess
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .base import FitAdapter, FittedModel, ParameterEstimate, fixed_estimate, parameter_labels
from .spec import ModelSpec, ParameterType, ParameterStructure, Heterogeneity
from ..data.encounter import EncounterHistories
from ..core.exceptions import ConvergenceError, FitTimeoutError, ConfigurationError


RESULTS_START = "RMARK_RESULTS_START"
RESULTS_END = "RMARK_RESULTS_END"

# RMark model names per detection heterogeneity
MODEL_NAMES = {
    Heterogeneity.NONE: "CJS",
    Heterogeneity.MIXTURE: "CJSMixture",
    Heterogeneity.RANDOM_EFFECT: "CJSRandom",
}

# RMark parameter names
R_PARAMETERS = {
    ParameterType.PHI: "Phi",
    ParameterType.P: "p",
    ParameterType.PI: "pi",
    ParameterType.SIGMA: "sigmap",
}

AGE_COVARIATE = "tr"


class RMarkAdapter(FitAdapter):
    """Fit adapter that delegates to RMark through ``Rscript``."""

    engine = "rmark"

    def fit(
        self,
        histories: EncounterHistories,
        spec: ModelSpec,
        timeout: Optional[float] = None,
    ) -> FittedModel:
        spec.validate(histories.n_occasions)
        settings = self.config.rmark
        effective_timeout = _min_timeout(timeout, settings.timeout)
        start_time = time.time()

        with self._working_directory() as work_dir:
            data_file = work_dir / "data.csv"
            script_file = work_dir / "analysis.R"

            histories.to_dataframe().to_csv(data_file, index=False)
            script_file.write_text(self.generate_script(spec, data_file, histories.n_occasions))

            try:
                completed = subprocess.run(
                    [settings.r_path, str(script_file)],
                    capture_output=True,
                    text=True,
                    timeout=effective_timeout,
                    cwd=str(work_dir),
                )
            except subprocess.TimeoutExpired as e:
                raise FitTimeoutError(engine=self.engine, timeout=effective_timeout) from e
            except FileNotFoundError as e:
                raise ConfigurationError(
                    config_key="rmark.r_path",
                    issue=f"R executable '{settings.r_path}' not found; set CJS_JAX_R_PATH to the Rscript binary",
                ) from e

        results = self.parse_output(completed)
        fit_time = time.time() - start_time
        estimates = self._estimates_from_results(spec, histories.n_occasions, results)

        self.logger.debug("RMark fit completed", model=str(spec), seconds=round(fit_time, 2))

        return FittedModel(
            spec=spec,
            n_occasions=histories.n_occasions,
            n_individuals=histories.n_individuals,
            estimates=estimates,
            log_likelihood=-0.5 * float(results["neg2lnl"]),
            n_parameters=int(results["n_parameters"]),
            engine=self.engine,
            aicc=results.get("aicc"),
            fit_time=fit_time,
            metadata={"rmark_model": MODEL_NAMES[spec.heterogeneity]},
        )

    @contextmanager
    def _working_directory(self) -> Iterator[Path]:
        settings = self.config.rmark
        directory = Path(tempfile.mkdtemp(prefix="cjs_rmark_", dir=settings.work_directory))
        try:
            yield directory
        finally:
            if settings.keep_files:
                self.logger.info(f"Keeping RMark files in {directory}")
            else:
                shutil.rmtree(directory, ignore_errors=True)

    def generate_script(self, spec: ModelSpec, data_file: Path, n_occasions: int) -> str:
        """Generate the R script fitting ``spec`` to the data in ``data_file``."""
        model_name = MODEL_NAMES[spec.heterogeneity]

        design_lines = []
        if spec.phi.structure == ParameterStructure.AGE:
            design_lines.append(
                f'ddl <- add.design.data(processed, ddl, parameter = "Phi", type = "age", '
                f'bins = c(0, 0.5, {n_occasions}), name = "{AGE_COVARIATE}")'
            )

        parameter_entries = []
        extract_lines = []
        for param, formula in spec.formulas().items():
            r_name = R_PARAMETERS[param]
            parameter_entries.append(f"{r_name} = {_r_formula(spec, param)}")
            if formula.structure != ParameterStructure.FIXED:
                key = _design_key(spec, param)
                key_arg = f'"{key}"' if key else "NULL"
                extract_lines.append(f'real${param.value} <- extract("{r_name}", {key_arg})')

        design = "\n    ".join(design_lines)
        parameters = ",\n            ".join(parameter_entries)
        extracts = "\n        ".join(extract_lines)

        return f'''
library(RMark)
library(jsonlite)
options(warn = -1)

emit <- function(results) {{
    cat("{RESULTS_START}\\n")
    cat(toJSON(results, auto_unbox = TRUE, digits = 10, na = "null"))
    cat("\\n{RESULTS_END}\\n")
}}

tryCatch({{
    data <- read.csv("{data_file.as_posix()}", colClasses = c(ch = "character"))
    processed <- process.data(data, model = "{model_name}")
    ddl <- make.design.data(processed)
    {design}

    model <- mark(
        processed, ddl,
        model.parameters = list(
            {parameters}
        ),
        delete = TRUE,
        output = FALSE,
        silent = TRUE
    )

    if (!is.null(model$results) && is.finite(model$results$lnl)) {{
        extract <- function(par, key) {{
            x <- get.real(model, par, se = TRUE)
            if (is.null(key)) {{
                x <- x[1, ]
            }} else {{
                x <- x[!duplicated(x[[key]]), ]
                x <- x[order(as.integer(x[[key]])), ]
            }}
            list(estimate = x$estimate, se = x$se, lcl = x$lcl, ucl = x$ucl)
        }}
        real <- list()
        {extracts}
        emit(list(
            converged = TRUE,
            neg2lnl = model$results$lnl,
            n_parameters = model$results$npar,
            aicc = model$results$AICc,
            real = real
        ))
    }} else {{
        emit(list(converged = FALSE, error = "Model convergence failed"))
    }}
}}, error = function(e) {{
    emit(list(converged = FALSE, error = paste("R Error:", e$message)))
}})
'''

    def parse_output(self, completed: subprocess.CompletedProcess) -> Dict[str, Any]:
        """
        Extract the JSON results block from R's standard output.

        Raises:
            ConvergenceError: If R failed, printed no results, or the model did not converge
        """
        if completed.returncode != 0:
            raise ConvergenceError(
                engine=self.engine,
                reason=f"R exited with status {completed.returncode}: {_tail(completed.stderr)}",
            )

        output = completed.stdout or ""
        start_idx = output.find(RESULTS_START)
        end_idx = output.find(RESULTS_END)
        if start_idx == -1 or end_idx == -1:
            raise ConvergenceError(engine=self.engine, reason="no results block in R output")

        json_text = output[start_idx + len(RESULTS_START):end_idx].strip()
        try:
            results = json.loads(json_text)
        except json.JSONDecodeError as e:
            raise ConvergenceError(engine=self.engine, reason=f"unreadable results: {e}") from e

        if not results.get("converged", False):
            raise ConvergenceError(engine=self.engine, reason=results.get("error", "unknown error"))
        return results

    def _estimates_from_results(
        self,
        spec: ModelSpec,
        n_occasions: int,
        results: Dict[str, Any],
    ) -> Dict[ParameterType, List[ParameterEstimate]]:
        real = results.get("real", {})
        estimates: Dict[ParameterType, List[ParameterEstimate]] = {}

        for param, formula in spec.formulas().items():
            if formula.structure == ParameterStructure.FIXED:
                estimates[param] = [fixed_estimate(spec, param, n_occasions)]
                continue

            labels = parameter_labels(spec, param, n_occasions)
            block = real.get(param.value)
            if block is None:
                raise ConvergenceError(engine=self.engine, reason=f"no estimates returned for '{param.value}'")

            columns = {key: _as_list(block.get(key)) for key in ("estimate", "se", "lcl", "ucl")}
            if len(columns["estimate"]) != len(labels):
                raise ConvergenceError(
                    engine=self.engine,
                    reason=f"expected {len(labels)} estimates for '{param.value}', got {len(columns['estimate'])}",
                )

            estimates[param] = [
                ParameterEstimate(
                    name=name,
                    parameter=param,
                    estimate=_as_float(columns["estimate"][i]),
                    se=_as_float(columns["se"][i] if i < len(columns["se"]) else None),
                    lcl=_as_float(columns["lcl"][i] if i < len(columns["lcl"]) else None),
                    ucl=_as_float(columns["ucl"][i] if i < len(columns["ucl"]) else None),
                    index=index,
                )
                for i, (name, index) in enumerate(labels)
            ]

        return estimates


def _r_formula(spec: ModelSpec, param: ParameterType) -> str:
    formula = spec.formulas()[param]
    if formula.structure == ParameterStructure.FIXED:
        return f"list(formula = ~1, fixed = {formula.value!r})"
    if formula.structure == ParameterStructure.TIME:
        return "list(formula = ~time)"
    if formula.structure == ParameterStructure.AGE:
        return f"list(formula = ~{AGE_COVARIATE})"
    if param == ParameterType.P and spec.heterogeneity == Heterogeneity.MIXTURE:
        return "list(formula = ~mixture)"
    return "list(formula = ~1)"


def _design_key(spec: ModelSpec, param: ParameterType) -> Optional[str]:
    """Design-data column distinguishing the real parameters of ``param``."""
    structure = spec.formulas()[param].structure
    if structure == ParameterStructure.TIME:
        return "time"
    if structure == ParameterStructure.AGE:
        return AGE_COVARIATE
    if param == ParameterType.P and spec.heterogeneity == Heterogeneity.MIXTURE:
        return "mixture"
    return None


def _min_timeout(*timeouts: Optional[float]) -> Optional[float]:
    given = [t for t in timeouts if t is not None]
    return min(given) if given else None


def _as_list(value) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _as_float(value) -> float:
    return float("nan") if value is None else float(value)


def _tail(text: Optional[str], n_lines: int = 5) -> str:
    lines = (text or "").strip().splitlines()
    return " | ".join(lines[-n_lines:])
