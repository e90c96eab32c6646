"""
Core export functionality for cjs-jax.

Writes the numeric abundance table of a bootstrap run (point estimate and
quantile band per occasion and component) to CSV or JSON.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

import numpy as np
import pandas as pd

from ..inference.bootstrap import BootstrapResult
from ..utils.logging import get_logger
from .exceptions import ConfigurationError

logger = get_logger(__name__)

SUPPORTED_FORMATS = ("csv", "json")


class ResultsExporter:
    """
    Export bootstrap abundance results.

    Args:
        decimal_precision: Number of decimal places for numeric values
    """

    def __init__(self, decimal_precision: int = 6):
        self.decimal_precision = decimal_precision

    def abundance_table(self, result: BootstrapResult) -> pd.DataFrame:
        table = result.to_dataframe()
        numeric_columns = table.select_dtypes(include=[np.number]).columns.drop("occasion", errors="ignore")
        table[numeric_columns] = table[numeric_columns].round(self.decimal_precision)
        return table

    def to_json_dict(self, result: BootstrapResult) -> Dict[str, Any]:
        table = self.abundance_table(result)
        return {
            "estimates": json.loads(table.to_json(orient="records")),
            "summary": result.summary.to_dict(),
            "model": result.fitted_model.to_dict(),
            "metadata": result.metadata,
        }

    def export(self, result: BootstrapResult, path: Union[str, Path], format: str = "csv") -> Path:
        """Write the table to ``path`` in the given format."""
        format = format.lower()
        if format not in SUPPORTED_FORMATS:
            raise ConfigurationError(
                config_key="format",
                issue=f"unsupported export format '{format}', expected one of {SUPPORTED_FORMATS}",
            )

        export_path = Path(path)
        export_path.parent.mkdir(parents=True, exist_ok=True)

        if format == "csv":
            self.abundance_table(result).to_csv(export_path, index=False)
        else:
            with open(export_path, "w") as f:
                json.dump(self.to_json_dict(result), f, indent=2, default=_json_default)

        logger.info(f"Abundance table exported to: {export_path}")
        return export_path


def _json_default(value):
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    return str(value)


def export_abundance_table(
    result: BootstrapResult,
    path: Union[str, Path],
    format: str = "csv",
    decimal_precision: int = 6,
) -> Path:
    """
    Export the abundance table of a bootstrap run.

    CSV holds the table only; JSON adds the run summary and fitted model.
    """
    return ResultsExporter(decimal_precision).export(result, path, format)


def create_timestamped_export(
    result: BootstrapResult,
    prefix: str = "abundance",
    directory: Optional[Union[str, Path]] = None,
    format: str = "csv",
) -> Path:
    """Export to ``{prefix}_{YYYYmmdd_HHMMSS}.{format}`` in ``directory``."""
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filename = f"{prefix}_{timestamp}.{format.lower()}"
    export_path = Path(directory) / filename if directory else Path(filename)
    return export_abundance_table(result, export_path, format)
