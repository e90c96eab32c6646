"""Core functionality for cjs-jax."""

from .exceptions import (
    CjsJaxError,
    InvalidInputError,
    MalformedRecordError,
    ConvergenceError,
    FitTimeoutError,
    DivisionByZeroError,
    DegenerateSampleError,
    UndefinedEstimateError,
    InsufficientIterationsError,
    ModelSpecError,
    ConfigurationError,
)

__all__ = [
    "CjsJaxError",
    "InvalidInputError",
    "MalformedRecordError",
    "ConvergenceError",
    "FitTimeoutError",
    "DivisionByZeroError",
    "DegenerateSampleError",
    "UndefinedEstimateError",
    "InsufficientIterationsError",
    "ModelSpecError",
    "ConfigurationError",
]
