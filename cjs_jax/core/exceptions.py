"""
Exception classes for cjs-jax.

Provides rich error information with actionable suggestions. Errors raised
while processing a single bootstrap iteration are recoverable (the iteration
is marked undefined); configuration-level errors abort the whole run.
"""

from typing import List, Optional, Dict, Any


class CjsJaxError(Exception):
    """
    Base exception class for cjs-jax with rich error information.

    Provides structured error information including suggestions for resolution.
    """

    def __init__(
        self,
        message: str,
        suggestions: Optional[List[str]] = None,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.suggestions = suggestions or []
        self.error_code = error_code
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        """Return formatted error message with suggestions."""
        message = super().__str__()

        if self.error_code:
            message = f"[{self.error_code}] {message}"

        if self.suggestions:
            message += "\n\nSuggestions:"
            for i, suggestion in enumerate(self.suggestions, 1):
                message += f"\n  {i}. {suggestion}"

        return message


class InvalidInputError(CjsJaxError):
    """Exception raised for malformed or empty encounter-history data and bad estimator inputs."""

    def __init__(self, specific_issue: Optional[str] = None, **kwargs):
        message = f"Invalid input: {specific_issue}" if specific_issue else "Invalid input"
        suggestions = kwargs.pop('suggestions', None) or [
            "Check that the dataset contains at least one individual",
            "Ensure count and probability vectors cover the same occasions",
        ]
        kwargs.setdefault('error_code', "INVALID_INPUT")

        super().__init__(message=message, suggestions=suggestions, **kwargs)


class MalformedRecordError(InvalidInputError):
    """Exception raised when an encounter-history record cannot be parsed."""

    def __init__(
        self,
        line_number: Optional[int] = None,
        record: Optional[str] = None,
        reason: Optional[str] = None,
        **kwargs
    ):
        self.line_number = line_number
        self.record = record

        if line_number is not None:
            issue = f"line {line_number}: {reason or 'malformed record'} ({record!r})"
        else:
            issue = reason or "malformed record"

        kwargs.pop('suggestions', None)

        super().__init__(
            specific_issue=issue,
            suggestions=[
                "Encounter histories must contain only '0' and '1' characters",
                "All histories must have one character per sampling occasion",
                "Example valid record: '0110100'",
            ],
            error_code="MALFORMED_RECORD",
            context={"line_number": line_number, "record": record, "reason": reason},
            **kwargs
        )


class ConvergenceError(CjsJaxError):
    """Exception raised when a model fit does not converge."""

    def __init__(
        self,
        engine: Optional[str] = None,
        reason: Optional[str] = None,
        iterations: Optional[int] = None,
        **kwargs
    ):
        if engine and reason:
            message = f"Model fit with {engine} did not converge: {reason}"
        elif reason:
            message = f"Model fit did not converge: {reason}"
        else:
            message = "Model fit did not converge"

        suggestions = kwargs.pop('suggestions', None) or [
            "Increase the maximum number of optimizer iterations",
            "Simplify the model structure (e.g. constant instead of time-varying)",
            "Check for parameters that are not identifiable from the data",
        ]
        kwargs.setdefault('error_code', "CONVERGENCE")

        super().__init__(
            message=message,
            suggestions=suggestions,
            context={"engine": engine, "reason": reason, "iterations": iterations},
            **kwargs
        )


class FitTimeoutError(ConvergenceError):
    """Exception raised when a model fit exceeds its time limit."""

    def __init__(self, engine: Optional[str] = None, timeout: Optional[float] = None, **kwargs):
        self.timeout = timeout
        super().__init__(
            engine=engine,
            reason=f"fit exceeded timeout of {timeout}s",
            suggestions=[
                "Increase bootstrap.fit_timeout",
                "Simplify the model structure",
            ],
            error_code="FIT_TIMEOUT",
            **kwargs
        )


class DivisionByZeroError(CjsJaxError):
    """Exception raised when a fitted probability used as a divisor is exactly zero."""

    def __init__(self, quantity: str = "detection probability", occasion: Optional[int] = None, **kwargs):
        self.quantity = quantity
        self.occasion = occasion

        if occasion is not None:
            message = f"Fitted {quantity} is zero at occasion {occasion}"
        else:
            message = f"Fitted {quantity} is zero"

        super().__init__(
            message=message,
            suggestions=[
                "The pseudo-sample may contain no recaptures for this occasion",
                "Consider a constant detection structure for sparse data",
            ],
            error_code="DIVISION_BY_ZERO",
            context={"quantity": quantity, "occasion": occasion},
            **kwargs
        )


class DegenerateSampleError(CjsJaxError):
    """Exception raised when an estimator produces a negative abundance."""

    def __init__(self, component: str, occasions: Optional[List[int]] = None, **kwargs):
        self.component = component
        self.occasions = occasions or []

        super().__init__(
            message=f"Negative {component} abundance at occasions {self.occasions}",
            suggestions=[
                "Inspect the fitted survival estimates of newly and previously marked animals",
                "A transient rate outside [0, 1] indicates a degenerate bootstrap draw",
            ],
            error_code="DEGENERATE_SAMPLE",
            context={"component": component, "occasions": self.occasions},
            **kwargs
        )


class UndefinedEstimateError(CjsJaxError):
    """Exception raised when interval aggregation meets undefined rows it may not drop."""

    def __init__(self, n_dropped: int, n_total: int, **kwargs):
        self.n_dropped = n_dropped
        self.n_total = n_total

        super().__init__(
            message=f"{n_dropped} of {n_total} bootstrap rows contain undefined estimates",
            suggestions=[
                "Set intervals.drop_undefined=True to compute the band from defined rows only",
                "Inspect the run summary for the failure reasons",
            ],
            error_code="UNDEFINED_ESTIMATE",
            context={"n_dropped": n_dropped, "n_total": n_total},
            **kwargs
        )


class InsufficientIterationsError(CjsJaxError):
    """Exception raised when too few bootstrap iterations succeeded."""

    def __init__(self, n_successful: int, n_iterations: int, required_fraction: float = 0.0, **kwargs):
        self.n_successful = n_successful
        self.n_iterations = n_iterations

        super().__init__(
            message=(
                f"Only {n_successful} of {n_iterations} bootstrap iterations succeeded "
                f"(required fraction: {required_fraction:.2f})"
            ),
            suggestions=[
                "Check the model structure against the data",
                "Increase the number of iterations",
                "Lower bootstrap.min_success_fraction",
            ],
            error_code="INSUFFICIENT_ITERATIONS",
            context={
                "n_successful": n_successful,
                "n_iterations": n_iterations,
                "required_fraction": required_fraction,
            },
            **kwargs
        )


class ModelSpecError(CjsJaxError):
    """Exception raised for invalid parameter-structure combinations."""

    def __init__(
        self,
        parameter: Optional[str] = None,
        issue: Optional[str] = None,
        **kwargs
    ):
        if parameter and issue:
            message = f"Invalid model specification for '{parameter}': {issue}"
        elif issue:
            message = f"Invalid model specification: {issue}"
        else:
            message = "Model specification error"

        suggestions = kwargs.pop('suggestions', None) or [
            "Use '~1', '~time', '~age' or a fixed number for each parameter",
            "Mixture proportion and random-effect SD must be constant or fixed",
            "Age-class survival needs at least 3 occasions",
        ]

        super().__init__(
            message=message,
            suggestions=suggestions,
            error_code="MODEL_SPEC",
            context={"parameter": parameter, "issue": issue},
            **kwargs
        )


class ConfigurationError(CjsJaxError):
    """Exception raised for configuration issues."""

    def __init__(self, config_key: Optional[str] = None, issue: Optional[str] = None, **kwargs):
        if config_key:
            message = f"Invalid configuration for '{config_key}'"
            if issue:
                message += f": {issue}"
            suggestions = [
                f"Check the value for configuration key '{config_key}'",
                "Review configuration file syntax",
                "Check environment variable formatting",
            ]
        else:
            message = f"Configuration error: {issue}" if issue else "Configuration error"
            suggestions = [
                "Check configuration file syntax",
                "Verify all required settings are provided",
            ]

        kwargs.pop('suggestions', None)

        super().__init__(
            message=message,
            suggestions=suggestions,
            error_code="CONFIG",
            context={"config_key": config_key, "issue": issue},
            **kwargs
        )
