"""Configuration management for cjs-jax."""

from .settings import (
    CjsJaxConfig,
    BootstrapConfig,
    IntervalConfig,
    OptimizationConfig,
    RMarkConfig,
    LoggingConfig,
    SeedStrategy,
    get_default_config,
)

__all__ = [
    "CjsJaxConfig",
    "BootstrapConfig",
    "IntervalConfig",
    "OptimizationConfig",
    "RMarkConfig",
    "LoggingConfig",
    "SeedStrategy",
    "get_default_config",
]
