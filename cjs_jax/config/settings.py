"""
Configuration management system for cjs-jax.

Provides a hierarchical configuration system with support for file-based
configuration, environment variables, and runtime updates.
"""

import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from enum import Enum

from ..core.exceptions import ConfigurationError


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class SeedStrategy(str, Enum):
    """How bootstrap iterations draw from the random source."""
    SEQUENTIAL = "sequential"
    PER_ITERATION = "per_iteration"


class BootstrapConfig(BaseModel):
    """Bootstrap resampling configuration."""
    model_config = ConfigDict(validate_assignment=True, validate_default=True, use_enum_values=True)

    n_iterations: int = Field(default=1000, ge=1)
    random_seed: Optional[int] = None
    seed_strategy: SeedStrategy = SeedStrategy.SEQUENTIAL
    max_workers: int = Field(default=1, ge=1)
    fit_timeout: Optional[float] = Field(default=None, gt=0)
    drop_undefined: bool = True
    min_success_fraction: float = Field(default=0.0, ge=0.0, le=1.0)
    progress_interval: int = Field(default=100, ge=1)


class IntervalConfig(BaseModel):
    """Quantile interval configuration."""
    model_config = ConfigDict(validate_assignment=True)

    lower: float = 0.025
    upper: float = 0.975
    include_median: bool = True

    @model_validator(mode='after')
    def validate_probabilities(self):
        if not 0.0 < self.lower < self.upper < 1.0:
            raise ValueError(f"Require 0 < lower < upper < 1, got lower={self.lower}, upper={self.upper}")
        return self


class OptimizationConfig(BaseModel):
    """Embedded likelihood engine configuration."""
    model_config = ConfigDict(validate_assignment=True)

    max_iterations: int = Field(default=1000, ge=1)
    tolerance: float = Field(default=1e-8, gt=0)
    compute_standard_errors: bool = True
    confidence_level: float = Field(default=0.95, gt=0, lt=1)
    quadrature_nodes: int = Field(default=15, ge=2)


class RMarkConfig(BaseModel):
    """External RMark/MARK engine configuration."""
    model_config = ConfigDict(validate_assignment=True)

    r_path: str = "Rscript"
    timeout: Optional[float] = Field(default=600.0, gt=0)
    keep_files: bool = False
    work_directory: Optional[Path] = None

    @field_validator('work_directory', mode='before')
    @classmethod
    def validate_work_directory(cls, v):
        return Path(v) if v else None


class LoggingConfig(BaseModel):
    """Logging configuration."""
    model_config = ConfigDict(validate_assignment=True, validate_default=True, use_enum_values=True)

    level: LogLevel = LogLevel.INFO
    file_logging: bool = False
    log_file: Optional[Path] = None
    console_logging: bool = True
    format_string: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @field_validator('log_file', mode='before')
    @classmethod
    def validate_log_file(cls, v):
        return Path(v) if v else None

    @model_validator(mode='after')
    def default_log_file(self):
        if self.file_logging and self.log_file is None:
            self.__dict__['log_file'] = Path.home() / ".cjs_jax" / "logs" / "cjs_jax.log"
        return self


class CjsJaxConfig(BaseModel):
    """Main configuration class for cjs-jax."""
    model_config = ConfigDict(validate_assignment=True, validate_default=True, use_enum_values=True)

    bootstrap: BootstrapConfig = Field(default_factory=BootstrapConfig)
    intervals: IntervalConfig = Field(default_factory=IntervalConfig)
    optimization: OptimizationConfig = Field(default_factory=OptimizationConfig)
    rmark: RMarkConfig = Field(default_factory=RMarkConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def __init__(self, config_file: Optional[Union[str, Path]] = None, **kwargs):
        """
        Initialize configuration.

        Args:
            config_file: Path to YAML configuration file
            **kwargs: Override specific configuration sections
        """
        config_data: Dict[str, Any] = {}
        if config_file:
            config_data = _load_config_file(config_file)

        _merge(config_data, _load_environment_variables())
        _merge(config_data, kwargs)

        try:
            super().__init__(**config_data)
        except ValidationError as e:
            first = e.errors()[0]
            key = ".".join(str(part) for part in first.get('loc', ()))
            raise ConfigurationError(config_key=key or None, issue=first.get('msg')) from e

        self._create_directories()

    def _create_directories(self):
        """Create necessary directories."""
        if self.logging.file_logging and self.logging.log_file:
            self.logging.log_file.parent.mkdir(parents=True, exist_ok=True)

    def save_config(self, config_file: Union[str, Path]) -> None:
        """Save current configuration to YAML file."""
        config_path = Path(config_file)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, 'w') as f:
            yaml.safe_dump(self.model_dump(mode='json'), f, default_flow_style=False, indent=2)

    def update(self, **kwargs) -> None:
        """
        Update configuration values.

        Nested values use dotted keys, e.g. ``update(**{"bootstrap.n_iterations": 200})``.
        """
        for key, value in kwargs.items():
            section_name, _, subkey = key.partition('.')
            if not hasattr(self, section_name):
                raise ConfigurationError(config_key=key, issue="unknown configuration section")

            try:
                if subkey:
                    section = getattr(self, section_name)
                    if subkey not in type(section).model_fields:
                        raise ConfigurationError(config_key=key, issue="unknown configuration key")
                    setattr(section, subkey, value)
                else:
                    setattr(self, section_name, value)
            except ValidationError as e:
                raise ConfigurationError(config_key=key, issue=e.errors()[0].get('msg')) from e

    @staticmethod
    def get_user_config_path() -> Path:
        """Get the user's configuration file path."""
        return Path.home() / ".cjs_jax" / "config.yaml"

    @classmethod
    def from_user_config(cls) -> "CjsJaxConfig":
        """Load the user's configuration file if it exists, defaults otherwise."""
        user_config = cls.get_user_config_path()
        if user_config.exists():
            return cls(config_file=user_config)
        return cls()


def _load_config_file(config_file: Union[str, Path]) -> Dict[str, Any]:
    """Load configuration from YAML file."""
    config_path = Path(config_file)
    if not config_path.exists():
        raise ConfigurationError(issue=f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigurationError(issue=f"Configuration file {config_path} must contain a mapping")
    return data


# Environment variable -> (section, key, converter)
_ENV_MAPPINGS = {
    'CJS_JAX_LOG_LEVEL': ('logging', 'level', str),
    'CJS_JAX_N_ITERATIONS': ('bootstrap', 'n_iterations', int),
    'CJS_JAX_RANDOM_SEED': ('bootstrap', 'random_seed', int),
    'CJS_JAX_MAX_WORKERS': ('bootstrap', 'max_workers', int),
    'CJS_JAX_FIT_TIMEOUT': ('bootstrap', 'fit_timeout', float),
    'CJS_JAX_R_PATH': ('rmark', 'r_path', str),
}


def _load_environment_variables() -> Dict[str, Any]:
    """Load configuration from environment variables."""
    config: Dict[str, Any] = {}

    for env_var, (section, key, convert) in _ENV_MAPPINGS.items():
        value = os.getenv(env_var)
        if value is None:
            continue
        try:
            config.setdefault(section, {})[key] = convert(value)
        except ValueError as e:
            raise ConfigurationError(config_key=env_var, issue=str(e)) from e

    return config


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
    """Merge override into base, one level of nesting deep."""
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key].update(value)
        else:
            base[key] = value


# Default configuration instance
_default_config: Optional[CjsJaxConfig] = None


def get_default_config() -> CjsJaxConfig:
    """Get the default configuration instance."""
    global _default_config
    if _default_config is None:
        _default_config = CjsJaxConfig.from_user_config()
    return _default_config


def reset_default_config() -> None:
    """Discard the cached default configuration."""
    global _default_config
    _default_config = None
