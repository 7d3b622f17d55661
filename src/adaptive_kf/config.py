"""Configuration of adaptive Kalman filters.

A filter can be described by a YAML file with two sections::

    filter:
      state_dim: 2
      measure_dim: 1
      window_size: 10
      adaptation: innovation
    model:                       # Optional
      process_matrix: [[1.0, 0.1], [0.0, 1.0]]
      process_noise: [[0.001, 0.0], [0.0, 0.001]]
      measurement_matrix: [[1.0, 0.0]]
      measurement_noise: [[0.1]]
      initial_mean: [0.0, 0.0]
      initial_covariance: [[1.0, 0.0], [0.0, 1.0]]

and built with ``build_filter(*load_config(path))``.
"""

from __future__ import annotations

import dataclasses
import os
from typing import Any, Callable

import torch
import yaml

from .errors import ConfigurationError
from .kalman_filter import AdaptiveKalmanFilter, CycleReport
from .noise import NoiseAdaptation

_DTYPES = {"float32": torch.float32, "float64": torch.float64}


@dataclasses.dataclass
class FilterConfig:
    """Settings fixed for the whole life of a filter.

    Attributes:
        state_dim (int): Dimension of the state.
        measure_dim (int): Dimension of the measures.
        control_dim (int): Dimension of the control inputs (0 without control).
        window_size (int): Number of innovations used to estimate their covariance.
        adaptation (NoiseAdaptation): Noise estimation strategy.
        joseph_update (bool): Use the Joseph form covariance update.
        max_condition_number (float | None): Largest accepted condition number of S (None: 1 / eps).
        dtype (str): Name of the torch dtype ("float32" or "float64").
    """

    state_dim: int
    measure_dim: int
    control_dim: int = 0
    window_size: int = 20
    adaptation: NoiseAdaptation = NoiseAdaptation.FIXED
    joseph_update: bool = False
    max_condition_number: float | None = None
    dtype: str = "float64"

    def __post_init__(self) -> None:
        try:
            self.adaptation = NoiseAdaptation(self.adaptation)
        except ValueError as error:
            raise ConfigurationError(f"Unknown noise adaptation: {self.adaptation!r}") from error

        if self.dtype not in _DTYPES:
            raise ConfigurationError(f"Unsupported dtype {self.dtype!r}. Expected one of {sorted(_DTYPES)}")

    @property
    def torch_dtype(self) -> torch.dtype:
        return _DTYPES[self.dtype]


@dataclasses.dataclass
class ModelConfig:
    """Matrices of the models and initial state, as nested lists (or tensors).

    Missing entries are left to the caller.
    """

    process_matrix: Any = None
    process_noise: Any = None
    control_matrix: Any = None
    measurement_matrix: Any = None
    measurement_noise: Any = None
    initial_mean: Any = None
    initial_covariance: Any = None

    def apply(self, kalman_filter: AdaptiveKalmanFilter) -> None:
        """Configure ``kalman_filter`` with the provided matrices."""
        if (self.process_matrix is None) != (self.process_noise is None):
            raise ConfigurationError("process_matrix and process_noise should be given together")
        if (self.measurement_matrix is None) != (self.measurement_noise is None):
            raise ConfigurationError("measurement_matrix and measurement_noise should be given together")
        if (self.initial_mean is None) != (self.initial_covariance is None):
            raise ConfigurationError("initial_mean and initial_covariance should be given together")
        if self.control_matrix is not None and self.process_matrix is None:
            raise ConfigurationError("control_matrix requires process_matrix and process_noise")

        if self.process_matrix is not None:
            kalman_filter.set_dynamics_model(self.process_matrix, self.process_noise, self.control_matrix)
        if self.measurement_matrix is not None:
            kalman_filter.set_measurement_model(self.measurement_matrix, self.measurement_noise)
        if self.initial_mean is not None:
            kalman_filter.set_initial(self.initial_mean, self.initial_covariance)


def _from_mapping(cls, data: Any, section: str):
    if not isinstance(data, dict):
        raise ConfigurationError(f"Section '{section}' should be a mapping, got {type(data).__name__}")

    fields = {field.name for field in dataclasses.fields(cls)}
    unknown = set(data) - fields
    if unknown:
        raise ConfigurationError(f"Unknown keys in section '{section}': {sorted(unknown)}")

    try:
        return cls(**data)
    except TypeError as error:  # Missing required keys
        raise ConfigurationError(f"Invalid section '{section}': {error}") from error


def parse_config(data: Any) -> tuple[FilterConfig, ModelConfig | None]:
    """Parse an already loaded configuration mapping.

    Args:
        data (Any): Mapping with a ``filter`` section and an optional ``model`` section.

    Returns:
        FilterConfig: The filter settings.
        ModelConfig | None: The model matrices if a ``model`` section is present.
    """
    if not isinstance(data, dict) or "filter" not in data:
        raise ConfigurationError("The configuration should be a mapping with a 'filter' section")

    unknown = set(data) - {"filter", "model"}
    if unknown:
        raise ConfigurationError(f"Unknown configuration sections: {sorted(unknown)}")

    filter_config = _from_mapping(FilterConfig, data["filter"], "filter")
    model_config = _from_mapping(ModelConfig, data["model"], "model") if data.get("model") is not None else None
    return filter_config, model_config


def load_config(path: str | os.PathLike) -> tuple[FilterConfig, ModelConfig | None]:
    """Load a filter configuration from a YAML file.

    Args:
        path (str | os.PathLike): Path to the YAML file.

    Returns:
        FilterConfig: The filter settings.
        ModelConfig | None: The model matrices if a ``model`` section is present.
    """
    with open(path, "r", encoding="utf-8") as file:
        try:
            data = yaml.safe_load(file)
        except yaml.YAMLError as error:
            raise ConfigurationError(f"Invalid YAML in {path}: {error}") from error

    return parse_config(data)


def build_filter(
    filter_config: FilterConfig,
    model_config: ModelConfig | None = None,
    on_cycle: Callable[[CycleReport], None] | None = None,
    device: torch.device | str | None = None,
) -> AdaptiveKalmanFilter:
    """Create an AdaptiveKalmanFilter from its configuration.

    Args:
        filter_config (FilterConfig): Dimensions and settings of the filter.
        model_config (ModelConfig | None): Optional models and initial state.
        on_cycle (Callable[[CycleReport], None] | None): Optional hook called after each cycle.
        device (torch.device | str | None): Device of the filter tensors.

    Returns:
        AdaptiveKalmanFilter: The configured filter.
    """
    kalman_filter = AdaptiveKalmanFilter(
        filter_config.state_dim,
        filter_config.measure_dim,
        filter_config.control_dim,
        window_size=filter_config.window_size,
        adaptation=filter_config.adaptation,
        joseph_update=filter_config.joseph_update,
        max_condition_number=filter_config.max_condition_number,
        dtype=filter_config.torch_dtype,
        device=device,
        on_cycle=on_cycle,
    )

    if model_config is not None:
        model_config.apply(kalman_filter)

    return kalman_filter
