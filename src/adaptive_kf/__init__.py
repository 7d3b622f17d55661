"""adaptive-kf: Adaptive Kalman filtering in PyTorch.

adaptive-kf provides a stateful linear Kalman filter designed to be driven by a control loop:
each call to :meth:`~adaptive_kf.AdaptiveKalmanFilter.filter` fuses one measurement (and an
optional control input) with the dynamics model and advances the estimate by one time step.

Key features
------------
- **Adaptive noise estimation**: the process and measurement noise covariances can be
  re-derived online from a sliding window of innovations instead of trusting fixed constants.
- **Incremental innovation statistics**: the windowed innovation covariance is maintained in
  O(dim_z²) per step with a fixed-capacity ring buffer.
- **Fail-fast numerics**: dimension mismatches and singular innovation covariances raise
  dedicated exceptions instead of silently propagating NaNs.
- **Observability hook**: an optional callback receives a snapshot after every cycle.

Getting started
---------------
The core API consists of:
- :class:`~adaptive_kf.AdaptiveKalmanFilter` with ``set_models``, ``set_initial``, ``filter``
  and the ``state_estimate`` / ``state_covariance`` accessors.
- :class:`~adaptive_kf.NoiseAdaptation` to choose between fixed and adaptive noise.
- :mod:`adaptive_kf.motion_models` to build constant position/velocity/acceleration models.
- :mod:`adaptive_kf.config` to describe filters in YAML files.

Notes on shapes
---------------
adaptive-kf uses column vectors. State, measurement and control vectors have shape
``(dim, 1)`` (``(dim,)`` is accepted as input).
"""

from .errors import ConfigurationError, KalmanFilterError, PreconditionError, SingularInnovationError
from .kalman_filter import AdaptiveKalmanFilter, CycleReport, GaussianState
from .noise import FixedNoise, InnovationAdaptiveNoise, NoiseAdaptation, NoiseEstimator

__all__ = [
    "AdaptiveKalmanFilter",
    "ConfigurationError",
    "CycleReport",
    "FixedNoise",
    "GaussianState",
    "InnovationAdaptiveNoise",
    "KalmanFilterError",
    "NoiseAdaptation",
    "NoiseEstimator",
    "PreconditionError",
    "SingularInnovationError",
]
__version__ = "0.1.0"
