"""Noise covariance estimation strategies.

The filter delegates the choice of the process noise ``Q`` and measurement noise ``R`` used in each
covariance prediction to a :class:`NoiseEstimator`, selected once at construction:

- :class:`FixedNoise`: ``Q`` and ``R`` are the configured constants.
- :class:`InnovationAdaptiveNoise`: once enough innovations are available, ``Q`` and ``R`` are re-derived
  from the windowed innovation covariance ``C``:

      Q = K C Kᵀ
      R = C - H P Hᵀ

  where ``K`` is the gain of the previous correction and ``P`` the previous posterior covariance
  (i.e. values before the covariance prediction of the current cycle).

Notes:
    This innovation-based derivation is kept as is from the reference system. It is not a textbook
    Mehra estimator (which would use the prior covariance), and ``R`` is not guaranteed to be positive
    semi-definite. It may therefore lead to a singular innovation covariance in the correction.
"""

from __future__ import annotations

import abc
import enum

import torch

from .errors import ConfigurationError


class NoiseAdaptation(enum.Enum):
    """Available noise estimation strategies."""

    FIXED = "fixed"
    INNOVATION = "innovation"


class NoiseEstimator(abc.ABC):
    """Select the noise covariances used for the next covariance prediction.

    Estimators receive everything they need at each call and may be shared between filters.
    """

    adaptation: NoiseAdaptation

    @abc.abstractmethod
    def estimate(
        self,
        *,
        iteration: int,
        window_size: int,
        innovation_covariance: torch.Tensor,
        kalman_gain: torch.Tensor,
        measurement_matrix: torch.Tensor,
        state_covariance: torch.Tensor,
        process_noise: torch.Tensor,
        measurement_noise: torch.Tensor,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """Compute the noise covariances for the current cycle.

        Args:
            iteration (int): Index of the current cycle (starting at 1).
            window_size (int): Capacity of the innovation window.
            innovation_covariance (torch.Tensor): Windowed innovation covariance ``C``,
                already including the innovation of this cycle.
                Shape: ``(dim_z, dim_z)``
            kalman_gain (torch.Tensor): Gain ``K`` of the previous correction.
                Shape: ``(dim_x, dim_z)``
            measurement_matrix (torch.Tensor): ``H``.
                Shape: ``(dim_z, dim_x)``
            state_covariance (torch.Tensor): Posterior covariance ``P`` of the previous cycle.
                Shape: ``(dim_x, dim_x)``
            process_noise (torch.Tensor): Current ``Q``.
                Shape: ``(dim_x, dim_x)``
            measurement_noise (torch.Tensor): Current ``R``.
                Shape: ``(dim_z, dim_z)``

        Returns:
            torch.Tensor: Process noise ``Q`` to use.
                Shape: ``(dim_x, dim_x)``
            torch.Tensor: Measurement noise ``R`` to use.
                Shape: ``(dim_z, dim_z)``
        """

    def is_active(self, iteration: int, window_size: int) -> bool:  # noqa: ARG002
        """Whether the estimate differs from the configured covariances at this iteration."""
        return False


class FixedNoise(NoiseEstimator):
    """Keep the configured ``Q`` and ``R``."""

    adaptation = NoiseAdaptation.FIXED

    def estimate(self, *, process_noise: torch.Tensor, measurement_noise: torch.Tensor, **_):
        return process_noise, measurement_noise


class InnovationAdaptiveNoise(NoiseEstimator):
    """Re-derive ``Q`` and ``R`` from the windowed innovation covariance.

    Until ``iteration >= window_size`` (not enough innovations), the configured ``Q`` and ``R`` are kept.
    """

    adaptation = NoiseAdaptation.INNOVATION

    def is_active(self, iteration: int, window_size: int) -> bool:
        return iteration >= window_size

    def estimate(
        self,
        *,
        iteration: int,
        window_size: int,
        innovation_covariance: torch.Tensor,
        kalman_gain: torch.Tensor,
        measurement_matrix: torch.Tensor,
        state_covariance: torch.Tensor,
        process_noise: torch.Tensor,
        measurement_noise: torch.Tensor,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        if not self.is_active(iteration, window_size):
            return process_noise, measurement_noise

        process_noise = kalman_gain @ innovation_covariance @ kalman_gain.mT
        measurement_noise = innovation_covariance - measurement_matrix @ state_covariance @ measurement_matrix.mT
        return process_noise, measurement_noise


def make_noise_estimator(adaptation: NoiseAdaptation | str | NoiseEstimator) -> NoiseEstimator:
    """Build the noise estimator matching ``adaptation``.

    Args:
        adaptation (NoiseAdaptation | str | NoiseEstimator): Strategy (or its name). An estimator
            instance is returned unchanged.

    Returns:
        NoiseEstimator: A new estimator (or ``adaptation`` itself).
    """
    if isinstance(adaptation, NoiseEstimator):
        return adaptation

    try:
        adaptation = NoiseAdaptation(adaptation)
    except ValueError as error:
        choices = ", ".join(repr(choice.value) for choice in NoiseAdaptation)
        raise ConfigurationError(f"Unknown noise adaptation {adaptation!r}. Expected one of {choices}") from error

    if adaptation is NoiseAdaptation.FIXED:
        return FixedNoise()
    return InnovationAdaptiveNoise()
