from __future__ import annotations

import contextlib
import copy
import dataclasses
import logging
import math
from typing import Callable, Sequence

import torch
import torch.linalg

from .errors import ConfigurationError, PreconditionError, SingularInnovationError
from .innovation import WindowedInnovationCovariance
from .noise import NoiseAdaptation, NoiseEstimator, make_noise_estimator

logger = logging.getLogger(__name__)

# Note on inversion:
# S is explicitly inverted (rather than solved with a cholesky decomposition) as dim_z is small
# and the precision is re-used to compute the normalized innovation squared of each cycle.
# Its condition number is checked first: an ill-conditioned S would silently yield a meaningless gain.


@contextlib.contextmanager
def _printoptions(**kwargs):
    """Change pytorch printoptions temporarily."""
    old = copy.copy(torch._tensor_str.PRINT_OPTS)  # noqa: SLF001
    torch.set_printoptions(**kwargs)
    try:
        yield
    finally:
        torch.set_printoptions(
            precision=old.precision,
            threshold=old.threshold,
            edgeitems=old.edgeitems,
            linewidth=old.linewidth,
            sci_mode=old.sci_mode,
        )


@dataclasses.dataclass
class GaussianState:
    """Gaussian state for Kalman filtering.

    This dataclass stores a multivariate Gaussian distribution:

        x ~ N(mean, covariance)

    Vectors are **column vectors** with shape ``(dim, 1)``.

    An optional precision matrix (inverse covariance) can be stored. The projection of the
    prior state in the measurement space holds ``S^{-1}`` that way.

    Attributes:
        mean: Mean of the distribution.
            Shape: ``(dim, 1)``
        covariance: Covariance matrix of the distribution.
            Shape: ``(dim, dim)``
        precision: Optional precision matrix (inverse covariance).
            Shape: ``(dim, dim)``
            If ``None``, it is computed lazily by `mahalanobis_squared`.
    """

    mean: torch.Tensor
    covariance: torch.Tensor
    precision: torch.Tensor | None = None

    def clone(self) -> GaussianState:
        """Return a deep copy of the state.

        Returns:
            GaussianState: The cloned state
        """
        return GaussianState(
            self.mean.clone(), self.covariance.clone(), self.precision.clone() if self.precision is not None else None
        )

    def mahalanobis_squared(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute squared Mahalanobis distance to a measure.

            MAHA^2 = (x - μ)^T P^{-1} (x - μ)

        For the projected state, this is the normalized innovation squared (NIS) of the measure.

        Args:
            measure (torch.Tensor): Measure to evaluate (column vector).
                Shape: ``(dim, 1)``

        Returns:
            torch.Tensor: Squared Mahalanobis distance
                Shape: ``()``
        """
        diff = self.mean - measure
        if self.precision is None:
            self.precision = self.covariance.inverse()
        return (diff.mT @ self.precision @ diff)[0, 0]


@dataclasses.dataclass(frozen=True)
class CycleReport:
    """Snapshot of the filter after a complete cycle, given to the `on_cycle` hook.

    All tensors are copies: they can be stored or modified freely.
    """

    iteration: int
    state: GaussianState
    innovation: torch.Tensor
    normalized_innovation_squared: float
    kalman_gain: torch.Tensor
    innovation_covariance: torch.Tensor
    process_noise: torch.Tensor
    measurement_noise: torch.Tensor
    adaptive: bool


class AdaptiveKalmanFilter:
    """Kalman filter with optional innovation-based adaptation of the noise covariances.

    This class estimates the latent state of a linear dynamical system under Gaussian noise:

        x_k = A x_{k-1} + B u_k + w_k,   w_k ~ N(0, Q)
        z_k = H x_k             + v_k,   v_k ~ N(0, R)

    where:
    - ``x_k`` is the hidden state (dimension ``state_dim``),
    - ``u_k`` is an optional control input (dimension ``control_dim``),
    - ``z_k`` is the measure (dimension ``measure_dim``),
    - ``A`` is the process matrix and ``B`` the control matrix,
    - ``Q`` is the process noise covariance,
    - ``H`` is the measurement matrix,
    - ``R`` is the measurement noise covariance.

    Contrary to a functional filter, the instance owns its current estimate x_k | z_{1:k} ~ N(x, P)
    and advances it by exactly one time step at each call of `filter`:

    1. Predict the state: x = A x [+ B u]
    2. Store the innovation dz = z - H x in a sliding window and update its covariance C
    3. Select Q and R with the noise estimator (adaptive mode: Q = K C Kᵀ, R = C - H P Hᵀ
       once at least ``window_size`` cycles have been run)
    4. Predict the covariance: P = A P Aᵀ + Q
    5. Correct with z: K = P Hᵀ S^{-1} with S = H P Hᵀ + R, x = x + K (z - H x), P = (I - K H) P

    The model may be changed between two cycles (time-varying systems), the last value set wins.
    Every setter validates the shapes before modifying the filter.

    Vectors are **column vectors** with shape ``(dim, 1)``, though ``(dim,)`` is accepted as input.
    Inputs are converted to the filter dtype and device (lists and numpy arrays are accepted).

    Numerical notes:
    - Running in float64 (default) is recommended, the adaptive estimation is sensitive to rounding errors.
    - A singular or ill-conditioned S raises a `SingularInnovationError` rather than propagating NaNs.

    The instance is not thread-safe: a cycle mutates several tensors non-atomically.

    Attributes:
        noise_estimator (NoiseEstimator): Strategy selecting Q and R at each covariance prediction.
        joseph_update (bool): If True, use the Joseph form covariance update for improved numerical stability.
            Default: False
        max_condition_number (float): Largest accepted condition number for S.
            Default: 1 / eps of the dtype
        on_cycle (Callable[[CycleReport], None] | None): Optional hook called after each successful cycle.
    """

    _REPR_SPLIT_LENGTH = 110

    def __init__(
        self,
        state_dim: int,
        measure_dim: int,
        control_dim: int = 0,
        *,
        window_size=20,
        adaptation: NoiseAdaptation | str | NoiseEstimator = NoiseAdaptation.FIXED,
        joseph_update=False,
        max_condition_number: float | None = None,
        dtype=torch.float64,
        device: torch.device | str | None = None,
        on_cycle: Callable[[CycleReport], None] | None = None,
    ) -> None:
        if state_dim <= 0 or measure_dim <= 0:
            raise ConfigurationError(
                f"State and measure dimensions must be positive (got {state_dim} and {measure_dim})"
            )
        if control_dim < 0:
            raise ConfigurationError(f"Control dimension cannot be negative (got {control_dim})")
        if window_size <= 0:
            raise PreconditionError(f"Window size must be positive (got {window_size})")

        self._state_dim = state_dim
        self._measure_dim = measure_dim
        self._control_dim = control_dim
        self._dtype = dtype
        self._device = torch.device(device) if device is not None else torch.device("cpu")

        self.noise_estimator = make_noise_estimator(adaptation)
        self.joseph_update = joseph_update
        self.max_condition_number = (
            max_condition_number if max_condition_number is not None else 1 / torch.finfo(dtype).eps
        )
        self.on_cycle = on_cycle

        self._process_matrix: torch.Tensor | None = None
        self._control_matrix: torch.Tensor | None = None
        self._process_noise: torch.Tensor | None = None
        self._measurement_matrix: torch.Tensor | None = None
        self._measurement_noise: torch.Tensor | None = None

        self._mean: torch.Tensor | None = None
        self._covariance: torch.Tensor | None = None
        self._identity: torch.Tensor | None = None

        # No correction yet: a null gain (only used by the adaptive estimation)
        self._kalman_gain = torch.zeros(state_dim, measure_dim, dtype=dtype, device=self._device)
        self._innovations = WindowedInnovationCovariance(window_size, measure_dim, dtype=dtype, device=self._device)
        self._iteration = 0
        self._noise_adapted = False

    # Dimensions & format

    @property
    def state_dim(self) -> int:
        """Dimension of the state variable."""
        return self._state_dim

    @property
    def measure_dim(self) -> int:
        """Dimension of the measured variable."""
        return self._measure_dim

    @property
    def control_dim(self) -> int:
        """Dimension of the control input (0 without control)."""
        return self._control_dim

    @property
    def window_size(self) -> int:
        """Number of innovations used to estimate C."""
        return self._innovations.window_size

    @property
    def adaptation(self) -> NoiseAdaptation:
        return self.noise_estimator.adaptation

    @property
    def device(self) -> torch.device:
        """Device of the Kalman filter."""
        return self._device

    @property
    def dtype(self) -> torch.dtype:
        """Dtype of the Kalman filter."""
        return self._dtype

    # Model configuration

    @property
    def process_matrix(self) -> torch.Tensor | None:
        """Process matrix ``A``. Shape: ``(dim_x, dim_x)``"""
        return self._process_matrix

    @property
    def control_matrix(self) -> torch.Tensor | None:
        """Control matrix ``B``. Shape: ``(dim_x, dim_u)``"""
        return self._control_matrix

    @property
    def process_noise(self) -> torch.Tensor | None:
        """Process noise covariance ``Q`` (possibly adapted). Shape: ``(dim_x, dim_x)``"""
        return self._process_noise

    @property
    def measurement_matrix(self) -> torch.Tensor | None:
        """Measurement matrix ``H``. Shape: ``(dim_z, dim_x)``"""
        return self._measurement_matrix

    @property
    def measurement_noise(self) -> torch.Tensor | None:
        """Measurement noise covariance ``R`` (possibly adapted). Shape: ``(dim_z, dim_z)``"""
        return self._measurement_noise

    def set_dynamics_model(self, process_matrix, process_noise, control_matrix=None) -> None:
        """Set the process model (``A``, ``Q`` and optionally ``B``).

        Args:
            process_matrix (torch.Tensor): Process matrix ``A``.
                Shape: ``(dim_x, dim_x)``
            process_noise (torch.Tensor): Process noise covariance ``Q``.
                Shape: ``(dim_x, dim_x)``
            control_matrix (torch.Tensor | None): Control matrix ``B``. If None, the current one is kept.
                Shape: ``(dim_x, dim_u)``
        """
        self._set_dynamics(*self._check_dynamics(process_matrix, process_noise, control_matrix))

    def set_measurement_model(self, measurement_matrix, measurement_noise) -> None:
        """Set the measurement model (``H`` and ``R``).

        Args:
            measurement_matrix (torch.Tensor): Measurement matrix ``H``.
                Shape: ``(dim_z, dim_x)``
            measurement_noise (torch.Tensor): Measurement noise covariance ``R``.
                Shape: ``(dim_z, dim_z)``
        """
        self._measurement_matrix, self._measurement_noise = self._check_measurement(
            measurement_matrix, measurement_noise
        )

    def set_models(
        self, process_matrix, process_noise, measurement_matrix, measurement_noise, control_matrix=None
    ) -> None:
        """Set both the process and measurement models.

        Nothing is modified if any of the matrices has a wrong shape.
        """
        dynamics = self._check_dynamics(process_matrix, process_noise, control_matrix)
        measurement = self._check_measurement(measurement_matrix, measurement_noise)

        self._set_dynamics(*dynamics)
        self._measurement_matrix, self._measurement_noise = measurement

    def update_process_matrix(self, process_matrix) -> None:
        """Replace ``A`` (e.g. when the time step changes)."""
        self._process_matrix = self._as_matrix("process_matrix", process_matrix, (self.state_dim, self.state_dim))

    def update_measurement_noise(self, measurement_noise) -> None:
        """Replace ``R``."""
        self._measurement_noise = self._as_matrix(
            "measurement_noise", measurement_noise, (self.measure_dim, self.measure_dim)
        )

    def set_initial(self, mean, covariance) -> None:
        """Set the initial state estimate ``x0 ~ N(mean, covariance)``.

        Args:
            mean (torch.Tensor): Initial state ``x0``.
                Shape: ``(dim_x, 1)`` or ``(dim_x,)``
            covariance (torch.Tensor): Initial covariance ``P0``.
                Shape: ``(dim_x, dim_x)``
        """
        mean = self._as_vector("mean", mean, self.state_dim)
        covariance = self._as_matrix("covariance", covariance, (self.state_dim, self.state_dim))

        self._mean = mean
        self._covariance = covariance
        self._identity = torch.eye(self.state_dim, dtype=self.dtype, device=self.device)

    # Accessors

    @property
    def state_estimate(self) -> torch.Tensor:
        """Current state estimate ``x``. Shape: ``(dim_x, 1)``

        This is the internal tensor. It should not be modified.
        """
        self._check_initialized()
        return self._mean

    @property
    def state_covariance(self) -> torch.Tensor:
        """Current state covariance ``P``. Shape: ``(dim_x, dim_x)``

        This is the internal tensor. It should not be modified.
        """
        self._check_initialized()
        return self._covariance

    @property
    def state(self) -> GaussianState:
        """Current state estimate as a GaussianState (sharing the internal tensors)."""
        self._check_initialized()
        return GaussianState(self._mean, self._covariance)

    @property
    def kalman_gain(self) -> torch.Tensor:
        """Gain ``K`` of the last correction (zeros before the first one). Shape: ``(dim_x, dim_z)``"""
        return self._kalman_gain

    @property
    def innovation_covariance(self) -> torch.Tensor:
        """Windowed innovation covariance ``C``. Shape: ``(dim_z, dim_z)``"""
        return self._innovations.covariance

    @property
    def innovation_window(self) -> torch.Tensor:
        """Copy of the innovations in the window, from the oldest to the newest.

        Shape: ``(n, dim_z, 1)`` with ``n <= window_size``
        """
        return self._innovations.window.to_tensor()

    @property
    def iteration(self) -> int:
        """Number of filter cycles run so far."""
        return self._iteration

    # Filtering

    def predict_state(self, control=None) -> torch.Tensor:
        """Apply the process model on the state mean.

            x = A x          (without control)
            x = A x + B u    (with control)

        Args:
            control (torch.Tensor | None): Optional control input ``u``.
                Shape: ``(dim_u, 1)`` or ``(dim_u,)``

        Returns:
            torch.Tensor: The predicted state ``x``.
                Shape: ``(dim_x, 1)``
        """
        self._check_ready()

        if control is None:
            self._mean = self._process_matrix @ self._mean
        else:
            self._mean = self._process_matrix @ self._mean + self._control_matrix @ self._as_control(control)

        return self._mean

    def predict_covariance(self) -> torch.Tensor:
        """Select the noise covariances, then apply the process model on the state covariance.

            Q, R = noise_estimator(...)
            P = A P Aᵀ + Q

        With an adaptive noise estimator, Q and R are derived from the current innovation covariance,
        the last Kalman gain and the current P (before prediction).

        Returns:
            torch.Tensor: The predicted covariance ``P``.
                Shape: ``(dim_x, dim_x)``
        """
        self._check_ready()

        if not self._noise_adapted and self.noise_estimator.is_active(self._iteration, self.window_size):
            logger.info(
                "Adaptive noise estimation enabled at iteration %d (window size: %d)", self._iteration, self.window_size
            )
            self._noise_adapted = True

        self._process_noise, self._measurement_noise = self.noise_estimator.estimate(
            iteration=self._iteration,
            window_size=self.window_size,
            innovation_covariance=self._innovations.covariance,
            kalman_gain=self._kalman_gain,
            measurement_matrix=self._measurement_matrix,
            state_covariance=self._covariance,
            process_noise=self._process_noise,
            measurement_noise=self._measurement_noise,
        )

        self._covariance = self._process_matrix @ self._covariance @ self._process_matrix.mT + self._process_noise
        return self._covariance

    def project(self) -> GaussianState:
        """Project the current state into measurement space.

        From the current state x ~ N(x, P), it applies the measurement model, leading to
        z ~ N(y, S) with:

            y = H x
            S = H P Hᵀ + R

        Returns:
            GaussianState: Projected state in the measurement space, with the precision ``S^{-1}``.
                Shape (mean): ``(dim_z, 1)``
                Shape (covariance): ``(dim_z, dim_z)``

        Raises:
            SingularInnovationError: If S cannot be reliably inverted.
        """
        self._check_ready()

        mean = self._measurement_matrix @ self._mean
        covariance = (
            self._measurement_matrix @ self._covariance @ self._measurement_matrix.mT + self._measurement_noise
        )

        return GaussianState(mean, covariance, self._invert_innovation_covariance(covariance))

    def correct(self, measure) -> GaussianState:
        """Correct the current (predicted) state with a new measure.

        1. Project the state: S = H P Hᵀ + R (see `project`)
        2. Kalman gain computation: K = P Hᵀ S^{-1}
        3. Incorporate the measure z:
            x = x + K (z - H x)
            P = (I - K H) P   OR [JOSEPH_UPDATE] P = (I - K H) P (I - K H)ᵀ + K R Kᵀ

        If S is singular, nothing is modified.

        Args:
            measure (torch.Tensor): Measure ``z`` (column vector).
                Shape: ``(dim_z, 1)`` or ``(dim_z,)``

        Returns:
            GaussianState: The projection N(H x, S) of the state before correction.

        Raises:
            SingularInnovationError: If S cannot be reliably inverted.
        """
        measure = self._as_vector("measure", measure, self.measure_dim)
        projection = self.project()

        kalman_gain = self._covariance @ self._measurement_matrix.mT @ projection.precision
        factor = self._identity - kalman_gain @ self._measurement_matrix

        self._kalman_gain = kalman_gain
        self._mean = self._mean + kalman_gain @ (measure - projection.mean)
        if self.joseph_update:
            self._covariance = (
                factor @ self._covariance @ factor.mT + kalman_gain @ self._measurement_noise @ kalman_gain.mT
            )
        else:
            self._covariance = factor @ self._covariance

        return projection

    def filter(self, measure, control=None) -> GaussianState:
        """Run a complete cycle: prediction, noise estimation and correction.

        If the correction fails (`SingularInnovationError`), the predicted state is kept and the error
        is propagated. The filter can still be used for the next cycles.

        Args:
            measure (torch.Tensor): Measure ``z`` of this time step.
                Shape: ``(dim_z, 1)`` or ``(dim_z,)``
            control (torch.Tensor | None): Optional control input ``u``.
                Shape: ``(dim_u, 1)`` or ``(dim_u,)``

        Returns:
            GaussianState: The posterior state (sharing the internal tensors).
        """
        self._check_ready()
        # Validate inputs before modifying anything
        measure = self._as_vector("measure", measure, self.measure_dim)
        if control is not None:
            control = self._as_control(control)

        self._iteration += 1
        self.predict_state(control)

        innovation = measure - self._measurement_matrix @ self._mean
        self._innovations.update(innovation)

        self.predict_covariance()

        try:
            projection = self.correct(measure)
        except SingularInnovationError as error:
            logger.warning("Correction aborted at iteration %d: %s", self._iteration, error)
            raise

        nis = projection.mahalanobis_squared(measure).item()
        adaptive = self.noise_estimator.is_active(self._iteration, self.window_size)
        logger.debug("Iteration %d: NIS = %.4g (adaptive noise: %s)", self._iteration, nis, adaptive)

        if self.on_cycle is not None:
            self.on_cycle(
                CycleReport(
                    iteration=self._iteration,
                    state=self.state.clone(),
                    innovation=innovation.clone(),
                    normalized_innovation_squared=nis,
                    kalman_gain=self._kalman_gain.clone(),
                    innovation_covariance=self._innovations.covariance.clone(),
                    process_noise=self._process_noise.clone(),
                    measurement_noise=self._measurement_noise.clone(),
                    adaptive=adaptive,
                )
            )

        return self.state

    def filter_sequence(self, measures: Sequence, controls: Sequence | None = None) -> GaussianState:
        """Run `filter` over a sequence of measures (and controls).

        Args:
            measures (Sequence[torch.Tensor]): Measures over time.
                Shape: ``(T, dim_z, 1)``
            controls (Sequence[torch.Tensor] | None): Optional controls over time.
                Shape: ``(T, dim_u, 1)``

        Returns:
            GaussianState: All the posterior states with a leading time dimension.
                Shape (mean): ``(T, dim_x, 1)``
                Shape (covariance): ``(T, dim_x, dim_x)``
        """
        if controls is not None and len(controls) != len(measures):
            raise ConfigurationError(f"Got {len(measures)} measures but {len(controls)} controls")

        means = []
        covariances = []
        for t, measure in enumerate(measures):
            state = self.filter(measure, None if controls is None else controls[t])
            means.append(state.mean)
            covariances.append(state.covariance)

        if not means:
            return GaussianState(
                torch.empty(0, self.state_dim, 1, dtype=self.dtype, device=self.device),
                torch.empty(0, self.state_dim, self.state_dim, dtype=self.dtype, device=self.device),
            )

        return GaussianState(torch.stack(means), torch.stack(covariances))

    # Checks & conversions

    def _check_initialized(self) -> None:
        if self._mean is None or self._covariance is None:
            raise PreconditionError("The initial state is not set. Call `set_initial` first.")

    def _check_ready(self) -> None:
        self._check_initialized()
        if self._process_matrix is None or self._process_noise is None:
            raise PreconditionError("The dynamics model is not set. Call `set_dynamics_model` first.")
        if self._measurement_matrix is None or self._measurement_noise is None:
            raise PreconditionError("The measurement model is not set. Call `set_measurement_model` first.")

    def _as_tensor(self, name: str, value) -> torch.Tensor:
        try:
            return torch.as_tensor(value, dtype=self.dtype, device=self.device)
        except (TypeError, ValueError, RuntimeError) as error:
            raise ConfigurationError(f"Invalid {name}: {error}") from error

    def _as_matrix(self, name: str, value, shape: tuple[int, int]) -> torch.Tensor:
        matrix = self._as_tensor(name, value)
        if matrix.shape != shape:
            raise ConfigurationError(f"{name} should have shape {shape}, got {tuple(matrix.shape)}")
        return matrix

    def _as_vector(self, name: str, value, dim: int) -> torch.Tensor:
        vector = self._as_tensor(name, value)
        if vector.shape == (dim,):
            vector = vector[:, None]
        if vector.shape != (dim, 1):
            raise ConfigurationError(f"{name} should have shape {(dim, 1)} or {(dim,)}, got {tuple(vector.shape)}")
        return vector

    def _as_control(self, control) -> torch.Tensor:
        if self._control_matrix is None:
            raise PreconditionError("A control input requires a control matrix. Call `set_dynamics_model` first.")
        return self._as_vector("control", control, self.control_dim)

    def _check_dynamics(self, process_matrix, process_noise, control_matrix):
        dim = self.state_dim
        process_matrix = self._as_matrix("process_matrix", process_matrix, (dim, dim))
        process_noise = self._as_matrix("process_noise", process_noise, (dim, dim))
        if control_matrix is not None:
            if not self.control_dim:
                raise ConfigurationError("A control matrix requires a positive control dimension")
            control_matrix = self._as_matrix("control_matrix", control_matrix, (dim, self.control_dim))
        return process_matrix, process_noise, control_matrix

    def _set_dynamics(self, process_matrix, process_noise, control_matrix) -> None:
        self._process_matrix = process_matrix
        self._process_noise = process_noise
        if control_matrix is not None:
            self._control_matrix = control_matrix

    def _check_measurement(self, measurement_matrix, measurement_noise):
        measurement_matrix = self._as_matrix("measurement_matrix", measurement_matrix, (self.measure_dim, self.state_dim))
        measurement_noise = self._as_matrix("measurement_noise", measurement_noise, (self.measure_dim, self.measure_dim))
        return measurement_matrix, measurement_noise

    def _invert_innovation_covariance(self, covariance: torch.Tensor) -> torch.Tensor:
        if not torch.isfinite(covariance).all():
            raise SingularInnovationError("Innovation covariance S is not finite", covariance, math.nan)

        condition_number = torch.linalg.cond(covariance).item()
        if not math.isfinite(condition_number) or condition_number > self.max_condition_number:
            raise SingularInnovationError(
                f"Innovation covariance S is singular or ill-conditioned (condition number: {condition_number:.3g})",
                covariance,
                condition_number,
            )

        precision, info = torch.linalg.inv_ex(covariance)
        if info.item() or not torch.isfinite(precision).all():
            raise SingularInnovationError(
                "Innovation covariance S could not be inverted", covariance, condition_number
            )

        return precision

    def __repr__(self) -> str:
        """Convert the Kalman filter model into a readable string."""
        header = (
            f"Adaptive Kalman Filter (State dimension: {self.state_dim}, Measure dimension: {self.measure_dim}, "
            f"Control dimension: {self.control_dim})"
        )
        noise = f"Noise: {self.adaptation.value} (window size: {self.window_size})"

        process = self._format_model("Process", "A", self._process_matrix, "Q", self._process_noise, 80)
        measurement = self._format_model(
            "Measurement", "H", self._measurement_matrix, "R", self._measurement_noise, 100
        )

        n_char = max(len(line) for line in (header + "\n" + process + "\n" + measurement).split("\n"))
        return ("\n" + "-" * n_char + "\n").join([header + "\n" + noise, process, measurement])

    def _format_model(self, label: str, first_name: str, first, second_name: str, second, linewidth: int) -> str:
        # Either "label: A = ...  &  Q = ..." side by side or on two consecutive blocks.
        with _printoptions(profile="short", sci_mode=False, linewidth=linewidth):
            first_lines = str(first).split("\n")
            second_lines = str(second).split("\n")

        first_header = f"{label}: {first_name} = "
        indent = " " * len(first_header)
        headers = [first_header] + [indent] * (len(first_lines) - 1)

        max_char_first = max(len(line) for line in first_lines)
        max_char_second = max(len(line) for line in second_lines)
        if max_char_first + max_char_second <= self._REPR_SPLIT_LENGTH and len(first_lines) == len(second_lines):
            first_lines = [line.ljust(max_char_first) for line in first_lines]
            separator = f"  &  {second_name} = "
            separators = [separator] + [" " * len(separator)] * (len(first_lines) - 1)
            return "\n".join("".join(parts) for parts in zip(headers, first_lines, separators, second_lines))

        second_header = " " * (len(label) + 2) + f"{second_name} = "
        headers += ["", second_header] + [indent] * (len(second_lines) - 1)
        return "\n".join("".join(parts) for parts in zip(headers, [*first_lines, "", *second_lines]))
