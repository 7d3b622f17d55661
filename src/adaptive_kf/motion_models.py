"""Helpers for building constant-derivative motion models.

The state of each axis is a value and its derivatives up to a given order:

- constant position (order = 0),
- constant velocity (order = 1),
- constant acceleration (order = 2), etc.

For instance, a vehicle moving along a track with ``order = 2`` has the state
``[position, velocity, acceleration]``. With several axes, the states are concatenated
axis by axis (``x, x', y, y'`` for a 2d constant velocity model).

Any subset of the derivatives may be measured (e.g. an accelerometer measures the
acceleration, an encoder the position), and the (order+1)-th derivative may be given
as a control input (e.g. a commanded jerk or acceleration).

The process matrix ``A`` is derived from a Taylor expansion. The process noise ``Q``
either assumes the highest derivative constant with additive noise, or the next
derivative to be a white Gaussian noise over the time step (expected model).
"""

from __future__ import annotations

import math
from typing import Sequence

import torch

from .errors import ConfigurationError
from .kalman_filter import AdaptiveKalmanFilter


def _taylor_gain(order: int, dt: float, shift: int, approximate: bool) -> torch.Tensor:
    # g_i = dt^(order+shift-i) / (order+shift-i)!: effect on the i-th derivative of a value
    # added to the (order+shift)-th derivative and held over dt.
    gain = torch.tensor(
        [dt ** (order + shift - i) / math.factorial(order + shift - i) for i in range(order + 1)],
        dtype=torch.float64,
    )
    if approximate:
        gain[:-1] = 0
    return gain


def create_process_matrix(order: int, dt=1.0, approximate=False) -> torch.Tensor:
    r"""Create the process matrix ``A`` of a single axis.

    Assuming the (order+1)-th derivative and above are zero, the Taylor expansion yields:

    x^{(i)}(t + dt) = \sum_{k=0}^{order - i} \frac{dt^k}{k!} x^{(i+k)}(t)

    Example with ``order = 2`` and ``dt = 0.5``::

        [
            [1, 0.5, 0.125],
            [0, 1.0, 0.5],
            [0, 0.0, 1.0],
        ]

    Args:
        order (int): Highest derivative order included in the state.
        dt (float): Time step duration.
            Default: 1.0
        approximate (bool): Keep only first order terms: ``x^{(i)}(t+dt) = x^{(i)}(t) + dt * x^{(i+1)}(t)``.
            Default: False

    Returns:
        torch.Tensor: Process matrix ``A``
            Shape: ``(order + 1, order + 1)``
    """
    process_matrix = torch.zeros(order + 1, order + 1, dtype=torch.float64)
    for k in range(order + 1):
        if approximate and k > 1:
            break
        process_matrix += torch.diag(torch.full((order + 1 - k,), dt**k / math.factorial(k), dtype=torch.float64), k)
    return process_matrix


def create_process_noise(
    process_std: float, order: int, dt=1.0, expected_model=False, approximate=False
) -> torch.Tensor:
    r"""Create the process noise covariance ``Q`` of a single axis.

    **1. Constant order-th derivative (default)**
    \forall 0 < h \le dt, x^{(order)}(t_k+h) = x^{(order)}(t_k) + w_k, where w_k \sim N(0, process_std**2).

    **2. Zero-mean (order+1)-th derivative (expected model)**
    \forall 0 < h \le dt, x^{(order + 1)}(t_k+h) = w_k, where w_k \sim N(0, process_std**2)

    In both cases, the noise is propagated to the lower derivatives through the Taylor expansion:
    ``Q = process_std**2 g gᵀ``.

    Args:
        process_std (float): Process noise standard deviation.
        order (int): Highest derivative order included in the state.
        dt (float): Time step duration.
            Default: 1.0
        expected_model (bool): Use the zero-mean (order+1)-th derivative model.
            Default: False
        approximate (bool): Only the highest derivative receives noise.
            Default: False

    Returns:
        torch.Tensor: Process noise covariance ``Q``.
            Shape: ``(order + 1, order + 1)``
    """
    gain = _taylor_gain(order, dt, int(expected_model), approximate)
    return process_std**2 * gain[:, None] @ gain[None]


def create_control_matrix(order: int, dt=1.0, approximate=False) -> torch.Tensor:
    """Create the control matrix ``B`` of a single axis.

    The control input is the (order+1)-th derivative, held constant over the time step.
    For a constant velocity model commanded in acceleration: ``B = [dt²/2, dt]ᵀ``.

    Args:
        order (int): Highest derivative order included in the state.
        dt (float): Time step duration.
            Default: 1.0
        approximate (bool): Only the highest derivative is affected: ``B = [0, ..., 0, dt]ᵀ``.
            Default: False

    Returns:
        torch.Tensor: Control matrix ``B``.
            Shape: ``(order + 1, 1)``
    """
    return _taylor_gain(order, dt, 1, approximate)[:, None]


def constant_derivative_filter(
    measurement_std: float | torch.Tensor,
    process_std: float | torch.Tensor,
    *,
    dim=1,
    order=1,
    dt=1.0,
    measured_orders: Sequence[int] = (0,),
    control=False,
    expected_model=False,
    approximate=False,
    **kwargs,
) -> AdaptiveKalmanFilter:
    """Create an AdaptiveKalmanFilter with a constant-derivative model.

    The full state dimension is ``(order + 1) * dim``, the measure dimension is ``len(measured_orders) * dim``
    (measures are ordered axis by axis) and the control dimension is ``dim`` if ``control`` else 0.

    The initial state still has to be set with `set_initial`.

    Args:
        measurement_std (float | torch.Tensor): Measurement noise standard deviation.
            Shape: broadcastable to ``(dim, len(measured_orders))``
        process_std (float | torch.Tensor): Process noise standard deviation (see `create_process_noise`).
            Shape: broadcastable to ``(dim,)``
        dim (int): Number of independent axes.
            Default: 1
        order (int): Highest derivative order included in the state.
            Default: 1 (constant velocity)
        dt (float): Time step duration.
            Default: 1.0
        measured_orders (Sequence[int]): Derivative orders that are measured (0 for the value).
            Default: (0,)
        control (bool): Use the (order+1)-th derivative of each axis as control input.
            Default: False
        expected_model (bool): Use the zero-mean (order+1)-th derivative noise model.
            Default: False
        approximate (bool): Use first order approximations of the model.
            Default: False
        **kwargs: Forwarded to `AdaptiveKalmanFilter` (window_size, adaptation, ...).

    Returns:
        AdaptiveKalmanFilter: Filter configured with the motion model.
    """
    if not measured_orders or any(not 0 <= measured <= order for measured in measured_orders):
        raise ConfigurationError(f"Measured orders should be in [0, {order}], got {tuple(measured_orders)}")

    measurement_std = torch.broadcast_to(
        torch.as_tensor(measurement_std, dtype=torch.float64), (dim, len(measured_orders))
    )
    process_std = torch.broadcast_to(torch.as_tensor(process_std, dtype=torch.float64), (dim,))

    state_dim = (order + 1) * dim
    measure_dim = len(measured_orders) * dim

    # Measurement model: select the measured derivatives of each axis
    # Measurement noise is independent between axes and derivatives.
    measurement_matrix = torch.zeros(measure_dim, state_dim, dtype=torch.float64)
    for axis in range(dim):
        for j, measured in enumerate(measured_orders):
            measurement_matrix[axis * len(measured_orders) + j, axis * (order + 1) + measured] = 1.0
    measurement_noise = torch.diag(measurement_std.reshape(-1) ** 2)

    # Process model: one block per axis
    process_matrix = torch.block_diag(*(create_process_matrix(order, dt, approximate) for _ in range(dim)))
    process_noise = torch.block_diag(
        *(create_process_noise(process_std[k].item(), order, dt, expected_model, approximate) for k in range(dim))
    )
    control_matrix = (
        torch.block_diag(*(create_control_matrix(order, dt, approximate) for _ in range(dim))) if control else None
    )

    kalman_filter = AdaptiveKalmanFilter(state_dim, measure_dim, dim if control else 0, **kwargs)
    kalman_filter.set_models(process_matrix, process_noise, measurement_matrix, measurement_noise, control_matrix)
    return kalman_filter
