"""Sliding window of innovations and its running second moment.

The innovation of a cycle is the residual between the measure and the measure predicted
from the prior state: ``dz_k = z_k - H x_k|k-1``. Adaptive noise estimation relies on

    C_k = 1/N sum_{i=k-N+1}^{k} dz_i dz_iᵀ

the mean outer product over (at most) the last N innovations. ``C`` is maintained
incrementally in O(dim_z²) per step: the evicted innovation is first removed from the average,
then the average is rescaled to the new number of samples and the newest innovation is added.
"""

from __future__ import annotations

import torch

from .errors import ConfigurationError, PreconditionError


class InnovationWindow:
    """Fixed-capacity ring buffer of innovation vectors.

    Storage is allocated once at construction. Pushing into a full window overwrites the oldest entry.

    Attributes:
        capacity (int): Maximum number of innovations kept.
        dim (int): Dimension of the innovations (dim_z).
    """

    def __init__(
        self, capacity: int, dim: int, *, dtype=torch.float64, device: torch.device | str | None = None
    ) -> None:
        if capacity <= 0:
            raise PreconditionError(f"Window size must be positive (got {capacity})")
        if dim <= 0:
            raise ConfigurationError(f"Innovation dimension must be positive (got {dim})")

        self.capacity = capacity
        self.dim = dim
        self._buffer = torch.zeros(capacity, dim, 1, dtype=dtype, device=device)
        self._start = 0  # Position of the oldest entry
        self._size = 0

    def __len__(self) -> int:
        return self._size

    @property
    def is_full(self) -> bool:
        return self._size == self.capacity

    def push(self, innovation: torch.Tensor) -> None:
        """Append an innovation, overwriting the oldest one if the window is full.

        Args:
            innovation (torch.Tensor): Innovation (column vector).
                Shape: ``(dim, 1)``
        """
        if innovation.shape != (self.dim, 1):
            raise ConfigurationError(f"Expected an innovation of shape {(self.dim, 1)}, got {tuple(innovation.shape)}")

        if self.is_full:
            slot = self._start
            self._start = (self._start + 1) % self.capacity
        else:
            slot = (self._start + self._size) % self.capacity
            self._size += 1

        self._buffer[slot] = innovation

    def oldest(self) -> torch.Tensor:
        """Oldest innovation still in the window (view on the storage).

        Returns:
            torch.Tensor: Shape: ``(dim, 1)``
        """
        if not self._size:
            raise IndexError("Empty innovation window")
        return self._buffer[self._start]

    def newest(self) -> torch.Tensor:
        """Last pushed innovation (view on the storage).

        Returns:
            torch.Tensor: Shape: ``(dim, 1)``
        """
        if not self._size:
            raise IndexError("Empty innovation window")
        return self._buffer[(self._start + self._size - 1) % self.capacity]

    def to_tensor(self) -> torch.Tensor:
        """Copy the innovations ordered from the oldest to the newest.

        Returns:
            torch.Tensor: Shape: ``(len(self), dim, 1)``
        """
        return self._buffer.roll(-self._start, 0)[: self._size].clone()


class WindowedInnovationCovariance:
    """Running mean of innovation outer products over a sliding window.

    Attributes:
        window (InnovationWindow): Innovations currently represented in ``covariance``.
        covariance (torch.Tensor): Windowed innovation covariance ``C``. Updated in place.
            Shape: ``(dim_z, dim_z)``
        count (int): Total number of innovations ever added.
    """

    def __init__(
        self, window_size: int, dim: int, *, dtype=torch.float64, device: torch.device | str | None = None
    ) -> None:
        self.window = InnovationWindow(window_size, dim, dtype=dtype, device=device)
        self.covariance = torch.zeros(dim, dim, dtype=dtype, device=device)
        self.count = 0

    @property
    def window_size(self) -> int:
        return self.window.capacity

    def update(self, innovation: torch.Tensor) -> torch.Tensor:
        """Add a new innovation (evicting the oldest one once the window is full).

        With N the window size and k the number of innovations including this one:

            prev = min(k - 1, N), new = min(k, N)
            C <- C - dz_old dz_oldᵀ / prev           (only if dz_old is evicted)
            C <- C * prev / new + dz_new dz_newᵀ / new

        Args:
            innovation (torch.Tensor): New innovation (column vector).
                Shape: ``(dim_z, 1)``

        Returns:
            torch.Tensor: The updated covariance ``C`` (same tensor as ``self.covariance``).
                Shape: ``(dim_z, dim_z)``

        Raises:
            ConfigurationError: If the innovation has a wrong shape. Nothing is modified in that case.
        """
        if innovation.shape != (self.window.dim, 1):
            raise ConfigurationError(
                f"Expected an innovation of shape {(self.window.dim, 1)}, got {tuple(innovation.shape)}"
            )

        self.count += 1
        prev_window = min(self.count - 1, self.window_size)
        new_window = min(self.count, self.window_size)

        # The oldest entry is overwritten by the push: remove its contribution first
        if self.window.is_full:
            oldest = self.window.oldest()
            self.covariance.sub_(oldest @ oldest.mT, alpha=1 / prev_window)

        self.window.push(innovation)

        newest = self.window.newest()
        self.covariance.mul_(prev_window / new_window).add_(newest @ newest.mT, alpha=1 / new_window)
        return self.covariance
