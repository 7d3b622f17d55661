"""Exceptions raised by adaptive-kf."""


class KalmanFilterError(Exception):
    """Base class of every error raised by the filter."""


class ConfigurationError(KalmanFilterError, ValueError):
    """A matrix, vector or setting is inconsistent with the filter dimensions."""


class PreconditionError(KalmanFilterError, RuntimeError):
    """An operation was called before the filter was ready for it.

    For instance a filter cycle before the initial state is set.
    """


class SingularInnovationError(KalmanFilterError, ArithmeticError):
    """The innovation covariance S = H P Hᵀ + R cannot be reliably inverted.

    Only the correction of the current cycle is aborted: the predicted state is kept
    and the filter can be used for the next cycles.

    Attributes:
        innovation_covariance (torch.Tensor): The offending S.
            Shape: ``(dim_z, dim_z)``
        condition_number (float): Its condition number (``nan`` or ``inf`` if undefined).
    """

    def __init__(self, message: str, innovation_covariance, condition_number: float) -> None:
        super().__init__(message)
        self.innovation_covariance = innovation_covariance
        self.condition_number = condition_number
