import logging

import pytest
import torch

from adaptive_kf import (
    AdaptiveKalmanFilter,
    ConfigurationError,
    FixedNoise,
    InnovationAdaptiveNoise,
    NoiseAdaptation,
    NoiseEstimator,
)
from adaptive_kf.noise import make_noise_estimator


def _inputs(dim_x=3, dim_z=2, **kwargs):
    inputs = {
        "iteration": 1,
        "window_size": 4,
        "innovation_covariance": torch.eye(dim_z, dtype=torch.float64),
        "kalman_gain": torch.randn(dim_x, dim_z, dtype=torch.float64),
        "measurement_matrix": torch.randn(dim_z, dim_x, dtype=torch.float64),
        "state_covariance": torch.eye(dim_x, dtype=torch.float64),
        "process_noise": 0.1 * torch.eye(dim_x, dtype=torch.float64),
        "measurement_noise": torch.eye(dim_z, dtype=torch.float64),
    }
    inputs.update(kwargs)
    return inputs


def test_make_noise_estimator():
    assert isinstance(make_noise_estimator("fixed"), FixedNoise)
    assert isinstance(make_noise_estimator(NoiseAdaptation.FIXED), FixedNoise)
    assert isinstance(make_noise_estimator("innovation"), InnovationAdaptiveNoise)
    assert isinstance(make_noise_estimator(NoiseAdaptation.INNOVATION), InnovationAdaptiveNoise)

    estimator = InnovationAdaptiveNoise()
    assert make_noise_estimator(estimator) is estimator

    with pytest.raises(ConfigurationError):
        make_noise_estimator("sage_husa")


def test_each_filter_owns_its_estimator():
    kf = AdaptiveKalmanFilter(2, 1, adaptation="innovation")
    kf_2 = AdaptiveKalmanFilter(2, 1, adaptation="innovation")

    assert kf.adaptation is NoiseAdaptation.INNOVATION
    assert kf.noise_estimator is not kf_2.noise_estimator


def test_fixed_noise_returns_configured_noises():
    inputs = _inputs(iteration=10)

    process_noise, measurement_noise = FixedNoise().estimate(**inputs)

    assert process_noise is inputs["process_noise"]
    assert measurement_noise is inputs["measurement_noise"]
    assert not FixedNoise().is_active(10, 4)


def test_innovation_noise_waits_for_a_full_window():
    estimator = InnovationAdaptiveNoise()
    inputs = _inputs(iteration=3, window_size=4)

    process_noise, measurement_noise = estimator.estimate(**inputs)

    assert not estimator.is_active(3, 4)
    assert process_noise is inputs["process_noise"]
    assert measurement_noise is inputs["measurement_noise"]


def test_innovation_noise_formula():
    estimator = InnovationAdaptiveNoise()
    cov = torch.randn(2, 2, dtype=torch.float64)
    inputs = _inputs(iteration=4, window_size=4, innovation_covariance=cov @ cov.mT)
    gain, h, p, c = (
        inputs["kalman_gain"],
        inputs["measurement_matrix"],
        inputs["state_covariance"],
        inputs["innovation_covariance"],
    )

    process_noise, measurement_noise = estimator.estimate(**inputs)

    assert estimator.is_active(4, 4)
    assert process_noise.shape == (3, 3)
    assert measurement_noise.shape == (2, 2)
    assert torch.allclose(process_noise, gain @ c @ gain.mT)
    assert torch.allclose(measurement_noise, c - h @ p @ h.mT)


class ScaledNoise(NoiseEstimator):
    """Inflate the measurement noise (custom strategy)."""

    adaptation = NoiseAdaptation.FIXED

    def estimate(self, *, process_noise, measurement_noise, **_):
        return process_noise, 2 * measurement_noise


def test_custom_estimator_is_used_by_the_filter():
    kf = AdaptiveKalmanFilter(1, 1, adaptation=ScaledNoise())
    kf.set_models([[1.0]], [[0.0]], [[1.0]], [[1.0]])
    kf.set_initial([0.0], [[1.0]])

    kf.filter([1.0])

    assert kf.measurement_noise.item() == 2.0
    # K = P / (P + R) with P = 1 and the inflated R = 2
    assert kf.kalman_gain.item() == pytest.approx(1 / 3)


def test_shared_estimator_logs_activation_for_each_filter(caplog):
    estimator = InnovationAdaptiveNoise()
    filters = [AdaptiveKalmanFilter(1, 1, window_size=2, adaptation=estimator) for _ in range(2)]
    for kf in filters:
        kf.set_models([[1.0]], [[0.01]], [[1.0]], [[1.0]])
        kf.set_initial([0.0], [[1.0]])

    with caplog.at_level(logging.INFO, logger="adaptive_kf.kalman_filter"):
        for measure in (1.0, 1.1, 0.9):
            for kf in filters:
                kf.filter([measure])

    enabled = [record for record in caplog.records if "Adaptive noise estimation enabled" in record.message]
    assert len(enabled) == len(filters)
    assert all(kf.noise_estimator is estimator for kf in filters)
