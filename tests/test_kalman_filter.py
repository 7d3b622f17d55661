import pytest
import torch

from adaptive_kf import (
    AdaptiveKalmanFilter,
    ConfigurationError,
    CycleReport,
    NoiseAdaptation,
    PreconditionError,
)


def _spd_matrix(dim: int) -> torch.Tensor:
    # Construct a symmetric positive definite covariance.
    cov = torch.randn(dim, dim, dtype=torch.float64)
    return cov @ cov.mT + 1e-2 * torch.eye(dim, dtype=torch.float64)


def random_kf(dim_x: int, dim_z: int, dim_u=0, **kwargs) -> AdaptiveKalmanFilter:
    kf = AdaptiveKalmanFilter(dim_x, dim_z, dim_u, **kwargs)
    kf.set_models(
        torch.eye(dim_x, dtype=torch.float64) + 0.1 * torch.randn(dim_x, dim_x, dtype=torch.float64),
        _spd_matrix(dim_x),
        torch.randn(dim_z, dim_x, dtype=torch.float64),
        _spd_matrix(dim_z),
        torch.randn(dim_x, dim_u, dtype=torch.float64) if dim_u else None,
    )
    kf.set_initial(torch.randn(dim_x, 1, dtype=torch.float64), _spd_matrix(dim_x))
    return kf


def test_invalid_dimensions():
    with pytest.raises(ConfigurationError):
        AdaptiveKalmanFilter(0, 1)

    with pytest.raises(ConfigurationError):
        AdaptiveKalmanFilter(2, 0)

    with pytest.raises(ConfigurationError):
        AdaptiveKalmanFilter(2, 1, -1)

    with pytest.raises(PreconditionError):
        AdaptiveKalmanFilter(2, 1, window_size=0)

    with pytest.raises(ConfigurationError):
        AdaptiveKalmanFilter(2, 1, adaptation="unknown")


def test_setters_check_shapes_before_modifying():
    kf = AdaptiveKalmanFilter(2, 1)

    with pytest.raises(ConfigurationError):
        kf.set_models(torch.eye(2), torch.eye(2), torch.ones(2, 2), torch.eye(1))  # H should be (1, 2)

    assert kf.process_matrix is None
    assert kf.measurement_matrix is None

    with pytest.raises(ConfigurationError):
        kf.set_dynamics_model(torch.eye(3), torch.eye(2))

    with pytest.raises(ConfigurationError):
        kf.set_measurement_model(torch.ones(1, 2), torch.eye(2))

    with pytest.raises(ConfigurationError):  # No control dimension
        kf.set_dynamics_model(torch.eye(2), torch.eye(2), torch.ones(2, 1))

    with pytest.raises(ConfigurationError):
        kf.set_initial(torch.zeros(3), torch.eye(2))

    with pytest.raises(ConfigurationError):
        kf.update_process_matrix(torch.eye(1))

    with pytest.raises(ConfigurationError):
        kf.update_measurement_noise(torch.eye(2))


def test_setters_convert_inputs():
    kf = AdaptiveKalmanFilter(2, 1)
    kf.set_models([[1, 1], [0, 1]], [[0.1, 0], [0, 0.1]], [[1, 0]], [[1.0]])
    kf.set_initial([1.0, 2.0], torch.eye(2, dtype=torch.float32))

    assert kf.process_matrix.dtype == torch.float64
    assert kf.state_covariance.dtype == torch.float64
    assert kf.state_estimate.shape == (2, 1)
    assert torch.equal(kf.state_estimate, torch.tensor([[1.0], [2.0]], dtype=torch.float64))


def test_last_value_set_wins():
    kf = random_kf(2, 1)

    kf.update_process_matrix(torch.eye(2))
    kf.update_measurement_noise([[3.0]])

    assert torch.equal(kf.process_matrix, torch.eye(2, dtype=torch.float64))
    assert torch.equal(kf.measurement_noise, torch.tensor([[3.0]], dtype=torch.float64))

    kf.set_dynamics_model(2 * torch.eye(2), torch.eye(2))
    assert torch.equal(kf.process_matrix, 2 * torch.eye(2, dtype=torch.float64))


def test_cycle_requires_initial_state_and_models():
    kf = AdaptiveKalmanFilter(2, 1)

    with pytest.raises(PreconditionError):
        kf.filter([1.0])

    with pytest.raises(PreconditionError):
        _ = kf.state_estimate

    kf.set_initial(torch.zeros(2), torch.eye(2))
    with pytest.raises(PreconditionError):
        kf.filter([1.0])

    kf.set_dynamics_model(torch.eye(2), torch.eye(2))
    with pytest.raises(PreconditionError):
        kf.predict_covariance()

    kf.set_measurement_model(torch.ones(1, 2), torch.eye(1))
    kf.filter([1.0])

    assert kf.iteration == 1


def test_invalid_measure_does_not_advance_the_filter():
    kf = random_kf(3, 2)
    mean = kf.state_estimate.clone()

    with pytest.raises(ConfigurationError):
        kf.filter(torch.zeros(3))

    assert kf.iteration == 0
    assert len(kf.innovation_window) == 0
    assert torch.equal(kf.state_estimate, mean)


def test_predict_state_with_control():
    kf = AdaptiveKalmanFilter(2, 1, 1)
    kf.set_models(
        [[1.0, 1.0], [0.0, 1.0]], torch.zeros(2, 2), [[1.0, 0.0]], [[1.0]], control_matrix=[[0.5], [1.0]]
    )
    kf.set_initial([1.0, 2.0], torch.eye(2))

    predicted = kf.predict_state([3.0])

    assert torch.allclose(predicted, torch.tensor([[4.5], [5.0]], dtype=torch.float64))

    predicted = kf.predict_state()

    assert torch.allclose(predicted, torch.tensor([[9.5], [5.0]], dtype=torch.float64))

    with pytest.raises(ConfigurationError):
        kf.predict_state([1.0, 2.0])


def test_control_requires_control_matrix():
    kf = random_kf(2, 1, 1)
    kf_no_control = AdaptiveKalmanFilter(2, 1, 1)
    kf_no_control.set_models(kf.process_matrix, kf.process_noise, kf.measurement_matrix, kf.measurement_noise)
    kf_no_control.set_initial(kf.state_estimate, kf.state_covariance)

    with pytest.raises(PreconditionError):
        kf_no_control.filter([0.0], [1.0])

    assert kf_no_control.iteration == 0


def test_filter_with_control_matches_manual_computation():
    dim_x, dim_z, dim_u = 3, 2, 1
    kf = random_kf(dim_x, dim_z, dim_u)
    a, b, q = kf.process_matrix, kf.control_matrix, kf.process_noise
    h, r = kf.measurement_matrix, kf.measurement_noise
    x, p = kf.state_estimate.clone(), kf.state_covariance.clone()
    z = torch.randn(dim_z, 1, dtype=torch.float64)
    u = torch.randn(dim_u, 1, dtype=torch.float64)

    kf.filter(z, u)

    x = a @ x + b @ u
    p = a @ p @ a.mT + q
    s = h @ p @ h.mT + r
    k = p @ h.mT @ s.inverse()
    x = x + k @ (z - h @ x)
    p = (torch.eye(dim_x, dtype=torch.float64) - k @ h) @ p

    assert torch.allclose(kf.state_estimate, x)
    assert torch.allclose(kf.state_covariance, p)
    assert torch.allclose(kf.kalman_gain, k)


def test_dimensions_are_kept_after_each_cycle():
    dim_x, dim_z, dim_u = 4, 2, 1
    kf = random_kf(dim_x, dim_z, dim_u)

    for t in range(20):
        if t % 2:
            kf.filter(torch.randn(dim_z, 1), torch.randn(dim_u))
        else:
            kf.filter(torch.randn(dim_z))

        assert kf.state_estimate.shape == (dim_x, 1)
        assert kf.state_covariance.shape == (dim_x, dim_x)
        assert torch.allclose(kf.state_covariance, kf.state_covariance.mT)
        assert kf.kalman_gain.shape == (dim_x, dim_z)
        assert kf.innovation_covariance.shape == (dim_z, dim_z)


def test_identical_inputs_give_identical_outputs():
    window_size = 4
    # A = H = I: S = C + K C Kᵀ stays invertible once adaptive
    kf = AdaptiveKalmanFilter(2, 2, window_size=window_size, adaptation=NoiseAdaptation.INNOVATION)
    kf.set_models(torch.eye(2), _spd_matrix(2), torch.eye(2), _spd_matrix(2))
    kf.set_initial(torch.randn(2, 1, dtype=torch.float64), _spd_matrix(2))
    kf_2 = AdaptiveKalmanFilter(2, 2, window_size=window_size, adaptation=NoiseAdaptation.INNOVATION)
    kf_2.set_models(kf.process_matrix, kf.process_noise, kf.measurement_matrix, kf.measurement_noise)
    kf_2.set_initial(kf.state_estimate.clone(), kf.state_covariance.clone())

    measures = torch.randn(3 * window_size, 2, 1, dtype=torch.float64)
    for measure in measures:
        kf.filter(measure)
        kf_2.filter(measure)

        assert torch.equal(kf.state_estimate, kf_2.state_estimate)
        assert torch.equal(kf.state_covariance, kf_2.state_covariance)
        assert torch.equal(kf.process_noise, kf_2.process_noise)
        assert torch.equal(kf.measurement_noise, kf_2.measurement_noise)

    assert kf.noise_estimator.is_active(kf.iteration, window_size)


def test_filter_sequence():
    length = 10
    dim_x, dim_z, dim_u = 2, 1, 1
    kf = random_kf(dim_x, dim_z, dim_u)
    kf_2 = AdaptiveKalmanFilter(dim_x, dim_z, dim_u)
    kf_2.set_models(
        kf.process_matrix, kf.process_noise, kf.measurement_matrix, kf.measurement_noise, kf.control_matrix
    )
    kf_2.set_initial(kf.state_estimate.clone(), kf.state_covariance.clone())
    measures = torch.randn(length, dim_z, 1)
    controls = torch.randn(length, dim_u, 1)

    states = kf.filter_sequence(measures, controls)

    assert states.mean.shape == (length, dim_x, 1)
    assert states.covariance.shape == (length, dim_x, dim_x)
    assert kf.iteration == length

    for t in range(length):
        kf_2.filter(measures[t], controls[t])
        assert torch.allclose(states.mean[t], kf_2.state_estimate)
        assert torch.allclose(states.covariance[t], kf_2.state_covariance)

    with pytest.raises(ConfigurationError):
        kf.filter_sequence(measures, controls[:-1])


def test_on_cycle_hook_receives_copies():
    reports: list[CycleReport] = []
    kf = random_kf(3, 2, on_cycle=reports.append)

    for _ in range(4):
        kf.filter(torch.randn(2, 1))

    assert [report.iteration for report in reports] == [1, 2, 3, 4]
    last = reports[-1]
    assert torch.equal(last.state.mean, kf.state_estimate)
    assert torch.equal(last.state.covariance, kf.state_covariance)
    assert torch.equal(last.kalman_gain, kf.kalman_gain)
    assert torch.equal(last.innovation_covariance, kf.innovation_covariance)
    assert torch.equal(last.innovation, kf.innovation_window[-1])
    assert last.normalized_innovation_squared >= 0
    assert not last.adaptive

    last.state.mean.add_(1.0)
    last.innovation_covariance.mul_(2.0)
    assert not torch.equal(last.state.mean, kf.state_estimate)
    assert not torch.equal(last.innovation_covariance, kf.innovation_covariance)


def test_state_accessors_share_internal_tensors():
    kf = random_kf(2, 2)
    kf.filter(torch.randn(2))

    state = kf.state
    assert state.mean is kf.state_estimate
    assert state.covariance is kf.state_covariance


def test_repr_short():
    kf = AdaptiveKalmanFilter(2, 1)
    kf.set_models(torch.tensor([[1.0, 1.0], [0.0, 1.0]]), torch.eye(2) * 0.01, torch.tensor([[1.0, 0.0]]), [[0.1]])

    kf_repr = str(kf)
    lines = kf_repr.split("\n")

    assert lines[0] == "Adaptive Kalman Filter (State dimension: 2, Measure dimension: 1, Control dimension: 0)"
    assert lines[1] == "Noise: fixed (window size: 20)"
    assert lines[2].startswith("---")
    assert lines[3].startswith("Process: A = tensor([[1., 1.],")
    assert "  &  Q = tensor([[0.01, 0.00]," in lines[3]
    assert "Measurement: H = tensor([[1., 0.]], dtype=torch.float64)  &  R = tensor([[0.10]]" in kf_repr


def test_repr_long():
    dim_x, dim_z = 8, 8
    kf = random_kf(dim_x, dim_z, window_size=5, adaptation="innovation")

    kf_repr = str(kf)

    assert kf_repr.split("\n")[1] == "Noise: innovation (window size: 5)"
    assert "Process: A = tensor(" in kf_repr
    assert "         Q = tensor(" in kf_repr
    assert "Measurement: H = tensor(" in kf_repr
    assert "             R = tensor(" in kf_repr


def test_repr_without_models():
    kf_repr = str(AdaptiveKalmanFilter(3, 1))

    assert "Process: A = None  &  Q = None" in kf_repr


def test_repr_restores_printoptions():
    options = torch._tensor_str.PRINT_OPTS  # noqa: SLF001
    precision, linewidth = options.precision, options.linewidth

    str(random_kf(3, 2))

    assert options.precision == precision
    assert options.linewidth == linewidth


@pytest.mark.cuda
def test_cpu_cuda_close():
    measures = torch.randn(5, 2, 1)
    kf = random_kf(2, 2)
    kf_cuda = AdaptiveKalmanFilter(2, 2, device="cuda")
    kf_cuda.set_models(kf.process_matrix, kf.process_noise, kf.measurement_matrix, kf.measurement_noise)
    kf_cuda.set_initial(kf.state_estimate, kf.state_covariance)

    cpu = kf.filter_sequence(measures)
    cuda = kf_cuda.filter_sequence(measures)

    assert torch.allclose(cpu.mean, cuda.mean.cpu(), atol=1e-6)
