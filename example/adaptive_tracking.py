"""Example tracking a sinus whose measurement noise changes over time.

A filter with fixed noises is compared to one estimating them from the innovations.
"""

import argparse
import logging
from typing import List, Tuple

import matplotlib.pyplot as plt
import torch

import adaptive_kf
from adaptive_kf.motion_models import constant_derivative_filter


def generate_data(n: int, w0: float, noises: Tuple[float, float], amplitude: float) -> Tuple[torch.Tensor, torch.Tensor]:
    """Generate sinusoidal data with a noise switching at n / 2:

    x(t) = A sin(w0t)
    z(t) = x(t) + noise(t) * N(0, 1)

    Args:
        n (int): Size of the sequence to generate
        w0 (float): Angular frequency
        noises (Tuple[float, float]): Gaussian noise standard deviation before and after n / 2
        amplitude (float): Amplitude A of the sinus

    Returns:
        torch.Tensor: x(t) state of the system
            Shape: (T, 1, 1)
        torch.Tensor: z(t) measure for each state
            Shape: (T, 1, 1)
    """
    x = amplitude * torch.sin(w0 * torch.arange(n, dtype=torch.float64)[..., None, None])
    std = torch.full_like(x, noises[0])
    std[n // 2 :] = noises[1]
    return x, x + std * torch.randn_like(x)


def main(order: int, n: int, noises: Tuple[float, float], amplitude: float, window_size: int):
    # Let's do 2 full periods of sinus
    w0 = 4 * torch.pi / n

    # Same heuristic as for constant models: A w0^k / k!, a bit reduced
    process_std = max(amplitude * w0 ** (order + 0.5 * (order == 0)) / torch.arange(1, order + 1).prod().item() / 5, 1e-7)

    print("Parameters")
    print(f"Kalman order: {order}")
    print(f"Measurement noise: {noises[0]} then {noises[1]}")
    print(f"Process noise: {process_std}")
    print(f"Using w0={w0} for {n} points and a window of {window_size} innovations")

    x, z = generate_data(n, w0, noises, amplitude)

    filters = {
        "Fixed": constant_derivative_filter(noises[0], process_std, order=order, window_size=window_size),
        "Adaptive": constant_derivative_filter(
            noises[0], process_std, order=order, window_size=window_size, adaptation=adaptive_kf.NoiseAdaptation.INNOVATION
        ),
    }

    plt.rcParams["font.size"] = 20
    plt.figure(figsize=(24, 16))
    plt.plot(x[..., 0, 0], color="k", label="True trajectory - x = A sin(w0 t)")
    plt.plot(z[..., 0, 0], "o", color="r", markersize=2.0, label="Observed trajectory")

    measurement_stds: List[torch.Tensor] = []
    for (name, kf), color in zip(filters.items(), ("y", "g")):
        kf.set_initial(
            torch.zeros(kf.state_dim),
            torch.diag(torch.tensor([amplitude * w0**k * 3 for k in range(order + 1)], dtype=torch.float64) ** 2),
        )
        reports: List[adaptive_kf.CycleReport] = []
        kf.on_cycle = reports.append

        states = kf.filter_sequence(z)

        print(f"{name} filtering MSE: {(states.mean[:, :1] - x).pow(2).mean()}")
        plt.plot(states.mean[:, 0, 0], color=color, label=f"{name} filtering")

        mini = states.mean[:, 0, 0] - 3 * states.covariance[:, 0, 0].sqrt()
        maxi = states.mean[:, 0, 0] + 3 * states.covariance[:, 0, 0].sqrt()
        plt.fill_between(torch.arange(len(mini)), mini, maxi, color=color, alpha=0.5)

        measurement_stds.append(torch.stack([report.measurement_noise[0, 0] for report in reports]).clamp_min(0).sqrt())

    plt.ylim(-amplitude * 1.4, amplitude * 1.4)
    plt.xlabel("t")
    plt.ylabel("x")
    plt.legend(loc="upper right")

    plt.figure(figsize=(24, 16))
    plt.plot([noises[0]] * (n // 2) + [noises[1]] * (n - n // 2), color="k", label="True measurement std")
    plt.plot(measurement_stds[0], color="y", label="Fixed measurement std")
    plt.plot(measurement_stds[1], color="g", label="Estimated measurement std")
    plt.xlabel("t")
    plt.ylabel("std")
    plt.legend(loc="upper right")

    plt.show()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Adaptive Kalman filter example, filtering a sinus with varying noise")
    parser.add_argument(
        "--order",
        default=1,
        type=int,
        help="Order of the kalman filter (estimate derivative up to order to predict next pos)",
    )
    parser.add_argument("--noise", default=1.0, type=float, help="Observation noise in the first half")
    parser.add_argument("--noise-after", default=5.0, type=float, help="Observation noise in the second half")
    parser.add_argument("--amplitude", default=20, type=int, help="Amplitude of the signal")
    parser.add_argument("--n", default=1000, type=int, help="Number of points")
    parser.add_argument("--window", default=50, type=int, help="Number of innovations used by the adaptive filter")
    parser.add_argument("--verbose", action="store_true", help="Log each filtering cycle")

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    main(args.order, args.n, (args.noise, args.noise_after), args.amplitude, args.window)
