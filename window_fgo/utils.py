from typing import Callable, Sequence

import gtsam
import numpy as np

POSITION = "position"
VELOCITY = "velocity"
ORIENTATION = "orientation"
IMU_BIAS = "imu_bias"
CLOCK_ERROR = "clock_error"

_STATE_SYMBOLS = {
    POSITION: "x",
    VELOCITY: "v",
    ORIENTATION: "o",
    IMU_BIAS: "b",
    CLOCK_ERROR: "c",
}


def state_key(name: str, idx: int) -> int:
    """Return the GTSAM key for the ``idx``-th state; unknown names share 's'."""
    return gtsam.symbol(_STATE_SYMBOLS.get(name, "s"), idx)


def format_key(key: int) -> str:
    return gtsam.DefaultKeyFormatter(key)


def numerical_jacobian(
    error_fn: Callable[[Sequence[np.ndarray]], np.ndarray],
    means: Sequence[np.ndarray],
    slot: int,
    step: float = 1e-6,
) -> np.ndarray:
    """Central-difference Jacobian of ``error_fn`` wrt ``means[slot]``."""

    base = np.asarray(means[slot], dtype=float)
    args = list(means)
    columns = []
    for idx in range(base.size):
        delta = step * max(1.0, abs(base[idx]))
        plus = base.copy()
        minus = base.copy()
        plus[idx] += delta
        minus[idx] -= delta
        args[slot] = plus
        res_plus = np.atleast_1d(error_fn(args))
        args[slot] = minus
        res_minus = np.atleast_1d(error_fn(args))
        columns.append((res_plus - res_minus) / (2.0 * delta))
    return np.column_stack(columns)
