"""Robust single-epoch pseudorange WLS position solver."""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

import numpy as np

from utilities.measurements import Measurement
from window_fgo.errors import DataError

_DEFAULT_MAX_ITERS = 20
_POS_TOL_M = 1e-4
_ROBUST_START_STEP_M = 1000.0  # Huber weighting once steps drop below this
_DEFAULT_HUBER_K = 1.345
MIN_NUM_SATELLITES = 4


def satellite_position(measurement: Measurement) -> np.ndarray:
    """Satellite ECEF position stored in a pseudorange's metadata."""
    meta = measurement.metadata
    if "sat_pos_ecef_m" in meta:
        return np.asarray(meta["sat_pos_ecef_m"], dtype=float).reshape(3)
    try:
        return np.array(
            [float(meta["sat_x"]), float(meta["sat_y"]), float(meta["sat_z"])]
        )
    except KeyError:
        raise DataError(
            "Pseudorange measurement carries no satellite position"
        ) from None
    except ValueError:
        raise DataError("Pseudorange satellite position is not numeric") from None


def solve_wls_position(
    measurements: Sequence[Measurement],
    *,
    initial_ecef: Optional[np.ndarray] = None,
    max_iters: int = _DEFAULT_MAX_ITERS,
    huber_k: float = _DEFAULT_HUBER_K,
    position_convergence_tol_m: float = _POS_TOL_M,
) -> Tuple[np.ndarray, float]:
    """Estimate receiver ECEF position and clock error (m) from pseudoranges.

    Gauss-Newton on ``rho = |sat - x| + c`` with per-measurement sigmas from
    the measurement covariance; a Huber M-estimator down-weights outliers.
    """

    if len(measurements) < MIN_NUM_SATELLITES:
        raise DataError(
            f"Need at least {MIN_NUM_SATELLITES} pseudoranges for WLS, "
            f"got {len(measurements)}"
        )

    sat_pos = np.vstack([satellite_position(meas) for meas in measurements])
    rho = np.array([float(meas.mean[0]) for meas in measurements])
    sigma = np.array([float(np.sqrt(meas.covariance[0, 0])) for meas in measurements])
    if np.any(sigma <= 0.0):
        raise DataError("Invalid pseudorange sigma")

    est = (
        np.zeros(3, dtype=float)
        if initial_ecef is None
        else np.asarray(initial_ecef, dtype=float).copy()
    )
    clock = 0.0
    robust = False

    for _ in range(max_iters):
        vec_sat = est - sat_pos
        ranges = np.linalg.norm(vec_sat, axis=1)
        if np.any(ranges < 1.0):
            raise DataError("Invalid geometry: receiver at satellite position")
        unit = vec_sat / ranges[:, None]

        design_matrix = np.hstack((unit, np.ones((len(rho), 1)))) / sigma[:, None]
        residual_vec = (rho - ranges - clock) / sigma

        if robust:
            weights = _compute_huber_weights(residual_vec, huber_k)
        else:
            weights = np.ones_like(residual_vec)
        sqrt_weights = np.sqrt(weights)
        weighted_design = design_matrix * sqrt_weights[:, None]
        weighted_residual = residual_vec * sqrt_weights

        dx, *_ = np.linalg.lstsq(weighted_design, weighted_residual, rcond=None)
        est += dx[:3]
        clock += float(dx[3])

        step_m = float(np.linalg.norm(dx[:3]))
        if step_m < position_convergence_tol_m:
            break
        robust = robust or step_m < _ROBUST_START_STEP_M

    if not np.all(np.isfinite(est)) or not np.isfinite(clock):
        raise DataError("Pseudorange geometry does not determine a position")
    return est, clock


def _compute_huber_weights(residuals: np.ndarray, huber_k: float) -> np.ndarray:
    """Return per-measurement weights using a Huber M-estimator."""
    if residuals.size == 0:
        return np.array([], dtype=float)

    scale = _robust_scale(residuals)
    if scale <= 0.0 or huber_k <= 0.0:
        return np.ones_like(residuals)

    threshold = huber_k * scale
    abs_residuals = np.abs(residuals)
    weights = np.ones_like(residuals)
    mask = abs_residuals > threshold
    weights[mask] = threshold / abs_residuals[mask]
    return weights


def _robust_scale(residuals: np.ndarray) -> float:
    """Estimate residual scale using MAD for numerical robustness."""
    median = np.median(residuals)
    mad = np.median(np.abs(residuals - median))
    if mad > 1e-9:
        return 1.4826 * mad

    std = np.std(residuals)
    if std > 0.0:
        return std

    return 1.0
